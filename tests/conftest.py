import numpy as np
import pandas as pd
import pytest

from jqtl.cross import Cross
from jqtl.r import RError, RInterface


class FakeR(RInterface):
    """
    An R interface answering from canned values keyed by the exact command text.

    Unknown `inherits(...)` and `exists(...)` queries answer FALSE, any other
    unknown query answers NULL.
    """

    def __init__(self):
        super().__init__()
        self.values = {}
        self.errors = {}
        self.executed = []

    def set(self, command: str, value):
        self.values[command] = value
        return self

    def set_inherits(self, accessor: str, r_class: str, value: bool = True):
        return self.set(f'inherits({accessor}, "{r_class}")', [value])

    def set_names(self, accessor: str, names):
        return self.set(f"names({accessor})", list(names))

    def fail(self, command: str, message: str):
        self.errors[command] = message
        return self

    def _run(self, text: str, export: bool):
        self.executed.append(text)
        if text in self.errors:
            raise RError(text, self.errors[text])
        if not export:
            return None
        if text in self.values:
            return self.values[text]
        if text.startswith("inherits(") or text.startswith("exists("):
            return [False]
        return None


@pytest.fixture
def fake_r():
    return FakeR()


CHROMOSOME_1 = {"D1M1": 0.0, "D1M2": 10.0, "D1M3": 25.0}
CHROMOSOME_X = {"DXM1": 0.0, "DXM2": 30.0}


def install_fake_cross(r: FakeR, name: str = "fake.f2") -> Cross:
    """A 4 individual F2 cross with chromosomes 1 and X and phenotypes bp, sex, pgm."""
    r.set(f"Filter(function(.n) inherits(get(.n, envir = globalenv()), \"cross\"), ls(envir = globalenv()))",
          [name])
    r.set_inherits(name, "cross")
    r.set_inherits(name, "f2")
    r.set_names(f"{name}$pheno", ["bp", "sex", "pgm"])
    r.set(f"{name}$pheno", pd.DataFrame({
        "bp": [100.5, 102.0, np.nan, 98.0],
        "sex": ["female", "male", "male", "female"],
        "pgm": [0, 0, 1, 1],
    }))
    r.set_names(f"{name}$geno", ["1", "X"])
    for chromosome, markers, data in (
            ("1", CHROMOSOME_1, [[1, 2, 3], [2, 2, np.nan], [3, 3, 2], [1, 1, 1]]),
            ("X", CHROMOSOME_X, [[1, 2], [1, 2], [2, 1], [1, 1]])):
        accessor = f'{name}$geno$"{chromosome}"'
        r.set(f"{accessor}$map", np.array(list(markers.values())))
        r.set_names(f"{accessor}$map", list(markers))
        r.set(f"{accessor}$data", np.array(data, dtype=np.float64))
        r.set(f"colnames({accessor}$data)", list(markers))
    r.set_inherits(f'{name}$geno$"X"', "X")
    return Cross(r, name)


@pytest.fixture
def fake_cross(fake_r):
    return install_fake_cross(fake_r)
