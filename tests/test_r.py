import io
import json

import numpy as np
import pandas as pd
import pytest

from jqtl.r import (
    ERROR_SENTINEL,
    VALUE_SENTINEL,
    RError,
    RObject,
    RSession,
    RSyntaxError,
    as_list,
    as_scalar,
    column_expression,
    decode_r_value,
    r_assign,
    r_call,
    r_number,
    r_string,
    r_vector,
    to_r_identifier,
)


def test_r_string_escapes_quotes_and_backslashes():
    assert r_string('say "hi"') == '"say \\"hi\\""'
    assert r_string("C:\\data") == '"C:\\\\data"'
    assert r_string("a\nb") == '"a\\nb"'


@pytest.mark.parametrize("value, expected", [
    (3, "3"),
    (1.5, "1.5"),
    (None, "NA"),
    (float("nan"), "NA"),
    (float("inf"), "Inf"),
    (float("-inf"), "-Inf"),
    (True, "TRUE"),
    (np.int64(7), "7"),
])
def test_r_number(value, expected):
    assert r_number(value) == expected


def test_r_vector_mixes_types():
    assert r_vector(["A", 1, False]) == 'c("A", 1, FALSE)'
    assert r_vector([]) == "c()"


def test_r_call_and_assign():
    call = r_call("scanone", [(None, "cross"), ("pheno.col", "1"), ("method", r_string("em"))])
    assert call == 'scanone(cross, pheno.col=1, method="em")'
    assert r_assign("x", call) == f"x <- {call}"
    assert column_expression("res", 0) == "res[,1]"


@pytest.mark.parametrize("name, expected", [
    ("my scan #1", "my.scan..1"),
    ("1st", "X1st"),
    ("_hidden", "X_hidden"),
    (".5", "X.5"),
    ("hyper.scan", "hyper.scan"),
])
def test_to_r_identifier(name, expected):
    assert to_r_identifier(name) == expected


def test_to_r_identifier_rejects_empty_names():
    with pytest.raises(RSyntaxError):
        to_r_identifier("   ")


def test_as_scalar_and_as_list():
    assert as_scalar([4, 5]) == 4
    assert as_scalar([]) is None
    assert as_scalar(np.array([2.5])) == 2.5
    assert as_scalar("x") == "x"
    assert as_list(None) == []
    assert as_list(np.array([[1, 2], [3, 4]])) == [1, 2, 3, 4]
    assert as_list("x") == ["x"]


def test_decode_vectors():
    doubles = decode_r_value({"type": "vector", "mode": "double", "data": [1.5, None]})
    assert doubles[0] == 1.5 and np.isnan(doubles[1])
    integers = decode_r_value({"type": "vector", "mode": "integer", "data": [1, 2]})
    assert integers.dtype == np.int64
    assert decode_r_value({"type": "vector", "mode": "integer", "data": [1, None]}).dtype == np.float64
    assert decode_r_value({"type": "vector", "mode": "character", "data": "a"}) == ["a"]
    assert decode_r_value({"type": "vector", "mode": "logical", "data": [True, None]}) == [True, None]
    assert decode_r_value({"type": "null"}) is None


def test_decode_factor_uses_labels():
    encoded = {"type": "factor", "levels": ["female", "male"], "codes": [2, 1, None]}
    assert decode_r_value(encoded) == ["male", "female", None]


def test_decode_array_is_column_major():
    encoded = {"type": "array", "dim": [2, 3], "mode": "double", "data": [1, 2, 3, 4, 5, 6]}
    np.testing.assert_array_equal(decode_r_value(encoded), [[1, 3, 5], [2, 4, 6]])


def test_decode_data_frame_with_row_names():
    encoded = {
        "type": "data.frame",
        "names": ["chr", "pos", "lod"],
        "rownames": ["D1M1", "D1M2"],
        "columns": [
            {"type": "factor", "levels": ["1"], "codes": [1, 1]},
            {"type": "vector", "mode": "double", "data": [0.0, 10.0]},
            {"type": "vector", "mode": "double", "data": [1.2, 3.4]},
        ],
    }
    frame = decode_r_value(encoded)
    assert isinstance(frame, pd.DataFrame)
    assert list(frame.columns) == ["chr", "pos", "lod"]
    assert list(frame.index) == ["D1M1", "D1M2"]
    assert frame.loc["D1M2", "lod"] == pytest.approx(3.4)


def test_decode_lists():
    named = {"type": "list", "names": ["a", "b"], "items": [
        {"type": "vector", "mode": "character", "data": ["x"]},
        {"type": "null"},
    ]}
    assert decode_r_value(named) == {"a": ["x"], "b": None}
    unnamed = {"type": "list", "names": None, "items": [{"type": "null"}]}
    assert decode_r_value(unnamed) == [None]


def test_history_keeps_only_loud_commands(fake_r):
    fake_r.evaluate("nind(cross)")
    fake_r.evaluate_no_return("cross <- calc.genoprob(cross)")
    fake_r.evaluate_no_return("rm(tmp)", silent=True)
    fake_r.insert_comment("two\nlines")
    assert fake_r.history == ["cross <- calc.genoprob(cross)", "# two", "# lines"]


def test_query_helpers(fake_r):
    fake_r.set_inherits("hyper", "cross")
    fake_r.set_names("hyper$pheno", ["bp", "sex"])
    fake_r.set('exists("hyper")', [True])
    assert fake_r.inherits("hyper", "cross")
    assert not fake_r.inherits("hyper", "scanone")
    assert fake_r.names("hyper$pheno") == ["bp", "sex"]
    assert fake_r.exists("hyper")
    assert not fake_r.exists("other")


def test_robject_identity(fake_r):
    assert RObject(fake_r, "hyper") == RObject(fake_r, "hyper")
    assert RObject(fake_r, "hyper") != RObject(fake_r, "other")
    assert len({RObject(fake_r, "hyper"), RObject(fake_r, "hyper")}) == 1
    assert str(RObject(fake_r, "hyper")) == "hyper"


class _FakeProcess:
    def __init__(self, output: str):
        self.stdout = io.StringIO(output)
        self.stdin = io.StringIO()

    def poll(self):
        return None


def test_session_must_be_started():
    with pytest.raises(RuntimeError):
        RSession().evaluate("1")


def test_session_reads_value_after_chatter():
    session = RSession()
    payload = json.dumps({"type": "vector", "mode": "double", "data": [1.5]})
    session._process = _FakeProcess(f"Warning: something\n{VALUE_SENTINEL}{payload}\n")
    value = session.evaluate("x")
    np.testing.assert_array_equal(value, [1.5])
    assert session._process.stdin.getvalue() == '.jqtl.eval("x", TRUE)\n'


def test_session_raises_r_errors():
    session = RSession()
    session._process = _FakeProcess(f"{ERROR_SENTINEL}object 'x' not found\n")
    with pytest.raises(RError) as error:
        session.evaluate("x")
    assert error.value.message == "object 'x' not found"
    assert error.value.command == "x"


def test_session_reports_a_dead_process():
    session = RSession()
    session._process = _FakeProcess("Killed\n")
    with pytest.raises(RuntimeError, match="terminated"):
        session.evaluate_no_return("x")
