import json
import math
import re
import shutil
import subprocess
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from jqtl.log import logger


OK_SENTINEL = "<<JQTL-OK>>"
VALUE_SENTINEL = "<<JQTL-VALUE>>"
ERROR_SENTINEL = "<<JQTL-ERROR>>"

# Helpers defined once per session. Nothing in here may fail at top level:
# a top-level error makes a non-interactive R halt.
R_PRELUDE = r'''
options(warn = 1)
.jqtl.encode <- function(x) {
    if (is.null(x)) return(list(type = "null"))
    if (is.factor(x)) {
        return(list(type = "factor", levels = I(levels(x)), codes = I(as.integer(x))))
    }
    if (is.data.frame(x)) {
        rn <- attr(x, "row.names")
        return(list(type = "data.frame",
                    names = I(names(x)),
                    rownames = if (is.character(rn)) I(rn) else NULL,
                    columns = lapply(unname(as.list(x)), .jqtl.encode)))
    }
    if (is.array(x)) {
        return(list(type = "array", dim = I(dim(x)), mode = typeof(x),
                    data = I(as.vector(unclass(x)))))
    }
    if (is.list(x)) {
        nm <- names(x)
        return(list(type = "list",
                    names = if (is.null(nm)) NULL else I(nm),
                    items = lapply(unname(unclass(x)), .jqtl.encode)))
    }
    if (is.atomic(x)) {
        return(list(type = "vector", mode = typeof(x), data = I(as.vector(unclass(x)))))
    }
    list(type = "other", text = paste(capture.output(print(x)), collapse = "\n"))
}
.jqtl.eval <- function(text, export) {
    tryCatch({
        value <- eval(parse(text = text), envir = globalenv())
        if (export) {
            cat("<<JQTL-VALUE>>",
                jsonlite::toJSON(.jqtl.encode(value), auto_unbox = TRUE,
                                 null = "null", na = "null", digits = NA),
                "\n", sep = "")
        } else {
            cat("<<JQTL-OK>>\n")
        }
    }, error = function(e) {
        cat("<<JQTL-ERROR>>", gsub("[\r\n]+", " ", conditionMessage(e)), "\n", sep = "")
    })
    flush(stdout())
    invisible(NULL)
}
'''

LIBRARY_COMMAND = "suppressPackageStartupMessages({library(qtl); library(jsonlite)})"


class RError(RuntimeError):
    """R signalled an error while evaluating a command."""

    def __init__(self, command: str, message: str):
        super().__init__(f"R error in '{command}': {message}")
        self.command = command
        self.message = message


class RSyntaxError(ValueError):
    pass


# ------------------------
# R literals
# ------------------------

def r_string(value: str) -> str:
    """Quote a python string as an R string literal."""
    escaped = (
        str(value)
        .replace("\\", "\\\\")
        .replace('"', '\\"')
        .replace("\n", "\\n")
        .replace("\r", "\\r")
        .replace("\t", "\\t")
    )
    return f'"{escaped}"'


def r_bool(value) -> str:
    return "TRUE" if value else "FALSE"


def r_number(value) -> str:
    if value is None:
        return "NA"
    if isinstance(value, (bool, np.bool_)):
        return r_bool(value)
    if isinstance(value, (int, np.integer)):
        return str(int(value))
    value = float(value)
    if math.isnan(value):
        return "NA"
    if math.isinf(value):
        return "Inf" if value > 0 else "-Inf"
    return repr(value)


def r_vector(values: Sequence) -> str:
    """Build an R vector, quoting each element according to its python type."""
    items = []
    for value in values:
        if isinstance(value, str):
            items.append(r_string(value))
        elif isinstance(value, (bool, np.bool_)):
            items.append(r_bool(value))
        else:
            items.append(r_number(value))
    return "c(" + ", ".join(items) + ")"


def r_call(function: str, parameters: Sequence[Tuple[Optional[str], str]]) -> str:
    """
    Build a method invocation.

    :param function: R function name
    :param parameters: (name, value) tuples, a None name gives a positional parameter
    """
    rendered = []
    for name, value in parameters:
        rendered.append(value if name is None else f"{name}={value}")
    return f"{function}({', '.join(rendered)})"


def r_assign(target: str, expression: str) -> str:
    return f"{target} <- {expression}"


def column_expression(accessor: str, index: int) -> str:
    """Column of a matrix, `index` is zero based."""
    return f"{accessor}[,{index + 1}]"


_INVALID_IDENTIFIER_CHARS = re.compile(r"[^A-Za-z0-9._]")


def to_r_identifier(name: str) -> str:
    """
    Turn a readable name (eg. "my scan #1") into a valid R identifier ("my.scan..1").

    :param name: readable name
    """
    if name is None or not name.strip():
        raise RSyntaxError("An empty name cannot be used as an R identifier.")
    identifier = _INVALID_IDENTIFIER_CHARS.sub(".", name.strip())
    if identifier[0].isdigit() or identifier[0] == "_" or re.match(r"^\.\d", identifier):
        identifier = "X" + identifier
    return identifier


def as_scalar(value):
    """First element of an R vector (R has no scalars)."""
    if isinstance(value, (list, tuple, np.ndarray, pd.Series)):
        if len(value) == 0:
            return None
        return value[0] if not isinstance(value, pd.Series) else value.iloc[0]
    return value


def as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, (np.ndarray, pd.Series)):
        return list(np.asarray(value).ravel())
    return [value]


# ------------------------
# decoding
# ------------------------

def _vector_data(mode: Optional[str], data):
    data = [] if data is None else data
    if not isinstance(data, list):
        data = [data]
    if mode == "double":
        return np.array([np.nan if v is None else v for v in data], dtype=np.float64)
    if mode == "integer":
        if any(v is None for v in data):
            return np.array([np.nan if v is None else v for v in data], dtype=np.float64)
        return np.array(data, dtype=np.int64)
    if mode == "character":
        return [None if v is None else str(v) for v in data]
    if mode == "logical":
        return [None if v is None else bool(v) for v in data]
    return list(data)


def decode_r_value(encoded) -> Any:
    """Rebuild a python value from the JSON produced by `.jqtl.encode`."""
    if encoded is None:
        return None
    kind = encoded.get("type")
    if kind == "null":
        return None
    if kind == "factor":
        levels = list(encoded.get("levels") or [])
        return [None if code is None else levels[int(code) - 1] for code in encoded.get("codes") or []]
    if kind == "data.frame":
        names = list(encoded.get("names") or [])
        columns = [decode_r_value(column) for column in encoded.get("columns") or []]
        if columns:
            frame = pd.concat([pd.Series(column) for column in columns], axis=1)
            frame.columns = names
        else:
            frame = pd.DataFrame(columns=names)
        rownames = encoded.get("rownames")
        if rownames and len(rownames) == len(frame):
            frame.index = rownames
        return frame
    if kind == "array":
        dim = [int(d) for d in encoded.get("dim") or []]
        data = _vector_data(encoded.get("mode"), encoded.get("data"))
        array = data if isinstance(data, np.ndarray) else np.array(data, dtype=object)
        return array.reshape(dim, order="F")
    if kind == "list":
        items = [decode_r_value(item) for item in encoded.get("items") or []]
        names = encoded.get("names")
        if names:
            return dict(zip(names, items))
        return items
    if kind == "vector":
        return _vector_data(encoded.get("mode"), encoded.get("data"))
    return encoded.get("text")


# ------------------------
# interfaces
# ------------------------

class RInterface:
    """
    Something that evaluates R commands. Subclasses implement `_run`.

    Commands that are not silent are kept in `history` so that a session can be
    replayed as an R script.
    """

    def __init__(self):
        self.history: List[str] = []

    def _run(self, text: str, export: bool):
        raise NotImplementedError

    def evaluate(self, command: str, silent: bool = True):
        """
        Evaluate a command and return its value.

        :param command: R command text
        :param silent: do not record the command in the history
        """
        if not silent:
            self.history.append(command)
            logger.info(f"R> {command}")
        else:
            logger.debug(f"R> {command}")
        return self._run(command, export=True)

    def evaluate_no_return(self, command: str, silent: bool = False):
        if not silent:
            self.history.append(command)
            logger.info(f"R> {command}")
        else:
            logger.debug(f"R> {command}")
        self._run(command, export=False)

    def insert_comment(self, comment: str):
        for line in comment.splitlines():
            self.history.append(f"# {line}")
        logger.info(comment)

    def inherits(self, accessor: str, r_class: str) -> bool:
        value = self.evaluate(r_call("inherits", [(None, accessor), (None, r_string(r_class))]))
        return bool(as_scalar(value))

    def names(self, accessor: str) -> List[str]:
        return [str(n) for n in as_list(self.evaluate(f"names({accessor})"))]

    def exists(self, name: str) -> bool:
        return bool(as_scalar(self.evaluate(f"exists({r_string(name)})")))

    def top_level_objects_of_class(self, r_class: str) -> List[str]:
        command = (
            f"Filter(function(.n) inherits(get(.n, envir = globalenv()), {r_string(r_class)}), "
            f"ls(envir = globalenv()))"
        )
        return [str(n) for n in as_list(self.evaluate(command))]


class RObject:
    """An object living in the R workspace, known by its accessor expression."""

    def __init__(self, r_interface: RInterface, accessor: str):
        self.r = r_interface
        self.accessor = accessor

    def __eq__(self, other):
        return type(self) is type(other) and self.accessor == other.accessor

    def __hash__(self):
        return hash((type(self).__name__, self.accessor))

    def __repr__(self):
        return f"{type(self).__name__}({self.accessor!r})"

    def __str__(self):
        return self.accessor

    def value(self, suffix: str = ""):
        return self.r.evaluate(self.accessor + suffix)

    def inherits(self, r_class: str) -> bool:
        return self.r.inherits(self.accessor, r_class)

    def names(self) -> List[str]:
        return self.r.names(self.accessor)


def check_r(r_exec: str = "R"):
    """Check if R is installed and in the system PATH."""
    if shutil.which(r_exec) is None:
        raise RuntimeError(f"R executable '{r_exec}' is not installed or not in the system PATH. Please install R and R/qtl first.")


class RSession(RInterface):
    """A persistent `R --slave` child process fed over stdin."""

    def __init__(self, r_exec: str = "R"):
        super().__init__()
        self.r_exec = r_exec
        self._process: Optional[subprocess.Popen] = None

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @property
    def running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    def start(self):
        check_r(self.r_exec)
        logger.info(f"Starting R session ({self.r_exec})...")
        self._process = subprocess.Popen(
            [self.r_exec, "--vanilla", "--slave"],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            encoding="utf-8",
            bufsize=1,
        )
        self._write(R_PRELUDE)
        self._run(LIBRARY_COMMAND, export=False)
        logger.info("R session ready, R/qtl loaded.")
        return self

    def close(self):
        if self._process is None:
            return
        if self._process.poll() is None:
            try:
                self._write('q(save = "no")\n')
                self._process.wait(timeout=10)
            except (RuntimeError, subprocess.TimeoutExpired):
                logger.warning("R did not quit cleanly, killing it.")
                self._process.kill()
                self._process.wait()
        self._process = None
        logger.info("R session closed.")

    def _write(self, text: str):
        try:
            self._process.stdin.write(text)
            self._process.stdin.flush()
        except (BrokenPipeError, OSError) as e:
            raise RuntimeError("R session terminated unexpectedly.") from e

    def _run(self, text: str, export: bool):
        if not self.running:
            raise RuntimeError("R session is not running. Call start() first.")
        self._write(f".jqtl.eval({r_string(text)}, {r_bool(export)})\n")
        return self._read_reply(text)

    def _read_reply(self, text: str):
        chatter = []
        while True:
            line = self._process.stdout.readline()
            if not line:
                raise RuntimeError("R session terminated unexpectedly:\n" + "\n".join(chatter))
            line = line.rstrip("\n")
            for sentinel in (VALUE_SENTINEL, OK_SENTINEL, ERROR_SENTINEL):
                position = line.find(sentinel)
                if position < 0:
                    continue
                if position > 0:
                    logger.debug(f"R: {line[:position]}")
                payload = line[position + len(sentinel):]
                if sentinel == VALUE_SENTINEL:
                    return decode_r_value(json.loads(payload))
                if sentinel == OK_SENTINEL:
                    return None
                raise RError(text, payload.strip())
            chatter.append(line)
            logger.debug(f"R: {line}")
