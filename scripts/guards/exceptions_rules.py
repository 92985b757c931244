from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

from . import Violation
from .util import is_source, read_lines

# Functions whose contract is to recover locally: they may log and continue.
_RECOVERING_FUNCTIONS: frozenset[str] = frozenset(
    {
        "decode",
        "load",
        "_attempt",
        "_unwrap_scalar",
        "summarize_envelope",
        "_log_available_artifacts",
        "__init__",
    }
)
_LOG_MARKERS: tuple[str, ...] = ("logger.", "logging.getLogger", "log_event(")
_DEF_RE = re.compile(r"^\s*(?:async\s+)?def\s+(\w+)")


@dataclass(frozen=True)
class _Handler:
    line_no: int
    end: int
    raises: bool
    logs: bool


class ExceptionsRule:
    name = "exceptions"

    _pat_suppress = re.compile(r"\bcontextlib\.suppress\s*\(")

    def run(self, files: list[Path]) -> list[Violation]:
        out: list[Violation] = []
        for f in files:
            lines = read_lines(f)
            in_src = is_source(f)
            if in_src:
                out.extend(
                    Violation(f, i, "suppress", raw.rstrip())
                    for i, raw in enumerate(lines, start=1)
                    if self._pat_suppress.search(raw)
                )
            out.extend(_scan_silent_excepts(f, lines, in_src))
        return out


def _indent(line: str) -> int:
    return len(line) - len(line.lstrip(" \t"))


def _scan_silent_excepts(path: Path, lines: list[str], in_src: bool) -> list[Violation]:
    out: list[Violation] = []
    idx = 0
    while idx < len(lines):
        raw = lines[idx]
        if not raw.lstrip().startswith("except"):
            idx += 1
            continue
        handler = _read_handler(lines, idx)
        # Source code must re-raise unless the enclosing function recovers locally
        strict = in_src and _enclosing_function(lines, idx) not in _RECOVERING_FUNCTIONS
        ok = handler.raises or (handler.logs and not strict)
        if not ok:
            out.append(Violation(path, handler.line_no, "silent-except", raw.rstrip()))
        idx = max(handler.end, idx + 1)
    return out


def _read_handler(lines: list[str], idx: int) -> _Handler:
    base = _indent(lines[idx])
    raises = logs = False
    j = idx + 1
    while j < len(lines):
        body = lines[j]
        stripped = body.strip()
        if stripped and _indent(body) <= base:
            break
        if stripped and not stripped.startswith("#"):
            raises = raises or "raise" in stripped
            logs = logs or any(m in stripped for m in _LOG_MARKERS)
        j += 1
    return _Handler(line_no=idx + 1, end=j, raises=raises, logs=logs)


def _enclosing_function(lines: list[str], idx: int) -> str | None:
    limit = _indent(lines[idx])
    for raw in reversed(lines[:idx]):
        m = _DEF_RE.match(raw)
        if m is not None and _indent(raw) <= limit:
            return m.group(1)
    return None
