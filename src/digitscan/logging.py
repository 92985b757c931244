from __future__ import annotations

import json
import logging
import os
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from typing import Final, Literal, Protocol, TypedDict, runtime_checkable

from .request_context import request_id_var

_LOGGER_NAME: Final[str] = "digitscan"
_EVT_PREFIX: Final[str] = "EVT "

LogStyle = Literal["json", "pretty", "auto"]


class LogEvent(TypedDict, total=False):
    event: str
    latency_ms: int
    digit: int
    confidence: float
    model_id: str
    path: str
    stage: str
    candidate: str
    kind: str
    fallback: bool


_INT_FIELDS: Final[tuple[str, ...]] = ("latency_ms", "digit")
_STR_FIELDS: Final[tuple[str, ...]] = ("model_id", "path", "stage", "candidate", "kind")
_LEVELS: Final[dict[str, int]] = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


def log_event(
    event: str, fields: Mapping[str, object] | None = None, *, level: int = logging.INFO
) -> None:
    """Emit ``EVT event=<event> k=v ...`` on the project logger.

    Only the keys of :class:`LogEvent` are rendered, and only when the value
    has the expected type; everything else is dropped.
    """
    parts = [f"event={event}"]
    data: Mapping[str, object] = fields if fields is not None else {}
    for key in _INT_FIELDS:
        val = data.get(key)
        if isinstance(val, int) and not isinstance(val, bool):
            parts.append(f"{key}={val}")
    conf = data.get("confidence")
    if isinstance(conf, float):
        parts.append(f"confidence={conf}")
    for key in _STR_FIELDS:
        val = data.get(key)
        if isinstance(val, str) and val:
            # Values are space-delimited on the wire
            parts.append(f"{key}={val.replace(' ', '_')}")
    fb = data.get("fallback")
    if isinstance(fb, bool):
        parts.append(f"fallback={str(fb).lower()}")
    get_logger().log(level, _EVT_PREFIX + " ".join(parts))


def _parse_evt_fields(msg: str) -> dict[str, object]:
    if not isinstance(msg, str) or not msg.startswith(_EVT_PREFIX):
        return {}
    out: dict[str, object] = {}
    for tok in msg[len(_EVT_PREFIX) :].split():
        key, sep, raw = tok.partition("=")
        key = key.strip()
        if not sep or not key:
            continue
        out[key] = _typed_value(key, raw)
    return out


def _typed_value(key: str, raw: str) -> object:
    if key in _INT_FIELDS and raw.isdigit():
        return int(raw)
    if key == "confidence" and _is_float_str(raw):
        return float(raw)
    if key == "fallback":
        return raw.lower() in {"1", "true", "yes"}
    return raw


def _is_float_str(s: str) -> bool:
    # Plain non-negative decimals only: 1, 0.5, 1.0
    return bool(s) and s.count(".") <= 1 and s.replace(".", "", 1).isdigit()


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        msg = record.getMessage()
        payload: dict[str, object] = {
            "ts": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": msg,
        }
        rid = request_id_var.get()
        if rid:
            payload["request_id"] = rid
        fields = _parse_evt_fields(msg)
        if "event" in fields:
            payload["message"] = str(fields.pop("event"))
        payload.update(fields)
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class _ConsoleFormatter(logging.Formatter):
    """Colorized single-line formatter used when stdout is a terminal.

    EVT messages are split into an event token plus highlighted key=value
    pairs; plain messages fall back to a best-effort ``event k=v`` split.
    """

    _RESET = "\x1b[0m"
    _BOLD = "\x1b[1m"
    _DIM = "\x1b[2m"
    _GRAY = "\x1b[90m"
    _RED = "\x1b[91m"
    _GREEN = "\x1b[92m"
    _YELLOW = "\x1b[93m"
    _BLUE = "\x1b[94m"
    _MAGENTA = "\x1b[95m"
    _CYAN = "\x1b[36m"
    _WHITE = "\x1b[97m"

    # (threshold, tag, color), checked highest first
    _LEVEL_TAGS: Final[tuple[tuple[int, str, str], ...]] = (
        (logging.CRITICAL, "CRIT", _MAGENTA),
        (logging.ERROR, "ERROR", _RED),
        (logging.WARNING, "WARN", _YELLOW),
        (logging.INFO, "INFO", _CYAN),
    )

    def format(self, record: logging.LogRecord) -> str:
        event, pairs, tail = self._split_message(record.getMessage())
        parts = [
            f"{self._DIM}[{datetime.now(UTC).strftime('%H:%M:%S')}]{self._RESET}",
            self._level_tag(record.levelno),
        ]
        if record.name and record.name != _LOGGER_NAME:
            parts.append(f"{self._DIM}{self._GRAY}{record.name}{self._RESET}")
        if event:
            parts.append(f"{self._BOLD}{self._BLUE}{event}{self._RESET}")
        parts.extend(
            f"{self._DIM}{self._CYAN}{k}{self._RESET}={self._color_value(k, v)}" for k, v in pairs
        )
        if tail:
            parts.append(tail)
        if record.exc_info:
            parts.append(f"\n{self._RED}{self.formatException(record.exc_info)}{self._RESET}")
        line = " ".join(parts)
        rid = request_id_var.get()
        return f"{line} {self._DIM}{self._GRAY}rid={rid}{self._RESET}" if rid else line

    def _level_tag(self, level: int) -> str:
        name, color = "DEBUG", self._GRAY
        for threshold, tag, tag_color in self._LEVEL_TAGS:
            if level >= threshold:
                name, color = tag, tag_color
                break
        return f"{self._BOLD}{color}[{name}]{self._RESET}"

    def _split_message(self, msg: str) -> tuple[str | None, list[tuple[str, str]], str | None]:
        if msg.startswith(_EVT_PREFIX):
            fields = _parse_evt_fields(msg)
            evt_name = str(fields.pop("event", "event"))
            return evt_name, [(k, _plain(v)) for k, v in fields.items()], None
        toks = msg.split()
        if not toks:
            return None, [], msg or None
        event: str | None = None
        if "=" not in toks[0]:
            event, toks = toks[0], toks[1:]
        pairs: list[tuple[str, str]] = []
        rest: list[str] = []
        for tok in toks:
            key, sep, val = tok.partition("=")
            if sep and key.strip():
                pairs.append((key.strip(), val))
            else:
                rest.append(tok)
        return event, pairs, " ".join(rest) or None

    def _color_value(self, key: str, v: str) -> str:
        k = key.lower()
        vs = v.strip()
        if k.endswith(("_ms", "_s", "seconds")) or "time" in k:
            color = self._MAGENTA
        elif k in {"confidence", "digit"} or _is_float_str(vs):
            color = self._GREEN
        elif vs.lower() in {"true", "false"}:
            color = self._CYAN
        elif k in {"path", "stage"}:
            color = self._YELLOW
        else:
            color = self._WHITE
        return f"{color}{vs}{self._RESET}"


def _plain(v: object) -> str:
    return str(v).lower() if isinstance(v, bool) else str(v)


def _env_truthy(name: str) -> bool:
    v = os.environ.get(name, "")
    return v.strip().lower() in {"1", "true", "yes", "on", "y"}


def _env_level() -> int:
    # Unknown names fall back to INFO
    raw = os.environ.get("DIGITSCAN_LOG_LEVEL", "")
    return _LEVELS.get(raw.strip().upper(), logging.INFO)


@runtime_checkable
class _HasIsatty(Protocol):
    def isatty(self) -> bool: ...


def _choose_formatter(style: LogStyle = "auto") -> logging.Formatter:
    if style == "json":
        return _JsonFormatter()
    if style == "pretty":
        return _ConsoleFormatter()
    if _env_truthy("DIGITSCAN_LOG_JSON"):
        return _JsonFormatter()
    out = sys.stdout
    is_tty = isinstance(out, _HasIsatty) and bool(out.isatty())
    if _env_truthy("DIGITSCAN_LOG_PRETTY") or is_tty:
        return _ConsoleFormatter()
    return _JsonFormatter()


def init_logging(style: LogStyle = "auto") -> logging.Logger:
    """Configure the ``digitscan`` logger and return it.

    Safe to call repeatedly: any previous StreamHandler is replaced by one
    bound to the current ``sys.stdout``.
    """
    logger = get_logger()
    level = _env_level()
    logger.setLevel(level)
    logger.propagate = _env_truthy("DIGITSCAN_LOG_PROPAGATE")
    for h in list(logger.handlers):
        if isinstance(h, logging.StreamHandler):
            logger.removeHandler(h)
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setFormatter(_choose_formatter(style))
    handler.setLevel(level)
    logger.addHandler(handler)
    return logger


def get_logger() -> logging.Logger:
    return logging.getLogger(_LOGGER_NAME)
