"""Turn a raw model output envelope into (label, score) pairs.

Decoding never raises. An envelope with nothing decodable yields an empty
list, which the normalizer reports as a decoding failure.
"""

from __future__ import annotations

import math
import operator
import reprlib
import sys
from collections.abc import Mapping, Sequence
from itertools import islice
from typing import Final, Protocol, runtime_checkable

from ..logging import get_logger
from .types import (
    N_LABELS,
    DenseArray,
    LabeledMap,
    Label,
    Opaque,
    OutputEnvelope,
    RawScore,
    ScalarLabel,
)

CONFIDENT_SCORE: Final[float] = 0.9
RESIDUAL_SCORE: Final[float] = 0.01
# Feature maps nest at most one level (name -> payload)
_MAX_OPAQUE_DEPTH: Final[int] = 2
_FLOAT_MAX: Final[float] = sys.float_info.max
_SUMMARY_ITEMS: Final[int] = 5
_SUMMARY_SCALARS: Final[tuple[type, ...]] = (bool, int, float, str, bytes, type(None))
_REPR = reprlib.Repr()
_REPR.maxstring = 24
_REPR.maxlong = 24
_DECODE_ERRORS: Final[tuple[type[BaseException], ...]] = (
    TypeError,
    ValueError,
    AttributeError,
    IndexError,
    KeyError,
    OverflowError,
    RuntimeError,
)


@runtime_checkable
class _HasItem(Protocol):
    def item(self) -> object: ...


@runtime_checkable
class _HasToList(Protocol):
    def tolist(self) -> object: ...


def decode(
    envelope: OutputEnvelope,
    *,
    confident: float = CONFIDENT_SCORE,
    residual: float = RESIDUAL_SCORE,
) -> list[RawScore]:
    try:
        if isinstance(envelope, LabeledMap):
            return _decode_mapping(envelope.entries)
        if isinstance(envelope, DenseArray):
            return _decode_array(envelope.values)
        if isinstance(envelope, ScalarLabel):
            return _decode_scalar(envelope, confident, residual)
        if isinstance(envelope, Opaque):
            return _decode_opaque(envelope.payload, confident, residual, 0)
    except _DECODE_ERRORS as exc:
        logger = get_logger()
        logger.debug("decode_error kind=%s error=%s", type(envelope).__name__, exc)
        return []
    return []


def coerce_label(key: object) -> Label | None:
    """Map a raw key to a label: integer, then numeric, then digit string.

    Total: a key that cannot be converted yields None so only that entry drops.
    """
    if isinstance(key, bool):
        return None
    if isinstance(key, int):
        return _label_from_int(key)
    if isinstance(key, float):
        if math.isfinite(key) and key.is_integer():
            return _label_from_int(int(key))
        return None
    if isinstance(key, str):
        s = key.strip()
        digits = s[1:] if s[:1] in ("+", "-") else s
        # ASCII digits only; str.isdigit() also accepts superscripts and other scripts
        if digits.isascii() and digits.isdigit():
            return _label_from_int(int(s))
        return None
    if isinstance(key, _HasItem) or hasattr(key, "__index__"):
        inner = _unwrap_scalar(key)
        return coerce_label(inner) if inner is not None else None
    return None


def coerce_score(value: object) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        # float() overflows for ints beyond the double range
        if abs(value) > _FLOAT_MAX:
            return math.copysign(math.inf, value)
        return float(value)
    if isinstance(value, float):
        return value
    if isinstance(value, _HasItem):
        inner = _unwrap_scalar(value)
        return coerce_score(inner) if inner is not None else None
    return None


def _unwrap_scalar(obj: object) -> int | float | None:
    """Python scalar behind a 0-d tensor, numpy scalar or ``__index__`` type."""
    try:
        if isinstance(obj, _HasItem):
            inner = obj.item()
        else:
            inner = operator.index(obj)
    except _DECODE_ERRORS as exc:
        logger = get_logger()
        logger.debug("decode_scalar_rejected type=%s error=%s", type(obj).__name__, exc)
        return None
    if isinstance(inner, bool) or not isinstance(inner, int | float):
        return None
    return inner


def _label_from_int(v: int) -> Label | None:
    if 0 <= v < N_LABELS:
        return Label(v)
    return None


def _decode_mapping(entries: Mapping[object, object]) -> list[RawScore]:
    out: list[RawScore] = []
    for key, value in entries.items():
        label = coerce_label(key)
        if label is None:
            # Auxiliary keys are expected in some output schemas
            continue
        score = coerce_score(value)
        if score is None:
            continue
        out.append(RawScore(label=label, score=score))
    return out


def _as_rows(values: object) -> list[object] | None:
    seq = values.tolist() if isinstance(values, _HasToList) else values
    if isinstance(seq, str | bytes) or isinstance(seq, Mapping):
        return None
    if not isinstance(seq, Sequence):
        return None
    items = list(seq)
    if items and all(_is_row(v) for v in items):
        # Single-row batch, e.g. shape (1, 10)
        if len(items) != 1:
            return None
        return _as_rows(items[0])
    return items


def _is_row(v: object) -> bool:
    if isinstance(v, str | bytes) or isinstance(v, Mapping):
        return False
    if isinstance(v, Sequence):
        return True
    # 0-d tensors and arrays convert to a bare scalar
    return isinstance(v, _HasToList) and isinstance(v.tolist(), list)


def _decode_array(values: object) -> list[RawScore]:
    items = _as_rows(values)
    if not items:
        return []
    out: list[RawScore] = []
    n = min(len(items), N_LABELS)
    for label in Label:
        score = coerce_score(items[int(label)]) if int(label) < n else None
        out.append(RawScore(label=label, score=score if score is not None else 0.0))
    return out


def _decode_scalar(env: ScalarLabel, confident: float, residual: float) -> list[RawScore]:
    if env.companion is not None:
        companion = decode(env.companion)
        if companion:
            return companion
    best = coerce_label(env.best_label)
    if best is None:
        return []
    return _synthesize(best, confident, residual)


def _synthesize(best: Label, confident: float, residual: float) -> list[RawScore]:
    return [
        RawScore(label=lbl, score=confident if lbl is best else residual) for lbl in Label
    ]


def _decode_opaque(
    payload: object, confident: float, residual: float, depth: int
) -> list[RawScore]:
    if payload is None:
        return []
    # Dictionary-like
    if isinstance(payload, Mapping):
        found = _decode_mapping(payload)
        if found:
            return found
        if depth + 1 < _MAX_OPAQUE_DEPTH:
            for value in payload.values():
                # Only containers; a bare scalar next to other fields is metadata
                if not (isinstance(value, Mapping) or _is_row(value)):
                    continue
                nested = _decode_opaque(value, confident, residual, depth + 1)
                if nested:
                    return nested
        return []
    # Array-like
    found = _decode_array(payload)
    if found:
        return found
    # Scalar-like
    best = coerce_label(payload)
    if best is None:
        return []
    return _synthesize(best, confident, residual)


def summarize_envelope(envelope: OutputEnvelope) -> str:
    """Bounded one-line description of an envelope for failure messages.

    Shows the variant, the container type and size, and the first few
    entries with their value types. Never raises.
    """
    try:
        if isinstance(envelope, LabeledMap):
            return f"LabeledMap {_summarize_payload(envelope.entries)}"
        if isinstance(envelope, DenseArray):
            return f"DenseArray {_summarize_payload(envelope.values)}"
        if isinstance(envelope, ScalarLabel):
            companion = (
                summarize_envelope(envelope.companion)
                if envelope.companion is not None
                else "None"
            )
            return f"ScalarLabel best_label={_brief(envelope.best_label)} companion=({companion})"
        if isinstance(envelope, Opaque):
            return f"Opaque {_summarize_payload(envelope.payload)}"
    except _DECODE_ERRORS as exc:
        logger = get_logger()
        logger.debug("envelope_summary_error kind=%s error=%s", type(envelope).__name__, exc)
    return type(envelope).__name__


def _summarize_payload(obj: object) -> str:
    kind = type(obj).__name__
    if isinstance(obj, Mapping):
        items = [f"{_brief(k)}={_brief(v)}" for k, v in islice(obj.items(), _SUMMARY_ITEMS)]
        return f"type={kind} size={len(obj)} items=[{_joined(items, len(obj))}]"
    seq = obj.tolist() if isinstance(obj, _HasToList) else obj
    if isinstance(seq, Sequence) and not isinstance(seq, str | bytes):
        head = [_brief(v) for v in islice(seq, _SUMMARY_ITEMS)]
        return f"type={kind} len={len(seq)} head=[{_joined(head, len(seq))}]"
    return f"type={kind} value={_brief(seq)}"


def _brief(v: object) -> str:
    if isinstance(v, _SUMMARY_SCALARS):
        return f"{type(v).__name__}:{_REPR.repr(v)}"
    if isinstance(v, Sequence | Mapping):
        return f"{type(v).__name__}[{len(v)}]"
    return type(v).__name__


def _joined(parts: list[str], total: int) -> str:
    return ", ".join(parts) + (", ..." if total > len(parts) else "")
