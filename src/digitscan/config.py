from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

_DEFAULT_CONFIG_PATH: Final[Path] = Path("config/digitscan.toml")
DEFAULT_CANDIDATES: Final[tuple[str, ...]] = ("MNISTClassifier", "MNIST", "MNISTModel")


@dataclass(frozen=True)
class AppConfig:
    # 0 leaves torch's default intra-op thread count untouched
    threads: int = 0


@dataclass(frozen=True)
class InferenceConfig:
    model_dir: Path = Path("/data/digits/models")
    candidates: tuple[str, ...] = DEFAULT_CANDIDATES
    tta: bool = False
    confident_score: float = 0.9
    residual_score: float = 0.01
    # Run only the direct feature path and never the vision pipeline
    direct_only: bool = False


@dataclass(frozen=True)
class Settings:
    app: AppConfig
    inference: InferenceConfig

    @staticmethod
    def _toml_path() -> Path:
        env_val = os.getenv("DIGITSCAN_CONFIG")
        if env_val:
            return Path(env_val)
        return _DEFAULT_CONFIG_PATH

    @classmethod
    def default(cls) -> Settings:
        return cls(app=AppConfig(), inference=InferenceConfig())

    @classmethod
    def load(cls) -> Settings:
        # Load env first, then override from TOML if present.
        base = cls(app=_load_app_from_env(), inference=_load_inference_from_env())
        cfg_path = cls._toml_path()
        if not cfg_path.exists():
            return base
        try:
            raw: object = tomllib.loads(cfg_path.read_text(encoding="utf-8"))
        except OSError as exc:
            raise RuntimeError(f"Failed to read config TOML: {cfg_path}") from exc
        except tomllib.TOMLDecodeError as exc:
            raise RuntimeError(f"Invalid TOML config: {cfg_path}") from exc
        return cls(
            app=_merge_app(base.app, _toml_table(raw, "app")),
            inference=_merge_inference(base.inference, _toml_table(raw, "inference")),
        )


def _load_app_from_env() -> AppConfig:
    a = AppConfig()
    th = os.getenv("APP__THREADS")
    if th is not None:
        if not th.strip().isdigit():
            raise RuntimeError("APP__THREADS must be a non-negative integer")
        a = replace(a, threads=int(th))
    return a


def _load_inference_from_env() -> InferenceConfig:
    d = InferenceConfig()
    md = os.getenv("INFERENCE__MODEL_DIR")
    cands = os.getenv("INFERENCE__CANDIDATES")
    tta = os.getenv("INFERENCE__TTA")
    cs = os.getenv("INFERENCE__CONFIDENT_SCORE")
    rs = os.getenv("INFERENCE__RESIDUAL_SCORE")
    direct = os.getenv("INFERENCE__DIRECT_ONLY")
    if md:
        d = replace(d, model_dir=Path(md))
    if cands is not None:
        d = replace(d, candidates=_parse_candidates(cands, "INFERENCE__CANDIDATES"))
    if tta is not None:
        d = replace(d, tta=tta.strip().lower() in {"1", "true", "yes"})
    if cs is not None:
        d = replace(d, confident_score=_parse_score(cs, "INFERENCE__CONFIDENT_SCORE"))
    if rs is not None:
        d = replace(d, residual_score=_parse_score(rs, "INFERENCE__RESIDUAL_SCORE"))
    if direct is not None:
        d = replace(d, direct_only=direct.strip().lower() in {"1", "true", "yes"})
    return d


def _merge_app(base: AppConfig, data: dict[str, object]) -> AppConfig:
    out = base
    if "threads" in data:
        threads = int(str(data["threads"]))
        if threads < 0:
            raise RuntimeError("threads must be >= 0")
        out = replace(out, threads=threads)
    return out


def _merge_inference(base: InferenceConfig, data: dict[str, object]) -> InferenceConfig:
    out = base
    if "model_dir" in data:
        out = replace(out, model_dir=Path(str(data["model_dir"])))
    if "candidates" in data:
        out = replace(out, candidates=_parse_candidates(data["candidates"], "candidates"))
    if "tta" in data:
        out = replace(out, tta=bool(data["tta"]))
    if "confident_score" in data:
        out = replace(out, confident_score=_parse_score(data["confident_score"], "confident_score"))
    if "residual_score" in data:
        out = replace(out, residual_score=_parse_score(data["residual_score"], "residual_score"))
    if "direct_only" in data:
        out = replace(out, direct_only=bool(data["direct_only"]))
    return out


def _parse_candidates(value: object, key: str) -> tuple[str, ...]:
    if isinstance(value, str):
        items = [p.strip() for p in value.split(",")]
    elif isinstance(value, list):
        items = [str(p).strip() for p in value]
    else:
        raise RuntimeError(f"{key} must be a list or comma-separated string")
    names = tuple(p for p in items if p)
    if not names:
        raise RuntimeError(f"{key} must name at least one model")
    return names


def _parse_score(value: object, key: str) -> float:
    try:
        f = float(str(value))
    except ValueError as exc:
        raise RuntimeError(f"{key} must be a number") from exc
    if not (0.0 <= f <= 1.0):
        raise RuntimeError(f"{key} must be within [0,1]")
    return f


def _toml_table(raw: object, key: str) -> dict[str, object]:
    if isinstance(raw, dict):
        tab: object = raw.get(key, {})
        if isinstance(tab, dict):
            # best-effort copy as object-typed dict
            return {str(k): v for k, v in tab.items()}
    return {}
