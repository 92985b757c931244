from __future__ import annotations

import os
import tempfile
from pathlib import Path

import pytest

from digitscan.config import DEFAULT_CANDIDATES, Settings


def test_defaults_without_env_or_toml() -> None:
    with tempfile.TemporaryDirectory() as td:
        s = _load_with_env({"DIGITSCAN_CONFIG": (Path(td) / "missing.toml").as_posix()})
    assert s.inference.candidates == DEFAULT_CANDIDATES
    assert s.inference.tta is False
    assert s.inference.direct_only is False
    assert abs(s.inference.confident_score - 0.9) < 1e-9
    assert abs(s.inference.residual_score - 0.01) < 1e-9
    assert s.app.threads == 0
    assert Settings.default().inference == s.inference


def test_env_overrides_happy_paths() -> None:
    with tempfile.TemporaryDirectory() as td:
        env = {
            "DIGITSCAN_CONFIG": (Path(td) / "missing.toml").as_posix(),
            "APP__THREADS": "2",
            "INFERENCE__MODEL_DIR": (Path(td) / "models").as_posix(),
            "INFERENCE__CANDIDATES": "MNIST, MNISTModel ,",
            "INFERENCE__TTA": "true",
            "INFERENCE__CONFIDENT_SCORE": "0.8",
            "INFERENCE__RESIDUAL_SCORE": "0.02",
            "INFERENCE__DIRECT_ONLY": "yes",
        }
        s = _load_with_env(env)
        assert s.app.threads == 2
        assert s.inference.model_dir.as_posix().endswith("models")
        assert s.inference.candidates == ("MNIST", "MNISTModel")
        assert s.inference.tta is True
        assert abs(s.inference.confident_score - 0.8) < 1e-9
        assert abs(s.inference.residual_score - 0.02) < 1e-9
        assert s.inference.direct_only is True


def test_toml_overrides_env() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text(
            """
[app]
threads = 1

[inference]
candidates = ["Custom", "MNIST"]
confident_score = 0.75
direct_only = true
""".strip(),
            encoding="utf-8",
        )
        env = {"DIGITSCAN_CONFIG": p.as_posix(), "INFERENCE__CONFIDENT_SCORE": "0.5"}
        s = _load_with_env(env)
        assert s.app.threads == 1
        assert s.inference.candidates == ("Custom", "MNIST")
        assert abs(s.inference.confident_score - 0.75) < 1e-9
        assert s.inference.direct_only is True


@pytest.mark.parametrize(
    "key,value",
    [
        ("INFERENCE__CONFIDENT_SCORE", "1.5"),
        ("INFERENCE__RESIDUAL_SCORE", "abc"),
        ("INFERENCE__CANDIDATES", " , "),
        ("APP__THREADS", "-1"),
    ],
)
def test_invalid_env_values_raise(key: str, value: str) -> None:
    with tempfile.TemporaryDirectory() as td:
        env = {"DIGITSCAN_CONFIG": (Path(td) / "missing.toml").as_posix(), key: value}
        with pytest.raises(RuntimeError):
            _ = _load_with_env(env)


def test_invalid_toml_raises() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text("[inference\ncandidates = ", encoding="utf-8")
        with pytest.raises(RuntimeError):
            _ = _load_with_env({"DIGITSCAN_CONFIG": p.as_posix()})


def test_toml_candidates_must_be_list_or_string() -> None:
    with tempfile.TemporaryDirectory() as td:
        p = Path(td) / "cfg.toml"
        p.write_text("[inference]\ncandidates = 3\n", encoding="utf-8")
        with pytest.raises(RuntimeError):
            _ = _load_with_env({"DIGITSCAN_CONFIG": p.as_posix()})


def _load_with_env(env: dict[str, str]) -> Settings:
    # Run Settings.load against exactly this environment, then restore
    old = os.environ.copy()
    try:
        os.environ.clear()
        for k, v in env.items():
            os.environ[k] = v
        return Settings.load()
    finally:
        os.environ.clear()
        for k, v in old.items():
            os.environ[k] = v
