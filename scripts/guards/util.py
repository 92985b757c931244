from __future__ import annotations

from collections.abc import Iterable
from pathlib import Path

SRC_DIRS: tuple[str, ...] = ("src", "tests", "scripts")
# scripts/guards is excluded so rule patterns do not flag themselves
IGNORED_PARTS: frozenset[str] = frozenset(
    {".venv", "__pycache__", ".mypy_cache", ".ruff_cache", ".pytest_cache", "guards"}
)


def is_source(path: Path) -> bool:
    return path.as_posix().startswith("src/")


def iter_py_files(paths: Iterable[Path]) -> list[Path]:
    found: list[Path] = []
    for root in paths:
        if root.exists():
            found.extend(
                p for p in sorted(root.rglob("*.py")) if not IGNORED_PARTS.intersection(p.parts)
            )
    return found


def default_file_set() -> list[Path]:
    return iter_py_files(Path(d) for d in SRC_DIRS)


def read_lines(path: Path) -> list[str]:
    try:
        return path.read_text(encoding="utf-8", errors="ignore").splitlines()
    except OSError:
        return []
