from __future__ import annotations

import re
from pathlib import Path

from . import LinePattern, Violation
from .util import is_source, read_lines


class PatternRule:
    """Flags every line matching one of ``patterns``.

    When ``source_only`` is set the rule only looks at files under ``src/``.
    """

    name = "pattern"
    patterns: tuple[LinePattern, ...] = ()
    source_only = False

    def run(self, files: list[Path]) -> list[Violation]:
        out: list[Violation] = []
        for f in files:
            if self.source_only and not is_source(f):
                continue
            for i, raw in enumerate(read_lines(f), start=1):
                line = raw.rstrip()
                out.extend(
                    Violation(f, i, p.kind, line) for p in self.patterns if p.pattern.search(line)
                )
        return out


class TypingRule(PatternRule):
    name = "typing"
    patterns = (
        LinePattern("any", re.compile(r"\btyping\.Any\b|\bAny\b")),
        LinePattern("cast", re.compile(r"typing\.cast\s*\(")),
        LinePattern("ignore", re.compile(r"#\s*type:\s*ignore(\[[^\]]+\])?")),
    )


class LoggingRule(PatternRule):
    name = "logging"
    patterns = (
        LinePattern("print", re.compile(r"\bprint\s*\(")),
        LinePattern("basicConfig", re.compile(r"\blogging\.basicConfig\s*\(")),
    )


class ArtifactRule(PatternRule):
    """Checkpoints are untrusted input: pickled objects must never be executed."""

    name = "artifacts"
    source_only = True
    patterns = (
        LinePattern("unsafe-load", re.compile(r"\btorch\.load\((?!.*weights_only=True)")),
    )
