from __future__ import annotations

import argparse
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path

import scripts.guards.util as _util
from digitscan.logging import get_logger, init_logging
from guards import Rule, RuleReport, Violation
from guards.exceptions_rules import ExceptionsRule
from guards.pattern_rules import ArtifactRule, LoggingRule, TypingRule

_MAX_SHOWN = 80


@dataclass
class _RunOutcome:
    reports: list[RuleReport] = field(default_factory=list)
    violations: list[Violation] = field(default_factory=list)


def _rules() -> list[Rule]:
    return [TypingRule(), LoggingRule(), ArtifactRule(), ExceptionsRule()]


def _run_all(files: list[Path]) -> _RunOutcome:
    outcome = _RunOutcome()
    for rule in _rules():
        found = rule.run(files)
        outcome.reports.append(RuleReport(name=rule.name, violations=len(found)))
        outcome.violations.extend(found)
    return outcome


def _report(outcome: _RunOutcome, verbose: bool) -> None:
    log = get_logger()
    if verbose:
        log.info("Guard rule summary:")
        for rep in outcome.reports:
            log.info("guard_rule name=%s violations=%d", rep.name, rep.violations)
    if not outcome.violations:
        log.info("Guard checks passed: no violations found.")
        return
    log.error("Guard checks failed:")
    for v in outcome.violations:
        text = v.line if len(v.line) <= _MAX_SHOWN else v.line[: _MAX_SHOWN - 3] + "..."
        log.error(
            "guard_violation kind=%s file=%s line=%d text=%s", v.kind, v.file, v.line_no, text
        )


def main(argv: Iterable[str] | None = None) -> int:
    init_logging()
    ap = argparse.ArgumentParser(description="digitscan repository guard checks")
    ap.add_argument("--verbose", "-v", action="store_true", help="Show per-rule summary")
    # Unknown args (pytest plugins) are ignored
    args, _unknown = ap.parse_known_args(list(argv) if argv is not None else None)
    outcome = _run_all(_util.default_file_set())
    _report(outcome, verbose=bool(args.verbose))
    return 1 if outcome.violations else 0


if __name__ == "__main__":
    raise SystemExit(main())
