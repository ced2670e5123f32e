#!/usr/bin/env python3
"""Fail-closed parity validator between the tree-sitter Stata grammar and the TextMate grammar."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Any, Sequence

ROOT = Path(__file__).resolve().parents[1]
SCRIPTS_DIR = Path(__file__).resolve().parent
MODE = "textmate-parity-v1"

DEFAULT_GRAMMAR = ROOT / "grammar.js"
DEFAULT_HIGHLIGHTS = ROOT / "queries" / "highlights.scm"
DEFAULT_TEXTMATE = ROOT.parent / "sight" / "client" / "syntaxes" / "stata.tmLanguage.json"

if str(SCRIPTS_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPTS_DIR))

from lib.grammar_parity import (
    DEFAULT_EXPECTATIONS,
    ParityArtifacts,
    ParityHardFail,
    ParityReport,
    display_path,
    load_artifacts,
    load_catalog,
    resolve_input_path,
    run_session,
)


def build_rerun_tokens(
    *,
    artifacts: ParityArtifacts,
    expectations_path: Path | None,
) -> list[str]:
    tokens = [
        "python",
        "scripts/check_textmate_parity.py",
        "--grammar",
        display_path(artifacts.grammar_path),
        "--highlights",
        display_path(artifacts.highlights_path),
        "--textmate",
        display_path(artifacts.reference_path),
    ]
    if expectations_path is not None:
        tokens.extend(["--expectations", display_path(expectations_path)])
    return tokens


def render_drift_report(*, report: ParityReport, rerun_tokens: list[str]) -> str:
    lines = [
        "textmate-parity: parity drift detected "
        f"({len(report.findings)} unmet expectation(s)).",
        "drift findings:",
    ]
    for finding in report.findings:
        lines.append(f"- {finding.category}:{finding.check_id}")
        lines.append(f"  {finding.detail}")
    lines.extend(
        [
            "remediation:",
            "1. Restore the missing grammar rule, highlight capture or TextMate scope.",
            "2. Re-run validator:",
            " ".join(rerun_tokens),
        ]
    )
    return "\n".join(lines)


def render_success_report(*, report: ParityReport, artifacts: ParityArtifacts) -> str:
    lines = [
        "textmate-parity: OK",
        f"- mode={MODE}",
        f"- grammar={display_path(artifacts.grammar_path)}",
        f"- highlights={display_path(artifacts.highlights_path)}",
        f"- textmate={display_path(artifacts.reference_path)}",
        f"- categories={','.join(report.categories)}",
        f"- checks_passed={report.checks_passed}",
        "- fail_closed=true",
    ]
    return "\n".join(lines)


def build_payload(*, report: ParityReport, artifacts: ParityArtifacts) -> dict[str, Any]:
    return {
        "mode": MODE,
        "status": "ok" if report.ok else "drift",
        "grammar": display_path(artifacts.grammar_path),
        "highlights": display_path(artifacts.highlights_path),
        "textmate": display_path(artifacts.reference_path),
        "categories": list(report.categories),
        "checks_total": report.checks_total,
        "checks_passed": report.checks_passed,
        "findings": [
            {
                "category": finding.category,
                "check_id": finding.check_id,
                "predicate": finding.predicate,
                "artifact": finding.artifact,
                "searched": finding.searched,
            }
            for finding in report.findings
        ],
    }


def render_json(payload: dict[str, Any]) -> str:
    return json.dumps(payload, indent=2) + "\n"


def check_parity(
    *,
    grammar_path: Path,
    highlights_path: Path,
    textmate_path: Path,
    expectations_path: Path | None,
    output_format: str,
) -> int:
    expectations = (
        DEFAULT_EXPECTATIONS if expectations_path is None else load_catalog(expectations_path)
    )
    artifacts = load_artifacts(
        grammar_path=grammar_path,
        highlights_path=highlights_path,
        reference_path=textmate_path,
    )
    report = run_session(artifacts, expectations)

    if output_format == "json":
        sys.stdout.write(render_json(build_payload(report=report, artifacts=artifacts)))
        return 0 if report.ok else 1

    if not report.ok:
        rerun_tokens = build_rerun_tokens(artifacts=artifacts, expectations_path=expectations_path)
        print(render_drift_report(report=report, rerun_tokens=rerun_tokens), file=sys.stderr)
        return 1

    print(render_success_report(report=report, artifacts=artifacts))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="check_textmate_parity.py",
        description=(
            "Fail-closed validator for keyword/string/macro parity between the tree-sitter "
            "grammar, its highlight queries and the TextMate reference grammar."
        ),
    )
    parser.add_argument(
        "--grammar",
        type=Path,
        default=DEFAULT_GRAMMAR,
        help="Path to the tree-sitter grammar.js.",
    )
    parser.add_argument(
        "--highlights",
        type=Path,
        default=DEFAULT_HIGHLIGHTS,
        help="Path to queries/highlights.scm.",
    )
    parser.add_argument(
        "--textmate",
        type=Path,
        default=DEFAULT_TEXTMATE,
        help="Path to the reference stata.tmLanguage.json.",
    )
    parser.add_argument(
        "--expectations",
        type=Path,
        default=None,
        help=(
            "Optional expectation catalog JSON replacing the built-in Stata catalog. Override it "
            "when the reference grammar names its string or macro scopes differently from "
            "string.quoted.double.stata / variable.other.global.stata."
        ),
    )
    parser.add_argument(
        "--format",
        choices=("text", "json"),
        default="text",
        help="Output format: text (default) or json.",
    )
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return check_parity(
            grammar_path=resolve_input_path(args.grammar),
            highlights_path=resolve_input_path(args.highlights),
            textmate_path=resolve_input_path(args.textmate),
            expectations_path=(
                resolve_input_path(args.expectations) if args.expectations is not None else None
            ),
            output_format=args.format,
        )
    except ParityHardFail as exc:
        print(f"textmate-parity: error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
