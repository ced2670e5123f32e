#!/usr/bin/env python3
"""Parity predicates between the tree-sitter Stata grammar and the TextMate reference grammar."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Mapping, Sequence

from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError

ROOT = Path(__file__).resolve().parents[2]

SCOPE_KEYS = ("name", "contentName", "scopeName")
PREDICATE_KINDS = ("scope", "rule", "capture", "query_text")
COVERAGE_PREDICATES = ("scope", "rule", "capture")

_CAPTURES_REF = {"$ref": "#/$defs/captures"}

TEXTMATE_GRAMMAR_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "properties": {
        "scopeName": {"type": "string"},
        "name": {"type": "string"},
        "patterns": {"$ref": "#/$defs/patternList"},
        "repository": {"$ref": "#/$defs/repository"},
        "injections": {"$ref": "#/$defs/repository"},
    },
    "$defs": {
        "patternList": {"type": "array", "items": {"$ref": "#/$defs/rule"}},
        "repository": {
            "type": "object",
            "additionalProperties": {"$ref": "#/$defs/rule"},
        },
        "captures": {
            "type": "object",
            "additionalProperties": {"$ref": "#/$defs/rule"},
        },
        "rule": {
            "type": "object",
            "properties": {
                "name": {"type": "string"},
                "contentName": {"type": "string"},
                "include": {"type": "string"},
                "match": {"type": "string"},
                "begin": {"type": "string"},
                "end": {"type": "string"},
                "while": {"type": "string"},
                "patterns": {"$ref": "#/$defs/patternList"},
                "repository": {"$ref": "#/$defs/repository"},
                "captures": _CAPTURES_REF,
                "beginCaptures": _CAPTURES_REF,
                "endCaptures": _CAPTURES_REF,
                "whileCaptures": _CAPTURES_REF,
            },
        },
    },
}

EXPECTATION_CATALOG_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["expectations"],
    "properties": {
        "expectations": {
            "type": "array",
            "minItems": 1,
            "items": {
                "type": "object",
                "required": ["check_id", "category", "predicate", "value"],
                "additionalProperties": False,
                "properties": {
                    "check_id": {"type": "string", "minLength": 1},
                    "category": {"type": "string", "minLength": 1},
                    "predicate": {"enum": list(PREDICATE_KINDS)},
                    "value": {"type": "string", "minLength": 1},
                    "capture": {"type": "string", "minLength": 1},
                },
                "if": {"properties": {"predicate": {"const": "capture"}}},
                "then": {"required": ["capture"]},
                "else": {"not": {"required": ["capture"]}},
            },
        },
    },
}


class ParityHardFail(RuntimeError):
    """Raised when a parity session cannot continue safely."""


class MissingArtifact(ParityHardFail):
    """Raised when an input artifact cannot be located or read."""


class MalformedReference(ParityHardFail):
    """Raised when the TextMate reference grammar is not valid structured data."""


class CatalogError(ParityHardFail):
    """Raised when an expectation catalog is not usable."""


@dataclass(frozen=True)
class ParityArtifacts:
    grammar_source: str
    highlight_query: str
    reference: Mapping[str, Any]
    grammar_path: Path
    highlights_path: Path
    reference_path: Path


@dataclass(frozen=True)
class Expectation:
    check_id: str
    category: str
    predicate: str
    value: str
    capture: str | None = None

    def searched_literal(self) -> str:
        if self.predicate == "capture":
            return f"({self.value} ...) @{self.capture}"
        return self.value


@dataclass(frozen=True)
class ExpectationNotMet:
    category: str
    check_id: str
    predicate: str
    artifact: str
    searched: str

    @property
    def detail(self) -> str:
        return f"{self.predicate} not found in {self.artifact}: {self.searched}"


@dataclass(frozen=True)
class ParityReport:
    categories: tuple[str, ...]
    checks_total: int
    findings: tuple[ExpectationNotMet, ...]

    @property
    def checks_passed(self) -> int:
        return self.checks_total - len(self.findings)

    @property
    def ok(self) -> bool:
        return not self.findings


DEFAULT_EXPECTATIONS: tuple[Expectation, ...] = (
    Expectation("KW-01", "keyword", "scope", "keyword.other.stata"),
    Expectation("KW-02", "keyword", "capture", "identifier", "keyword"),
    Expectation("KW-03", "keyword", "query_text", "((identifier) @keyword"),
    Expectation("KW-04", "keyword", "query_text", "^(in|using|do|run|include)$"),
    Expectation("KW-05", "keyword", "rule", "identifier"),
    Expectation("STR-01", "string", "scope", "string.quoted.double.stata"),
    Expectation("STR-02", "string", "rule", "double_string"),
    Expectation("STR-03", "string", "capture", "double_string", "string"),
    Expectation("STR-04", "string", "query_text", "(double_string) @string"),
    Expectation("MAC-01", "macro", "scope", "variable.other.global.stata"),
    Expectation("MAC-02", "macro", "rule", "global_macro"),
    Expectation("MAC-03", "macro", "capture", "global_macro", "variable"),
    Expectation("MAC-04", "macro", "query_text", "(global_macro) @variable"),
)


def display_path(path: Path, *, root: Path = ROOT) -> str:
    resolved = path.resolve()
    try:
        return resolved.relative_to(root).as_posix()
    except ValueError:
        return resolved.as_posix()


def resolve_input_path(path: Path, *, root: Path = ROOT) -> Path:
    if path.is_absolute():
        return path
    return root / path


def load_text(path: Path, *, artifact: str) -> str:
    if not path.exists():
        raise MissingArtifact(f"{artifact} file does not exist: {display_path(path)}")
    if not path.is_file():
        raise MissingArtifact(f"{artifact} path is not a file: {display_path(path)}")
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise MissingArtifact(f"{artifact} file is not valid UTF-8: {display_path(path)}") from exc
    except OSError as exc:
        raise MissingArtifact(f"unable to read {artifact} file {display_path(path)}: {exc}") from exc


def parse_reference(raw_text: str, *, path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise MalformedReference(
            f"textmate file is not valid JSON: {display_path(path)} "
            f"(line {exc.lineno} column {exc.colno}: {exc.msg})"
        ) from exc
    try:
        Draft202012Validator(TEXTMATE_GRAMMAR_SCHEMA).validate(payload)
    except ValidationError as exc:
        location = ".".join(str(part) for part in exc.absolute_path) or "<root>"
        raise MalformedReference(
            f"textmate grammar shape is invalid at {location}: {exc.message}"
        ) from exc
    return payload


def load_artifacts(
    *,
    grammar_path: Path,
    highlights_path: Path,
    reference_path: Path,
) -> ParityArtifacts:
    """Read all three artifacts, failing before any predicate can run."""

    grammar_source = load_text(grammar_path, artifact="grammar")
    highlight_query = load_text(highlights_path, artifact="highlights")
    reference_text = load_text(reference_path, artifact="textmate")
    return ParityArtifacts(
        grammar_source=grammar_source,
        highlight_query=highlight_query,
        reference=parse_reference(reference_text, path=reference_path),
        grammar_path=grammar_path,
        highlights_path=highlights_path,
        reference_path=reference_path,
    )


def collect_scope_names(document: Any) -> frozenset[str]:
    scopes: set[str] = set()

    def add(value: Any) -> None:
        if isinstance(value, str):
            stripped = value.strip()
            if stripped:
                scopes.add(stripped)
                scopes.update(stripped.split())

    def walk(node: Any) -> None:
        if isinstance(node, dict):
            for key, value in node.items():
                if key in SCOPE_KEYS:
                    add(value)
                walk(value)
        elif isinstance(node, list):
            for item in node:
                walk(item)

    # The root `name` is the grammar's display name, not a scope.
    if isinstance(document, dict):
        add(document.get("scopeName"))
        for value in document.values():
            walk(value)
    else:
        walk(document)
    return frozenset(scopes)


def has_scope(document: Any, scope_name: str) -> bool:
    return scope_name in collect_scope_names(document)


# Characters after which a `/` starts a regex literal rather than a division.
_REGEX_PRECEDERS = frozenset("(,=:[!&|?{};+-*%<>~^")
_REGEX_FLAGS_RE = re.compile(r"[A-Za-z]*")
_KEY_RE = re.compile(r"[?!]?([A-Za-z_$][\w$]*)\s*:(?!:)")
_RULES_BLOCK_RE = re.compile(r"(?<![\w$.])rules\s*:\s*\{")


def _blank(chars: list[str], start: int, end: int) -> None:
    for index in range(start, end):
        if chars[index] != "\n":
            chars[index] = " "


def _quoted_end(source: str, start: int, quote: str) -> int:
    index = start + 1
    while index < len(source):
        char = source[index]
        if char == "\\":
            index += 2
            continue
        if char == quote:
            return index + 1
        if char == "\n" and quote != "`":
            return index
        index += 1
    return len(source)


def _regex_end(source: str, start: int) -> int | None:
    index = start + 1
    in_class = False
    while index < len(source):
        char = source[index]
        if char == "\\":
            index += 2
            continue
        if char == "\n":
            return None
        if in_class:
            if char == "]":
                in_class = False
        elif char == "[":
            in_class = True
        elif char == "/":
            return _REGEX_FLAGS_RE.match(source, index + 1).end()
        index += 1
    return None


def mask_js_source(source: str) -> str:
    """Blank out comments, string literals and regex literals, keeping offsets and newlines."""

    chars = list(source)
    previous = ""
    index = 0
    while index < len(source):
        char = source[index]
        following = source[index + 1] if index + 1 < len(source) else ""
        if char == "/" and following == "/":
            end = source.find("\n", index)
            end = len(source) if end == -1 else end
            _blank(chars, index, end)
            index = end
            continue
        if char == "/" and following == "*":
            end = source.find("*/", index + 2)
            end = len(source) if end == -1 else end + 2
            _blank(chars, index, end)
            index = end
            continue
        if char in "'\"`":
            end = _quoted_end(source, index, char)
            _blank(chars, index, end)
            previous = "a"
            index = end
            continue
        if char == "/" and (previous == "" or previous in _REGEX_PRECEDERS):
            end = _regex_end(source, index)
            if end is not None:
                _blank(chars, index, end)
                previous = "a"
                index = end
                continue
        if not char.isspace():
            previous = char
        index += 1
    return "".join(chars)


def _matching_close(masked: str, open_index: int, opener: str, closer: str) -> int | None:
    depth = 0
    for index in range(open_index, len(masked)):
        char = masked[index]
        if char == opener:
            depth += 1
        elif char == closer:
            depth -= 1
            if depth == 0:
                return index
    return None


def _direct_keys(masked: str, start: int, end: int, *, line_keys: bool) -> list[str]:
    keys: list[str] = []
    depth = 0
    expect_key = True
    index = start
    while index < end:
        char = masked[index]
        if char in "([{":
            depth += 1
            expect_key = False
        elif char in ")]}":
            depth -= 1
        elif depth == 0 and (char == "," or (line_keys and char == "\n")):
            expect_key = True
        elif depth == 0 and expect_key and not char.isspace():
            expect_key = False
            match = _KEY_RE.match(masked, index, end)
            if match is not None:
                keys.append(match.group(1))
                index = match.end()
                continue
        index += 1
    return keys


def declared_rule_names(source: str) -> frozenset[str]:
    """Names bound by rule declarations, ignoring references inside rule bodies.

    When the source carries a `rules: { ... }` block only its direct keys are
    declarations; otherwise every top-level `name:` line is.
    """

    masked = mask_js_source(source)
    block = _RULES_BLOCK_RE.search(masked)
    if block is not None:
        open_index = block.end() - 1
        close_index = _matching_close(masked, open_index, "{", "}")
        if close_index is None:
            close_index = len(masked)
        return frozenset(_direct_keys(masked, open_index + 1, close_index, line_keys=False))
    return frozenset(_direct_keys(masked, 0, len(masked), line_keys=True))


def has_rule(document: str, rule_name: str) -> bool:
    return rule_name in declared_rule_names(document)


_CAPTURE_RE = re.compile(r"\s*@([A-Za-z_][\w.-]*)")
_QUANTIFIER_RE = re.compile(r"[*+?]?")


def mask_query_source(source: str) -> str:
    """Blank out `;` comments and string literals in a highlight query."""

    chars = list(source)
    index = 0
    while index < len(source):
        char = source[index]
        if char == ";":
            end = source.find("\n", index)
            end = len(source) if end == -1 else end
            _blank(chars, index, end)
            index = end
            continue
        if char == '"':
            end = _quoted_end(source, index, char)
            _blank(chars, index, end)
            index = end
            continue
        index += 1
    return "".join(chars)


def trailing_captures(masked: str, index: int) -> list[str]:
    index = _QUANTIFIER_RE.match(masked, index).end()
    captures: list[str] = []
    while True:
        match = _CAPTURE_RE.match(masked, index)
        if match is None:
            return captures
        captures.append(match.group(1))
        index = match.end()


def has_capture(document: str, node_type: str, capture_name: str) -> bool:
    masked = mask_query_source(document)
    opener = re.compile(r"\(\s*" + re.escape(node_type) + r"(?![\w.-])")
    for match in opener.finditer(masked):
        close_index = _matching_close(masked, match.start(), "(", ")")
        if close_index is None:
            continue
        if capture_name in trailing_captures(masked, close_index + 1):
            return True
    return False


def has_query_text(document: str, literal: str) -> bool:
    return literal in document


PREDICATE_ARTIFACTS = {
    "scope": "textmate",
    "rule": "grammar",
    "capture": "highlights",
    "query_text": "highlights",
}

_EVALUATORS: dict[str, Callable[[ParityArtifacts, Expectation], bool]] = {
    "scope": lambda artifacts, exp: has_scope(artifacts.reference, exp.value),
    "rule": lambda artifacts, exp: has_rule(artifacts.grammar_source, exp.value),
    "capture": lambda artifacts, exp: has_capture(
        artifacts.highlight_query, exp.value, exp.capture or ""
    ),
    "query_text": lambda artifacts, exp: has_query_text(artifacts.highlight_query, exp.value),
}


def evaluate_expectation(artifacts: ParityArtifacts, expectation: Expectation) -> bool:
    return _EVALUATORS[expectation.predicate](artifacts, expectation)


def category_order(expectations: Sequence[Expectation]) -> tuple[str, ...]:
    ordered: list[str] = []
    for expectation in expectations:
        if expectation.category not in ordered:
            ordered.append(expectation.category)
    return tuple(ordered)


def run_session(
    artifacts: ParityArtifacts,
    expectations: Sequence[Expectation] = DEFAULT_EXPECTATIONS,
) -> ParityReport:
    """Evaluate every expectation and collect each unmet one as a finding."""

    for expectation in expectations:
        if expectation.predicate not in _EVALUATORS:
            raise CatalogError(
                f"unknown predicate '{expectation.predicate}' for check {expectation.check_id}"
            )
        if expectation.predicate == "capture" and not expectation.capture:
            raise CatalogError(
                f"capture check {expectation.check_id} has no capture name"
            )

    categories = category_order(expectations)
    rank = {category: index for index, category in enumerate(categories)}
    findings: list[ExpectationNotMet] = []
    for expectation in expectations:
        if evaluate_expectation(artifacts, expectation):
            continue
        findings.append(
            ExpectationNotMet(
                category=expectation.category,
                check_id=expectation.check_id,
                predicate=expectation.predicate,
                artifact=PREDICATE_ARTIFACTS[expectation.predicate],
                searched=expectation.searched_literal(),
            )
        )
    findings.sort(key=lambda finding: (rank[finding.category], finding.check_id))
    return ParityReport(
        categories=categories,
        checks_total=len(expectations),
        findings=tuple(findings),
    )


def check_category_coverage(expectations: Sequence[Expectation], *, source: str) -> None:
    """Every category needs a scope, a rule and a capture check."""

    covered: dict[str, set[str]] = {}
    for expectation in expectations:
        covered.setdefault(expectation.category, set()).add(expectation.predicate)
    for category in category_order(expectations):
        missing = [kind for kind in COVERAGE_PREDICATES if kind not in covered[category]]
        if missing:
            raise CatalogError(
                f"expectations catalog {source} category '{category}' "
                f"has no {', '.join(missing)} check"
            )


def parse_catalog(payload: object, *, path: Path) -> tuple[Expectation, ...]:
    try:
        Draft202012Validator(EXPECTATION_CATALOG_SCHEMA).validate(payload)
    except ValidationError as exc:
        location = ".".join(str(part) for part in exc.absolute_path) or "<root>"
        raise CatalogError(
            f"expectations catalog {display_path(path)} is invalid at {location}: {exc.message}"
        ) from exc

    expectations: list[Expectation] = []
    seen: set[str] = set()
    for entry in payload["expectations"]:  # type: ignore[index]
        check_id = entry["check_id"]
        if check_id in seen:
            raise CatalogError(
                f"expectations catalog {display_path(path)} has duplicate check_id '{check_id}'"
            )
        seen.add(check_id)
        expectations.append(
            Expectation(
                check_id=check_id,
                category=entry["category"],
                predicate=entry["predicate"],
                value=entry["value"],
                capture=entry.get("capture"),
            )
        )
    check_category_coverage(expectations, source=display_path(path))
    return tuple(expectations)


def load_catalog(path: Path) -> tuple[Expectation, ...]:
    try:
        raw_text = load_text(path, artifact="expectations")
    except MissingArtifact as exc:
        raise CatalogError(str(exc)) from exc
    try:
        payload = json.loads(raw_text)
    except json.JSONDecodeError as exc:
        raise CatalogError(
            f"expectations file is not valid JSON: {display_path(path)} "
            f"(line {exc.lineno} column {exc.colno}: {exc.msg})"
        ) from exc
    return parse_catalog(payload, path=path)
