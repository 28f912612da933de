"""Report evaluation: decide whether a scanner report must fail its job.

A predicate answers "does this report contain a finding that fails the
build?". `Contains` is the default and matches raw text exactly as a
`grep -q` would, including its blind spots: reformatted or minified JSON
(`"severity":"CRITICAL"`) does not match, and the literal in plain
text or logs does. The JSON predicates walk the parsed document
instead and accept both a single JSON document and JSON lines.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Iterator, List, Protocol, runtime_checkable

from .model import Verdict


@runtime_checkable
class ReportPredicate(Protocol):
    def matches(self, text: str) -> bool:
        ...


@dataclass(frozen=True)
class Contains:
    literal: str

    def matches(self, text: str) -> bool:
        return self.literal in text

    def describe(self) -> str:
        return f"contains {self.literal!r}"


def parse_documents(text: str) -> List[Any]:
    """Parse a JSON document, falling back to JSON lines. Invalid lines are ignored."""
    stripped = text.strip()
    if not stripped:
        return []
    try:
        return [json.loads(stripped)]
    except json.JSONDecodeError:
        pass
    docs: List[Any] = []
    for line in stripped.splitlines():
        line = line.strip()
        if not line:
            continue
        try:
            docs.append(json.loads(line))
        except json.JSONDecodeError:
            continue
    return docs


def walk(node: Any) -> Iterator[dict]:
    """Yield every mapping in a parsed JSON tree."""
    if isinstance(node, dict):
        yield node
        for value in node.values():
            yield from walk(value)
    elif isinstance(node, list):
        for item in node:
            yield from walk(item)


@dataclass(frozen=True)
class JsonFieldEquals:
    field: str
    value: Any
    case_sensitive: bool = True

    def _equal(self, candidate: Any) -> bool:
        if not self.case_sensitive and isinstance(candidate, str) and isinstance(self.value, str):
            return candidate.lower() == self.value.lower()
        return candidate == self.value

    def matches(self, text: str) -> bool:
        for doc in parse_documents(text):
            for node in walk(doc):
                if self.field in node and self._equal(node[self.field]):
                    return True
        return False

    def describe(self) -> str:
        return f"field {self.field!r} == {self.value!r}"


@dataclass(frozen=True)
class JsonFieldPresent:
    field: str

    def matches(self, text: str) -> bool:
        return any(self.field in node for doc in parse_documents(text) for node in walk(doc))

    def describe(self) -> str:
        return f"field {self.field!r} present"


def evaluate_report(text: str, predicate: ReportPredicate) -> Verdict:
    """Pure function of the report text: FAIL when the predicate matches."""
    return Verdict.FAIL if predicate.matches(text) else Verdict.PASS


def describe(predicate: ReportPredicate) -> str:
    fn = getattr(predicate, "describe", None)
    return fn() if callable(fn) else repr(predicate)


# Scanner presets, matching what the pipeline greps for.
DEPENDENCY_CHECK_CRITICAL = Contains('"severity": "CRITICAL"')
SEMGREP_ERROR = Contains('"severity": "ERROR"')
TRUFFLEHOG_FINDING = Contains('"reason":')

# Structural alternatives for the same policies.
DEPENDENCY_CHECK_CRITICAL_JSON = JsonFieldEquals("severity", "CRITICAL", case_sensitive=False)
SEMGREP_ERROR_JSON = JsonFieldEquals("severity", "ERROR")
TRUFFLEHOG_FINDING_JSON = JsonFieldPresent("reason")
