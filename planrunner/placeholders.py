"""Placeholder detection — spots generated-but-unresolved argument content.

Matchers are tried in order and the first hit wins, so at most one warning
is reported per argument field. Add project-specific heuristics with
``PlaceholderDetector.register``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Iterator, Protocol


class PlaceholderMatcher(Protocol):
    name: str

    def matches(self, value: str) -> bool: ...


@dataclass(frozen=True)
class RegexMatcher:
    name: str
    pattern: re.Pattern[str]

    @classmethod
    def compile(cls, name: str, expr: str, flags: int = re.IGNORECASE) -> "RegexMatcher":
        return cls(name=name, pattern=re.compile(expr, flags))

    def matches(self, value: str) -> bool:
        return self.pattern.search(value) is not None


@dataclass(frozen=True)
class PlaceholderHit:
    step_id: str
    field: str
    value: str
    matcher: str


_DEFAULT_PATTERNS: list[tuple[str, str]] = [
    # Descriptions of future content instead of content
    ("future-tense", r"^this will be (?:updated|filled|replaced|determined)"),
    ("content-token", r"^(?:updated|new|modified|actual)_?content"),
    ("path-token", r"^path_to_"),
    ("your-token", r"^(?:your|the)_"),
    ("bracket-instruction", r"\[.*(?:placeholder|insert|replace|fill).*\]"),
    ("brace-instruction", r"\{.*(?:placeholder|insert|replace|fill).*\}"),
    ("angle-token", r"^<.*>$"),
    ("based-on", r"based on (?:the )?(?:analysis|results|previous|above)"),
    ("will-be", r"will be (?:determined|decided|set|preserved|added|inserted)"),
    ("to-be", r"to be (?:determined|decided|updated|preserved|added)"),
    ("tbd", r"^TBD$"),
    ("todo", r"^TODO$"),
    ("placeholder-word", r"^placeholder$"),
    ("placeholder-prefix", r"^placeholder_"),
    ("xxx", r"^xxx+$"),
    ("underscores", r"^___+$"),
    ("content-preserved", r"content (?:will be |to be )?(?:preserved|added|inserted|updated)"),
    ("existing-content", r"(?:original|existing|current) content (?:here|goes here|will be preserved)"),
    ("trailing-ellipsis", r"\.\.\.$"),
    ("heading-then-content", r"^#\s+\w+\s*\n+(?:content|text|body)"),
    ("insert-here", r"(?:insert|add|put) (?:content|text|tags?) here"),
    ("content-here", r"(?:file|note) content (?:here|goes here)"),
    ("rest-of", r"rest of (?:the )?(?:content|file|document)"),
    ("remaining-content", r"remaining content"),
    ("bracket-ellipsis", r"\[\.\.\.?\]"),
    ("bare-ellipsis", r"^\.\.\.\s*$"),
    # Cross-step template syntax that was never substituted
    ("hash-step-output", r"#step-\d+\.output"),
    ("hash-step-ref", r"#step-\d+\."),
    ("dollar-brace-step", r"\$\{step-\d+"),
    ("handlebars-step", r"\{\{step-\d+"),
    ("preserving-content", r"(?:while )?preserving (?:all |the )?(?:content|data|text)"),
    ("will-replace", r"will (?:be )?(?:replace|update|modify|change)"),
    ("replace-while-preserving", r"(?:replace|update|modify|change).+(?:while|with|and) preserv"),
    ("updated-version", r"^(?:updated|modified|new) (?:content|file|version)"),
    ("same-as-before", r"(?:same|identical|existing) (?:as|to) (?:before|original)"),
    ("this-will", r"^This (?:will|should|would)"),
    ("new-version-description", r"^(?:The|A|An) (?:new|updated|modified) (?:version|content)"),
]


def default_matchers() -> list[PlaceholderMatcher]:
    return [RegexMatcher.compile(name, expr) for name, expr in _DEFAULT_PATTERNS]


class PlaceholderDetector:
    """Ordered list of matchers run over every string argument of a step."""

    def __init__(self, matchers: list[PlaceholderMatcher] | None = None):
        self._matchers: list[PlaceholderMatcher] = list(matchers) if matchers is not None else default_matchers()

    @property
    def matchers(self) -> list[PlaceholderMatcher]:
        return list(self._matchers)

    def register(self, matcher: PlaceholderMatcher, first: bool = False):
        if first:
            self._matchers.insert(0, matcher)
        else:
            self._matchers.append(matcher)

    def match(self, value: str) -> PlaceholderMatcher | None:
        for matcher in self._matchers:
            if matcher.matches(value):
                return matcher
        return None

    def scan(self, step_id: str, args: dict[str, Any]) -> list[PlaceholderHit]:
        hits = []
        for field_path, value in _walk_strings(args, ""):
            matcher = self.match(value)
            if matcher:
                hits.append(PlaceholderHit(step_id=step_id, field=field_path, value=value, matcher=matcher.name))
        return hits


def _walk_strings(value: Any, prefix: str) -> Iterator[tuple[str, str]]:
    if isinstance(value, str):
        yield prefix, value
    elif isinstance(value, dict):
        for key, item in value.items():
            yield from _walk_strings(item, f"{prefix}.{key}" if prefix else str(key))
    elif isinstance(value, list):
        for i, item in enumerate(value):
            yield from _walk_strings(item, f"{prefix}.{i}" if prefix else str(i))
