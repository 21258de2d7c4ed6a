"""Scope drift classification.

Every file an execution changed is compared against the strategy's expected
touch set:

- green:  in the expected set. Not drift.
- yellow: not expected, but in the same directory as an expected file, or in
          its immediate parent, child or sibling directory. Top-level
          directories are not siblings of each other. Costs 1 against the
          yellow budget; test, config and doc files cost half (a lone one is
          forgiven).
- red:    no proximity to anything expected. Costs 2 against the score and
          always counts as red, whatever the file type.

Severity is a fixed cascade over (yellow_used, red_used), red first:

    major     yellow >= 5 or red >= 2
    moderate  yellow in 3..4 or red == 1
    minor     yellow in 1..2
    none      otherwise

The classifier only reports. Deciding whether a moderate or major verdict
halts the run belongs to the caller.
"""

import logging
import posixpath
import re
from typing import Iterable, Optional

from stepwise.executor.schemas import (
    DriftAssessment,
    DriftBudget,
    DriftCategory,
    Severity,
    UnexpectedChange,
)

logger = logging.getLogger(__name__)

YELLOW_MAX = 4
RED_MAX = 1

_LEEWAY_SUFFIXES = (
    ".md", ".rst", ".txt", ".adoc",
    ".toml", ".yaml", ".yml", ".json", ".ini", ".cfg", ".conf", ".lock",
)
_LEEWAY_NAMES = {
    "readme", "changelog", "license", "makefile", "dockerfile",
    ".gitignore", ".editorconfig", "conftest.py", "setup.cfg",
}
_LEEWAY_DIRS = {"tests", "test", "docs", "doc", "spec", "specs", "fixtures"}


def _normalize(path: str) -> str:
    path = path.replace("\\", "/").strip()
    while path.startswith("./"):
        path = path[2:]
    return posixpath.normpath(path) if path else path


def is_leeway_file(path: str) -> bool:
    """Test, config and documentation artifacts."""
    path = _normalize(path)
    name = posixpath.basename(path).lower()
    stem = name.split(".", 1)[0]
    parts = path.lower().split("/")[:-1]

    if name.startswith("test_") or stem.endswith("_test") or ".test." in name or ".spec." in name:
        return True
    if name in _LEEWAY_NAMES or stem in _LEEWAY_NAMES:
        return True
    if name.endswith(_LEEWAY_SUFFIXES):
        return True
    return any(p in _LEEWAY_DIRS for p in parts)


def _proximity(path: str, expected_dirs: set[str]) -> Optional[str]:
    """Describe how path relates to the nearest expected directory, or None."""
    parent = posixpath.dirname(path)
    if parent in expected_dirs:
        return f"same directory as an expected file ({parent or '.'})"
    for d in sorted(expected_dirs):
        if d and posixpath.dirname(d) == parent:
            return f"parent directory of expected directory {d}"
        if parent and posixpath.dirname(parent) == d:
            return f"child directory of expected directory {d or '.'}"
        if parent and d and posixpath.dirname(parent) and posixpath.dirname(parent) == posixpath.dirname(d):
            return f"sibling directory of expected directory {d}"
    return None


def severity_for(yellow_used: int, red_used: int) -> Severity:
    """Fixed severity cascade. Red takes precedence."""
    if red_used >= 2 or yellow_used >= 5:
        return Severity.MAJOR
    if red_used == 1 or yellow_used >= 3:
        return Severity.MODERATE
    if yellow_used >= 1:
        return Severity.MINOR
    return Severity.NONE


def _tokens(text: str) -> set[str]:
    return {t for t in re.split(r"[^a-z0-9]+", text.lower()) if len(t) > 2}


def _coherence_note(unexpected: list[UnexpectedChange], approach: Optional[str]) -> tuple[str, Optional[bool]]:
    if not unexpected:
        return "All changes fall inside the expected touch set.", None
    if not approach:
        return f"{len(unexpected)} unexpected change(s); no approach text to compare against.", None

    approach_tokens = _tokens(approach)
    mentioned = []
    for change in unexpected:
        stem = posixpath.basename(change.file).split(".", 1)[0]
        file_tokens = _tokens(stem) | _tokens(posixpath.dirname(change.file))
        if file_tokens & approach_tokens:
            mentioned.append(change.file)

    if len(mentioned) == len(unexpected):
        return "Unexpected changes are consistent with the stated approach.", True
    if mentioned:
        return (
            f"{len(mentioned)} of {len(unexpected)} unexpected change(s) relate to the "
            f"stated approach; the rest are unexplained.",
            False,
        )
    return "Unexpected changes are not explained by the stated approach.", False


class DriftClassifier:
    """Classifies changed files against the expected touch set."""

    def __init__(self, yellow_max: int = YELLOW_MAX, red_max: int = RED_MAX):
        self.yellow_max = yellow_max
        self.red_max = red_max

    def classify(
        self,
        expected_files: Iterable[str],
        actual_changes: Iterable[str],
        approach: Optional[str] = None,
    ) -> DriftAssessment:
        expected = [_normalize(f) for f in expected_files if f and f.strip()]
        actual = []
        for f in actual_changes:
            if f and f.strip() and _normalize(f) not in actual:
                actual.append(_normalize(f))

        expected_set = set(expected)
        expected_dirs = {posixpath.dirname(f) for f in expected}

        unexpected: list[UnexpectedChange] = []
        yellow_regular = 0
        yellow_leeway = 0
        red = 0

        for path in actual:
            if path in expected_set:
                continue
            leeway = is_leeway_file(path)
            relation = _proximity(path, expected_dirs)
            if relation is not None:
                unexpected.append(UnexpectedChange(file=path, category=DriftCategory.YELLOW, reason=relation, leeway=leeway))
                if leeway:
                    yellow_leeway += 1
                else:
                    yellow_regular += 1
            else:
                unexpected.append(
                    UnexpectedChange(
                        file=path,
                        category=DriftCategory.RED,
                        reason="no proximity to any expected file",
                        leeway=leeway,
                    )
                )
                red += 1

        yellow_used = yellow_regular + yellow_leeway // 2
        severity = severity_for(yellow_used, red)
        note, coherent = _coherence_note(unexpected, approach)
        if severity.requires_confirmation:
            note = f"{note} Severity {severity.value} requires confirmation before continuing."

        assessment = DriftAssessment(
            severity=severity,
            expected_files=expected,
            actual_changes=actual,
            unexpected_changes=unexpected,
            budget=DriftBudget(
                yellow_used=yellow_used,
                yellow_max=self.yellow_max,
                red_used=red,
                red_max=self.red_max,
                score=yellow_used + 2 * red,
            ),
            note=note,
        )
        logger.debug(
            f"Drift: {severity.value} (yellow={yellow_used}, red={red}, "
            f"coherent={coherent}) over {len(actual)} changed file(s)"
        )
        return assessment
