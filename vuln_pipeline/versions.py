# vuln_pipeline/versions.py
"""
Version ordering and affected-range matching.

Package ecosystems are compared with PEP 440 ordering from `packaging`, which
also accepts the semver strings npm, Go and Cargo use. OS package versions
follow their own rules: dpkg ordering for Debian/Ubuntu and apk ordering for
Alpine.
"""
import logging
import re
from dataclasses import dataclass

from debian.debian_support import version_compare as debian_version_compare
from packaging.version import parse as parse_version, InvalidVersion

from .ecosystems import canonical_ecosystem
from .exceptions import InvalidRangeError

logger = logging.getLogger(__name__)

COMPARATOR_PATTERN = re.compile(r'(<=|>=|==|<|>|=)?\s*([^\s,|<>=]+)')
_NATURAL_CHUNK = re.compile(r'(\d+|[a-zA-Z]+)')


def _natural_key(version: str) -> tuple:
    """Fallback ordering for versions packaging cannot parse (e.g. 1.0-SNAPSHOT)."""
    return tuple((0, int(chunk), "") if chunk.isdigit() else (1, 0, chunk.lower())
                 for chunk in _NATURAL_CHUNK.findall(version))


def _cmp(a, b) -> int:
    return (a > b) - (a < b)


def compare_alpine_versions(v1: str, v2: str) -> int:
    """
    Compares two Alpine version strings based on apk logic (simplified).
    Returns: -1 if v1 < v2, 0 if v1 == v2, 1 if v1 > v2
    """
    v1_main, _, v1_rev = v1.partition('-r')
    v2_main, _, v2_rev = v2.partition('-r')
    try:
        main_order = _cmp(parse_version(v1_main), parse_version(v2_main))
    except InvalidVersion:
        main_order = _cmp(_natural_key(v1_main), _natural_key(v2_main))
    if main_order:
        return main_order
    return _cmp(int(v1_rev) if v1_rev.isdigit() else 0, int(v2_rev) if v2_rev.isdigit() else 0)


def compare_versions(left: str, right: str, ecosystem: str | None = None) -> int:
    """Returns a negative number, zero or a positive number as left is lower, equal or higher."""
    ecosystem = canonical_ecosystem(ecosystem)
    if ecosystem in ("Debian", "Ubuntu"):
        return _cmp(debian_version_compare(left, right), 0)
    if ecosystem == "Alpine":
        return compare_alpine_versions(left, right)
    try:
        return _cmp(parse_version(left), parse_version(right))
    except InvalidVersion:
        return _cmp(_natural_key(left), _natural_key(right))


_OPERATORS = {
    "<": lambda order: order < 0,
    "<=": lambda order: order <= 0,
    ">": lambda order: order > 0,
    ">=": lambda order: order >= 0,
    "=": lambda order: order == 0,
}


@dataclass(frozen=True)
class Comparator:
    operator: str
    version: str

    def matches(self, version: str, ecosystem: str | None = None) -> bool:
        return _OPERATORS[self.operator](compare_versions(version, self.version, ecosystem))

    def __str__(self):
        return f"{self.operator}{self.version}"


@dataclass(frozen=True)
class VersionRange:
    """
    Union of alternatives, each an intersection of comparators.
    An empty alternative list matches every version.
    """
    alternatives: tuple[tuple[Comparator, ...], ...] = ()

    @classmethod
    def parse(cls, text: str | None) -> "VersionRange":
        if text is None or text.strip() in ("", "*"):
            return cls()
        alternatives = []
        for alternative in text.split("||"):
            alternative = alternative.strip()
            if not alternative:
                raise InvalidRangeError(f"Empty alternative in version range '{text}'")
            comparators = []
            position = 0
            for match in COMPARATOR_PATTERN.finditer(alternative):
                gap = alternative[position:match.start()]
                if gap.strip(" ,"):
                    raise InvalidRangeError(f"Unexpected '{gap.strip()}' in version range '{text}'")
                operator = match.group(1) or "="
                comparators.append(Comparator("=" if operator == "==" else operator, match.group(2)))
                position = match.end()
            if alternative[position:].strip(" ,") or not comparators:
                raise InvalidRangeError(f"Could not parse version range '{text}'")
            alternatives.append(tuple(comparators))
        return cls(tuple(alternatives))

    def contains(self, version: str, ecosystem: str | None = None) -> bool:
        if not self.alternatives:
            return True
        return any(all(c.matches(version, ecosystem) for c in alternative)
                   for alternative in self.alternatives)

    def __str__(self):
        if not self.alternatives:
            return "*"
        return " || ".join(" ".join(str(c) for c in alternative) for alternative in self.alternatives)


def version_in_range(version: str, range_text: str | None, ecosystem: str | None = None) -> bool:
    return VersionRange.parse(range_text).contains(version, ecosystem)
