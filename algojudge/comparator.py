"""Output comparison policies.

``strict`` trims trailing whitespace from both sides and requires the rest to
match exactly. ``relaxed`` compares whitespace-separated tokens, optionally
folding case and accepting numeric tokens within a tolerance. Anything
accepted by ``strict`` is accepted by ``relaxed``.
"""
import enum
import math
from dataclasses import dataclass
from typing import Optional


class ComparisonMode(str, enum.Enum):
    STRICT = "strict"
    RELAXED = "relaxed"


@dataclass(frozen=True)
class ComparisonPolicy:
    mode: ComparisonMode = ComparisonMode.RELAXED
    abs_tolerance: float = 0.0
    rel_tolerance: float = 0.0
    ignore_case: bool = False

    @property
    def numeric(self) -> bool:
        return self.abs_tolerance > 0 or self.rel_tolerance > 0


STRICT = ComparisonPolicy(ComparisonMode.STRICT)
RELAXED = ComparisonPolicy(ComparisonMode.RELAXED)


def _as_float(token: str) -> Optional[float]:
    try:
        value = float(token)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _tokens_match(actual: str, expected: str, policy: ComparisonPolicy) -> bool:
    if actual == expected:
        return True
    if policy.ignore_case and actual.lower() == expected.lower():
        return True
    if policy.numeric:
        a, b = _as_float(actual), _as_float(expected)
        if a is not None and b is not None:
            return math.isclose(a, b, rel_tol=policy.rel_tolerance, abs_tol=policy.abs_tolerance)
    return False


def compare_strict(actual: str, expected: str) -> bool:
    return actual.rstrip() == expected.rstrip()


def compare_relaxed(actual: str, expected: str, policy: ComparisonPolicy = RELAXED) -> bool:
    actual_tokens = actual.split()
    expected_tokens = expected.split()
    if len(actual_tokens) != len(expected_tokens):
        return False
    return all(_tokens_match(a, e, policy) for a, e in zip(actual_tokens, expected_tokens))


def compare(actual: str, expected: str, policy: ComparisonPolicy = RELAXED) -> bool:
    if policy.mode == ComparisonMode.STRICT:
        return compare_strict(actual, expected)
    return compare_relaxed(actual, expected, policy)
