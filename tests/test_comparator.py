import pytest

from algojudge.comparator import (
    ComparisonMode, ComparisonPolicy, RELAXED, STRICT, compare, compare_relaxed, compare_strict,
)


def test_strict_trims_trailing_whitespace():
    assert compare("2 ", "2", STRICT)
    assert compare("2\n", "2", STRICT)
    assert compare("1 2\n3\n\n", "1 2\n3", STRICT)


def test_strict_keeps_interior_whitespace():
    assert not compare("1  2", "1 2", STRICT)
    assert not compare("1\n2", "1 2", STRICT)
    assert not compare(" 2", "2", STRICT)


def test_relaxed_tokenizes_on_whitespace():
    assert compare("1  2\n3", "1 2 3", RELAXED)
    assert compare("  hello\tworld  ", "hello world", RELAXED)
    assert not compare("1 2", "1 2 3", RELAXED)
    assert not compare("1 3", "1 2", RELAXED)


def test_relaxed_is_case_sensitive_by_default():
    assert not compare("YES", "yes", RELAXED)
    policy = ComparisonPolicy(ComparisonMode.RELAXED, ignore_case=True)
    assert compare("YES", "yes", policy)


def test_ignore_case_does_not_apply_to_strict():
    policy = ComparisonPolicy(ComparisonMode.STRICT, ignore_case=True)
    assert not compare("YES", "yes", policy)


def test_numeric_tolerance():
    policy = ComparisonPolicy(ComparisonMode.RELAXED, abs_tolerance=1e-6)
    assert compare("0.3333333", "0.33333333", policy)
    assert not compare("0.3334", "0.3333", policy)
    # Without a declared tolerance numbers compare as text
    assert not compare("1.0", "1", RELAXED)
    assert compare("1.0", "1", policy)


def test_relative_tolerance():
    policy = ComparisonPolicy(ComparisonMode.RELAXED, rel_tolerance=1e-3)
    assert compare("1000.5", "1000", policy)
    assert not compare("1002", "1000", policy)


def test_non_finite_tokens_never_match_numerically():
    policy = ComparisonPolicy(ComparisonMode.RELAXED, abs_tolerance=1.0)
    assert not compare("nan", "1", policy)
    assert not compare("inf", "1e308", policy)
    assert compare("nan", "nan", policy)


@pytest.mark.parametrize("actual, expected", [
    ("2", "2"),
    ("2 ", "2"),
    ("a b\n", "a b"),
    ("", ""),
    ("\n\n", ""),
    ("x\ny\n", "x\ny"),
])
def test_relaxed_accepts_everything_strict_accepts(actual, expected):
    assert compare_strict(actual, expected)
    assert compare_relaxed(actual, expected)


def test_compare_is_deterministic():
    results = {compare("1 2 3", "1 2  3", RELAXED) for _ in range(10)}
    assert results == {True}


def test_default_policy_is_relaxed():
    assert ComparisonPolicy().mode == ComparisonMode.RELAXED
    assert compare("1\n2", "1 2")
