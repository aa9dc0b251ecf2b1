"""
Tests for matchers and match keys.
"""

import re

import pytest

from procguard.exceptions import MalformedMatcherError
from procguard.mock import matcher as m


@pytest.mark.unit
class TestMatchKey:
    """Test invocation normalization."""

    def test_equal_invocations_give_equal_keys(self):
        assert m.MatchKey.of("git", ["status"]) == m.MatchKey.of("git", ("status",))
        assert hash(m.MatchKey.of("git", ["a"])) == hash(m.MatchKey.of("git", ["a"]))

    def test_argument_order_matters(self):
        assert m.MatchKey.of("cp", ["a", "b"]) != m.MatchKey.of("cp", ["b", "a"])

    def test_command_line(self):
        assert m.MatchKey.of("git", ["log", "-1"]).command_line == "git log -1"
        assert m.MatchKey.of("ls").command_line == "ls"


@pytest.mark.unit
class TestExactAndPrefix:
    """Test exact and prefix matchers."""

    def test_exact_matches_only_same_argv(self):
        matcher = m.exact("status", ["--short"])
        assert matcher.matches(m.MatchKey.of("status", ["--short"]))
        assert not matcher.matches(m.MatchKey.of("status", ["--short", "-b"]))
        assert not matcher.matches(m.MatchKey.of("status", []))

    def test_empty_argv_matches_bare_invocation(self):
        matcher = m.exact("make", [])
        assert matcher.matches(m.MatchKey.of("make"))
        assert not matcher.matches(m.MatchKey.of("make", ["all"]))

    def test_prefix_matches_longer_argv(self):
        matcher = m.prefix("git", ["status"])
        assert matcher.matches(m.MatchKey.of("git", ["status"]))
        assert matcher.matches(m.MatchKey.of("git", ["status", "--short"]))
        assert not matcher.matches(m.MatchKey.of("git", ["log"]))

    def test_empty_prefix_matches_any_argv(self):
        matcher = m.prefix("deploy")
        assert matcher.matches(m.MatchKey.of("deploy"))
        assert matcher.matches(m.MatchKey.of("deploy", ["--prod"]))
        assert not matcher.matches(m.MatchKey.of("other"))

    def test_tokenized_command_is_prefix(self):
        matcher = m.tokenized("git commit -m 'first commit'")
        assert matcher.kind is m.MatchKind.PREFIX
        assert matcher.key == m.MatchKey.of("git", ["commit", "-m", "first commit"])

    @pytest.mark.parametrize("bad", ["", "   "])
    def test_empty_command_is_rejected(self, bad):
        with pytest.raises(MalformedMatcherError):
            m.tokenized(bad)

    def test_unbalanced_quotes_are_rejected(self):
        with pytest.raises(MalformedMatcherError):
            m.tokenized("echo 'unterminated")


@pytest.mark.unit
class TestRegex:
    """Test regex matchers."""

    def test_searches_reconstructed_command_line(self):
        matcher = m.regex(r"^git (push|pull)\b")
        assert matcher.matches(m.MatchKey.of("git", ["push", "origin"]))
        assert not matcher.matches(m.MatchKey.of("git", ["status"]))

    def test_accepts_compiled_pattern(self):
        matcher = m.regex(re.compile("docker", re.IGNORECASE))
        assert matcher.matches(m.MatchKey.of("DOCKER", ["ps"]))

    def test_invalid_pattern_fails_immediately(self):
        with pytest.raises(MalformedMatcherError, match="Invalid regular expression"):
            m.regex("(unclosed")

    def test_nested_quantifier_is_rejected(self):
        with pytest.raises(MalformedMatcherError):
            m.regex(r"(a+)+$")

    def test_equal_patterns_compare_equal(self):
        assert m.regex("abc") == m.regex("abc")
        assert m.regex("abc") != m.regex("abd")
        assert m.regex("abc") != m.exact("abc")

    def test_describe(self):
        assert m.regex("x+").describe() == "/x+/"
        assert m.prefix("git", ["log"]).describe() == "git log ..."
        assert m.exact("git", ["log"]).describe() == "git log"
