"""Tests for the content-addressed summary cache."""

from pathlib import Path

import pytest

from conftest import make_function
from graphlint.cache import NullCache, SummaryCache, fingerprint, normalize_source
from graphlint.errors import CacheError
from graphlint.models import AnalysisUnit, Summary


def _unit(code: str = "func f() {}", deps=()) -> AnalysisUnit:
    return AnalysisUnit(id="f", members=(make_function("f", code=code),), dependencies=tuple(deps))


class TestSummaryCache:
    """Tests for SummaryCache."""

    def test_miss(self, temp_dir: Path):
        cache = SummaryCache(temp_dir / "cache")
        assert cache.get("nope") == (None, False)

    def test_set_then_get(self, temp_dir: Path):
        cache = SummaryCache(temp_dir / "cache")
        cache.set("k", '{"purpose":"p"}')

        assert cache.get("k") == ('{"purpose":"p"}', True)
        assert len(cache) == 1

    def test_set_overwrites(self, temp_dir: Path):
        cache = SummaryCache(temp_dir / "cache")
        cache.set("k", "one")
        cache.set("k", "two")

        assert cache.get("k") == ("two", True)
        assert len(cache) == 1

    def test_delete_is_idempotent(self, temp_dir: Path):
        cache = SummaryCache(temp_dir / "cache")
        cache.set("k", "v")
        cache.delete("k")
        cache.delete("k")
        cache.delete("never-existed")

        assert cache.get("k") == (None, False)

    def test_persists_across_instances(self, temp_dir: Path):
        first = SummaryCache(temp_dir / "cache")
        first.set("k", "v")
        first.close()

        second = SummaryCache(temp_dir / "cache")
        assert second.get("k") == ("v", True)

    def test_clear(self, temp_dir: Path):
        cache = SummaryCache(temp_dir / "cache")
        cache.set("a", "1")
        cache.set("b", "2")

        assert cache.clear() == 2
        assert len(cache) == 0

    def test_unusable_directory(self, temp_dir: Path):
        """A cache path that cannot be created raises CacheError."""
        blocker = temp_dir / "file"
        blocker.write_text("not a directory")
        with pytest.raises(CacheError):
            SummaryCache(blocker / "cache")

    def test_closed_connection_raises_cache_error(self, temp_dir: Path):
        cache = SummaryCache(temp_dir / "cache")
        cache.close()
        with pytest.raises(CacheError):
            cache.set("k", "v")
        with pytest.raises(CacheError):
            cache.get("k")


class TestNullCache:
    """Tests for NullCache."""

    def test_always_misses(self):
        cache = NullCache()
        cache.set("k", "v")
        assert cache.get("k") == (None, False)
        assert len(cache) == 0


class TestFingerprint:
    """Tests for fingerprint."""

    def test_stable(self):
        assert fingerprint(_unit(), {}) == fingerprint(_unit(), {})

    def test_source_change_changes_key(self):
        assert fingerprint(_unit("func f() { a() }"), {}) != fingerprint(_unit("func f() { b() }"), {})

    def test_whitespace_noise_ignored(self):
        """Line endings and trailing blanks do not change the key."""
        a = _unit("func f() {\n\treturn\n}")
        b = _unit("func f() {   \r\n\treturn\r\n}\n\n")
        assert fingerprint(a, {}) == fingerprint(b, {})

    def test_dependency_summary_change_changes_key(self):
        """Upstream summaries are part of the key."""
        unit = _unit(deps=["g"])
        one = {"g": Summary(purpose="reads a file", behavior="returns bytes")}
        two = {"g": Summary(purpose="reads a file", behavior="returns bytes or error")}
        assert fingerprint(unit, one) != fingerprint(unit, two)

    def test_missing_dependency_summary(self):
        with pytest.raises(KeyError):
            fingerprint(_unit(deps=["g"]), {})

    def test_parts_are_length_prefixed(self):
        """Moving text across member boundaries changes the key."""
        one = AnalysisUnit(id="a+b", members=(make_function("a", code="xy"), make_function("b", code="z")))
        two = AnalysisUnit(id="a+b", members=(make_function("a", code="x"), make_function("b", code="yz")))
        assert fingerprint(one, {}) != fingerprint(two, {})


class TestNormalizeSource:
    """Tests for normalize_source."""

    def test_normalizes(self):
        assert normalize_source("a  \r\nb\t\r\n\n") == "a\nb"
