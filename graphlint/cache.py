"""Content-addressed summary cache.

Keys are SHA-256 fingerprints over a unit's own source and the summaries
of the units it depends on, so any upstream change produces a new key for
everything downstream.  No dirty tracking or expiry is needed: stale
entries are simply never asked for again.

The store is a single SQLite table, which makes it safe to share between
processes and between runs.
"""

from __future__ import annotations

import hashlib
import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Mapping, Optional, Tuple

from .errors import CacheError
from .models import AnalysisUnit, Summary

logger = logging.getLogger(__name__)


def normalize_source(text: str) -> str:
    """Canonical form of source text: LF line endings, no trailing blanks."""
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    return "\n".join(line.rstrip() for line in lines).strip("\n")


def fingerprint(unit: AnalysisUnit, dependency_summaries: Mapping[str, Summary]) -> str:
    """Compute the cache key for *unit*.

    Hashes each member's normalized source in member order, then the
    canonical JSON of each dependency summary in ``unit.dependencies``
    order.  Every part is length-prefixed.
    """
    digest = hashlib.sha256()

    def feed(part: str) -> None:
        data = part.encode("utf-8")
        digest.update(str(len(data)).encode("ascii") + b":")
        digest.update(data)

    for fn in unit.members:
        feed(normalize_source(fn.code))
    for dep_id in unit.dependencies:
        summary = dependency_summaries.get(dep_id)
        if summary is None:
            raise KeyError(f"summary for dependency '{dep_id}' of '{unit.id}' is not available")
        feed(summary.canonical_json())
    return digest.hexdigest()


class SummaryCache:
    """SQLite-backed mapping from hex fingerprint to serialized payload."""

    def __init__(self, cache_dir: Path) -> None:
        self.cache_dir = cache_dir
        self.db_path = cache_dir / "summaries.db"
        try:
            cache_dir.mkdir(parents=True, exist_ok=True)
            self.conn = sqlite3.connect(str(self.db_path), timeout=30, check_same_thread=False)
            self._init_schema()
        except (OSError, sqlite3.Error) as exc:
            raise CacheError(
                f"cannot open summary cache at {self.db_path}: {exc}",
                details={"path": str(self.db_path)},
            ) from exc

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.execute("""
            CREATE TABLE IF NOT EXISTS entries (
                key        TEXT PRIMARY KEY,
                payload    TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def get(self, key: str) -> Tuple[Optional[str], bool]:
        try:
            row = self.conn.execute(
                "SELECT payload FROM entries WHERE key = ?", (key,),
            ).fetchone()
        except sqlite3.Error as exc:
            raise CacheError(f"cache read failed: {exc}", details={"key": key}) from exc
        if row is None:
            return None, False
        return row[0], True

    def set(self, key: str, payload: str) -> None:
        try:
            self.conn.execute(
                "INSERT OR REPLACE INTO entries (key, payload, created_at) VALUES (?, ?, ?)",
                (key, payload, datetime.now().isoformat()),
            )
            self.conn.commit()
        except sqlite3.Error as exc:
            raise CacheError(f"cache write failed: {exc}", details={"key": key}) from exc

    def delete(self, key: str) -> None:
        try:
            self.conn.execute("DELETE FROM entries WHERE key = ?", (key,))
            self.conn.commit()
        except sqlite3.Error as exc:
            raise CacheError(f"cache delete failed: {exc}", details={"key": key}) from exc

    def clear(self) -> int:
        """Remove every entry and return how many were deleted."""
        try:
            cur = self.conn.execute("DELETE FROM entries")
            self.conn.commit()
        except sqlite3.Error as exc:
            raise CacheError(f"cache clear failed: {exc}") from exc
        logger.info("Cleared %d cache entries from %s", cur.rowcount, self.db_path)
        return cur.rowcount

    def __len__(self) -> int:
        try:
            return self.conn.execute("SELECT COUNT(*) FROM entries").fetchone()[0]
        except sqlite3.Error as exc:
            raise CacheError(f"cache count failed: {exc}") from exc


class NullCache:
    """Cache used when caching is disabled: always misses, drops writes."""

    def get(self, key: str) -> Tuple[Optional[str], bool]:
        return None, False

    def set(self, key: str, payload: str) -> None:
        pass

    def delete(self, key: str) -> None:
        pass

    def clear(self) -> int:
        return 0

    def close(self) -> None:
        pass

    def __len__(self) -> int:
        return 0
