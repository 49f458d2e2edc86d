"""
Knowledge-base sources for cross-referencing extracted findings.

Three backends share one shape: ``source.session()`` is an async context
manager that yields a session with ``await session.lookup(claim)``. A session
is opened once per document, so concurrent documents never share a handle.

- StaticKnowledgeBase  — in-memory entries (tests, small curated sets)
- SQLiteKnowledgeBase  — local SQLite store, populated from a CSV export
- HttpKnowledgeBase    — remote JSON service queried with httpx

A lookup that cannot be answered raises KnowledgeBaseUnavailable; the
cross-referencer turns that into a neutral "unavailable" state.

Usage:
    1. Import: SQLiteKnowledgeBase("kb.db").import_csv("path/to/claims.csv")
    2. Query:  async with kb.session() as s: entries = await s.lookup("statins reduce LDL")
"""

import csv
import logging
import os
import sqlite3
from pathlib import Path
from typing import Iterable, List, Optional, Protocol

import httpx
from pydantic import ValidationError

from clinical_digest.errors import KnowledgeBaseUnavailable
from clinical_digest.models import KnowledgeEntry
from clinical_digest.utils import content_tokens

logger = logging.getLogger(__name__)

DEFAULT_DB_PATH = os.path.expanduser("~/.cache/clinical_digest/knowledge.db")

# Candidate lookups only use the first few distinctive tokens of a claim.
MAX_QUERY_TOKENS = 8


class KnowledgeSession(Protocol):
    async def lookup(self, claim: str) -> List[KnowledgeEntry]: ...


class KnowledgeSource(Protocol):
    def session(self): ...


def _query_tokens(claim: str) -> List[str]:
    seen = []
    for t in content_tokens(claim):
        if len(t) > 2 and t not in seen:
            seen.append(t)
    return seen[:MAX_QUERY_TOKENS]


# ──────────────────────────────────────────────────────────────
# In-memory
# ──────────────────────────────────────────────────────────────

class _StaticSession:
    def __init__(self, entries: List[KnowledgeEntry]):
        self._entries = entries

    async def lookup(self, claim: str) -> List[KnowledgeEntry]:
        tokens = set(_query_tokens(claim))
        return [e for e in self._entries if tokens & set(content_tokens(e.claim))]

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False


class StaticKnowledgeBase:
    """Fixed list of entries held in memory."""

    def __init__(self, entries: Iterable = ()):
        self.entries = [e if isinstance(e, KnowledgeEntry) else KnowledgeEntry.model_validate(e)
                        for e in entries]

    def session(self) -> _StaticSession:
        return _StaticSession(list(self.entries))


# ──────────────────────────────────────────────────────────────
# SQLite
# ──────────────────────────────────────────────────────────────

class _SQLiteSession:
    def __init__(self, db_path: str):
        self.db_path = db_path
        self.conn: Optional[sqlite3.Connection] = None

    async def __aenter__(self):
        if not os.path.exists(self.db_path):
            raise KnowledgeBaseUnavailable(f"knowledge base not found: {self.db_path}")
        try:
            self.conn = sqlite3.connect(f"file:{self.db_path}?mode=ro", uri=True)
        except sqlite3.Error as e:
            raise KnowledgeBaseUnavailable(f"cannot open {self.db_path}: {e}") from e
        return self

    async def __aexit__(self, *exc):
        if self.conn is not None:
            self.conn.close()
            self.conn = None
        return False

    async def lookup(self, claim: str) -> List[KnowledgeEntry]:
        if self.conn is None:
            raise KnowledgeBaseUnavailable("session is not open")
        tokens = _query_tokens(claim)
        if not tokens:
            return []
        where = " OR ".join("claim LIKE ? COLLATE NOCASE" for _ in tokens)
        try:
            rows = self.conn.execute(
                f"SELECT entry_id, claim, direction, source FROM knowledge_entries "
                f"WHERE {where} ORDER BY entry_id",
                [f"%{t}%" for t in tokens],
            ).fetchall()
        except sqlite3.Error as e:
            raise KnowledgeBaseUnavailable(f"lookup failed: {e}") from e
        return [SQLiteKnowledgeBase._row_to_entry(r) for r in rows]


class SQLiteKnowledgeBase:
    """Local SQLite store of knowledge-base claims."""

    def __init__(self, db_path: str = None):
        self.db_path = db_path or DEFAULT_DB_PATH
        self._closed = False
        parent = os.path.dirname(self.db_path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self.conn = sqlite3.connect(self.db_path)
        self._init_schema()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def _init_schema(self):
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS knowledge_entries (
                entry_id TEXT PRIMARY KEY,
                claim TEXT NOT NULL,
                direction TEXT,
                source TEXT
            )
        """)
        self.conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_kb_claim
            ON knowledge_entries (claim COLLATE NOCASE)
        """)
        self.conn.commit()

    def add_entries(self, entries: Iterable[KnowledgeEntry]) -> int:
        count = 0
        for e in entries:
            self.conn.execute(
                "INSERT OR REPLACE INTO knowledge_entries (entry_id, claim, direction, source) "
                "VALUES (?, ?, ?, ?)",
                (e.entry_id, e.claim, e.direction, e.source),
            )
            count += 1
        self.conn.commit()
        return count

    def import_csv(self, csv_path: str, clear_existing: bool = True) -> int:
        """Import claims from a CSV file.

        Returns the number of records imported. Column mapping is flexible:
        common header spellings for id, claim, direction and source are
        recognized. Rows without a claim are skipped; rows without an id get
        a positional one.
        """
        csv_path = Path(csv_path)
        if not csv_path.exists():
            raise FileNotFoundError(f"CSV file not found: {csv_path}")

        if clear_existing:
            self.conn.execute("DELETE FROM knowledge_entries")

        count = 0
        with open(csv_path, "r", encoding="utf-8-sig") as f:
            reader = csv.DictReader(f)
            if reader.fieldnames:
                col_map = {c.strip().lower(): c for c in reader.fieldnames}
            else:
                logger.error("CSV has no headers")
                return 0

            for i, row in enumerate(reader, start=1):
                claim = self._get_col(row, col_map, ["claim", "statement", "finding", "conclusion"])
                if not claim:
                    continue
                entry_id = self._get_col(row, col_map, ["entry id", "entry_id", "id", "identifier"])
                direction = self._get_col(row, col_map, ["direction", "effect direction", "effect"])
                if direction:
                    direction = direction.lower()
                    if direction not in ("increase", "decrease", "null"):
                        direction = None
                self.conn.execute(
                    "INSERT OR REPLACE INTO knowledge_entries (entry_id, claim, direction, source) "
                    "VALUES (?, ?, ?, ?)",
                    (
                        entry_id or f"{csv_path.stem}-{i}",
                        claim,
                        direction,
                        self._get_col(row, col_map, ["source", "citation", "reference"]) or "",
                    ),
                )
                count += 1

        self.conn.commit()
        logger.info(f"Knowledge base: imported {count} records from {csv_path.name}")
        return count

    def is_populated(self) -> bool:
        return self.count() > 0

    def count(self) -> int:
        row = self.conn.execute("SELECT COUNT(*) FROM knowledge_entries").fetchone()
        return row[0]

    def session(self) -> _SQLiteSession:
        return _SQLiteSession(self.db_path)

    def close(self):
        if not self._closed:
            self._closed = True
            self.conn.close()

    @staticmethod
    def _row_to_entry(row: tuple) -> KnowledgeEntry:
        return KnowledgeEntry(entry_id=row[0], claim=row[1], direction=row[2] or None,
                              source=row[3] or "")

    @staticmethod
    def _get_col(row: dict, col_map: dict, candidates: List[str]) -> Optional[str]:
        for name in candidates:
            original = col_map.get(name)
            if original is not None:
                value = (row.get(original) or "").strip()
                if value:
                    return value
        return None


# ──────────────────────────────────────────────────────────────
# HTTP
# ──────────────────────────────────────────────────────────────

class _HttpSession:
    def __init__(self, base_url: str, timeout: float, transport: Optional[httpx.AsyncBaseTransport]):
        self._http = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport,
                                       headers={"Accept": "application/json"})

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self._http.aclose()
        return False

    async def lookup(self, claim: str) -> List[KnowledgeEntry]:
        try:
            resp = await self._http.get("/entries", params={"q": claim})
            if resp.status_code == 404:
                return []
            resp.raise_for_status()
            data = resp.json()
        except (httpx.HTTPError, ValueError) as e:
            raise KnowledgeBaseUnavailable(f"knowledge base request failed: {e}") from e

        items = data.get("entries", []) if isinstance(data, dict) else data
        try:
            return [KnowledgeEntry.model_validate(item) for item in items]
        except (ValidationError, TypeError) as e:
            raise KnowledgeBaseUnavailable(f"malformed knowledge base response: {e}") from e


class HttpKnowledgeBase:
    """Remote knowledge base: ``GET {base_url}/entries?q=<claim>`` returning JSON entries."""

    def __init__(self, base_url: str, timeout: float = 5.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    def session(self) -> _HttpSession:
        return _HttpSession(self.base_url, self.timeout, self.transport)


def open_knowledge_source(kb_path: str = "", kb_url: str = "", timeout: float = 5.0):
    """Build the configured source, or None when no knowledge base is configured."""
    if kb_url:
        logger.info(f"Knowledge base: HTTP {kb_url}")
        return HttpKnowledgeBase(kb_url, timeout=timeout)
    if kb_path:
        if not os.path.exists(kb_path):
            logger.warning(f"Knowledge base not found at {kb_path}; findings will be unverified")
        logger.info(f"Knowledge base: SQLite {kb_path}")
        return _ReadOnlySQLiteSource(kb_path)
    logger.info("No knowledge base configured; findings will be unverified")
    return None


class _ReadOnlySQLiteSource:
    """Session factory over an existing database file; never creates it."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def session(self) -> _SQLiteSession:
        return _SQLiteSession(self.db_path)
