"""
OptoReports — Storage Layer
Report persistence behind one contract, two backends:

  FileStore      one pretty-printed JSON file per report under
                 <base>/<district>/<institution>/<year>/<month>.json
  PostgresStore  one JSONB document per report in a single table, with a
                 UNIQUE (district, institution, year, month) constraint

upsert_report() is a full replace. Merge decisions happen in
optoreports.reports before the store is called.
"""
import json
import logging
import os
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from urllib.parse import quote, unquote

import psycopg2
from psycopg2 import sql
from psycopg2.extras import Json, RealDictCursor
from psycopg2.pool import SimpleConnectionPool

from optoreports.config import KEY_COUNT, StorageConfig
from optoreports.answers import coerce_vector

logger = logging.getLogger(__name__)

IDENTITY_FIELDS = ("district", "institution", "month", "year")


class StorageError(Exception):
    """Backend I/O, connection, or constraint failure."""


@dataclass
class UpsertResult:
    doc: dict
    location: str


# ============================================================
# HELPERS
# ============================================================
_UNSAFE_SEGMENT = re.compile(r'[\\/:*?"<>|]')


def sanitize(name) -> str:
    """Make a value safe to use as a single path segment."""
    seg = _UNSAFE_SEGMENT.sub("_", str(name or "")).strip()
    # "." and ".." would walk the tree instead of naming a directory
    if seg in ("", ".", ".."):
        return "_"
    return seg


def key_filter(key) -> dict:
    return {f: key.get(f) for f in IDENTITY_FIELDS}


def build_document(key, payload: dict) -> dict:
    """Canonical stored shape: identity + 84-slot vectors + attachments + timestamp."""
    return {
        **key_filter(key),
        "answers": coerce_vector(payload.get("answers") or {}),
        "cumulative": coerce_vector(payload.get("cumulative") or {}),
        "eyeBank": payload.get("eyeBank") or [],
        "visionCenter": payload.get("visionCenter") or [],
        "updatedAt": datetime.now(timezone.utc).isoformat(),
    }


def matches_filter(doc: dict, filters: Optional[dict]) -> bool:
    for f in IDENTITY_FIELDS:
        want = (filters or {}).get(f)
        if want and str(want) != str(doc.get(f)):
            return False
    return True


def report_id(doc: dict) -> str:
    """Stable synthetic id, URL-safe: district::institution::year::month."""
    raw = "::".join(str(doc.get(f) or "") for f in ("district", "institution", "year", "month"))
    return quote(raw, safe="")


def parse_report_id(rid: str) -> dict:
    parts = unquote(rid or "").split("::")
    parts += [""] * (4 - len(parts))
    district, institution, year, month = parts[:4]
    return {"district": district, "institution": institution, "month": month, "year": year}


# ============================================================
# BASE CONTRACT
# ============================================================
class ReportStore:
    kind = "abstract"

    def upsert_report(self, key, payload: dict) -> UpsertResult:
        raise NotImplementedError

    def get_report(self, key) -> Optional[dict]:
        raise NotImplementedError

    def list_reports(self, filters: Optional[dict] = None) -> list:
        raise NotImplementedError

    def info(self) -> dict:
        raise NotImplementedError

    def close(self):
        pass


# ============================================================
# FILE BACKEND
# ============================================================
class FileStore(ReportStore):
    kind = "fs"

    def __init__(self, base_dir):
        self.base_dir = Path(base_dir)

    def file_path(self, key) -> Path:
        path = (self.base_dir / sanitize(key.get("district")) / sanitize(key.get("institution"))
                / sanitize(key.get("year")) / f"{sanitize(key.get('month'))}.json")
        base = self.base_dir.resolve()
        if base not in path.resolve().parents:
            raise StorageError(f"Report path escapes {base}: {path}")
        return path

    def upsert_report(self, key, payload: dict) -> UpsertResult:
        path = self.file_path(key)
        doc = build_document(key, payload)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, "w", encoding="utf-8") as f:
                json.dump(doc, f, indent=2, ensure_ascii=False)
        except OSError as e:
            raise StorageError(f"Failed to write {path}: {e}") from e
        logger.info("[DB] FS write → %s", path)
        return UpsertResult(doc=doc, location=str(path))

    def get_report(self, key) -> Optional[dict]:
        path = self.file_path(key)
        if not path.exists():
            return None
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Failed to read {path}: {e}") from e

    def list_reports(self, filters: Optional[dict] = None) -> list:
        out = []
        if not self.base_dir.is_dir():
            return out
        for root, _dirs, files in os.walk(self.base_dir, onerror=self._walk_error):
            for name in sorted(files):
                if not name.endswith(".json"):
                    continue
                full = Path(root) / name
                try:
                    with open(full, encoding="utf-8") as f:
                        doc = json.load(f)
                except (OSError, json.JSONDecodeError) as e:
                    logger.warning("[DB] Skipping unreadable report %s: %s", full, e)
                    continue
                if isinstance(doc, dict) and matches_filter(doc, filters):
                    out.append(doc)
        return out

    @staticmethod
    def _walk_error(err: OSError):
        logger.warning("[DB] Skipping unreadable directory %s", err.filename)

    def info(self) -> dict:
        return {"backend": self.kind, "baseDir": str(self.base_dir), "keyCount": KEY_COUNT}


# ============================================================
# POSTGRES DOCUMENT BACKEND
# ============================================================
class PostgresStore(ReportStore):
    """Reports as JSONB documents, one row per identity key."""
    kind = "docstore"

    def __init__(self, database_url: str, table: str = "reports", pool=None):
        self.database_url = database_url
        self.table = table
        self._pool = pool

    def init(self):
        if self._pool is not None:
            return
        try:
            self._pool = SimpleConnectionPool(1, 5, self.database_url)
        except psycopg2.Error as e:
            raise StorageError(f"PostgreSQL connection failed: {e}") from e
        self._init_schema()
        logger.info("[DB] Connected to PostgreSQL (table=%s)", self.table)

    def _init_schema(self):
        self._execute(sql.SQL("""
            CREATE TABLE IF NOT EXISTS {table} (
                id BIGSERIAL PRIMARY KEY,
                district TEXT NOT NULL,
                institution TEXT NOT NULL,
                year TEXT NOT NULL,
                month TEXT NOT NULL,
                doc JSONB NOT NULL,
                updated_at TIMESTAMPTZ DEFAULT NOW(),
                CONSTRAINT {uniq} UNIQUE (district, institution, year, month)
            )
        """).format(table=sql.Identifier(self.table),
                    uniq=sql.Identifier(f"{self.table}_uniq_identity")))

    def _execute(self, query, params=None, fetch=None):
        self.init()
        conn = self._pool.getconn()
        try:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                if fetch == "one":
                    rows = cur.fetchone()
                elif fetch == "all":
                    rows = cur.fetchall()
                else:
                    rows = None
            conn.commit()
            return rows
        except psycopg2.Error as e:
            conn.rollback()
            raise StorageError(f"PostgreSQL error: {e}") from e
        finally:
            self._pool.putconn(conn)

    def upsert_report(self, key, payload: dict) -> UpsertResult:
        doc = build_document(key, payload)
        k = key_filter(key)
        self._execute(sql.SQL("""
            INSERT INTO {table} (district, institution, year, month, doc, updated_at)
            VALUES (%(district)s, %(institution)s, %(year)s, %(month)s, %(doc)s, NOW())
            ON CONFLICT (district, institution, year, month)
            DO UPDATE SET doc = EXCLUDED.doc, updated_at = NOW()
        """).format(table=sql.Identifier(self.table)), {**k, "doc": Json(doc)})
        return UpsertResult(doc=doc, location=f"{self.table}/{report_id(doc)}")

    def get_report(self, key) -> Optional[dict]:
        row = self._execute(sql.SQL("""
            SELECT doc FROM {table}
            WHERE district = %(district)s AND institution = %(institution)s
              AND year = %(year)s AND month = %(month)s
        """).format(table=sql.Identifier(self.table)), key_filter(key), fetch="one")
        return row["doc"] if row else None

    def list_reports(self, filters: Optional[dict] = None) -> list:
        clauses, params = [], {}
        for f in IDENTITY_FIELDS:
            want = (filters or {}).get(f)
            if want:
                clauses.append(sql.SQL("{} = {}").format(sql.Identifier(f), sql.Placeholder(f)))
                params[f] = str(want)
        where = sql.SQL(" WHERE ") + sql.SQL(" AND ").join(clauses) if clauses else sql.SQL("")
        rows = self._execute(
            sql.SQL("SELECT doc FROM {table}{where} ORDER BY year ASC, id ASC").format(
                table=sql.Identifier(self.table), where=where),
            params, fetch="all")
        return [r["doc"] for r in rows or []]

    def info(self) -> dict:
        return {"backend": self.kind, "uri": _redact(self.database_url),
                "table": self.table, "keyCount": KEY_COUNT}

    def close(self):
        if self._pool is not None:
            self._pool.closeall()
            self._pool = None


def _redact(url: Optional[str]) -> Optional[str]:
    """Hide the password part of a connection URL."""
    if not url:
        return url
    return re.sub(r"(://[^:/@]+):[^@]*@", r"\1:***@", url)


# ============================================================
# PUBLIC API
# ============================================================
def create_store(config: StorageConfig) -> ReportStore:
    if config.is_docstore:
        logger.info("[DB] Using PostgreSQL document backend")
        return PostgresStore(config.database_url, table=config.table)
    logger.info("[DB] Using file backend (%s)", config.reports_dir)
    Path(config.reports_dir).mkdir(parents=True, exist_ok=True)
    return FileStore(config.reports_dir)
