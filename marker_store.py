"""
Marker persistence - validation, SQLite store and hosted Supabase (PostgREST) store
"""
import logging
import math
import sqlite3
import threading
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional

import requests

from config import StoreConfig

logger = logging.getLogger(__name__)

SENTIMENTS = ("like", "dislike")
SENTIMENT_ALIASES = {
    "like": "like",
    "safe": "like",
    "dislike": "dislike",
    "unsafe": "dislike",
}
MAX_COMMENT_LENGTH = 280

MARKER_FIELDS = (
    "id",
    "latitude",
    "longitude",
    "sentiment",
    "comment",
    "version",
    "created_at",
    "updated_at",
    "deleted_at",
)


class StoreError(Exception):
    """The backing store failed to answer a query."""


class ValidationError(ValueError):
    """Client input that cannot be saved."""


class MarkerNotFound(StoreError):
    """No live marker with the requested id."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def normalize_sentiment(value: object) -> Optional[str]:
    """Map 'safe'/'unsafe'/'like'/'dislike' to the stored value, else None."""
    if not isinstance(value, str):
        return None
    return SENTIMENT_ALIASES.get(value.strip().lower())


def _is_number(value: object) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _clean_comment(value: object) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError("Comment must be text")
    return value


def validate_new_marker(data: Dict) -> Dict:
    """Check an insert payload and return the row to persist."""
    latitude = data.get("latitude")
    longitude = data.get("longitude")
    if not _is_number(latitude) or not _is_number(longitude):
        raise ValidationError("Invalid coordinates")

    sentiment = normalize_sentiment(data.get("sentiment"))
    if sentiment is None:
        raise ValidationError('Sentiment must be "like" or "dislike"')

    version = data.get("version")
    if not isinstance(version, int) or isinstance(version, bool):
        version = None

    return {
        "latitude": float(latitude),
        "longitude": float(longitude),
        "sentiment": sentiment,
        "comment": _clean_comment(data.get("comment")),
        "version": version,
    }


def validate_marker_update(data: Dict) -> Dict:
    """Only sentiment and comment may change after creation."""
    changes: Dict = {}
    if data.get("sentiment") is not None:
        sentiment = normalize_sentiment(data.get("sentiment"))
        if sentiment is None:
            raise ValidationError('Sentiment must be "like" or "dislike"')
        changes["sentiment"] = sentiment
    if "comment" in data:
        changes["comment"] = _clean_comment(data.get("comment"))
    return changes


class MarkerStore:
    """Create/update/soft-delete/list against persisted markers."""

    def list_markers(self, version: Optional[int] = None) -> List[Dict]:
        raise NotImplementedError

    def create_marker(self, row: Dict) -> Dict:
        raise NotImplementedError

    def update_marker(self, marker_id: str, changes: Dict) -> Dict:
        raise NotImplementedError

    def soft_delete_marker(self, marker_id: str) -> None:
        raise NotImplementedError

    def close(self) -> None:
        pass


class SQLiteMarkerStore(MarkerStore):
    """Local store, one connection shared across request threads."""

    def __init__(self, config: StoreConfig):
        self.path = Path(config.database_path)
        if str(self.path) != ":memory:":
            self.path.parent.mkdir(parents=True, exist_ok=True)
        self.lock = threading.Lock()
        self.conn = sqlite3.connect(str(self.path), check_same_thread=False, timeout=30)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.init_db()

    def init_db(self) -> None:
        """Initialize schema."""
        with self.lock:
            self.conn.execute("""
                CREATE TABLE IF NOT EXISTS markers (
                    id TEXT PRIMARY KEY,
                    latitude REAL NOT NULL,
                    longitude REAL NOT NULL,
                    sentiment TEXT NOT NULL,
                    comment TEXT,
                    version INTEGER,
                    created_at TEXT NOT NULL,
                    updated_at TEXT,
                    deleted_at TEXT
                )
            """)
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_markers_created_at ON markers(created_at)")
            self.conn.execute("CREATE INDEX IF NOT EXISTS idx_markers_version ON markers(version)")
            self.conn.commit()

    @staticmethod
    def _row_to_marker(row: sqlite3.Row) -> Dict:
        return {field: row[field] for field in MARKER_FIELDS}

    def _get(self, marker_id: str) -> Optional[Dict]:
        row = self.conn.execute("SELECT * FROM markers WHERE id = ?", (marker_id,)).fetchone()
        return self._row_to_marker(row) if row else None

    def list_markers(self, version: Optional[int] = None) -> List[Dict]:
        sql = "SELECT * FROM markers WHERE deleted_at IS NULL"
        params: List[object] = []
        if version is not None:
            sql += " AND version = ?"
            params.append(int(version))
        # rowid breaks ties between markers created within the same microsecond
        sql += " ORDER BY created_at DESC, rowid DESC"
        try:
            with self.lock:
                rows = self.conn.execute(sql, params).fetchall()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e
        return [self._row_to_marker(row) for row in rows]

    def create_marker(self, row: Dict) -> Dict:
        marker_id = str(uuid.uuid4())
        now = utc_now_iso()
        try:
            with self.lock:
                self.conn.execute(
                    """
                    INSERT INTO markers (id, latitude, longitude, sentiment, comment, version, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        marker_id,
                        row["latitude"],
                        row["longitude"],
                        row["sentiment"],
                        row.get("comment"),
                        row.get("version"),
                        now,
                        now,
                    ),
                )
                self.conn.commit()
                return self._get(marker_id)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def update_marker(self, marker_id: str, changes: Dict) -> Dict:
        allowed = {k: v for k, v in changes.items() if k in ("sentiment", "comment")}
        allowed["updated_at"] = utc_now_iso()
        assignments = ", ".join(f"{column} = ?" for column in allowed)
        try:
            with self.lock:
                cur = self.conn.execute(
                    f"UPDATE markers SET {assignments} WHERE id = ? AND deleted_at IS NULL",
                    (*allowed.values(), marker_id),
                )
                self.conn.commit()
                if cur.rowcount == 0:
                    raise MarkerNotFound(f"Marker {marker_id} not found")
                return self._get(marker_id)
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def soft_delete_marker(self, marker_id: str) -> None:
        try:
            with self.lock:
                self.conn.execute(
                    "UPDATE markers SET deleted_at = ? WHERE id = ?",
                    (utc_now_iso(), marker_id),
                )
                self.conn.commit()
        except sqlite3.Error as e:
            raise StoreError(str(e)) from e

    def close(self) -> None:
        with self.lock:
            self.conn.close()


class SupabaseMarkerStore(MarkerStore):
    """Hosted Postgres table behind Supabase's PostgREST API."""

    def __init__(self, config: StoreConfig, session: Optional[requests.Session] = None):
        self.base_url = f"{config.supabase_url}/rest/v1/{config.table}"
        self.timeout = config.timeout_seconds
        self.session = session or requests.Session()
        self.session.headers.update({
            "apikey": config.supabase_key,
            "Authorization": f"Bearer {config.supabase_key}",
            "Content-Type": "application/json",
        })

    def _request(self, method: str, params: Dict, json_body: Optional[object] = None, returning: bool = True):
        headers = {"Prefer": "return=representation"} if returning else {"Prefer": "return=minimal"}
        try:
            response = self.session.request(
                method,
                self.base_url,
                params=params,
                json=json_body,
                headers=headers,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.RequestException as e:
            detail = e.response.text if getattr(e, "response", None) is not None else ""
            raise StoreError(f"Supabase {method} failed: {e} {detail}".strip()) from e
        if not returning or not response.content:
            return []
        return response.json()

    def list_markers(self, version: Optional[int] = None) -> List[Dict]:
        params = {
            "select": "*",
            "deleted_at": "is.null",
            "order": "created_at.desc",
        }
        if version is not None:
            params["version"] = f"eq.{int(version)}"
        return self._request("GET", params)

    def create_marker(self, row: Dict) -> Dict:
        rows = self._request("POST", {"select": "*"}, [row])
        if not rows:
            raise StoreError("Supabase insert returned no row")
        return rows[0]

    def update_marker(self, marker_id: str, changes: Dict) -> Dict:
        body = {k: v for k, v in changes.items() if k in ("sentiment", "comment")}
        body["updated_at"] = utc_now_iso()
        rows = self._request(
            "PATCH",
            {"id": f"eq.{marker_id}", "deleted_at": "is.null", "select": "*"},
            body,
        )
        if not rows:
            raise MarkerNotFound(f"Marker {marker_id} not found")
        return rows[0]

    def soft_delete_marker(self, marker_id: str) -> None:
        self._request(
            "PATCH",
            {"id": f"eq.{marker_id}"},
            {"deleted_at": utc_now_iso()},
            returning=False,
        )

    def close(self) -> None:
        self.session.close()


def create_store(config: StoreConfig) -> MarkerStore:
    """Validate credentials and build the configured backend."""
    config.validate()
    if config.backend == "supabase":
        logger.info(f"Using Supabase marker store (table {config.table})")
        return SupabaseMarkerStore(config)
    logger.info(f"Using SQLite marker store at {config.database_path}")
    return SQLiteMarkerStore(config)
