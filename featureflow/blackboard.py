"""Blackboard: the shared SQLite store behind featureflow.

Holds the append-only event log (with an FTS5 index over event summaries),
the feature pipeline table, registered projects and work items. Every
component coordinates through this store rather than through each other.
"""

import json
import re
import sqlite3
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from types import TracebackType
from typing import Any

import aiosqlite
import structlog

from featureflow.models import TERMINAL_PHASES, Feature, FeatureStatus, Phase

logger = structlog.get_logger(__name__)

DEFAULT_ACTOR = "featureflow"
BUSY_TIMEOUT_SECONDS = 10.0

_METADATA_KEY = re.compile(r"^[A-Za-z0-9_]+$")
_SEARCH_TOKEN = re.compile(r"[\w-]+", re.UNICODE)

SCHEMA = """
CREATE TABLE IF NOT EXISTS events (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    timestamp TEXT NOT NULL,
    event_type TEXT NOT NULL,
    actor_id TEXT NOT NULL,
    target_id TEXT,
    target_type TEXT,
    summary TEXT NOT NULL,
    metadata TEXT  -- JSON object
);
CREATE INDEX IF NOT EXISTS idx_events_type ON events (event_type, timestamp);
CREATE INDEX IF NOT EXISTS idx_events_target ON events (target_id);

CREATE TABLE IF NOT EXISTS projects (
    project_id TEXT PRIMARY KEY,
    local_path TEXT NOT NULL,
    github_repo TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS features (
    feature_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    project_id TEXT NOT NULL,
    phase TEXT NOT NULL DEFAULT 'queued',
    status TEXT NOT NULL DEFAULT 'pending',
    description TEXT NOT NULL DEFAULT '',
    github_repo TEXT,
    main_branch TEXT NOT NULL DEFAULT 'main',
    worktree_path TEXT,
    branch_name TEXT,
    current_session TEXT,
    phase_started_at TEXT,
    failure_count INTEGER NOT NULL DEFAULT 0,
    max_failures INTEGER NOT NULL DEFAULT 3,
    last_error TEXT,
    specify_score INTEGER,
    plan_score INTEGER,
    pr_number INTEGER,
    pr_url TEXT,
    commit_sha TEXT,
    created_at TEXT,
    updated_at TEXT
);

CREATE TABLE IF NOT EXISTS work_items (
    item_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    project_id TEXT,
    source TEXT NOT NULL DEFAULT 'featureflow',
    source_ref TEXT,
    priority TEXT NOT NULL DEFAULT 'P2',
    status TEXT NOT NULL DEFAULT 'available',  -- available, claimed, completed
    claimed_by TEXT,
    metadata TEXT,  -- JSON object
    created_at TEXT NOT NULL,
    completed_at TEXT
);
"""

FTS_SCHEMA = """
CREATE VIRTUAL TABLE IF NOT EXISTS events_fts USING fts5(
    summary,
    metadata,
    content=events,
    content_rowid=id
);
CREATE TRIGGER IF NOT EXISTS events_fts_insert AFTER INSERT ON events BEGIN
    INSERT INTO events_fts(rowid, summary, metadata)
    VALUES (new.id, new.summary, new.metadata);
END;
CREATE TRIGGER IF NOT EXISTS events_fts_delete AFTER DELETE ON events BEGIN
    INSERT INTO events_fts(events_fts, rowid, summary, metadata)
    VALUES ('delete', old.id, old.summary, old.metadata);
END;
"""


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_db(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Path):
        return str(value)
    return value


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


@dataclass
class Event:
    """One immutable entry of the event log."""

    id: int
    timestamp: datetime
    event_type: str
    actor_id: str
    summary: str
    target_id: str | None = None
    target_type: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class Project:
    project_id: str
    local_path: str
    github_repo: str | None = None


@dataclass
class WorkItem:
    """A unit of queued work for an agent, e.g. a review or reflect run."""

    item_id: str
    title: str
    description: str = ""
    project_id: str | None = None
    source: str = "featureflow"
    source_ref: str | None = None
    priority: str = "P2"
    status: str = "available"
    claimed_by: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    completed_at: datetime | None = None


FEATURE_COLUMNS = frozenset(f.name for f in fields(Feature))
_FEATURE_DATETIMES = ("phase_started_at", "created_at", "updated_at")


class Blackboard:
    """Async SQLite store for events, features, projects and work items.

    Usage:
        async with Blackboard(db_path) as bb:
            await bb.append_event("phase.started", "Starting specify", target_id="F-1")
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = str(db_path)
        self._db: aiosqlite.Connection | None = None
        self.fts_enabled = False

    async def connect(self) -> "Blackboard":
        """Open the database and create tables if needed."""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(self.db_path, timeout=BUSY_TIMEOUT_SECONDS)
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA journal_mode=WAL")
        await self._db.executescript(SCHEMA)
        try:
            await self._db.executescript(FTS_SCHEMA)
            self.fts_enabled = True
        except sqlite3.OperationalError as e:
            # SQLite built without FTS5; search falls back to LIKE
            logger.warning("FTS5 unavailable, using substring search", error=str(e))
            self.fts_enabled = False
        await self._db.commit()
        logger.debug("Blackboard connected", db_path=self.db_path)
        return self

    async def close(self) -> None:
        if self._db is not None:
            await self._db.close()
            self._db = None

    async def __aenter__(self) -> "Blackboard":
        return await self.connect()

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    @property
    def db(self) -> aiosqlite.Connection:
        if self._db is None:
            raise RuntimeError("Blackboard is not connected")
        return self._db

    # ------------------------------------------------------------------
    # Events

    async def append_event(
        self,
        event_type: str,
        summary: str,
        actor_id: str = DEFAULT_ACTOR,
        target_id: str | None = None,
        target_type: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Event:
        """Append an event to the log.

        Args:
            event_type: Dotted event type, e.g. "phase.started"
            summary: Human-readable, searchable description
            actor_id: Who emitted the event
            target_id: Entity the event is about (feature or work item id)
            target_type: Kind of target, e.g. "feature"
            metadata: JSON-serializable payload

        Returns:
            The stored Event
        """
        timestamp = utcnow()
        payload = metadata or {}
        cursor = await self.db.execute(
            """
            INSERT INTO events
                (timestamp, event_type, actor_id, target_id, target_type, summary, metadata)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                timestamp.isoformat(),
                event_type,
                actor_id,
                target_id,
                target_type,
                summary,
                json.dumps(payload, default=str),
            ),
        )
        await self.db.commit()
        event_id = cursor.lastrowid or 0
        logger.debug("Event appended", event_type=event_type, target_id=target_id)
        return Event(
            id=event_id,
            timestamp=timestamp,
            event_type=event_type,
            actor_id=actor_id,
            summary=summary,
            target_id=target_id,
            target_type=target_type,
            metadata=payload,
        )

    @staticmethod
    def _event_from_row(row: aiosqlite.Row) -> Event:
        try:
            metadata = json.loads(row["metadata"]) if row["metadata"] else {}
        except json.JSONDecodeError:
            metadata = {}
        return Event(
            id=row["id"],
            timestamp=datetime.fromisoformat(row["timestamp"]),
            event_type=row["event_type"],
            actor_id=row["actor_id"],
            summary=row["summary"],
            target_id=row["target_id"],
            target_type=row["target_type"],
            metadata=metadata if isinstance(metadata, dict) else {},
        )

    async def query_events(
        self,
        event_type: str | None = None,
        target_id: str | None = None,
        metadata_equals: dict[str, Any] | None = None,
        descending: bool = False,
        limit: int | None = None,
    ) -> list[Event]:
        """Query the event log.

        Args:
            event_type: Exact type, or a prefix pattern ending in "%"
                (e.g. "rework.%")
            target_id: Restrict to events about this entity
            metadata_equals: Top-level metadata fields that must match
            descending: Newest first instead of chronological
            limit: Maximum number of events

        Returns:
            Matching events
        """
        clauses: list[str] = []
        params: list[Any] = []
        if event_type is not None:
            if event_type.endswith("%"):
                clauses.append("event_type LIKE ?")
            else:
                clauses.append("event_type = ?")
            params.append(event_type)
        if target_id is not None:
            clauses.append("target_id = ?")
            params.append(target_id)
        for key, value in (metadata_equals or {}).items():
            if not _METADATA_KEY.match(key):
                raise ValueError(f"Invalid metadata key: {key!r}")
            clauses.append(f"json_extract(metadata, '$.{key}') = ?")
            params.append(value)

        sql = "SELECT * FROM events"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        order = "DESC" if descending else "ASC"
        sql += f" ORDER BY timestamp {order}, id {order}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        async with self.db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [self._event_from_row(row) for row in rows]

    async def search_events(
        self, text: str, event_type: str | None = None, limit: int = 50
    ) -> list[Event]:
        """Full-text search over event summaries and metadata, best match first."""
        tokens = _SEARCH_TOKEN.findall(text)
        if not tokens:
            return []

        if self.fts_enabled:
            match = " OR ".join('"{}"'.format(t.replace('"', "")) for t in tokens)
            sql = (
                "SELECT e.* FROM events_fts JOIN events e ON e.id = events_fts.rowid "
                "WHERE events_fts MATCH ?"
            )
            params: list[Any] = [match]
            if event_type is not None:
                sql += " AND e.event_type = ?"
                params.append(event_type)
            sql += " ORDER BY events_fts.rank LIMIT ?"
            params.append(limit)
        else:
            likes = " OR ".join("summary LIKE ?" for _ in tokens)
            sql = f"SELECT * FROM events WHERE ({likes})"
            params = [f"%{t}%" for t in tokens]
            if event_type is not None:
                sql += " AND event_type = ?"
                params.append(event_type)
            sql += " ORDER BY timestamp DESC, id DESC LIMIT ?"
            params.append(limit)

        async with self.db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [self._event_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Projects

    async def register_project(
        self, project_id: str, local_path: Path | str, github_repo: str | None = None
    ) -> Project:
        await self.db.execute(
            """
            INSERT INTO projects (project_id, local_path, github_repo, created_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(project_id) DO UPDATE SET
                local_path = excluded.local_path,
                github_repo = excluded.github_repo
            """,
            (project_id, str(local_path), github_repo, utcnow().isoformat()),
        )
        await self.db.commit()
        return Project(project_id, str(local_path), github_repo)

    async def get_project(self, project_id: str) -> Project | None:
        async with self.db.execute(
            "SELECT project_id, local_path, github_repo FROM projects WHERE project_id = ?",
            (project_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return Project(row["project_id"], row["local_path"], row["github_repo"])

    # ------------------------------------------------------------------
    # Features

    @staticmethod
    def _feature_from_row(row: aiosqlite.Row) -> Feature:
        values = {key: row[key] for key in row.keys() if key in FEATURE_COLUMNS}
        for key in _FEATURE_DATETIMES:
            values[key] = _parse_datetime(values.get(key))
        return Feature(**values)

    async def create_feature(self, feature: Feature) -> Feature:
        """Insert a new feature.

        Raises:
            ValueError: If a feature with the same id exists
        """
        now = utcnow()
        feature.created_at = feature.created_at or now
        feature.updated_at = now
        values = {f.name: _to_db(getattr(feature, f.name)) for f in fields(Feature)}
        columns = ", ".join(values)
        placeholders = ", ".join("?" for _ in values)
        try:
            await self.db.execute(
                f"INSERT INTO features ({columns}) VALUES ({placeholders})",
                list(values.values()),
            )
        except sqlite3.IntegrityError as e:
            raise ValueError(f"Feature {feature.feature_id} already exists") from e
        await self.db.commit()
        return feature

    async def get_feature(self, feature_id: str) -> Feature | None:
        async with self.db.execute(
            "SELECT * FROM features WHERE feature_id = ?", (feature_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._feature_from_row(row) if row else None

    async def update_feature(self, feature_id: str, **changes: Any) -> Feature | None:
        """Update feature columns and return the refreshed feature.

        Raises:
            ValueError: If a change names an unknown column
        """
        unknown = set(changes) - FEATURE_COLUMNS
        if unknown:
            raise ValueError(f"Unknown feature fields: {sorted(unknown)}")
        changes["updated_at"] = utcnow()
        assignments = ", ".join(f"{key} = ?" for key in changes)
        params = [_to_db(value) for value in changes.values()]
        params.append(feature_id)
        await self.db.execute(
            f"UPDATE features SET {assignments} WHERE feature_id = ?", params
        )
        await self.db.commit()
        return await self.get_feature(feature_id)

    async def list_features(
        self,
        phase: Phase | None = None,
        status: FeatureStatus | None = None,
        project_id: str | None = None,
    ) -> list[Feature]:
        clauses: list[str] = []
        params: list[Any] = []
        if phase is not None:
            clauses.append("phase = ?")
            params.append(phase.value)
        if status is not None:
            clauses.append("status = ?")
            params.append(status.value)
        if project_id is not None:
            clauses.append("project_id = ?")
            params.append(project_id)
        sql = "SELECT * FROM features"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY created_at ASC, feature_id ASC"
        async with self.db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [self._feature_from_row(row) for row in rows]

    async def get_actionable_features(self, limit: int | None = None) -> list[Feature]:
        """Non-terminal, non-blocked features in creation order."""
        features = [
            feature
            for feature in await self.list_features()
            if feature.phase not in TERMINAL_PHASES
            and feature.status != FeatureStatus.BLOCKED
        ]
        return features[:limit] if limit is not None else features

    # ------------------------------------------------------------------
    # Work items

    @staticmethod
    def _work_item_from_row(row: aiosqlite.Row) -> WorkItem:
        try:
            metadata = json.loads(row["metadata"]) if row["metadata"] else {}
        except json.JSONDecodeError:
            metadata = {}
        return WorkItem(
            item_id=row["item_id"],
            title=row["title"],
            description=row["description"],
            project_id=row["project_id"],
            source=row["source"],
            source_ref=row["source_ref"],
            priority=row["priority"],
            status=row["status"],
            claimed_by=row["claimed_by"],
            metadata=metadata if isinstance(metadata, dict) else {},
            created_at=_parse_datetime(row["created_at"]),
            completed_at=_parse_datetime(row["completed_at"]),
        )

    async def create_work_item(self, item: WorkItem) -> bool:
        """Insert a work item. Returns False if the id already exists."""
        cursor = await self.db.execute(
            """
            INSERT OR IGNORE INTO work_items
                (item_id, title, description, project_id, source, source_ref,
                 priority, status, metadata, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                item.item_id,
                item.title,
                item.description,
                item.project_id,
                item.source,
                item.source_ref,
                item.priority,
                item.status,
                json.dumps(item.metadata, default=str),
                (item.created_at or utcnow()).isoformat(),
            ),
        )
        await self.db.commit()
        return cursor.rowcount > 0

    async def get_work_item(self, item_id: str) -> WorkItem | None:
        async with self.db.execute(
            "SELECT * FROM work_items WHERE item_id = ?", (item_id,)
        ) as cursor:
            row = await cursor.fetchone()
        return self._work_item_from_row(row) if row else None

    async def list_work_items(self, status: str | None = None) -> list[WorkItem]:
        sql = "SELECT * FROM work_items"
        params: list[Any] = []
        if status is not None:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY created_at ASC"
        async with self.db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [self._work_item_from_row(row) for row in rows]

    async def claim_work_item(self, item_id: str, session_id: str) -> bool:
        """Claim an available work item. Returns False if it was not available."""
        cursor = await self.db.execute(
            "UPDATE work_items SET status = 'claimed', claimed_by = ? "
            "WHERE item_id = ? AND status = 'available'",
            (session_id, item_id),
        )
        await self.db.commit()
        return cursor.rowcount > 0

    async def complete_work_item(self, item_id: str) -> None:
        await self.db.execute(
            "UPDATE work_items SET status = 'completed', completed_at = ? "
            "WHERE item_id = ?",
            (utcnow().isoformat(), item_id),
        )
        await self.db.commit()

    async def release_work_item(self, item_id: str) -> None:
        await self.db.execute(
            "UPDATE work_items SET status = 'available', claimed_by = NULL "
            "WHERE item_id = ?",
            (item_id,),
        )
        await self.db.commit()
