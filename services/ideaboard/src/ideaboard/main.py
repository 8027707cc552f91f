from __future__ import annotations

import hashlib
import json
import logging
import os
import sqlite3
import tempfile
import threading
import time
import uuid
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal, NoReturn

from common.utils import now_utc, now_utc_iso, parse_iso_datetime, strip_to_alnum
from fastapi import FastAPI, HTTPException, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field, field_validator

from ideaboard.handles import IdentitySeed, InvalidSeedError, derive_handle, describe_strategy
from ideaboard.oracle import DEFAULT_TIMEOUT_SECONDS, build_scoring_oracle
from ideaboard.ranking import ScorableIdea, normalize_category, normalize_window, rank_ideas
from ideaboard.refresh import (
    IdeaRecord,
    RefreshFailure,
    ScoreRefreshRequest,
    ScoringOracle,
    refresh_and_store,
)

DEFAULT_DB_PATH = os.path.join(tempfile.gettempdir(), "ideaboard", "ideaboard.sqlite3")
ID_PATTERN = r"^[a-zA-Z0-9_-]+$"
USER_ID_HEADER = "x-user-id"
MAX_HANDLE_LENGTH = 64
REFRESH_FAILURE_STATUS = {"not_found": 404, "forbidden": 403, "oracle_unavailable": 503}
LOGGER = logging.getLogger("ideaboard.api")


def log_event(level: int, event: str, **fields: Any) -> None:
    LOGGER.log(level, json.dumps({"event": event, **fields}))


def parse_api_tokens(raw: str) -> dict[str, set[str]]:
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError("IDEABOARD_API_TOKENS_JSON must be a JSON object.")

    token_map: dict[str, set[str]] = {}
    for token, scopes_value in parsed.items():
        if not isinstance(token, str) or not token.strip():
            raise ValueError("Token keys must be non-empty strings.")
        if isinstance(scopes_value, str):
            scopes = {scopes_value.strip()} if scopes_value.strip() else set()
        elif isinstance(scopes_value, list):
            scopes = {
                scope.strip()
                for scope in scopes_value
                if isinstance(scope, str) and scope.strip()
            }
        else:
            raise ValueError("Token scopes must be a string or list of strings.")
        token_map[token] = scopes
    return token_map


def parse_admin_user_ids(raw: str) -> frozenset[str]:
    return frozenset(value.strip() for value in raw.split(",") if value.strip())


def is_admin(user_id: str | None, admin_user_ids: frozenset[str]) -> bool:
    return bool(user_id) and user_id in admin_user_ids


def build_auth_subject(token: str) -> str:
    token_digest = hashlib.sha1(token.encode()).hexdigest()[:12]
    return f"token:{token_digest}"


class HandleConflictError(Exception):
    def __init__(self, username: str) -> None:
        super().__init__(f"Username already taken: {username}")
        self.username = username


class IdeaUpsert(BaseModel):
    id: str = Field(..., min_length=1, max_length=64, pattern=ID_PATTERN)
    title: str = Field(..., min_length=1, max_length=300)
    description: str = Field(..., min_length=1)
    original_description: str | None = None
    body_text: str | None = None
    category: Literal["primary", "secondary"]
    status: Literal["published", "draft", "archived"] = "published"
    owner_id: str | None = None
    upvotes: int = Field(default=0, ge=0)
    downvotes: int = Field(default=0, ge=0)
    potential_score: int = Field(default=0, ge=0, le=100)
    created_at: str | None = None

    @field_validator("created_at")
    @classmethod
    def validate_created_at(cls, value: str | None) -> str | None:
        if value is None:
            return None
        parsed = parse_iso_datetime(value)
        if parsed is None:
            raise ValueError("created_at must be an ISO-8601 datetime string.")
        return parsed.astimezone(UTC).isoformat()


class UpsertIdeasRequest(BaseModel):
    ideas: list[IdeaUpsert] = Field(default_factory=list)


class UpsertIdeasResponse(BaseModel):
    updated: int


class StoredIdea(BaseModel):
    id: str
    owner_id: str | None = None
    title: str
    description: str
    original_description: str | None = None
    body_text: str | None = None
    category: Literal["primary", "secondary"]
    status: str
    upvotes: int
    downvotes: int
    net_score: int
    potential_score: int
    created_at: str
    updated_at: str


class VoteRequest(BaseModel):
    vote_type: Literal["up", "down"]


class VoteResponse(BaseModel):
    idea_id: str
    vote: Literal["up", "down"] | None
    upvotes: int
    downvotes: int
    net_score: int


class LeaderboardEntry(BaseModel):
    rank: int
    id: str
    title: str
    description: str
    category: Literal["primary", "secondary"]
    upvotes: int
    downvotes: int
    net_score: int
    potential_score: int
    created_at: str


class LeaderboardResponse(BaseModel):
    type: str
    period: str
    category: Literal["primary", "secondary", "all"]
    window: Literal["today", "week", "month", "all"]
    generated_at: str
    ideas: list[LeaderboardEntry]


class AnalysisSummary(BaseModel):
    score: int
    summary: str


class AnalyzeResponse(BaseModel):
    idea: StoredIdea
    analysis: AnalysisSummary


class ProfileUpsertRequest(BaseModel):
    profile_id: str = Field(..., min_length=4, max_length=64, pattern=ID_PATTERN)
    email: EmailStr
    first_name: str | None = Field(default=None, max_length=120)
    last_name: str | None = Field(default=None, max_length=120)
    username: str | None = Field(default=None, max_length=120)

    @field_validator("username")
    @classmethod
    def normalize_username(cls, value: str | None) -> str | None:
        # Provider usernames may carry "_", "-" or capitals; stored handles are [a-z0-9].
        if value is None:
            return None
        normalized = strip_to_alnum(value)[:MAX_HANDLE_LENGTH]
        return normalized if len(normalized) >= 2 else None


class Profile(BaseModel):
    profile_id: str
    email: str
    first_name: str | None = None
    last_name: str | None = None
    username: str | None = None
    created_at: str
    updated_at: str


class ProfileStats(BaseModel):
    total_ideas: int
    total_upvotes: int
    total_downvotes: int
    net_votes: int
    average_potential_score: int
    top_potential_score: int
    median_potential_score: int


class PublicProfile(BaseModel):
    profile: Profile
    display_name: str
    stats: ProfileStats
    ideas: list[StoredIdea]


class UsernameResponse(BaseModel):
    username: str
    generated: bool


class MigratedUsername(BaseModel):
    profile_id: str
    username: str | None = None
    error: str | None = None


class UsernameMigrationResponse(BaseModel):
    message: str
    total: int
    updated: int
    results: list[MigratedUsername]
    failed: list[MigratedUsername]


class AuditEvent(BaseModel):
    event_id: int
    request_id: str | None = None
    occurred_at: str
    method: str
    path: str
    action: str
    scope: str | None = None
    source_ip: str | None = None
    user_agent: str | None = None
    auth_subject: str | None = None
    status: str
    message: str | None = None


class MetricsSnapshot(BaseModel):
    generated_at: str
    totals: dict[str, int]
    endpoints: dict[str, dict[str, float | int]]


class MetricsStore:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._totals = {"requests": 0, "errors": 0}
        self._endpoints: dict[str, dict[str, float | int]] = {}

    def observe(self, *, method: str, path: str, status_code: int, duration_ms: float) -> None:
        key = f"{method} {path}"
        bucket = f"{status_code // 100}xx"
        with self._lock:
            self._totals["requests"] += 1
            if status_code >= 400:
                self._totals["errors"] += 1
            endpoint = self._endpoints.setdefault(
                key,
                {"count": 0, "2xx": 0, "4xx": 0, "5xx": 0, "latency_ms_sum": 0.0},
            )
            endpoint["count"] = int(endpoint["count"]) + 1
            if bucket in endpoint:
                endpoint[bucket] = int(endpoint[bucket]) + 1
            endpoint["latency_ms_sum"] = float(endpoint["latency_ms_sum"]) + duration_ms

    def snapshot(self) -> MetricsSnapshot:
        with self._lock:
            endpoints: dict[str, dict[str, float | int]] = {}
            for key, value in self._endpoints.items():
                stats = dict(value)
                stats["latency_ms_avg"] = float(stats["latency_ms_sum"]) / int(stats["count"])
                endpoints[key] = stats
            return MetricsSnapshot(
                generated_at=now_utc_iso(),
                totals=dict(self._totals),
                endpoints=endpoints,
            )


class IdeaboardRepository:
    def __init__(self, database_path: str) -> None:
        self.database_path = Path(database_path)
        self._connection: sqlite3.Connection | None = None
        self._lock = threading.RLock()

    @property
    def connection(self) -> sqlite3.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection is not initialized")
        return self._connection

    def connect(self) -> None:
        with self._lock:
            self.database_path.parent.mkdir(parents=True, exist_ok=True)
            self._connection = sqlite3.connect(self.database_path, check_same_thread=False)
            self._connection.row_factory = sqlite3.Row
            self._connection.execute("PRAGMA foreign_keys=ON")
            self._connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS ideas (
                    id TEXT PRIMARY KEY,
                    owner_id TEXT,
                    title TEXT NOT NULL,
                    description TEXT NOT NULL,
                    original_description TEXT,
                    body_text TEXT,
                    category TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'published',
                    upvotes INTEGER NOT NULL DEFAULT 0,
                    downvotes INTEGER NOT NULL DEFAULT 0,
                    potential_score INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS ideas_status_created_at
                    ON ideas (status, created_at);

                CREATE TABLE IF NOT EXISTS idea_votes (
                    idea_id TEXT NOT NULL REFERENCES ideas(id) ON DELETE CASCADE,
                    user_id TEXT NOT NULL,
                    vote_type INTEGER NOT NULL,
                    created_at TEXT NOT NULL,
                    PRIMARY KEY (idea_id, user_id)
                );

                CREATE TABLE IF NOT EXISTS profiles (
                    profile_id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    first_name TEXT,
                    last_name TEXT,
                    username TEXT UNIQUE,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                );

                CREATE TABLE IF NOT EXISTS audit_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    occurred_at TEXT NOT NULL,
                    request_id TEXT,
                    method TEXT NOT NULL,
                    path TEXT NOT NULL,
                    action TEXT NOT NULL,
                    scope TEXT,
                    source_ip TEXT,
                    user_agent TEXT,
                    auth_subject TEXT,
                    status TEXT NOT NULL,
                    message TEXT
                );
                """
            )
            self._connection.commit()

    def close(self) -> None:
        with self._lock:
            if self._connection is None:
                return
            self._connection.close()
            self._connection = None

    def upsert_ideas(self, ideas: list[IdeaUpsert]) -> int:
        with self._lock:
            if not ideas:
                return 0

            now = now_utc_iso()
            self.connection.executemany(
                """
                INSERT INTO ideas (
                    id,
                    owner_id,
                    title,
                    description,
                    original_description,
                    body_text,
                    category,
                    status,
                    upvotes,
                    downvotes,
                    potential_score,
                    created_at,
                    updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    owner_id = excluded.owner_id,
                    title = excluded.title,
                    description = excluded.description,
                    original_description = excluded.original_description,
                    body_text = excluded.body_text,
                    category = excluded.category,
                    status = excluded.status,
                    upvotes = excluded.upvotes,
                    downvotes = excluded.downvotes,
                    potential_score = excluded.potential_score,
                    updated_at = excluded.updated_at
                """,
                [
                    (
                        idea.id,
                        idea.owner_id,
                        idea.title.strip(),
                        idea.description.strip(),
                        idea.original_description,
                        idea.body_text,
                        idea.category,
                        idea.status,
                        idea.upvotes,
                        idea.downvotes,
                        idea.potential_score,
                        idea.created_at or now,
                        now,
                    )
                    for idea in ideas
                ],
            )
            self.connection.commit()
            return len(ideas)

    def get_idea(self, idea_id: str) -> IdeaRecord | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT * FROM ideas WHERE id = ?",
                (idea_id,),
            ).fetchone()
            if row is None:
                return None
            return self._to_idea_record(row)

    def get_idea_or_raise(self, idea_id: str) -> IdeaRecord:
        idea = self.get_idea(idea_id)
        if idea is None:
            raise KeyError(f"Unknown idea_id: {idea_id}")
        return idea

    def list_published_ideas(self, owner_id: str | None = None) -> list[IdeaRecord]:
        with self._lock:
            query = "SELECT * FROM ideas WHERE status = 'published'"
            params: list[Any] = []
            if owner_id is not None:
                query += " AND owner_id = ?"
                params.append(owner_id)
            query += " ORDER BY created_at DESC, id ASC"
            cursor = self.connection.execute(query, tuple(params))
            return [self._to_idea_record(row) for row in cursor.fetchall()]

    def apply_analysis(
        self,
        idea_id: str,
        *,
        owner_id: str,
        original_description: str,
        summary: str,
        score: int,
        updated_at: datetime,
    ) -> IdeaRecord | None:
        with self._lock:
            cursor = self.connection.execute(
                """
                UPDATE ideas
                SET original_description = COALESCE(original_description, ?),
                    description = ?,
                    potential_score = ?,
                    updated_at = ?
                WHERE id = ? AND owner_id = ?
                """,
                (
                    original_description,
                    summary,
                    score,
                    updated_at.isoformat(),
                    idea_id,
                    owner_id,
                ),
            )
            self.connection.commit()
            if cursor.rowcount == 0:
                return None
            return self.get_idea(idea_id)

    def get_vote(self, idea_id: str, user_id: str) -> int | None:
        with self._lock:
            row = self.connection.execute(
                "SELECT vote_type FROM idea_votes WHERE idea_id = ? AND user_id = ?",
                (idea_id, user_id),
            ).fetchone()
            return int(row["vote_type"]) if row else None

    def cast_vote(self, idea_id: str, user_id: str, vote_type: int) -> IdeaRecord | None:
        with self._lock:
            if self.get_idea(idea_id) is None:
                return None
            previous = self.get_vote(idea_id, user_id)
            if previous != vote_type:
                self.connection.execute(
                    """
                    INSERT INTO idea_votes (idea_id, user_id, vote_type, created_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(idea_id, user_id) DO UPDATE SET
                        vote_type = excluded.vote_type,
                        created_at = excluded.created_at
                    """,
                    (idea_id, user_id, vote_type, now_utc_iso()),
                )
                self._shift_vote_counts(idea_id, removed=previous, added=vote_type)
                self.connection.commit()
            return self.get_idea(idea_id)

    def remove_vote(self, idea_id: str, user_id: str) -> IdeaRecord | None:
        with self._lock:
            if self.get_idea(idea_id) is None:
                return None
            previous = self.get_vote(idea_id, user_id)
            if previous is not None:
                self.connection.execute(
                    "DELETE FROM idea_votes WHERE idea_id = ? AND user_id = ?",
                    (idea_id, user_id),
                )
                self._shift_vote_counts(idea_id, removed=previous, added=None)
                self.connection.commit()
            return self.get_idea(idea_id)

    def _shift_vote_counts(self, idea_id: str, *, removed: int | None, added: int | None) -> None:
        # Counters carry imported baselines, so votes adjust them rather than recount.
        upvote_delta = (added == 1) - (removed == 1)
        downvote_delta = (added == -1) - (removed == -1)
        self.connection.execute(
            """
            UPDATE ideas
            SET upvotes = MAX(upvotes + ?, 0), downvotes = MAX(downvotes + ?, 0)
            WHERE id = ?
            """,
            (upvote_delta, downvote_delta, idea_id),
        )

    def upsert_profile(self, payload: ProfileUpsertRequest, username: str) -> Profile:
        with self._lock:
            now = now_utc_iso()
            try:
                self.connection.execute(
                    """
                    INSERT INTO profiles (
                        profile_id,
                        email,
                        first_name,
                        last_name,
                        username,
                        created_at,
                        updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(profile_id) DO UPDATE SET
                        email = excluded.email,
                        first_name = excluded.first_name,
                        last_name = excluded.last_name,
                        username = excluded.username,
                        updated_at = excluded.updated_at
                    """,
                    (
                        payload.profile_id,
                        str(payload.email),
                        payload.first_name,
                        payload.last_name,
                        username,
                        now,
                        now,
                    ),
                )
            except sqlite3.IntegrityError as exc:
                self.connection.rollback()
                raise HandleConflictError(username) from exc
            self.connection.commit()
            return self.get_profile_or_raise(payload.profile_id)

    def get_profile(self, profile_id: str) -> Profile | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT
                    profile_id,
                    email,
                    first_name,
                    last_name,
                    username,
                    created_at,
                    updated_at
                FROM profiles
                WHERE profile_id = ?
                """,
                (profile_id,),
            ).fetchone()
            if row is None:
                return None
            return Profile(**dict(row))

    def get_profile_by_username(self, username: str) -> Profile | None:
        with self._lock:
            row = self.connection.execute(
                """
                SELECT
                    profile_id,
                    email,
                    first_name,
                    last_name,
                    username,
                    created_at,
                    updated_at
                FROM profiles
                WHERE username = ?
                """,
                (username,),
            ).fetchone()
            if row is None:
                return None
            return Profile(**dict(row))

    def get_profile_or_raise(self, profile_id: str) -> Profile:
        profile = self.get_profile(profile_id)
        if profile is None:
            raise KeyError(f"Unknown profile_id: {profile_id}")
        return profile

    def list_profiles_without_username(self) -> list[Profile]:
        with self._lock:
            cursor = self.connection.execute(
                """
                SELECT
                    profile_id,
                    email,
                    first_name,
                    last_name,
                    username,
                    created_at,
                    updated_at
                FROM profiles
                WHERE username IS NULL
                ORDER BY created_at, profile_id
                """
            )
            return [Profile(**dict(row)) for row in cursor.fetchall()]

    def assign_username(self, profile_id: str, username: str) -> Profile:
        """Set ``username`` only while the profile still has none.

        Returns the stored profile, which carries a different username when
        another writer assigned one first.
        """
        with self._lock:
            try:
                self.connection.execute(
                    """
                    UPDATE profiles
                    SET username = ?, updated_at = ?
                    WHERE profile_id = ? AND username IS NULL
                    """,
                    (username, now_utc_iso(), profile_id),
                )
            except sqlite3.IntegrityError as exc:
                self.connection.rollback()
                raise HandleConflictError(username) from exc
            self.connection.commit()
            return self.get_profile_or_raise(profile_id)

    def record_audit_event(
        self,
        *,
        request_id: str | None,
        method: str,
        path: str,
        action: str,
        scope: str | None,
        source_ip: str | None,
        user_agent: str | None,
        auth_subject: str | None,
        status: str,
        message: str | None,
    ) -> int:
        with self._lock:
            cursor = self.connection.execute(
                """
                INSERT INTO audit_events (
                    occurred_at,
                    request_id,
                    method,
                    path,
                    action,
                    scope,
                    source_ip,
                    user_agent,
                    auth_subject,
                    status,
                    message
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    now_utc_iso(),
                    request_id,
                    method,
                    path,
                    action,
                    scope,
                    source_ip,
                    user_agent,
                    auth_subject,
                    status,
                    message,
                ),
            )
            self.connection.commit()
            return int(cursor.lastrowid)

    def list_audit_events(
        self,
        *,
        limit: int,
        action: str | None,
        status: str | None,
    ) -> list[AuditEvent]:
        with self._lock:
            query = """
                SELECT
                    id AS event_id,
                    occurred_at,
                    request_id,
                    method,
                    path,
                    action,
                    scope,
                    source_ip,
                    user_agent,
                    auth_subject,
                    status,
                    message
                FROM audit_events
            """
            params: list[Any] = []
            filters: list[str] = []
            if action:
                filters.append("action = ?")
                params.append(action)
            if status:
                filters.append("status = ?")
                params.append(status)
            if filters:
                query += " WHERE " + " AND ".join(filters)
            query += " ORDER BY id DESC LIMIT ?"
            params.append(limit)
            cursor = self.connection.execute(query, tuple(params))
            return [AuditEvent(**dict(row)) for row in cursor.fetchall()]

    def _to_idea_record(self, row: sqlite3.Row) -> IdeaRecord:
        created_at = parse_iso_datetime(row["created_at"])
        updated_at = parse_iso_datetime(row["updated_at"])
        if created_at is None or updated_at is None:
            raise ValueError(f"Idea {row['id']} has unparseable timestamps.")
        return IdeaRecord(
            id=row["id"],
            owner_id=row["owner_id"],
            title=row["title"],
            description=row["description"],
            original_description=row["original_description"],
            body_text=row["body_text"],
            category=row["category"],
            status=row["status"],
            upvotes=int(row["upvotes"]),
            downvotes=int(row["downvotes"]),
            potential_score=int(row["potential_score"]),
            created_at=created_at,
            updated_at=updated_at,
        )


def to_stored_idea(record: IdeaRecord) -> StoredIdea:
    return StoredIdea(
        id=record.id,
        owner_id=record.owner_id,
        title=record.title,
        description=record.description,
        original_description=record.original_description,
        body_text=record.body_text,
        category=record.category,
        status=record.status,
        upvotes=record.upvotes,
        downvotes=record.downvotes,
        net_score=record.upvotes - record.downvotes,
        potential_score=record.potential_score,
        created_at=record.created_at.isoformat(),
        updated_at=record.updated_at.isoformat(),
    )


def to_scorable_idea(record: IdeaRecord) -> ScorableIdea:
    return ScorableIdea(
        id=record.id,
        category=record.category,
        created_at=record.created_at,
        upvotes=record.upvotes,
        downvotes=record.downvotes,
        potential_score=record.potential_score,
    )


def to_vote_label(vote_type: int | None) -> Literal["up", "down"] | None:
    if vote_type is None:
        return None
    return "up" if vote_type == 1 else "down"


def build_leaderboard(
    records: list[IdeaRecord],
    *,
    board_type: str,
    period: str,
    now: datetime,
) -> LeaderboardResponse:
    by_id = {record.id: record for record in records}
    ranked = rank_ideas(
        [to_scorable_idea(record) for record in records],
        board_type,
        period,
        now=now,
    )
    entries = [
        LeaderboardEntry(
            rank=item.rank,
            id=item.idea.id,
            title=by_id[item.idea.id].title,
            description=by_id[item.idea.id].description,
            category=item.idea.category,
            upvotes=item.idea.upvotes,
            downvotes=item.idea.downvotes,
            net_score=item.net_score,
            potential_score=item.idea.potential_score,
            created_at=item.idea.created_at.isoformat(),
        )
        for item in ranked
    ]
    return LeaderboardResponse(
        type=board_type,
        period=period,
        category=normalize_category(board_type),
        window=normalize_window(period),
        generated_at=now.isoformat(),
        ideas=entries,
    )


def build_display_name(profile: Profile) -> str:
    if profile.first_name and profile.last_name:
        return f"{profile.first_name} {profile.last_name}"
    return profile.first_name or profile.username or "User"


def summarize_profile_ideas(records: list[IdeaRecord]) -> ProfileStats:
    upvotes = sum(record.upvotes for record in records)
    downvotes = sum(record.downvotes for record in records)
    # Ideas that were never analyzed carry a score of 0 and are left out of score stats.
    scores = sorted(record.potential_score for record in records if record.potential_score > 0)
    return ProfileStats(
        total_ideas=len(records),
        total_upvotes=upvotes,
        total_downvotes=downvotes,
        net_votes=upvotes - downvotes,
        average_potential_score=round(sum(scores) / len(scores)) if scores else 0,
        top_potential_score=scores[-1] if scores else 0,
        median_potential_score=scores[len(scores) // 2] if scores else 0,
    )


def build_public_profile(profile: Profile, records: list[IdeaRecord]) -> PublicProfile:
    return PublicProfile(
        profile=profile,
        display_name=build_display_name(profile),
        stats=summarize_profile_ideas(records),
        ideas=[to_stored_idea(record) for record in records],
    )


def build_identity_seed(profile: Profile | ProfileUpsertRequest) -> IdentitySeed:
    return IdentitySeed(
        email=str(profile.email),
        stable_id=profile.profile_id,
        first_name=profile.first_name,
        last_name=profile.last_name,
    )


def resolve_profile_username(
    payload: ProfileUpsertRequest,
    existing: Profile | None,
) -> str:
    if payload.username:
        return payload.username
    if existing is not None and existing.username:
        return existing.username
    return derive_handle(build_identity_seed(payload))


def migrate_usernames(repository: IdeaboardRepository) -> UsernameMigrationResponse:
    profiles = repository.list_profiles_without_username()
    if not profiles:
        return UsernameMigrationResponse(
            message="No profiles need migration",
            total=0,
            updated=0,
            results=[],
            failed=[],
        )

    results: list[MigratedUsername] = []
    failed: list[MigratedUsername] = []
    for profile in profiles:
        try:
            seed = build_identity_seed(profile)
            username = derive_handle(seed)
            stored = repository.assign_username(profile.profile_id, username)
        except (InvalidSeedError, HandleConflictError) as exc:
            failed.append(MigratedUsername(profile_id=profile.profile_id, error=str(exc)))
            continue
        log_event(
            logging.INFO,
            "username_migrated",
            profile_id=profile.profile_id,
            strategy=describe_strategy(seed),
        )
        results.append(MigratedUsername(profile_id=profile.profile_id, username=stored.username))

    return UsernameMigrationResponse(
        message="Migration complete",
        total=len(profiles),
        updated=len(results),
        results=results,
        failed=failed,
    )


def create_app(
    *,
    database_path: str | None = None,
    api_tokens: dict[str, list[str] | set[str]] | None = None,
    admin_user_ids: list[str] | set[str] | frozenset[str] | None = None,
    scoring_oracle: ScoringOracle | None = None,
) -> FastAPI:
    resolved_path = database_path or os.getenv("IDEABOARD_DB_PATH", DEFAULT_DB_PATH)
    resolved_token_map: dict[str, set[str]] = {}
    if api_tokens is not None:
        resolved_token_map = {
            token: {str(scope).strip() for scope in scopes if str(scope).strip()}
            for token, scopes in api_tokens.items()
            if token.strip()
        }
    else:
        raw_tokens = os.getenv("IDEABOARD_API_TOKENS_JSON", "").strip()
        if raw_tokens:
            resolved_token_map = parse_api_tokens(raw_tokens)
        api_key = os.getenv("IDEABOARD_API_KEY", "").strip()
        if api_key:
            resolved_token_map.setdefault(api_key, set()).add("*")

    if admin_user_ids is not None:
        resolved_admins = frozenset(value.strip() for value in admin_user_ids if value.strip())
    else:
        resolved_admins = parse_admin_user_ids(os.getenv("IDEABOARD_ADMIN_USER_IDS", ""))

    resolved_oracle = scoring_oracle or build_scoring_oracle(
        os.getenv("IDEABOARD_SCORING_URL", "").strip() or None,
        timeout_seconds=float(
            os.getenv("IDEABOARD_SCORING_TIMEOUT_SECONDS", str(DEFAULT_TIMEOUT_SECONDS))
        ),
        api_key=os.getenv("IDEABOARD_SCORING_API_KEY", "").strip() or None,
    )

    repository = IdeaboardRepository(database_path=resolved_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await run_in_threadpool(repository.connect)
        app.state.repository = repository
        app.state.auth_token_scopes = resolved_token_map
        app.state.admin_user_ids = resolved_admins
        app.state.scoring_oracle = resolved_oracle
        app.state.metrics = MetricsStore()
        try:
            yield
        finally:
            await run_in_threadpool(repository.close)

    app = FastAPI(title="Ideaboard", version="0.3.0", lifespan=lifespan)

    async def write_audit_event(
        request: Request,
        *,
        action: str,
        scope: str | None,
        status: str,
        message: str | None = None,
        auth_subject: str | None = None,
    ) -> int:
        return await run_in_threadpool(
            request.app.state.repository.record_audit_event,
            request_id=getattr(request.state, "request_id", None),
            method=request.method,
            path=request.url.path,
            action=action,
            scope=scope,
            source_ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
            auth_subject=auth_subject,
            status=status,
            message=message,
        )

    async def audit_and_raise(
        request: Request,
        response: Response | None,
        *,
        action: str,
        status_code: int,
        status: str,
        detail: str,
        message: str | None = None,
        auth_subject: str | None = None,
        scope: str | None = None,
    ) -> NoReturn:
        event_id = await write_audit_event(
            request,
            action=action,
            scope=scope,
            status=status,
            message=message,
            auth_subject=auth_subject,
        )
        headers = {"x-audit-event-id": str(event_id)}
        if response is not None:
            response.headers.update(headers)
        raise HTTPException(status_code=status_code, detail=detail, headers=headers)

    @app.middleware("http")
    async def observability_middleware(request: Request, call_next):
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as exc:
            duration_ms = (time.perf_counter() - started) * 1000
            request.app.state.metrics.observe(
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=duration_ms,
            )
            LOGGER.exception(
                json.dumps(
                    {
                        "event": "request_complete",
                        "request_id": request_id,
                        "method": request.method,
                        "path": request.url.path,
                        "status_code": 500,
                        "duration_ms": round(duration_ms, 3),
                        "error": str(exc),
                    }
                )
            )
            return JSONResponse(
                status_code=500,
                content={"detail": "Internal Server Error", "request_id": request_id},
                headers={"x-request-id": request_id},
            )

        duration_ms = (time.perf_counter() - started) * 1000
        request.app.state.metrics.observe(
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=duration_ms,
        )
        response.headers["x-request-id"] = request_id
        log_event(
            logging.INFO,
            "request_complete",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 3),
            source_ip=request.client.host if request.client else None,
        )
        return response

    async def require_scope(
        request: Request,
        *,
        action: str,
        scope: str,
    ) -> str | None:
        token_map: dict[str, set[str]] = request.app.state.auth_token_scopes
        if not token_map:
            return None

        provided = request.headers.get("x-api-key", "")
        if not provided or provided not in token_map:
            await audit_and_raise(
                request,
                None,
                action=action,
                scope=scope,
                status_code=401,
                status="unauthorized",
                detail="Unauthorized",
                message="missing api key" if not provided else "invalid api key",
            )

        auth_subject = build_auth_subject(provided)
        scopes = token_map[provided]
        if "*" not in scopes and scope not in scopes:
            await audit_and_raise(
                request,
                None,
                action=action,
                scope=scope,
                status_code=403,
                status="forbidden",
                detail="Forbidden",
                message="missing required scope",
                auth_subject=auth_subject,
            )
        return auth_subject

    async def require_user(request: Request, *, action: str) -> str:
        # Identity comes from the upstream auth gateway; sessions are not handled here.
        user_id = request.headers.get(USER_ID_HEADER, "").strip()
        if not user_id:
            await audit_and_raise(
                request,
                None,
                action=action,
                status_code=401,
                status="unauthorized",
                detail="Unauthorized",
                message=f"missing {USER_ID_HEADER}",
            )
        return user_id

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": "ideaboard"}

    @app.get("/metrics", response_model=MetricsSnapshot)
    async def metrics(request: Request) -> MetricsSnapshot:
        return request.app.state.metrics.snapshot()

    @app.post("/ideas", response_model=UpsertIdeasResponse)
    async def upsert_ideas(
        payload: UpsertIdeasRequest,
        request: Request,
        response: Response,
    ) -> UpsertIdeasResponse:
        auth_subject = await require_scope(request, action="ideas_upsert", scope="ideas:write")
        updated = await run_in_threadpool(request.app.state.repository.upsert_ideas, payload.ideas)
        event_id = await write_audit_event(
            request,
            action="ideas_upsert",
            scope="ideas:write",
            status="ok",
            message=f"updated={updated}",
            auth_subject=auth_subject,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return UpsertIdeasResponse(updated=updated)

    @app.get("/ideas/{idea_id}", response_model=StoredIdea)
    async def get_idea(idea_id: str, request: Request) -> StoredIdea:
        idea = await run_in_threadpool(request.app.state.repository.get_idea, idea_id)
        if idea is None:
            raise HTTPException(status_code=404, detail="Unknown idea_id")
        return to_stored_idea(idea)

    @app.get("/ideas/{idea_id}/vote", response_model=VoteResponse)
    async def get_vote(idea_id: str, request: Request) -> VoteResponse:
        user_id = await require_user(request, action="vote_read")
        idea = await run_in_threadpool(request.app.state.repository.get_idea, idea_id)
        if idea is None:
            raise HTTPException(status_code=404, detail="Unknown idea_id")
        vote = await run_in_threadpool(request.app.state.repository.get_vote, idea_id, user_id)
        return VoteResponse(
            idea_id=idea_id,
            vote=to_vote_label(vote),
            upvotes=idea.upvotes,
            downvotes=idea.downvotes,
            net_score=idea.upvotes - idea.downvotes,
        )

    @app.post("/ideas/{idea_id}/vote", response_model=VoteResponse)
    async def cast_vote(
        idea_id: str,
        payload: VoteRequest,
        request: Request,
        response: Response,
    ) -> VoteResponse:
        user_id = await require_user(request, action="vote_cast")
        vote_type = 1 if payload.vote_type == "up" else -1
        idea = await run_in_threadpool(
            request.app.state.repository.cast_vote,
            idea_id,
            user_id,
            vote_type,
        )
        if idea is None:
            await audit_and_raise(
                request,
                response,
                action="vote_cast",
                status_code=404,
                status="not_found",
                detail="Unknown idea_id",
                message=f"idea_id={idea_id}",
                auth_subject=user_id,
            )
        event_id = await write_audit_event(
            request,
            action="vote_cast",
            scope=None,
            status="ok",
            message=f"idea_id={idea_id}; vote={payload.vote_type}",
            auth_subject=user_id,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return VoteResponse(
            idea_id=idea_id,
            vote=payload.vote_type,
            upvotes=idea.upvotes,
            downvotes=idea.downvotes,
            net_score=idea.upvotes - idea.downvotes,
        )

    @app.delete("/ideas/{idea_id}/vote", response_model=VoteResponse)
    async def remove_vote(idea_id: str, request: Request, response: Response) -> VoteResponse:
        user_id = await require_user(request, action="vote_remove")
        idea = await run_in_threadpool(
            request.app.state.repository.remove_vote,
            idea_id,
            user_id,
        )
        if idea is None:
            await audit_and_raise(
                request,
                response,
                action="vote_remove",
                status_code=404,
                status="not_found",
                detail="Unknown idea_id",
                message=f"idea_id={idea_id}",
                auth_subject=user_id,
            )
        event_id = await write_audit_event(
            request,
            action="vote_remove",
            scope=None,
            status="ok",
            message=f"idea_id={idea_id}",
            auth_subject=user_id,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return VoteResponse(
            idea_id=idea_id,
            vote=None,
            upvotes=idea.upvotes,
            downvotes=idea.downvotes,
            net_score=idea.upvotes - idea.downvotes,
        )

    @app.get("/leaderboard", response_model=LeaderboardResponse)
    async def leaderboard(
        request: Request,
        board_type: str = Query(default="overall", alias="type", max_length=32),
        period: str = Query(default="week", max_length=32),
    ) -> LeaderboardResponse:
        records = await run_in_threadpool(request.app.state.repository.list_published_ideas)
        return build_leaderboard(records, board_type=board_type, period=period, now=now_utc())

    @app.post("/ideas/{idea_id}/analyze", response_model=AnalyzeResponse)
    async def analyze_idea(idea_id: str, request: Request, response: Response) -> AnalyzeResponse:
        user_id = await require_user(request, action="idea_analyze")
        outcome = await run_in_threadpool(
            refresh_and_store,
            ScoreRefreshRequest(idea_id=idea_id, requesting_owner_id=user_id),
            request.app.state.repository,
            request.app.state.scoring_oracle,
        )
        if isinstance(outcome, RefreshFailure):
            log_event(
                logging.WARNING,
                "idea_analyze_failed",
                request_id=getattr(request.state, "request_id", None),
                idea_id=idea_id,
                reason=outcome.reason,
                detail=outcome.detail,
            )
            await audit_and_raise(
                request,
                response,
                action="idea_analyze",
                status_code=REFRESH_FAILURE_STATUS[outcome.reason],
                status=outcome.reason,
                detail=outcome.reason.replace("_", " ").capitalize(),
                message=f"idea_id={idea_id}",
                auth_subject=user_id,
            )

        event_id = await write_audit_event(
            request,
            action="idea_analyze",
            scope=None,
            status="ok",
            message=f"idea_id={idea_id}; score={outcome.score}",
            auth_subject=user_id,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return AnalyzeResponse(
            idea=to_stored_idea(outcome.idea),
            analysis=AnalysisSummary(score=outcome.score, summary=outcome.summary),
        )

    @app.post("/profiles", response_model=Profile)
    async def upsert_profile(
        payload: ProfileUpsertRequest,
        request: Request,
        response: Response,
    ) -> Profile:
        auth_subject = await require_scope(
            request,
            action="profile_upsert",
            scope="profiles:write",
        )
        existing = await run_in_threadpool(
            request.app.state.repository.get_profile,
            payload.profile_id,
        )
        username = resolve_profile_username(payload, existing)
        try:
            profile = await run_in_threadpool(
                request.app.state.repository.upsert_profile,
                payload,
                username,
            )
        except HandleConflictError as exc:
            await audit_and_raise(
                request,
                response,
                action="profile_upsert",
                scope="profiles:write",
                status_code=409,
                status="conflict",
                detail="Username already taken",
                message=f"profile_id={payload.profile_id}; username={exc.username}",
                auth_subject=auth_subject,
            )
        event_id = await write_audit_event(
            request,
            action="profile_upsert",
            scope="profiles:write",
            status="ok",
            message=f"profile_id={profile.profile_id}; username={profile.username}",
            auth_subject=auth_subject,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return profile

    @app.post("/profiles/me/username", response_model=UsernameResponse)
    async def generate_username(request: Request, response: Response) -> UsernameResponse:
        user_id = await require_user(request, action="username_generate")
        profile = await run_in_threadpool(request.app.state.repository.get_profile, user_id)
        if profile is None:
            raise HTTPException(status_code=404, detail="Profile not found")
        if profile.username:
            return UsernameResponse(username=profile.username, generated=False)

        try:
            seed = build_identity_seed(profile)
            username = derive_handle(seed)
            stored = await run_in_threadpool(
                request.app.state.repository.assign_username,
                user_id,
                username,
            )
        except InvalidSeedError as exc:
            raise HTTPException(status_code=422, detail=str(exc)) from exc
        except HandleConflictError as exc:
            await audit_and_raise(
                request,
                response,
                action="username_generate",
                status_code=409,
                status="conflict",
                detail="Username already taken",
                message=f"username={exc.username}",
                auth_subject=user_id,
            )

        event_id = await write_audit_event(
            request,
            action="username_generate",
            scope=None,
            status="ok",
            message=f"username={stored.username}; strategy={describe_strategy(seed)}",
            auth_subject=user_id,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return UsernameResponse(username=stored.username, generated=stored.username == username)

    @app.get("/profiles/{profile_id}", response_model=Profile)
    async def get_profile(profile_id: str, request: Request) -> Profile:
        profile = await run_in_threadpool(request.app.state.repository.get_profile, profile_id)
        if profile is None:
            raise HTTPException(status_code=404, detail="Unknown profile_id")
        return profile

    @app.get("/profiles/by-username/{username}", response_model=PublicProfile)
    async def get_public_profile(username: str, request: Request) -> PublicProfile:
        repository = request.app.state.repository
        profile = await run_in_threadpool(repository.get_profile_by_username, username)
        if profile is None:
            raise HTTPException(status_code=404, detail="Unknown username")
        records = await run_in_threadpool(repository.list_published_ideas, profile.profile_id)
        return build_public_profile(profile, records)

    @app.post("/admin/usernames/migrate", response_model=UsernameMigrationResponse)
    async def migrate_profile_usernames(
        request: Request,
        response: Response,
    ) -> UsernameMigrationResponse:
        user_id = await require_user(request, action="username_migrate")
        if not is_admin(user_id, request.app.state.admin_user_ids):
            await audit_and_raise(
                request,
                response,
                action="username_migrate",
                status_code=403,
                status="forbidden",
                detail="Forbidden",
                message="caller is not an admin",
                auth_subject=user_id,
            )
        summary = await run_in_threadpool(migrate_usernames, request.app.state.repository)
        event_id = await write_audit_event(
            request,
            action="username_migrate",
            scope=None,
            status="ok",
            message=(
                f"total={summary.total}; updated={summary.updated}; failed={len(summary.failed)}"
            ),
            auth_subject=user_id,
        )
        response.headers["x-audit-event-id"] = str(event_id)
        return summary

    @app.get("/audit-events", response_model=list[AuditEvent])
    async def list_audit_events(
        request: Request,
        limit: int = Query(default=100, ge=1, le=500),
        action: str | None = None,
        status: str | None = None,
    ) -> list[AuditEvent]:
        await require_scope(request, action="audit_events_list", scope="audit:read")
        return await run_in_threadpool(
            request.app.state.repository.list_audit_events,
            limit=limit,
            action=action,
            status=status,
        )

    return app


app = create_app()
