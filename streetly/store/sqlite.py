"""
SQLite store — durable profiles, locations and matches.

Behavioral Contract:
- One row per user; the profile blob is stored as opaque JSON text and
  normalized on read
- One row per unordered pair in `matches`, enforced by a UNIQUE constraint
  over the canonically ordered user ids. A second insert for the same pair
  surfaces as DuplicateKeyError, never as a generic failure
- Nearby queries filter on the bounding box and the activity window in SQL
- Match rows are never updated or deleted
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from streetly.errors import DuplicateKeyError, StoreFailure
from streetly.models.geo import BoundingBox, Coordinate
from streetly.models.match import MatchRecord, pair_key
from streetly.models.profile import CandidateUser, UserProfile
from streetly.store.profiles import normalize_profile, profile_blob

logger = logging.getLogger(__name__)


def _ts(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class SQLiteStore:
    """
    Profile and match store.
    Prototype: SQLite. Production: a hosted database exposing the same contract.
    """

    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        self._conn = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the users and matches tables if they don't exist."""
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS users (
                user_id TEXT PRIMARY KEY,
                name TEXT,
                age INTEGER,
                profile_json TEXT,
                latitude REAL,
                longitude REAL,
                accuracy_meters REAL,
                last_seen_at TEXT
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_users_lat_lon ON users(latitude, longitude)
        """)
        self._conn.execute("""
            CREATE TABLE IF NOT EXISTS matches (
                id TEXT PRIMARY KEY,
                user_id_a TEXT NOT NULL,
                user_id_b TEXT NOT NULL,
                compatibility_score REAL NOT NULL,
                reasoning TEXT NOT NULL,
                latitude REAL,
                longitude REAL,
                matched_at TEXT NOT NULL,
                UNIQUE (user_id_a, user_id_b)
            )
        """)
        self._conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_matches_user_b ON matches(user_id_b)
        """)
        self._conn.commit()

    def _execute(self, sql: str, params: tuple = ()) -> sqlite3.Cursor:
        try:
            return self._conn.execute(sql, params)
        except sqlite3.Error as e:
            raise StoreFailure(f"SQLite error: {e}") from e

    # --- Profiles ---

    def put_user(
        self,
        user_id: str,
        name: str,
        blob: Any = None,
        age: Optional[int] = None,
    ) -> None:
        """Upsert a raw user row; dict blobs are serialized, strings stored as-is."""
        stored = json.dumps(blob) if isinstance(blob, (dict, list)) else blob
        self._execute(
            """
            INSERT INTO users (user_id, name, age, profile_json)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                name=excluded.name,
                age=excluded.age,
                profile_json=excluded.profile_json
            """,
            (user_id, name, age, stored),
        )
        self._conn.commit()

    def _row_to_profile(self, row: sqlite3.Row) -> UserProfile:
        return normalize_profile(row["user_id"], row["name"], row["profile_json"], row["age"])

    async def get_profile(self, user_id: str) -> Optional[UserProfile]:
        row = self._execute(
            "SELECT user_id, name, age, profile_json FROM users WHERE user_id = ?",
            (user_id,),
        ).fetchone()
        return self._row_to_profile(row) if row else None

    async def save_profile(self, profile: UserProfile) -> None:
        self.put_user(profile.user_id, profile.name, profile_blob(profile), profile.age)

    async def update_location(
        self, user_id: str, location: Coordinate, seen_at: datetime
    ) -> None:
        self._execute(
            """
            INSERT INTO users (user_id, latitude, longitude, accuracy_meters, last_seen_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                latitude=excluded.latitude,
                longitude=excluded.longitude,
                accuracy_meters=excluded.accuracy_meters,
                last_seen_at=excluded.last_seen_at
            """,
            (
                user_id,
                location.latitude,
                location.longitude,
                location.accuracy_meters,
                _ts(seen_at),
            ),
        )
        self._conn.commit()

    async def query_nearby(
        self,
        box: BoundingBox,
        seen_after: datetime,
        exclude_user_id: str,
    ) -> List[CandidateUser]:
        rows = self._execute(
            """
            SELECT * FROM users
            WHERE user_id != ?
              AND latitude BETWEEN ? AND ?
              AND longitude BETWEEN ? AND ?
              AND last_seen_at >= ?
            ORDER BY last_seen_at DESC
            """,
            (
                exclude_user_id,
                box.min_latitude,
                box.max_latitude,
                box.min_longitude,
                box.max_longitude,
                _ts(seen_after),
            ),
        ).fetchall()
        return [
            CandidateUser(
                user_id=row["user_id"],
                profile=self._row_to_profile(row),
                last_known_location=Coordinate(
                    latitude=row["latitude"],
                    longitude=row["longitude"],
                    accuracy_meters=row["accuracy_meters"],
                ),
                last_seen_at=datetime.fromisoformat(row["last_seen_at"]),
            )
            for row in rows
        ]

    # --- Matches ---

    def _deserialize_match(self, row: sqlite3.Row) -> MatchRecord:
        location = None
        if row["latitude"] is not None and row["longitude"] is not None:
            location = Coordinate(latitude=row["latitude"], longitude=row["longitude"])
        return MatchRecord(
            match_id=row["id"],
            user_id_a=row["user_id_a"],
            user_id_b=row["user_id_b"],
            compatibility_score=row["compatibility_score"],
            reasoning=row["reasoning"],
            location=location,
            created_at=datetime.fromisoformat(row["matched_at"]),
        )

    async def find_pair(self, user_id_a: str, user_id_b: str) -> Optional[MatchRecord]:
        low, high = pair_key(user_id_a, user_id_b)
        row = self._execute(
            "SELECT * FROM matches WHERE user_id_a = ? AND user_id_b = ?",
            (low, high),
        ).fetchone()
        return self._deserialize_match(row) if row else None

    async def create_match(
        self,
        user_id_a: str,
        user_id_b: str,
        compatibility_score: float,
        reasoning: str,
        location: Optional[Coordinate] = None,
    ) -> MatchRecord:
        low, high = pair_key(user_id_a, user_id_b)
        record = MatchRecord(
            match_id=f"match_{uuid4().hex[:12]}",
            user_id_a=low,
            user_id_b=high,
            compatibility_score=compatibility_score,
            reasoning=reasoning,
            location=location,
            created_at=datetime.utcnow(),
        )
        try:
            self._conn.execute(
                """
                INSERT INTO matches (
                    id, user_id_a, user_id_b, compatibility_score, reasoning,
                    latitude, longitude, matched_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.match_id,
                    low,
                    high,
                    record.compatibility_score,
                    record.reasoning,
                    location.latitude if location else None,
                    location.longitude if location else None,
                    _ts(record.created_at),
                ),
            )
            self._conn.commit()
        except sqlite3.IntegrityError as e:
            self._conn.rollback()
            raise DuplicateKeyError(low, high) from e
        except sqlite3.Error as e:
            self._conn.rollback()
            raise StoreFailure(f"SQLite error: {e}") from e
        return record

    async def list_matches_for_user(
        self, user_id: str, since: Optional[datetime] = None
    ) -> List[MatchRecord]:
        if since:
            rows = self._execute(
                "SELECT * FROM matches WHERE (user_id_a = ? OR user_id_b = ?) "
                "AND matched_at >= ? ORDER BY matched_at DESC",
                (user_id, user_id, _ts(since)),
            ).fetchall()
        else:
            rows = self._execute(
                "SELECT * FROM matches WHERE user_id_a = ? OR user_id_b = ? "
                "ORDER BY matched_at DESC",
                (user_id, user_id),
            ).fetchall()
        return [self._deserialize_match(r) for r in rows]

    def count_matches(self) -> int:
        row = self._execute("SELECT COUNT(*) as cnt FROM matches").fetchone()
        return row["cnt"]

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
