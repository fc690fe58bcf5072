import json
import os
import time
from datetime import datetime
from typing import Any, Optional

import aiosqlite

from .logging_config import get_logger
from .mmr import DEFAULT_DELTA, apply_result
from .models import Duel, RatingRecord

log = get_logger(__name__)

# Global variable for database path (will be set by init_db)
DB_PATH = "osu_duel.sqlite"

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS duel_queue (
        position INTEGER PRIMARY KEY AUTOINCREMENT,
        user_id INTEGER NOT NULL UNIQUE,
        queued_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS duels (
        id INTEGER PRIMARY KEY,
        channel_id INTEGER NOT NULL UNIQUE,
        phase TEXT NOT NULL,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS duel_meta (
        key TEXT PRIMARY KEY,
        value INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS duel_ratings (
        user_id INTEGER PRIMARY KEY,
        rating INTEGER NOT NULL DEFAULT 0,
        wins INTEGER NOT NULL DEFAULT 0,
        losses INTEGER NOT NULL DEFAULT 0,
        games INTEGER NOT NULL DEFAULT 0,
        winstreak INTEGER NOT NULL DEFAULT 0,
        losestreak INTEGER NOT NULL DEFAULT 0,
        updated_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS osu_links (
        user_id INTEGER PRIMARY KEY,
        osu_user_id INTEGER,
        osu_username TEXT,
        access_token TEXT,
        refresh_token TEXT,
        expires_at REAL,
        linked_at TEXT DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ','now'))
    )
    """,
)


async def _create_tables(db_path: str) -> None:
    async with aiosqlite.connect(db_path) as db:
        for stmt in _SCHEMA:
            await db.execute(stmt)
        await db.commit()


async def init_db(db_path: str = "osu_duel.sqlite"):
    """Initialize the database with required tables.

    A file sqlite cannot read is moved aside and replaced by an empty store.
    """
    global DB_PATH
    DB_PATH = db_path

    try:
        await _create_tables(DB_PATH)
    except aiosqlite.DatabaseError:
        if not os.path.exists(DB_PATH):
            raise
        aside = f"{DB_PATH}.corrupt-{int(time.time())}"
        log.warning("Database at %s is unreadable; moving it to %s and starting empty", DB_PATH, aside, exc_info=True)
        os.replace(DB_PATH, aside)
        await _create_tables(DB_PATH)
    log.debug("Initialized database at %s", DB_PATH)


# --- Queue ---

async def queue_list() -> list[int]:
    """Queued user IDs in pairing order."""
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute("SELECT user_id FROM duel_queue ORDER BY position") as cursor:
            rows = await cursor.fetchall()
    return [int(r[0]) for r in rows]


async def queue_add(user_id: int) -> bool:
    """Append a user to the queue. Returns False if they were already queued."""
    async with aiosqlite.connect(DB_PATH) as db:
        try:
            await db.execute("INSERT INTO duel_queue (user_id) VALUES (?)", (user_id,))
            await db.commit()
        except aiosqlite.IntegrityError:
            return False
    log.debug("Queued user=%s", user_id)
    return True


async def queue_remove(*user_ids: int) -> int:
    """Remove users from the queue, returning how many rows went away."""
    if not user_ids:
        return 0
    marks = ",".join("?" for _ in user_ids)
    async with aiosqlite.connect(DB_PATH) as db:
        cursor = await db.execute(f"DELETE FROM duel_queue WHERE user_id IN ({marks})", user_ids)
        await db.commit()
        removed = cursor.rowcount
    log.debug("Dequeued users=%s removed=%s", user_ids, removed)
    return removed


async def queue_push_front(*user_ids: int) -> None:
    """Put users back at the head of the queue, keeping the given order."""
    if not user_ids:
        return
    marks = ",".join("?" for _ in user_ids)
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(f"DELETE FROM duel_queue WHERE user_id IN ({marks})", user_ids)
        async with db.execute("SELECT COALESCE(MIN(position), 1) FROM duel_queue") as cursor:
            row = await cursor.fetchone()
        head = int(row[0])
        for offset, user_id in enumerate(reversed(user_ids), start=1):
            await db.execute(
                "INSERT INTO duel_queue (position, user_id) VALUES (?, ?)", (head - offset, user_id)
            )
        await db.commit()
    log.debug("Requeued users=%s at head", user_ids)


async def queue_size() -> int:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute("SELECT COUNT(*) FROM duel_queue") as cursor:
            row = await cursor.fetchone()
    return int(row[0]) if row else 0


# --- Duels ---

async def next_duel_id() -> int:
    """Allocate the next duel ID from the monotonic counter."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("BEGIN IMMEDIATE")
        await db.execute(
            """
            INSERT INTO duel_meta (key, value) VALUES ('counter', 1)
            ON CONFLICT(key) DO UPDATE SET value = value + 1
            """
        )
        async with db.execute("SELECT value FROM duel_meta WHERE key = 'counter'") as cursor:
            row = await cursor.fetchone()
        await db.commit()
    duel_id = int(row[0])
    log.debug("Allocated duel id=%s", duel_id)
    return duel_id


async def save_duel(duel: Duel) -> None:
    """Persist the whole duel document, replacing any previous version."""
    payload = json.dumps(duel.to_dict())
    now = datetime.utcnow().isoformat()
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """
            INSERT INTO duels (id, channel_id, phase, payload, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                channel_id = excluded.channel_id,
                phase = excluded.phase,
                payload = excluded.payload,
                updated_at = excluded.updated_at
            """,
            (duel.id, duel.channel_id, duel.phase.value, payload, now),
        )
        await db.commit()
    log.debug("Saved duel id=%s phase=%s score=%s", duel.id, duel.phase.value, duel.score_line)


async def reset_duels() -> None:
    """Drop every stored duel (used when the store turns out to be unreadable)."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("DELETE FROM duels")
        await db.commit()
    log.warning("Duel store reset to empty")


async def _load_duel(query: str, params: tuple) -> Optional[Duel]:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute(query, params) as cursor:
            row = await cursor.fetchone()
    if not row:
        return None
    try:
        return Duel.from_dict(json.loads(row[0]))
    except (ValueError, KeyError, TypeError):
        log.warning("Malformed duel document for %s", params, exc_info=True)
        await reset_duels()
        return None


async def get_duel(duel_id: int) -> Optional[Duel]:
    return await _load_duel("SELECT payload FROM duels WHERE id = ?", (duel_id,))


async def get_duel_by_channel(channel_id: int) -> Optional[Duel]:
    return await _load_duel("SELECT payload FROM duels WHERE channel_id = ?", (channel_id,))


async def delete_duel(duel_id: int) -> None:
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute("DELETE FROM duels WHERE id = ?", (duel_id,))
        await db.commit()
    log.debug("Deleted duel id=%s", duel_id)


async def active_duel_count() -> int:
    async with aiosqlite.connect(DB_PATH) as db:
        async with db.execute("SELECT COUNT(*) FROM duels WHERE phase != 'FINISHED'") as cursor:
            row = await cursor.fetchone()
    return int(row[0]) if row else 0


# --- Ratings ---

def _rating_from_row(row: Any) -> RatingRecord:
    return RatingRecord(
        user_id=int(row["user_id"]),
        rating=int(row["rating"]),
        wins=int(row["wins"]),
        losses=int(row["losses"]),
        games=int(row["games"]),
        winstreak=int(row["winstreak"]),
        losestreak=int(row["losestreak"]),
    )


async def _get_or_create_rating(db: aiosqlite.Connection, user_id: int) -> RatingRecord:
    await db.execute("INSERT OR IGNORE INTO duel_ratings (user_id) VALUES (?)", (user_id,))
    async with db.execute("SELECT * FROM duel_ratings WHERE user_id = ?", (user_id,)) as cursor:
        row = await cursor.fetchone()
    return _rating_from_row(row)


async def _write_rating(db: aiosqlite.Connection, r: RatingRecord) -> None:
    await db.execute(
        """
        UPDATE duel_ratings
        SET rating = ?, wins = ?, losses = ?, games = ?, winstreak = ?, losestreak = ?,
            updated_at = strftime('%Y-%m-%dT%H:%M:%fZ','now')
        WHERE user_id = ?
        """,
        (r.rating, r.wins, r.losses, r.games, r.winstreak, r.losestreak, r.user_id),
    )


async def get_rating(user_id: int) -> RatingRecord:
    """Get a player's DuelRank record, creating an all-zero one on first lookup."""
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        record = await _get_or_create_rating(db, user_id)
        await db.commit()
    log.debug("Fetched rating user=%s rating=%s", user_id, record.rating)
    return record


async def finish_duel(
    duel_id: int | None,
    winner_id: int,
    loser_id: int,
    delta: int = DEFAULT_DELTA,
) -> tuple[RatingRecord, RatingRecord]:
    """Apply a match result and drop the finished duel in one transaction.

    Both rating rows and the duel removal commit together or not at all.
    Pass ``duel_id=None`` to only update ratings.
    """
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        await db.execute("BEGIN IMMEDIATE")
        try:
            cur_w = await _get_or_create_rating(db, winner_id)
            cur_l = await _get_or_create_rating(db, loser_id)
            new_w, new_l = apply_result(cur_w, cur_l, delta)
            await _write_rating(db, new_w)
            await _write_rating(db, new_l)
            if duel_id is not None:
                await db.execute("DELETE FROM duels WHERE id = ?", (duel_id,))
            await db.commit()
        except Exception:
            await db.rollback()
            raise
    log.debug("Rated duel=%s winner=%s(%s) loser=%s(%s)", duel_id, winner_id, new_w.rating, loser_id, new_l.rating)
    return new_w, new_l


# --- osu! account links ---

async def save_link(
    user_id: int,
    osu_user_id: int | None,
    osu_username: str | None,
    access_token: str | None,
    refresh_token: str | None,
    expires_at: float | None,
) -> None:
    """Upsert a Discord user's osu! OAuth link."""
    async with aiosqlite.connect(DB_PATH) as db:
        await db.execute(
            """
            INSERT INTO osu_links (user_id, osu_user_id, osu_username, access_token, refresh_token, expires_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(user_id) DO UPDATE SET
                osu_user_id = COALESCE(excluded.osu_user_id, osu_links.osu_user_id),
                osu_username = COALESCE(excluded.osu_username, osu_links.osu_username),
                access_token = excluded.access_token,
                refresh_token = COALESCE(excluded.refresh_token, osu_links.refresh_token),
                expires_at = excluded.expires_at
            """,
            (user_id, osu_user_id, osu_username, access_token, refresh_token, expires_at),
        )
        await db.commit()
    log.debug("Saved osu link user=%s osu=%s", user_id, osu_username)


async def get_link(user_id: int) -> dict | None:
    async with aiosqlite.connect(DB_PATH) as db:
        db.row_factory = aiosqlite.Row
        async with db.execute("SELECT * FROM osu_links WHERE user_id = ?", (user_id,)) as cursor:
            row = await cursor.fetchone()
            return dict(row) if row else None


async def is_linked(user_id: int) -> bool:
    return (await get_link(user_id)) is not None
