"""
Key-value store on SQLite
Redis-style strings, hashes, sets and lists with per-key expiry, shared by every loop
of the worker and by any other process that opens the same database file
"""

import asyncio
import math
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Callable, Dict, List, Mapping, Optional, Set, Tuple

import aiosqlite

from copytrader.core.logger import get_logger


logger = get_logger(__name__)


KIND_STRING = "string"
KIND_HASH = "hash"
KIND_SET = "set"
KIND_LIST = "list"

_DATA_TABLES = ("strings", "hashes", "sets", "lists")


class WrongTypeError(TypeError):
    """Operation against a key holding a different kind of value"""


class KeyValueStore:
    """
    Persistent store with list/set/hash semantics and key expiry

    Schema:
    - keys: one row per live key (kind, optional expires_at epoch seconds)
    - strings / hashes / sets / lists: the values, keyed by key
    - lists keep order through a signed seq column (lpush goes below the minimum)

    Expired keys are dropped lazily when touched. Every operation runs in its own
    BEGIN IMMEDIATE transaction, so a set removal doubles as an atomic claim between
    processes sharing the file.

    Usage:
        store = KeyValueStore("data/copytrader.db")
        await store.connect()
        await store.sadd_with_expire("upvotes:MINT:buyers", wallet, 600)
        signal = await store.blpop("copy_signals", timeout=2)
    """

    def __init__(
        self,
        db_path: str = "data/copytrader.db",
        clock: Callable[[], float] = time.time,
        poll_interval_s: float = 0.1
    ):
        """
        Args:
            db_path: SQLite file path (":memory:" for a private in-memory store)
            clock: Epoch-seconds clock used for expiry
            poll_interval_s: Sleep between attempts in blpop
        """
        self.db_path = db_path
        self._clock = clock
        self.poll_interval_s = poll_interval_s
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def connect(self) -> None:
        """Open the database and create tables"""
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(self.db_path, isolation_level=None)
        await self._create_tables()
        logger.info("kv_store_connected", db_path=self.db_path)

    async def close(self) -> None:
        """Close database connection"""
        if self._connection:
            await self._connection.close()
            self._connection = None
            logger.info("kv_store_closed")

    async def _create_tables(self) -> None:
        db = self._connection
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA synchronous=NORMAL")
        await db.execute("PRAGMA busy_timeout=5000")

        await db.execute("""
            CREATE TABLE IF NOT EXISTS keys (
                key TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                expires_at REAL
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS strings (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS hashes (
                key TEXT NOT NULL,
                field TEXT NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (key, field)
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS sets (
                key TEXT NOT NULL,
                member TEXT NOT NULL,
                PRIMARY KEY (key, member)
            )
        """)
        await db.execute("""
            CREATE TABLE IF NOT EXISTS lists (
                key TEXT NOT NULL,
                seq INTEGER NOT NULL,
                value TEXT NOT NULL,
                PRIMARY KEY (key, seq)
            )
        """)
        await db.execute("CREATE INDEX IF NOT EXISTS idx_keys_expiry ON keys(expires_at)")

    @asynccontextmanager
    async def _transaction(self):
        if self._connection is None:
            raise RuntimeError("Store not connected. Call connect() first.")

        async with self._lock:
            await self._connection.execute("BEGIN IMMEDIATE")
            try:
                yield self._connection
            except BaseException:
                await self._connection.execute("ROLLBACK")
                raise
            else:
                await self._connection.execute("COMMIT")

    # ------------------------------------------------------------------
    # key bookkeeping
    # ------------------------------------------------------------------

    async def _live_kind(self, db: aiosqlite.Connection, key: str) -> Optional[str]:
        """Kind of a live key, dropping it first if it has expired"""
        cursor = await db.execute("SELECT kind, expires_at FROM keys WHERE key = ?", (key,))
        row = await cursor.fetchone()
        if row is None:
            return None

        kind, expires_at = row
        if expires_at is not None and expires_at <= self._clock():
            await self._drop(db, key)
            return None
        return kind

    async def _drop(self, db: aiosqlite.Connection, key: str) -> None:
        await db.execute("DELETE FROM keys WHERE key = ?", (key,))
        for table in _DATA_TABLES:
            await db.execute(f"DELETE FROM {table} WHERE key = ?", (key,))

    async def _ensure(self, db: aiosqlite.Connection, key: str, kind: str) -> None:
        current = await self._live_kind(db, key)
        if current is None:
            await db.execute(
                "INSERT INTO keys (key, kind, expires_at) VALUES (?, ?, NULL)", (key, kind)
            )
        elif current != kind:
            raise WrongTypeError(f"Key {key} holds a {current}, not a {kind}")

    async def _check(self, db: aiosqlite.Connection, key: str, kind: str) -> bool:
        """True if the key is live and of the expected kind"""
        current = await self._live_kind(db, key)
        if current is None:
            return False
        if current != kind:
            raise WrongTypeError(f"Key {key} holds a {current}, not a {kind}")
        return True

    async def _drop_if_empty(self, db: aiosqlite.Connection, key: str, table: str) -> None:
        cursor = await db.execute(f"SELECT 1 FROM {table} WHERE key = ? LIMIT 1", (key,))
        if await cursor.fetchone() is None:
            await db.execute("DELETE FROM keys WHERE key = ?", (key,))

    async def _set_expiry(self, db: aiosqlite.Connection, key: str, seconds: float) -> None:
        await db.execute(
            "UPDATE keys SET expires_at = ? WHERE key = ?", (self._clock() + seconds, key)
        )

    # ------------------------------------------------------------------
    # generic
    # ------------------------------------------------------------------

    async def exists(self, key: str) -> bool:
        async with self._transaction() as db:
            return await self._live_kind(db, key) is not None

    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed"""
        removed = 0
        async with self._transaction() as db:
            for key in keys:
                if await self._live_kind(db, key) is not None:
                    await self._drop(db, key)
                    removed += 1
        return removed

    async def expire(self, key: str, seconds: float) -> bool:
        """Set a time-to-live; False if the key does not exist"""
        async with self._transaction() as db:
            if await self._live_kind(db, key) is None:
                return False
            await self._set_expiry(db, key, seconds)
            return True

    async def persist(self, key: str) -> bool:
        async with self._transaction() as db:
            if await self._live_kind(db, key) is None:
                return False
            await db.execute("UPDATE keys SET expires_at = NULL WHERE key = ?", (key,))
            return True

    async def ttl(self, key: str) -> int:
        """Remaining seconds, -1 if the key never expires, -2 if missing"""
        async with self._transaction() as db:
            if await self._live_kind(db, key) is None:
                return -2
            cursor = await db.execute("SELECT expires_at FROM keys WHERE key = ?", (key,))
            (expires_at,) = await cursor.fetchone()
            if expires_at is None:
                return -1
            return max(0, math.ceil(expires_at - self._clock()))

    # ------------------------------------------------------------------
    # strings
    # ------------------------------------------------------------------

    async def set(self, key: str, value: str, ex: Optional[float] = None, nx: bool = False) -> bool:
        """
        Set a string value, replacing whatever the key held

        With nx=True the write only happens if the key does not exist.

        Returns:
            True if the value was written
        """
        async with self._transaction() as db:
            if nx and await self._live_kind(db, key) is not None:
                return False
            await self._drop(db, key)
            expires_at = self._clock() + ex if ex is not None else None
            await db.execute(
                "INSERT INTO keys (key, kind, expires_at) VALUES (?, ?, ?)",
                (key, KIND_STRING, expires_at)
            )
            await db.execute("INSERT INTO strings (key, value) VALUES (?, ?)", (key, str(value)))
            return True

    async def setex(self, key: str, seconds: float, value: str) -> None:
        await self.set(key, value, ex=seconds)

    async def get(self, key: str) -> Optional[str]:
        async with self._transaction() as db:
            if not await self._check(db, key, KIND_STRING):
                return None
            cursor = await db.execute("SELECT value FROM strings WHERE key = ?", (key,))
            row = await cursor.fetchone()
            return row[0] if row else None

    async def getdel(self, key: str) -> Optional[str]:
        """Read a string and delete it in one step"""
        async with self._transaction() as db:
            if not await self._check(db, key, KIND_STRING):
                return None
            cursor = await db.execute("SELECT value FROM strings WHERE key = ?", (key,))
            row = await cursor.fetchone()
            await self._drop(db, key)
            return row[0] if row else None

    # ------------------------------------------------------------------
    # hashes
    # ------------------------------------------------------------------

    async def hset(self, key: str, mapping: Mapping[str, object]) -> int:
        """Set hash fields, returning how many were new"""
        added = 0
        async with self._transaction() as db:
            await self._ensure(db, key, KIND_HASH)
            for field_name, value in mapping.items():
                cursor = await db.execute(
                    "SELECT 1 FROM hashes WHERE key = ? AND field = ?", (key, field_name)
                )
                if await cursor.fetchone() is None:
                    added += 1
                await db.execute(
                    "INSERT OR REPLACE INTO hashes (key, field, value) VALUES (?, ?, ?)",
                    (key, field_name, str(value))
                )
        return added

    async def hget(self, key: str, field_name: str) -> Optional[str]:
        async with self._transaction() as db:
            if not await self._check(db, key, KIND_HASH):
                return None
            cursor = await db.execute(
                "SELECT value FROM hashes WHERE key = ? AND field = ?", (key, field_name)
            )
            row = await cursor.fetchone()
            return row[0] if row else None

    async def hgetall(self, key: str) -> Dict[str, str]:
        async with self._transaction() as db:
            if not await self._check(db, key, KIND_HASH):
                return {}
            cursor = await db.execute("SELECT field, value FROM hashes WHERE key = ?", (key,))
            return {field_name: value for field_name, value in await cursor.fetchall()}

    # ------------------------------------------------------------------
    # sets
    # ------------------------------------------------------------------

    async def _sadd(self, db: aiosqlite.Connection, key: str, members: Tuple[str, ...]) -> int:
        await self._ensure(db, key, KIND_SET)
        added = 0
        for member in members:
            cursor = await db.execute(
                "INSERT OR IGNORE INTO sets (key, member) VALUES (?, ?)", (key, str(member))
            )
            added += cursor.rowcount
        return added

    async def sadd(self, key: str, *members: str) -> int:
        """Add members, returning how many were new"""
        async with self._transaction() as db:
            return await self._sadd(db, key, members)

    async def sadd_with_expire(self, key: str, member: str, seconds: float) -> int:
        """Add a member and (re)set the set's expiry in one transaction"""
        async with self._transaction() as db:
            added = await self._sadd(db, key, (member,))
            await self._set_expiry(db, key, seconds)
            return added

    async def srem(self, key: str, *members: str) -> int:
        """
        Remove members, returning how many were present

        Two callers racing to remove the same member see 1 and 0 respectively.
        """
        async with self._transaction() as db:
            if not await self._check(db, key, KIND_SET):
                return 0
            removed = 0
            for member in members:
                cursor = await db.execute(
                    "DELETE FROM sets WHERE key = ? AND member = ?", (key, str(member))
                )
                removed += cursor.rowcount
            await self._drop_if_empty(db, key, "sets")
            return removed

    async def smembers(self, key: str) -> Set[str]:
        async with self._transaction() as db:
            if not await self._check(db, key, KIND_SET):
                return set()
            cursor = await db.execute("SELECT member FROM sets WHERE key = ?", (key,))
            return {row[0] for row in await cursor.fetchall()}

    async def sismember(self, key: str, member: str) -> bool:
        async with self._transaction() as db:
            if not await self._check(db, key, KIND_SET):
                return False
            cursor = await db.execute(
                "SELECT 1 FROM sets WHERE key = ? AND member = ?", (key, str(member))
            )
            return await cursor.fetchone() is not None

    async def scard(self, key: str) -> int:
        async with self._transaction() as db:
            if not await self._check(db, key, KIND_SET):
                return 0
            cursor = await db.execute("SELECT COUNT(*) FROM sets WHERE key = ?", (key,))
            return (await cursor.fetchone())[0]

    # ------------------------------------------------------------------
    # lists
    # ------------------------------------------------------------------

    async def _push(self, key: str, values: Tuple[str, ...], left: bool) -> int:
        async with self._transaction() as db:
            await self._ensure(db, key, KIND_LIST)
            for value in values:
                if left:
                    sql = "SELECT COALESCE(MIN(seq), 1) - 1 FROM lists WHERE key = ?"
                else:
                    sql = "SELECT COALESCE(MAX(seq), -1) + 1 FROM lists WHERE key = ?"
                cursor = await db.execute(sql, (key,))
                (seq,) = await cursor.fetchone()
                await db.execute(
                    "INSERT INTO lists (key, seq, value) VALUES (?, ?, ?)", (key, seq, str(value))
                )
            cursor = await db.execute("SELECT COUNT(*) FROM lists WHERE key = ?", (key,))
            return (await cursor.fetchone())[0]

    async def lpush(self, key: str, *values: str) -> int:
        """Push to the head, returning the new length"""
        return await self._push(key, values, left=True)

    async def rpush(self, key: str, *values: str) -> int:
        """Push to the tail, returning the new length"""
        return await self._push(key, values, left=False)

    async def lpop(self, key: str) -> Optional[str]:
        async with self._transaction() as db:
            if not await self._check(db, key, KIND_LIST):
                return None
            cursor = await db.execute(
                "SELECT seq, value FROM lists WHERE key = ? ORDER BY seq ASC LIMIT 1", (key,)
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            await db.execute("DELETE FROM lists WHERE key = ? AND seq = ?", (key, row[0]))
            await self._drop_if_empty(db, key, "lists")
            return row[1]

    async def rpop(self, key: str) -> Optional[str]:
        async with self._transaction() as db:
            if not await self._check(db, key, KIND_LIST):
                return None
            cursor = await db.execute(
                "SELECT seq, value FROM lists WHERE key = ? ORDER BY seq DESC LIMIT 1", (key,)
            )
            row = await cursor.fetchone()
            if row is None:
                return None
            await db.execute("DELETE FROM lists WHERE key = ? AND seq = ?", (key, row[0]))
            await self._drop_if_empty(db, key, "lists")
            return row[1]

    async def blpop(self, key: str, timeout: float) -> Optional[str]:
        """
        Pop from the head, waiting up to ``timeout`` seconds for an element

        A timeout of 0 checks once and returns immediately.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, timeout)

        while True:
            value = await self.lpop(key)
            if value is not None:
                return value
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(self.poll_interval_s, remaining))

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        """Elements between start and stop inclusive; negative indexes count from the end"""
        async with self._transaction() as db:
            if not await self._check(db, key, KIND_LIST):
                return []
            cursor = await db.execute(
                "SELECT value FROM lists WHERE key = ? ORDER BY seq ASC", (key,)
            )
            values = [row[0] for row in await cursor.fetchall()]

        n = len(values)
        if start < 0:
            start = max(n + start, 0)
        if stop < 0:
            stop = n + stop
        return values[start:stop + 1]

    async def llen(self, key: str) -> int:
        async with self._transaction() as db:
            if not await self._check(db, key, KIND_LIST):
                return 0
            cursor = await db.execute("SELECT COUNT(*) FROM lists WHERE key = ?", (key,))
            return (await cursor.fetchone())[0]
