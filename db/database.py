"""
Async SQLite audit store for the trade/ad signal bot.
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import aiosqlite
from loguru import logger

# Singleton instance
_database_instance: Optional["Database"] = None
_lock = asyncio.Lock()


def utc_stamp(dt: Optional[datetime] = None) -> str:
    """Timestamp in SQLite's datetime('now') format so string comparisons order correctly."""
    dt = dt or datetime.now(timezone.utc)
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime("%Y-%m-%d %H:%M:%S")


def _json(value: Any) -> Optional[str]:
    if value is None or isinstance(value, str):
        return value
    return json.dumps(value, default=str)


def reliability_multiplier(correct: int, resolved: int) -> float:
    """Sizing multiplier from resolved accuracy: 0.5 at 0%, 1.0 at 50%, 1.5 at 100%."""
    if resolved <= 0:
        return 1.0
    return round(0.5 + correct / resolved, 2)


class Database:
    """Async SQLite connection manager and audit-row helpers."""

    def __init__(self, db_path: str = "trade_bot.db"):
        self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None
        self._initialized = False

    async def connect(self) -> None:
        """Connect to the database and run migrations."""
        if self._connection is not None:
            return

        logger.info(f"Connecting to SQLite database: {self.db_path}")

        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        self._connection = await aiosqlite.connect(str(self.db_path))
        self._connection.row_factory = aiosqlite.Row

        await self._connection.execute("PRAGMA foreign_keys = ON")

        await self._run_migrations()

        self._initialized = True
        logger.info("Database connection established and schema initialized")

    async def _run_migrations(self) -> None:
        """Create tables from schema.sql."""
        schema_path = Path(__file__).parent / "schema.sql"

        if not schema_path.exists():
            logger.warning(f"Schema file not found: {schema_path}")
            return

        with open(schema_path, "r") as f:
            lines = [line for line in f.read().splitlines() if not line.strip().startswith("--")]

        statements = [s.strip() for s in "\n".join(lines).split(";") if s.strip()]

        for statement in statements:
            try:
                await self._connection.execute(statement)
            except Exception as e:
                if "already exists" not in str(e).lower():
                    logger.debug(f"Migration statement note: {e}")

        await self._connection.commit()
        logger.debug(f"Schema applied ({len(statements)} statements)")

    async def close(self) -> None:
        """Close the database connection."""
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
            self._initialized = False
            logger.info("Database connection closed")

    async def execute(self, query: str, params: Tuple = ()) -> aiosqlite.Cursor:
        """Execute a query and return cursor."""
        if not self._connection:
            await self.connect()
        return await self._connection.execute(query, params)

    async def executemany(self, query: str, params_list: List[Tuple]) -> aiosqlite.Cursor:
        """Execute a query with multiple parameter sets."""
        if not self._connection:
            await self.connect()
        return await self._connection.executemany(query, params_list)

    async def commit(self) -> None:
        if self._connection:
            await self._connection.commit()

    async def fetchone(self, query: str, params: Tuple = ()) -> Optional[Dict[str, Any]]:
        """Execute query and fetch one row as dict."""
        cursor = await self.execute(query, params)
        row = await cursor.fetchone()
        return dict(row) if row else None

    async def fetchall(self, query: str, params: Tuple = ()) -> List[Dict[str, Any]]:
        """Execute query and fetch all rows as list of dicts."""
        cursor = await self.execute(query, params)
        rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def _insert(self, table: str, row: Dict[str, Any]) -> int:
        columns = list(row.keys())
        placeholders = ", ".join(["?" for _ in columns])
        column_names = ", ".join(columns)

        query = f"INSERT INTO {table} ({column_names}) VALUES ({placeholders})"
        cursor = await self.execute(query, tuple(row.values()))
        await self.commit()
        return cursor.lastrowid

    async def _upsert(self, table: str, row: Dict[str, Any], conflict: str) -> None:
        columns = list(row.keys())
        keys = {c.strip() for c in conflict.split(",")}
        placeholders = ", ".join(["?" for _ in columns])
        column_names = ", ".join(columns)
        updates = ", ".join([f"{col} = excluded.{col}" for col in columns if col not in keys])

        query = f"""
            INSERT INTO {table} ({column_names}) VALUES ({placeholders})
            ON CONFLICT({conflict}) DO UPDATE SET {updates}
        """
        await self.execute(query, tuple(row.values()))
        await self.commit()

    # =========================================================================
    # Audit rows
    # =========================================================================
    async def record_trade(self, trade: Dict[str, Any]) -> int:
        """Insert a placed order."""
        row = dict(trade)
        row["meta"] = _json(row.get("meta"))
        row.setdefault("created_at", utc_stamp())
        return await self._insert("trades", row)

    async def record_signal(self, signal: Dict[str, Any]) -> int:
        """Insert a text, price or orderbook signal."""
        row = dict(signal)
        row["meta"] = _json(row.get("meta"))
        row.setdefault("created_at", utc_stamp())
        return await self._insert("signals", row)

    async def record_event(
        self,
        market_ticker: str,
        event_type: str,
        description: str,
        player_name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        return await self._insert("market_events", {
            "market_ticker": market_ticker,
            "player_name": player_name,
            "event_type": event_type,
            "description": description,
            "metadata": _json(metadata),
            "created_at": utc_stamp(),
        })

    async def insert_llm_analysis(self, analysis: Dict[str, Any]) -> int:
        row = dict(analysis)
        row["players"] = _json(row.get("players"))
        row.setdefault("created_at", utc_stamp())
        return await self._insert("llm_analyses", row)

    async def insert_price_history(self, rows: List[Dict[str, Any]]) -> int:
        """Batch insert price samples."""
        if not rows:
            return 0
        stamp = utc_stamp()
        params_list = [
            (
                r["market_ticker"], r.get("player_name"), r.get("price_cents"),
                r.get("volume"), r.get("open_interest"), stamp,
            )
            for r in rows
        ]
        await self.executemany(
            """
            INSERT INTO price_history (market_ticker, player_name, price_cents, volume, open_interest, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            params_list,
        )
        await self.commit()
        return len(rows)

    # =========================================================================
    # Processed text events
    # =========================================================================
    async def is_tweet_processed(self, tweet_id: str) -> bool:
        row = await self.fetchone("SELECT 1 AS hit FROM tweets WHERE tweet_id = ?", (tweet_id,))
        return row is not None

    async def upsert_tweet(self, tweet: Dict[str, Any]) -> None:
        row = dict(tweet)
        row["players_mentioned"] = _json(row.get("players_mentioned"))
        row.setdefault("processed_at", utc_stamp())
        await self._upsert("tweets", row, "tweet_id")

    # =========================================================================
    # Source reliability
    # =========================================================================
    async def track_prediction(self, prediction: Dict[str, Any]) -> None:
        """Upsert a prediction keyed by (tweet_id, player_name)."""
        row = dict(prediction)
        row.setdefault("outcome", "pending")
        row.setdefault("created_at", utc_stamp())
        await self._upsert("source_predictions", row, "tweet_id, player_name")

    async def get_source_reliability(self, source_username: str) -> Optional[Dict[str, Any]]:
        return await self.fetchone(
            "SELECT * FROM source_reliability WHERE source_username = ?", (source_username,)
        )

    async def get_all_source_reliability(self) -> List[Dict[str, Any]]:
        return await self.fetchall(
            "SELECT * FROM source_reliability ORDER BY total_resolved DESC"
        )

    async def get_pending_predictions(self, player_name: str) -> List[Dict[str, Any]]:
        return await self.fetchall(
            """
            SELECT * FROM source_predictions
            WHERE LOWER(player_name) = LOWER(?) AND outcome = 'pending'
            ORDER BY id
            """,
            (player_name,),
        )

    async def set_prediction_outcome(self, prediction_id: int, outcome: str) -> None:
        await self.execute(
            "UPDATE source_predictions SET outcome = ? WHERE id = ?", (outcome, prediction_id)
        )
        await self.commit()

    async def update_source_reliability(self, source_username: str) -> Optional[Dict[str, Any]]:
        """Re-aggregate one source's predictions into its reliability row and return it."""
        counts = await self.fetchone(
            """
            SELECT COUNT(*) AS total,
                   COUNT(CASE WHEN outcome = 'correct' THEN 1 END) AS correct,
                   COUNT(CASE WHEN outcome = 'incorrect' THEN 1 END) AS incorrect
            FROM source_predictions
            WHERE source_username = ?
            """,
            (source_username,),
        )
        resolved = counts["correct"] + counts["incorrect"]
        await self._upsert("source_reliability", {
            "source_username": source_username,
            "total_predictions": counts["total"],
            "total_resolved": resolved,
            "correct_predictions": counts["correct"],
            "incorrect_predictions": counts["incorrect"],
            "reliability_multiplier": reliability_multiplier(counts["correct"], resolved),
            "updated_at": utc_stamp(),
        }, "source_username")
        return await self.get_source_reliability(source_username)

    async def get_tier_outcomes(self) -> List[Dict[str, Any]]:
        return await self.fetchall(
            """
            SELECT confidence_tier,
                   COUNT(*) AS total,
                   COUNT(CASE WHEN outcome = 'correct' THEN 1 END) AS correct,
                   COUNT(CASE WHEN outcome = 'incorrect' THEN 1 END) AS incorrect,
                   COUNT(CASE WHEN outcome = 'pending' THEN 1 END) AS pending
            FROM source_predictions
            GROUP BY confidence_tier
            """
        )

    async def has_recent_signal(self, entity_name: str, since: datetime) -> bool:
        """True if the classifier produced a prediction on this entity since the cutoff."""
        row = await self.fetchone(
            """
            SELECT 1 AS hit FROM source_predictions
            WHERE LOWER(player_name) = LOWER(?) AND created_at >= ?
            LIMIT 1
            """,
            (entity_name, utc_stamp(since)),
        )
        return row is not None

    # =========================================================================
    # Trades views
    # =========================================================================
    async def count_trades_since(self, since: datetime) -> int:
        row = await self.fetchone(
            "SELECT COUNT(*) AS count FROM trades WHERE created_at >= ?", (utc_stamp(since),)
        )
        return row["count"] if row else 0

    async def get_avg_buy_price(self, market_ticker: str, side: str) -> Optional[float]:
        row = await self.fetchone(
            """
            SELECT SUM(price_cents * contract_count) AS cost, SUM(contract_count) AS qty
            FROM trades
            WHERE market_ticker = ? AND side = ? AND action = 'buy'
            """,
            (market_ticker, side),
        )
        if not row or not row["qty"]:
            return None
        return row["cost"] / row["qty"]

    # =========================================================================
    # Settings, status and key/value state
    # =========================================================================
    async def get_bot_settings(self) -> Optional[Dict[str, Any]]:
        return await self.fetchone("SELECT version, settings_json FROM bot_settings WHERE id = 1")

    async def save_bot_settings(self, version: int, settings_json: str) -> None:
        await self._upsert("bot_settings", {
            "id": 1,
            "version": version,
            "settings_json": settings_json,
            "updated_at": utc_stamp(),
        }, "id")

    async def upsert_bot_status(self, bot_name: str, status: str, meta: Dict[str, Any]) -> None:
        await self._upsert("bot_status", {
            "bot_name": bot_name,
            "status": status,
            "last_poll_at": utc_stamp(),
            "meta": _json(meta),
        }, "bot_name")

    async def get_state(self, key: str) -> Optional[str]:
        row = await self.fetchone("SELECT value FROM bot_state WHERE key = ?", (key,))
        return row["value"] if row else None

    async def set_state(self, key: str, value: str) -> None:
        await self._upsert("bot_state", {"key": key, "value": value, "updated_at": utc_stamp()}, "key")

    async def get_statistics(self) -> Dict[str, Any]:
        """Row counts for operator display."""
        stats = {}
        for table in ("trades", "signals", "tweets", "market_events", "source_predictions"):
            row = await self.fetchone(f"SELECT COUNT(*) AS count FROM {table}")
            stats[table] = row["count"] if row else 0
        since = datetime.now(timezone.utc) - timedelta(days=1)
        stats["trades_24h"] = await self.count_trades_since(since)
        return stats


async def get_database(db_path: str = "trade_bot.db") -> Database:
    """Get or create the singleton database instance."""
    global _database_instance

    async with _lock:
        if _database_instance is None:
            _database_instance = Database(db_path)
            await _database_instance.connect()
        return _database_instance


async def close_database() -> None:
    """Close the singleton database instance."""
    global _database_instance

    async with _lock:
        if _database_instance is not None:
            await _database_instance.close()
            _database_instance = None
