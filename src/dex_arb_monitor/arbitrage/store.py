"""
Persistent store for detected opportunities.

Records live in a local SQLite file, one row per opportunity, in the table
layout external readers rely on:

    arbitrage_bot(id, buy_dex, sell_dex, profit_usdc, timestamp)

profit_usdc is written as exact decimal text and timestamp as an ISO-8601
UTC string. The store is append-only.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Iterator, List, Tuple, Union

from .arbitrage_detector import Opportunity
from .errors import StoreFailure, WriteFailure

logger = logging.getLogger(__name__)

TABLE_NAME = "arbitrage_bot"
COLUMNS: Tuple[str, ...] = ("id", "buy_dex", "sell_dex", "profit_usdc", "timestamp")

CREATE_TABLE_SQL = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    buy_dex TEXT,
    sell_dex TEXT,
    profit_usdc TEXT,
    timestamp TEXT
)
"""

INSERT_SQL = f"INSERT INTO {TABLE_NAME} (buy_dex, sell_dex, profit_usdc, timestamp) VALUES (?, ?, ?, ?)"

SELECT_ALL_SQL = f"SELECT {', '.join(COLUMNS)} FROM {TABLE_NAME} ORDER BY id ASC"


def format_timestamp(ts: datetime) -> str:
    """ISO-8601 in UTC. Naive datetimes are taken to be UTC already."""
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts.astimezone(timezone.utc).isoformat()


def parse_timestamp(raw: str) -> datetime:
    return datetime.fromisoformat(raw)


def _profit_from_column(raw: Any) -> Decimal:
    # Rows written by older tools may hold REAL values
    try:
        return Decimal(str(raw))
    except (InvalidOperation, ValueError) as exc:
        raise StoreFailure(f"Unreadable profit_usdc value: {raw!r}") from exc


def _has_numeric_affinity(declared_type: str) -> bool:
    # SQLite type affinity rules, section 3.1 of the datatype docs
    if any(t in declared_type for t in ("INT", "CHAR", "CLOB", "TEXT", "BLOB")):
        return False
    return declared_type != ""


def _row_to_opportunity(row: Tuple[Any, ...]) -> Opportunity:
    rec_id, buy_dex, sell_dex, profit, ts = row
    return Opportunity(
        buy_venue=str(buy_dex),
        sell_venue=str(sell_dex),
        net_profit=_profit_from_column(profit),
        timestamp=parse_timestamp(str(ts)),
        id=int(rec_id),
    )


class OpportunityStore:
    """
    SQLite-backed append-only store.

    A connection is opened per operation so a temporarily unavailable file
    only fails that operation. Writes are serialized by an internal lock and
    each append is a single transaction.
    """

    def __init__(self, db_path: Union[str, Path] = "arbitrage.db") -> None:
        self.db_path = Path(db_path)
        self._write_lock = threading.Lock()
        self._legacy_profit_column = False

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path)
        try:
            conn.execute(CREATE_TABLE_SQL)
            self._check_schema(conn)
        except BaseException:
            conn.close()
            raise
        return conn

    def _check_schema(self, conn: sqlite3.Connection) -> None:
        info = conn.execute(f"PRAGMA table_info({TABLE_NAME})").fetchall()
        cols = tuple(r[1] for r in info)
        if cols != COLUMNS:
            raise WriteFailure(
                f"Schema mismatch for {TABLE_NAME} in {self.db_path}: "
                f"expected {list(COLUMNS)}, found {list(cols)}"
            )

        declared = {r[1]: str(r[2]).upper() for r in info}
        if _has_numeric_affinity(declared["profit_usdc"]) and not self._legacy_profit_column:
            # SQLite converts decimal text to REAL in such a column
            self._legacy_profit_column = True
            logger.warning(
                "Table %s in %s declares profit_usdc as %s; stored profits will lose exact decimal precision",
                TABLE_NAME,
                self.db_path,
                declared["profit_usdc"],
            )

    def initialize(self) -> None:
        """
        Create the table if needed and verify its layout.
        """
        try:
            conn = self._connect()
        except (sqlite3.Error, OSError) as exc:
            raise WriteFailure(f"Cannot open store {self.db_path}: {exc}") from exc
        conn.close()
        logger.info("Opportunity store ready path=%s", self.db_path)

    def append(self, opportunity: Opportunity) -> Opportunity:
        """
        Persist one opportunity and return it with the assigned id.

        Raises:
            WriteFailure: storage unavailable, disk full, or schema mismatch
        """
        row = (
            opportunity.buy_venue,
            opportunity.sell_venue,
            str(opportunity.net_profit),
            format_timestamp(opportunity.timestamp),
        )

        with self._write_lock:
            try:
                conn = self._connect()
            except (sqlite3.Error, OSError) as exc:
                raise WriteFailure(f"Cannot open store {self.db_path}: {exc}") from exc

            try:
                with conn:
                    cur = conn.execute(INSERT_SQL, row)
                    rec_id = cur.lastrowid
            except sqlite3.Error as exc:
                raise WriteFailure(f"Insert failed for {self.db_path}: {exc}") from exc
            finally:
                conn.close()

        logger.debug("stored id=%s row=%s", rec_id, row)
        return Opportunity(
            buy_venue=opportunity.buy_venue,
            sell_venue=opportunity.sell_venue,
            net_profit=opportunity.net_profit,
            timestamp=opportunity.timestamp,
            id=rec_id,
        )

    def list_all(self) -> Iterator[Opportunity]:
        """
        Lazily iterate every stored opportunity in insertion order.
        Each call starts a new iteration from the first record.
        """
        if not self.db_path.exists():
            return

        try:
            conn = sqlite3.connect(self.db_path)
        except sqlite3.Error as exc:
            raise StoreFailure(f"Cannot open store {self.db_path}: {exc}") from exc

        try:
            try:
                cursor = conn.execute(SELECT_ALL_SQL)
            except sqlite3.Error as exc:
                raise StoreFailure(f"Cannot read store {self.db_path}: {exc}") from exc
            for row in cursor:
                yield _row_to_opportunity(row)
        finally:
            conn.close()

    def list_recent(self, limit: int = 20) -> List[Opportunity]:
        """Newest first."""
        if limit <= 0 or not self.db_path.exists():
            return []
        query = f"SELECT {', '.join(COLUMNS)} FROM {TABLE_NAME} ORDER BY id DESC LIMIT ?"
        try:
            conn = sqlite3.connect(self.db_path)
            try:
                rows = conn.execute(query, (int(limit),)).fetchall()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise StoreFailure(f"Cannot read store {self.db_path}: {exc}") from exc
        return [_row_to_opportunity(r) for r in rows]

    def count(self) -> int:
        if not self.db_path.exists():
            return 0
        try:
            conn = sqlite3.connect(self.db_path)
            try:
                (n,) = conn.execute(f"SELECT COUNT(*) FROM {TABLE_NAME}").fetchone()
            finally:
                conn.close()
        except sqlite3.Error as exc:
            raise StoreFailure(f"Cannot read store {self.db_path}: {exc}") from exc
        return int(n)
