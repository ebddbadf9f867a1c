"""
Key-value item store with conditional writes and indexed queries.

Behavioral Contract:
- Items are JSON documents addressed by (table, key).
- put / update / delete take an optional condition evaluated against the
  current item inside the same transaction. A failed condition raises
  ConditionalCheckFailed and leaves the item untouched.
- Items whose `ttl_epoch` has passed are invisible to reads, queries and
  conditions, as if the backend had already expired them.
- Any backend failure surfaces as StoreUnavailable.

Prototype: SQLite. Production: DynamoDB (conditional expressions + GSIs).
"""

import copy
import json
import re
import sqlite3
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

Item = Dict[str, Any]
Condition = Callable[[Optional[Item]], bool]

_FIELD_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*(\.[A-Za-z_][A-Za-z0-9_]*)*$")


class ConditionalCheckFailed(Exception):
    """A write precondition did not hold."""


class StoreUnavailable(Exception):
    """The backend could not complete the operation."""


def attribute_not_exists(item: Optional[Item]) -> bool:
    return item is None


def attribute_exists(item: Optional[Item]) -> bool:
    return item is not None


def _json_path(field: str) -> str:
    if not _FIELD_PATTERN.match(field):
        raise ValueError(f"Invalid field name: {field!r}")
    return f"$.{field}"


def _get_path(item: Item, path: str) -> Any:
    value: Any = item
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def _set_path(item: Item, path: str, value: Any) -> None:
    parts = path.split(".")
    target = item
    for part in parts[:-1]:
        if not isinstance(target.get(part), dict):
            target[part] = {}
        target = target[part]
    target[parts[-1]] = value


def _remove_path(item: Item, path: str) -> None:
    parts = path.split(".")
    target = item
    for part in parts[:-1]:
        target = target.get(part)
        if not isinstance(target, dict):
            return
    target.pop(parts[-1], None)


class KeyValueStore:
    """
    Generic item store shared by the decision, snapshot, review, event and
    assurance stores. Each store owns a logical table.
    """

    def __init__(self, db_path: str = ":memory:", time_fn: Callable[[], float] = time.time):
        self.db_path = db_path
        self._time = time_fn
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(db_path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        """Create the items table if it doesn't exist."""
        with self._lock:
            self._conn.execute("""
                CREATE TABLE IF NOT EXISTS items (
                    tbl TEXT NOT NULL,
                    pk TEXT NOT NULL,
                    body TEXT NOT NULL,
                    ttl_epoch INTEGER,
                    PRIMARY KEY (tbl, pk)
                )
            """)
            self._conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_items_ttl ON items(ttl_epoch)
            """)

    def create_index(self, table: str, field: str) -> None:
        """Secondary index on a top-level or dotted JSON field."""
        path = _json_path(field)
        name = re.sub(r"\W", "_", f"idx_{table}_{field}")
        with self._lock:
            try:
                self._conn.execute(
                    f"CREATE INDEX IF NOT EXISTS {name} "
                    f"ON items(tbl, json_extract(body, '{path}'))"
                )
            except sqlite3.Error as exc:
                raise StoreUnavailable(str(exc)) from exc

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                self._conn.execute("BEGIN IMMEDIATE")
            except sqlite3.Error as exc:
                raise StoreUnavailable(str(exc)) from exc
            try:
                yield self._conn
            except sqlite3.Error as exc:
                self._conn.execute("ROLLBACK")
                raise StoreUnavailable(str(exc)) from exc
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            else:
                self._conn.execute("COMMIT")

    def _now_epoch(self) -> int:
        return int(self._time())

    def _live(self, row: Optional[sqlite3.Row]) -> Optional[Item]:
        if row is None:
            return None
        ttl_epoch = row["ttl_epoch"]
        if ttl_epoch is not None and ttl_epoch <= self._now_epoch():
            return None
        return json.loads(row["body"])

    def _fetch(self, conn: sqlite3.Connection, table: str, key: str) -> Optional[Item]:
        row = conn.execute(
            "SELECT body, ttl_epoch FROM items WHERE tbl = ? AND pk = ?",
            (table, key),
        ).fetchone()
        return self._live(row)

    def _write(self, conn: sqlite3.Connection, table: str, key: str, item: Item) -> None:
        ttl_epoch = item.get("ttl_epoch")
        conn.execute(
            "INSERT OR REPLACE INTO items (tbl, pk, body, ttl_epoch) VALUES (?, ?, ?, ?)",
            (table, key, json.dumps(item, default=str), int(ttl_epoch) if ttl_epoch is not None else None),
        )

    @staticmethod
    def _check(condition: Optional[Condition], current: Optional[Item], table: str, key: str) -> None:
        if condition is not None and not condition(current):
            raise ConditionalCheckFailed(f"Condition failed for {table}/{key}")

    # --- Item operations ---

    def get(self, table: str, key: str) -> Optional[Item]:
        try:
            with self._lock:
                return self._fetch(self._conn, table, key)
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc)) from exc

    def put(self, table: str, key: str, item: Item, condition: Optional[Condition] = None) -> Item:
        with self._transaction() as conn:
            self._check(condition, self._fetch(conn, table, key), table, key)
            self._write(conn, table, key, item)
        return item

    def update(
        self,
        table: str,
        key: str,
        set_fields: Optional[Dict[str, Any]] = None,
        remove_fields: Iterable[str] = (),
        increments: Optional[Dict[str, int]] = None,
        defaults: Optional[Dict[str, Any]] = None,
        condition: Optional[Condition] = None,
    ) -> Item:
        """
        Apply field-level changes atomically. Creates the item when absent
        (the condition decides whether that is allowed). Dotted paths address
        nested fields. `defaults` are only written when the field is absent.
        Returns the new item.
        """
        with self._transaction() as conn:
            current = self._fetch(conn, table, key)
            self._check(condition, current, table, key)
            item = copy.deepcopy(current) if current is not None else {}
            for path, value in (set_fields or {}).items():
                _set_path(item, path, value)
            for path in remove_fields:
                _remove_path(item, path)
            for path, amount in (increments or {}).items():
                _set_path(item, path, (_get_path(item, path) or 0) + amount)
            for path, value in (defaults or {}).items():
                if _get_path(item, path) is None:
                    _set_path(item, path, value)
            self._write(conn, table, key, item)
        return item

    def delete(self, table: str, key: str, condition: Optional[Condition] = None) -> bool:
        with self._transaction() as conn:
            current = self._fetch(conn, table, key)
            self._check(condition, current, table, key)
            cursor = conn.execute("DELETE FROM items WHERE tbl = ? AND pk = ?", (table, key))
        return cursor.rowcount > 0 and current is not None

    # --- Queries ---

    def query(
        self,
        table: str,
        field: str,
        value: Any,
        limit: Optional[int] = None,
        order_by: str = "created_at",
        descending: bool = True,
        since: Optional[str] = None,
    ) -> List[Item]:
        """Items whose `field` equals `value`, ordered by `order_by`."""
        field_path = _json_path(field)
        order_path = _json_path(order_by)
        if isinstance(value, bool):
            value = int(value)

        sql = (
            "SELECT body, ttl_epoch FROM items WHERE tbl = ? "
            f"AND json_extract(body, '{field_path}') = ? "
            "AND (ttl_epoch IS NULL OR ttl_epoch > ?)"
        )
        params: List[Any] = [table, value, self._now_epoch()]
        if since is not None:
            sql += f" AND json_extract(body, '{order_path}') >= ?"
            params.append(since)
        direction = "DESC" if descending else "ASC"
        sql += f" ORDER BY json_extract(body, '{order_path}') {direction}, rowid {direction}"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        try:
            with self._lock:
                rows = self._conn.execute(sql, params).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc)) from exc
        return [json.loads(r["body"]) for r in rows]

    def scan(self, table: str, predicate: Optional[Callable[[Item], bool]] = None) -> List[Item]:
        """All live items in a table, optionally filtered."""
        try:
            with self._lock:
                rows = self._conn.execute(
                    "SELECT body, ttl_epoch FROM items WHERE tbl = ? "
                    "AND (ttl_epoch IS NULL OR ttl_epoch > ?) ORDER BY rowid",
                    (table, self._now_epoch()),
                ).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailable(str(exc)) from exc
        items = [json.loads(r["body"]) for r in rows]
        if predicate is None:
            return items
        return [i for i in items if predicate(i)]

    def count(self, table: str) -> int:
        return len(self.scan(table))

    def purge_expired(self) -> int:
        """Physically remove expired items. Returns the number removed."""
        with self._transaction() as conn:
            cursor = conn.execute(
                "DELETE FROM items WHERE ttl_epoch IS NOT NULL AND ttl_epoch <= ?",
                (self._now_epoch(),),
            )
        return cursor.rowcount

    def close(self) -> None:
        self._conn.close()
