import json
import logging
import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import Lock
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

from carehub.services.errors import MarketplaceConflictError

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
# (key, expected_version, new_value); new_value None deletes the key.
Write = Tuple[str, int, Optional[Record]]


class KVStore:
    """JSON key-value store with per-key versions and secondary indexes.

    A version of 0 means "absent". Every write bumps the version, so callers can
    do optimistic read-modify-write with ``compare_and_set`` / ``transact``.
    ``indexes`` maps a key namespace (the part before the first ``:``) to the
    top-level fields that ``query_index`` can look up without a prefix scan.
    """

    def __init__(self, db_path: str, indexes: Optional[Dict[str, Iterable[str]]] = None) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = Lock()
        self._indexes: Dict[str, Tuple[str, ...]] = {
            namespace: tuple(fields) for namespace, fields in (indexes or {}).items()
        }
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=10.0, isolation_level=None)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            conn = self._connect()
            try:
                conn.execute("BEGIN IMMEDIATE")
                try:
                    yield conn
                except BaseException:
                    conn.execute("ROLLBACK")
                    raise
                conn.execute("COMMIT")
            finally:
                conn.close()

    def _init_db(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv (
                    key TEXT PRIMARY KEY,
                    value_json TEXT NOT NULL,
                    version INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS kv_index (
                    namespace TEXT NOT NULL,
                    field TEXT NOT NULL,
                    value TEXT NOT NULL,
                    key TEXT NOT NULL,
                    PRIMARY KEY (namespace, field, value, key)
                )
                """
            )
            conn.execute("CREATE INDEX IF NOT EXISTS kv_index_by_key ON kv_index (key)")

    def get(self, key: str) -> Optional[Record]:
        value, _ = self.get_versioned(key)
        return value

    def get_versioned(self, key: str) -> Tuple[Optional[Record], int]:
        with self._transaction() as conn:
            row = conn.execute("SELECT value_json, version FROM kv WHERE key = ?", (key,)).fetchone()
        if not row:
            return None, 0
        return self._safe_json_object(row["value_json"]), int(row["version"])

    def set(self, key: str, value: Record) -> int:
        with self._transaction() as conn:
            row = conn.execute("SELECT version FROM kv WHERE key = ?", (key,)).fetchone()
            version = (int(row["version"]) if row else 0) + 1
            self._write(conn, key, value, version)
        return version

    def delete(self, key: str) -> None:
        with self._transaction() as conn:
            conn.execute("DELETE FROM kv WHERE key = ?", (key,))
            conn.execute("DELETE FROM kv_index WHERE key = ?", (key,))

    def list_by_prefix(self, prefix: str) -> List[Record]:
        escaped = prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT value_json FROM kv WHERE key LIKE ? ESCAPE '\\' ORDER BY key",
                (escaped + "%",),
            ).fetchall()
        return [self._safe_json_object(row["value_json"]) for row in rows]

    def query_index(self, namespace: str, field: str, value: Any) -> List[Record]:
        if field not in self._indexes.get(namespace, ()):
            raise KeyError(f"No index on {namespace}.{field}")
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT kv.value_json FROM kv_index idx
                JOIN kv ON kv.key = idx.key
                WHERE idx.namespace = ? AND idx.field = ? AND idx.value = ?
                ORDER BY kv.key
                """,
                (namespace, field, self._index_value(value)),
            ).fetchall()
        return [self._safe_json_object(row["value_json"]) for row in rows]

    def compare_and_set(self, key: str, expected_version: int, value: Optional[Record]) -> bool:
        return self.transact([(key, expected_version, value)])

    def transact(self, writes: Sequence[Write], checks: Sequence[Tuple[str, int]] = ()) -> bool:
        """Apply all writes only if every key is still at its expected version.

        ``checks`` are version conditions on keys that are read but not written.
        """
        conditions = [(key, expected_version) for key, expected_version, _ in writes] + list(checks)
        with self._transaction() as conn:
            for key, expected_version in conditions:
                row = conn.execute("SELECT version FROM kv WHERE key = ?", (key,)).fetchone()
                current = int(row["version"]) if row else 0
                if current != expected_version:
                    return False
            for key, expected_version, value in writes:
                if value is None:
                    conn.execute("DELETE FROM kv WHERE key = ?", (key,))
                    conn.execute("DELETE FROM kv_index WHERE key = ?", (key,))
                else:
                    self._write(conn, key, value, expected_version + 1)
        return True

    def update(
        self,
        key: str,
        mutate: Callable[[Optional[Record]], Record],
        *,
        attempts: int = 5,
    ) -> Record:
        """Optimistic read-modify-write of one key with bounded retries.

        ``mutate`` receives a fresh copy of the current value (or None) on every
        attempt and may raise to abort without writing.
        """
        for attempt in range(1, attempts + 1):
            current, version = self.get_versioned(key)
            updated = mutate(current)
            if self.compare_and_set(key, version, updated):
                return updated
            logger.warning("Compare-and-set conflict on %s (attempt %d/%d)", key, attempt, attempts)
        raise MarketplaceConflictError("Record was modified concurrently, please retry")

    def update_many(
        self,
        keys: Sequence[str],
        mutate: Callable[[Dict[str, Optional[Record]]], Dict[str, Optional[Record]]],
        *,
        attempts: int = 5,
    ) -> Dict[str, Optional[Record]]:
        """Like ``update`` but all-or-nothing across several keys.

        ``mutate`` returns the new values for the keys it wants to write; keys it
        leaves out are still version-checked.
        """
        for attempt in range(1, attempts + 1):
            snapshot: Dict[str, Optional[Record]] = {}
            versions: Dict[str, int] = {}
            for key in keys:
                snapshot[key], versions[key] = self.get_versioned(key)
            updated = mutate(dict(snapshot))
            writes: List[Write] = [(key, versions[key], updated[key]) for key in keys if key in updated]
            checks = [(key, versions[key]) for key in keys if key not in updated]
            if self.transact(writes, checks):
                return updated
            logger.warning("Transaction conflict on %s (attempt %d/%d)", ", ".join(keys), attempt, attempts)
        raise MarketplaceConflictError("Records were modified concurrently, please retry")

    def _write(self, conn: sqlite3.Connection, key: str, value: Record, version: int) -> None:
        conn.execute(
            """
            INSERT INTO kv (key, value_json, version) VALUES (?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET value_json = excluded.value_json, version = excluded.version
            """,
            (key, json.dumps(value), version),
        )
        conn.execute("DELETE FROM kv_index WHERE key = ?", (key,))
        namespace = key.split(":", 1)[0]
        for field in self._indexes.get(namespace, ()):
            field_value = value.get(field)
            if field_value is None:
                continue
            conn.execute(
                "INSERT OR IGNORE INTO kv_index (namespace, field, value, key) VALUES (?, ?, ?, ?)",
                (namespace, field, self._index_value(field_value), key),
            )

    def _index_value(self, value: Any) -> str:
        if isinstance(value, bool):
            return "true" if value else "false"
        return str(value)

    def _safe_json_object(self, raw_value: Any) -> Record:
        if raw_value in (None, ""):
            return {}
        if isinstance(raw_value, dict):
            return raw_value
        if not isinstance(raw_value, str):
            return {}
        try:
            parsed = json.loads(raw_value)
        except json.JSONDecodeError:
            return {}
        return parsed if isinstance(parsed, dict) else {}
