"""SQLite-backed entity store.

Entities live in one key-value table keyed by ``(kind, id)`` with the record
serialised as JSON, so wei amounts wider than SQLite's 64-bit INTEGER are
kept exactly. Writes for one chain log are staged in a :class:`StoreUnit`
and land in a single transaction together with the sync position.
"""

import json
import sqlite3
from typing import Dict, Iterable, List, Optional, Tuple, Type, TypeVar

from .entities import ENTITY_TYPES, Entity
from .errors import StoreUnavailableError
from .utils import _json_dumps

E = TypeVar("E", bound=Entity)

Position = Tuple[int, int]

# Log index recorded once every log of a block has been dispatched.
BLOCK_DONE = 2**31 - 1


class StoreUnit:
    """Staged writes for one chain log, readable before they are committed."""

    def __init__(self, store: "EntityStore"):
        self._store = store
        self._pending: Dict[Tuple[str, str], Entity] = {}
        self._order: List[Tuple[str, str]] = []

    def get(self, kind: Type[E], entity_id: str) -> Optional[E]:
        key = (kind.kind, entity_id)
        if key in self._pending:
            return self._pending[key]  # type: ignore[return-value]
        return self._store.get(kind, entity_id)

    def set(self, entity: Entity) -> None:
        key = (entity.kind, entity.id)
        if key not in self._pending:
            self._order.append(key)
        self._pending[key] = entity

    @property
    def writes(self) -> List[Entity]:
        return [self._pending[key] for key in self._order]


class EntityStore:
    def __init__(self, db_path: str = ":memory:"):
        self.db_path = db_path
        try:
            self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self.conn.row_factory = sqlite3.Row
            self._init_schema()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"cannot open entity store {db_path}: {exc}") from exc

    def _init_schema(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS entities (
                kind TEXT NOT NULL,
                id TEXT NOT NULL,
                data TEXT NOT NULL,
                updated_block INTEGER,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                PRIMARY KEY (kind, id)
            )
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_entities_kind ON entities(kind)")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS sync_state (
                chain_id INTEGER PRIMARY KEY,
                last_processed_block INTEGER NOT NULL,
                last_processed_log_index INTEGER NOT NULL,
                last_processed_timestamp INTEGER,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        self.conn.commit()

    def close(self) -> None:
        self.conn.close()

    def unit(self) -> StoreUnit:
        return StoreUnit(self)

    def get(self, kind: Type[E], entity_id: str) -> Optional[E]:
        try:
            row = self.conn.execute(
                "SELECT data FROM entities WHERE kind = ? AND id = ?", (kind.kind, entity_id)
            ).fetchone()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"get {kind.kind}/{entity_id} failed: {exc}") from exc
        if row is None:
            return None
        return kind.from_dict(json.loads(row["data"]))  # type: ignore[return-value]

    def set(self, entity: Entity, block_number: Optional[int] = None) -> None:
        try:
            self._write(self.conn.cursor(), entity, block_number)
            self.conn.commit()
        except sqlite3.Error as exc:
            self.conn.rollback()
            raise StoreUnavailableError(f"set {entity.kind}/{entity.id} failed: {exc}") from exc

    @staticmethod
    def _write(cur: sqlite3.Cursor, entity: Entity, block_number: Optional[int]) -> None:
        cur.execute(
            """
            INSERT INTO entities (kind, id, data, updated_block) VALUES (?, ?, ?, ?)
            ON CONFLICT(kind, id) DO UPDATE SET
                data = excluded.data,
                updated_block = excluded.updated_block,
                updated_at = CURRENT_TIMESTAMP
            """,
            (entity.kind, entity.id, _json_dumps(entity.to_dict()), block_number),
        )

    def commit(
        self,
        unit: StoreUnit,
        chain_id: int,
        position: Position,
        block_timestamp: Optional[int] = None,
    ) -> None:
        """Write every staged entity and advance the sync position, all or nothing."""
        block_number, log_index = position
        try:
            cur = self.conn.cursor()
            for entity in unit.writes:
                self._write(cur, entity, block_number)
            self._advance_position(cur, chain_id, position, block_timestamp)
            self.conn.commit()
        except sqlite3.Error as exc:
            self.conn.rollback()
            raise StoreUnavailableError(
                f"commit of log {block_number}_{log_index} on chain {chain_id} failed: {exc}"
            ) from exc

    def _advance_position(
        self,
        cur: sqlite3.Cursor,
        chain_id: int,
        position: Position,
        block_timestamp: Optional[int],
    ) -> None:
        current = self._read_position(cur, chain_id)
        if current is not None and position <= current:
            return
        cur.execute(
            """
            INSERT INTO sync_state (
                chain_id, last_processed_block, last_processed_log_index, last_processed_timestamp
            ) VALUES (?, ?, ?, ?)
            ON CONFLICT(chain_id) DO UPDATE SET
                last_processed_block = excluded.last_processed_block,
                last_processed_log_index = excluded.last_processed_log_index,
                last_processed_timestamp = excluded.last_processed_timestamp,
                updated_at = CURRENT_TIMESTAMP
            """,
            (chain_id, position[0], position[1], block_timestamp),
        )

    @staticmethod
    def _read_position(cur: sqlite3.Cursor, chain_id: int) -> Optional[Position]:
        row = cur.execute(
            "SELECT last_processed_block, last_processed_log_index FROM sync_state WHERE chain_id = ?",
            (chain_id,),
        ).fetchone()
        if row is None:
            return None
        return int(row[0]), int(row[1])

    def mark_block_done(self, chain_id: int, block_number: int, block_timestamp: Optional[int]) -> None:
        try:
            cur = self.conn.cursor()
            self._advance_position(cur, chain_id, (block_number, BLOCK_DONE), block_timestamp)
            self.conn.commit()
        except sqlite3.Error as exc:
            self.conn.rollback()
            raise StoreUnavailableError(f"updating sync state for chain {chain_id} failed: {exc}") from exc

    def resume_block(self, chain_id: int, start_block: int) -> int:
        """First block whose logs may not all have been dispatched yet."""
        position = self.get_position(chain_id)
        if position is None:
            return start_block
        block_number, log_index = position
        if log_index == BLOCK_DONE:
            return max(block_number + 1, start_block)
        return max(block_number, start_block)

    def get_position(self, chain_id: int) -> Optional[Position]:
        try:
            return self._read_position(self.conn.cursor(), chain_id)
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"reading sync state for chain {chain_id} failed: {exc}") from exc

    def iter_kind(self, kind: Type[E]) -> Iterable[E]:
        """Yield every stored entity of one kind, ordered by id. Used by the CLI only."""
        try:
            rows = self.conn.execute(
                "SELECT data FROM entities WHERE kind = ? ORDER BY id ASC", (kind.kind,)
            ).fetchall()
        except sqlite3.Error as exc:
            raise StoreUnavailableError(f"listing {kind.kind} failed: {exc}") from exc
        for row in rows:
            yield kind.from_dict(json.loads(row["data"]))  # type: ignore[misc]


def entity_type(name: str) -> Type[Entity]:
    for kind, cls in ENTITY_TYPES.items():
        if kind.lower() == name.lower():
            return cls
    raise KeyError(f"unknown entity kind: {name}")
