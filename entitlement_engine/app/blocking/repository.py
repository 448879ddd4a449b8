"""Persistence layer for blocking states."""
from __future__ import annotations

from contextlib import contextmanager
from itertools import count
from typing import Dict, Iterable, List, Optional, Protocol, Sequence, Tuple

import psycopg2
import psycopg2.extras
from psycopg2.extensions import connection as PgConnection
from psycopg2.extensions import cursor as PgCursor

from ...app_context import get_conn
from ..callcontext import InternalCallContext
from .models import BlockableType, BlockingState


class BlockingStateRepository(Protocol):
    """Append-only store of blocking directives.

    ``get_blocking_states`` returns rows in insertion order; readers rely on it
    to break ties between states sharing an effective date.
    """

    def get_blocking_states(
        self,
        blockable_id: str,
        blockable_type: BlockableType,
        context: InternalCallContext,
        service: Optional[str] = None,
    ) -> Sequence[BlockingState]:
        ...

    def append(self, state: BlockingState, context: InternalCallContext) -> BlockingState:
        ...


@contextmanager
def managed_connection(conn: Optional[PgConnection] = None):
    """Context manager that manages transaction boundaries for optional connections."""

    if conn is not None:
        yield conn, False
        return

    connection = get_conn()
    try:
        yield connection, True
        connection.commit()
    except Exception:
        connection.rollback()
        raise
    finally:
        connection.close()


def _row_to_blocking_state(row: dict) -> BlockingState:
    return BlockingState(
        record_id=int(row["record_id"]),
        blockable_id=row["blockable_id"],
        blockable_type=BlockableType(row["blockable_type"]),
        state_name=row["state_name"],
        service=row["service"],
        block_change=bool(row["block_change"]),
        block_entitlement=bool(row["block_entitlement"]),
        block_billing=bool(row["block_billing"]),
        effective_date=row["effective_date"],
        created_date=row["created_date"],
    )


class PostgresBlockingStateRepository:
    """Concrete repository persisting blocking states in PostgreSQL."""

    def __init__(self, *, conn: Optional[PgConnection] = None) -> None:
        self._conn = conn

    @contextmanager
    def _cursor(self) -> Iterable[PgCursor]:
        with managed_connection(self._conn) as (connection, managed):
            cursor = connection.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            try:
                yield cursor
                if managed:
                    connection.commit()
            except Exception:
                if managed:
                    connection.rollback()
                raise
            finally:
                cursor.close()

    def get_blocking_states(
        self,
        blockable_id: str,
        blockable_type: BlockableType,
        context: InternalCallContext,
        service: Optional[str] = None,
    ) -> Sequence[BlockingState]:
        query = """
            SELECT *
            FROM blocking_states
            WHERE tenant_id = %(tenant_id)s
              AND blockable_id = %(blockable_id)s
              AND blockable_type = %(blockable_type)s
        """
        params = {
            "tenant_id": context.tenant_id,
            "blockable_id": blockable_id,
            "blockable_type": blockable_type.value,
        }
        if service is not None:
            query += " AND service = %(service)s"
            params["service"] = service
        query += " ORDER BY record_id ASC"

        with self._cursor() as cursor:
            cursor.execute(query, params)
            return [_row_to_blocking_state(row) for row in cursor.fetchall()]

    def append(self, state: BlockingState, context: InternalCallContext) -> BlockingState:
        """Insert a new blocking state row; existing rows are never updated."""

        with self._cursor() as cursor:
            cursor.execute(
                """
                INSERT INTO blocking_states (
                    tenant_id,
                    account_record_id,
                    blockable_id,
                    blockable_type,
                    state_name,
                    service,
                    block_change,
                    block_entitlement,
                    block_billing,
                    effective_date,
                    created_date
                )
                VALUES (%(tenant_id)s, %(account_record_id)s, %(blockable_id)s,
                        %(blockable_type)s, %(state_name)s, %(service)s,
                        %(block_change)s, %(block_entitlement)s, %(block_billing)s,
                        %(effective_date)s, %(created_date)s)
                RETURNING *
                """,
                {
                    "tenant_id": context.tenant_id,
                    "account_record_id": context.account_record_id,
                    "blockable_id": state.blockable_id,
                    "blockable_type": state.blockable_type.value,
                    "state_name": state.state_name,
                    "service": state.service,
                    "block_change": state.block_change,
                    "block_entitlement": state.block_entitlement,
                    "block_billing": state.block_billing,
                    "effective_date": state.effective_date,
                    "created_date": state.created_date,
                },
            )
            row = cursor.fetchone()
            if not row:
                raise RuntimeError("Failed to persist blocking state")
            return _row_to_blocking_state(row)


class InMemoryBlockingStateRepository:
    """Simple in-memory store suitable for tests and local development."""

    def __init__(self) -> None:
        self._states: Dict[Tuple[str, str, BlockableType], List[BlockingState]] = {}
        self._record_ids = count(1)

    def get_blocking_states(
        self,
        blockable_id: str,
        blockable_type: BlockableType,
        context: InternalCallContext,
        service: Optional[str] = None,
    ) -> Sequence[BlockingState]:
        states = self._states.get((context.tenant_id, blockable_id, blockable_type), [])
        if service is None:
            return list(states)
        return [state for state in states if state.service == service]

    def append(self, state: BlockingState, context: InternalCallContext) -> BlockingState:
        stored = state.model_copy(update={"record_id": next(self._record_ids)})
        key = (context.tenant_id, state.blockable_id, state.blockable_type)
        self._states.setdefault(key, []).append(stored)
        return stored

    def all_states(self) -> List[BlockingState]:
        merged = [state for states in self._states.values() for state in states]
        return sorted(merged, key=lambda state: state.record_id or 0)

    def clear(self) -> None:
        self._states.clear()
