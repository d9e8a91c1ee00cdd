"""Profile store: upsert-by-user-id for subscription fields.

The profile table is owned by the application; this module only relies
on atomic upsert-by-key semantics.  Every write is a single statement
carrying all the fields of one reconciliation, so a reader never sees
``plan`` updated with a stale ``plan_updated_at`` or vice versa.

Implementations
---------------
- ``InMemoryProfileStore``: thread-safe, for tests and local runs
- ``FailProfileStore``: always raises ``StoreError`` (tests)
- ``PostgresProfileStore``: psycopg, ``INSERT ... ON CONFLICT DO UPDATE``
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

import psycopg
from psycopg import sql
from psycopg.rows import dict_row

from subsync.exceptions import StoreError, StoreTimeoutError
from subsync.models import SubscriptionRecord

logger = logging.getLogger(__name__)

# Fields a reconciliation may write (user_id is the key, not a field)
WRITABLE_FIELDS = frozenset({
    "plan",
    "plan_updated_at",
    "provider",
    "provider_customer_ref",
    "provider_subscription_ref",
})


def _check_fields(fields: Mapping[str, Any]) -> None:
    unknown = set(fields) - WRITABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown subscription fields: {sorted(unknown)}")


def remaining_seconds(deadline: float | None, user_id: str) -> float | None:
    """Seconds left before *deadline* (a ``time.monotonic()`` value).

    None means no deadline.  Raises StoreTimeoutError once it has passed.
    """
    if deadline is None:
        return None
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise StoreTimeoutError("deadline passed before profile write", user_id=user_id)
    return remaining


@runtime_checkable
class ProfileStore(Protocol):
    """Protocol for subscription record stores.

    Implementors must apply all *fields* atomically.  If the store is
    unavailable or rejects the write, raise ``StoreError``.  When a
    *deadline* (``time.monotonic()`` value) is given, the write either
    commits before it or does not happen at all (``StoreTimeoutError``);
    nothing may still be in flight once the call returns.
    """

    def upsert_subscription(
        self,
        user_id: str,
        fields: Mapping[str, Any],
        *,
        deadline: float | None = None,
    ) -> None:
        """Insert or update the record keyed by *user_id* with *fields*."""
        ...

    def get(self, user_id: str) -> SubscriptionRecord | None:
        """Return the current record, or None if the user has none."""
        ...


class InMemoryProfileStore:
    """Thread-safe in-memory profile store.

    ``write_count`` counts successful upserts so tests can assert that an
    event produced zero mutations.
    """

    def __init__(self, free_plan: str = "free") -> None:
        self._lock = threading.Lock()
        self._records: dict[str, SubscriptionRecord] = {}
        self._free_plan = free_plan
        self.write_count = 0

    def upsert_subscription(
        self,
        user_id: str,
        fields: Mapping[str, Any],
        *,
        deadline: float | None = None,
    ) -> None:
        _check_fields(fields)
        with self._lock:
            remaining_seconds(deadline, user_id)
            current = self._records.get(user_id)
            data = current.to_dict() if current else {"user_id": user_id, "plan": self._free_plan}
            data.update(fields)
            self._records[user_id] = SubscriptionRecord.from_dict(data)
            self.write_count += 1

    def get(self, user_id: str) -> SubscriptionRecord | None:
        with self._lock:
            record = self._records.get(user_id)
            return SubscriptionRecord.from_dict(record.to_dict()) if record else None

    def seed(self, record: SubscriptionRecord) -> None:
        """Insert a record directly (signup happens outside this service)."""
        with self._lock:
            self._records[record.user_id] = SubscriptionRecord.from_dict(record.to_dict())


class FailProfileStore:
    """Profile store that always raises ``StoreError``."""

    def upsert_subscription(
        self,
        user_id: str,
        fields: Mapping[str, Any],
        *,
        deadline: float | None = None,
    ) -> None:
        raise StoreError("store unavailable (FailProfileStore)", user_id=user_id)

    def get(self, user_id: str) -> SubscriptionRecord | None:
        raise StoreError("store unavailable (FailProfileStore)", user_id=user_id)


class PostgresProfileStore:
    """Postgres-backed profile store.

    Columns: ``id`` (primary key), ``plan``, ``plan_updated_at``,
    ``provider``, ``provider_customer_ref``, ``provider_subscription_ref``.
    Only the columns named in an upsert are touched on conflict, so a
    downgrade leaves provider linkage as it was.
    """

    def __init__(
        self,
        database_url: str,
        *,
        table: str = "profiles",
        timeout_seconds: float = 10.0,
    ) -> None:
        self._database_url = database_url
        self._table = table
        self._timeout_seconds = timeout_seconds

    def _get_conn(self, budget_seconds: float | None = None) -> psycopg.Connection:
        timeout = self._timeout_seconds
        if budget_seconds is not None:
            timeout = min(timeout, budget_seconds)
        timeout_ms = max(1, int(timeout * 1000))
        return psycopg.connect(
            self._database_url,
            autocommit=True,
            row_factory=dict_row,
            # libpq treats anything below 2 seconds as 2
            connect_timeout=max(2, int(timeout)),
            options=f"-c statement_timeout={timeout_ms}",
        )

    def upsert_subscription(
        self,
        user_id: str,
        fields: Mapping[str, Any],
        *,
        deadline: float | None = None,
    ) -> None:
        _check_fields(fields)
        columns = sorted(fields)
        query = sql.SQL(
            "INSERT INTO {table} (id, {columns}) VALUES (%s, {placeholders}) "
            "ON CONFLICT (id) DO UPDATE SET {updates}"
        ).format(
            table=sql.Identifier(self._table),
            columns=sql.SQL(", ").join(sql.Identifier(c) for c in columns),
            placeholders=sql.SQL(", ").join(sql.Placeholder() for _ in columns),
            updates=sql.SQL(", ").join(
                sql.SQL("{col} = EXCLUDED.{col}").format(col=sql.Identifier(c))
                for c in columns
            ),
        )
        params = [user_id, *(fields[c] for c in columns)]
        try:
            with self._get_conn(remaining_seconds(deadline, user_id)) as conn:
                # Connecting spent part of the budget; the write gets the rest
                remaining = remaining_seconds(deadline, user_id)
                if remaining is not None:
                    conn.execute(sql.SQL("SET statement_timeout = {}").format(
                        sql.Literal(max(1, int(remaining * 1000)))
                    ))
                conn.execute(query, params)
        except psycopg.errors.QueryCanceled as e:
            logger.error("Profile upsert for user %s cancelled at deadline: %s", user_id, e)
            raise StoreTimeoutError(f"profile upsert timed out: {e}", user_id=user_id) from e
        except psycopg.Error as e:
            logger.error("Profile upsert failed for user %s: %s", user_id, e)
            raise StoreError(f"profile upsert failed: {e}", user_id=user_id) from e

    def get(self, user_id: str) -> SubscriptionRecord | None:
        query = sql.SQL(
            "SELECT id, plan, plan_updated_at, provider, provider_customer_ref, "
            "provider_subscription_ref FROM {table} WHERE id = %s"
        ).format(table=sql.Identifier(self._table))
        try:
            with self._get_conn() as conn:
                row = conn.execute(query, (user_id,)).fetchone()
        except psycopg.Error as e:
            raise StoreError(f"profile read failed: {e}", user_id=user_id) from e
        if row is None:
            return None
        row = dict(row)
        row["user_id"] = str(row.pop("id"))
        return SubscriptionRecord.from_dict(row)
