"""Adapter between API endpoints and the Supabase tables.

Endpoints never talk to ``supabase`` directly. They go through
``StoreAdapter``, which exposes the handful of table operations the API
needs (filtered select, count, insert, update, upsert, delete) plus the
auth-admin calls used for identity and account deletion.

Two backends implement the same surface:

- ``SupabaseBackend`` wraps a ``supabase.Client`` (service role key).
- ``MemoryBackend`` keeps process-local tables. It is used when Supabase is
  not configured (local development) and by the test suite.
"""

from __future__ import annotations

import copy
import threading
import uuid
from datetime import datetime, timezone
from typing import Any

from api.shared.logger import get_logger
from api.shared.settings import get_settings

logger = get_logger(__name__)


class StoreError(RuntimeError):
    """Raised when a storage operation fails."""


def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def _as_list(rows: dict[str, Any] | list[dict[str, Any]]) -> list[dict[str, Any]]:
    return [rows] if isinstance(rows, dict) else list(rows)


# ============================================================================
# In-memory backend
# ============================================================================


class MemoryBackend:
    """Dict-of-lists tables with the same filter semantics as PostgREST.

    Inserted rows get an ``id`` (uuid4) and ``created_at`` when missing.
    Reads return deep copies so callers cannot mutate stored rows.
    """

    name = "memory"

    def __init__(self) -> None:
        self._tables: dict[str, list[dict[str, Any]]] = {}
        self._auth_users: dict[str, dict[str, Any]] = {}
        self._tokens: dict[str, str] = {}
        self._lock = threading.RLock()

    # ----- helpers -----

    @staticmethod
    def _matches(
        row: dict[str, Any],
        eq: dict[str, Any] | None,
        gte: dict[str, Any] | None,
        lt: dict[str, Any] | None,
        in_: dict[str, list[Any]] | None,
    ) -> bool:
        for key, value in (eq or {}).items():
            if row.get(key) != value:
                return False
        for key, value in (gte or {}).items():
            current = row.get(key)
            if current is None or current < value:
                return False
        for key, value in (lt or {}).items():
            current = row.get(key)
            if current is None or current >= value:
                return False
        for key, values in (in_ or {}).items():
            if row.get(key) not in values:
                return False
        return True

    def _rows(self, table: str) -> list[dict[str, Any]]:
        return self._tables.setdefault(table, [])

    @staticmethod
    def _project(row: dict[str, Any], columns: str) -> dict[str, Any]:
        if columns.strip() == "*":
            return copy.deepcopy(row)
        wanted = [c.strip() for c in columns.split(",") if c.strip()]
        return {c: copy.deepcopy(row.get(c)) for c in wanted}

    # ----- table operations -----

    def select(
        self,
        table: str,
        columns: str = "*",
        *,
        eq: dict[str, Any] | None = None,
        gte: dict[str, Any] | None = None,
        lt: dict[str, Any] | None = None,
        in_: dict[str, list[Any]] | None = None,
        order: str | None = None,
        desc: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = [r for r in self._rows(table) if self._matches(r, eq, gte, lt, in_)]
            if order:
                present = [r for r in rows if r.get(order) is not None]
                missing = [r for r in rows if r.get(order) is None]
                present.sort(key=lambda r: r[order], reverse=desc)
                rows = present + missing
            if limit is not None:
                rows = rows[:limit]
            return [self._project(r, columns) for r in rows]

    def count(
        self,
        table: str,
        *,
        eq: dict[str, Any] | None = None,
        gte: dict[str, Any] | None = None,
        lt: dict[str, Any] | None = None,
    ) -> int:
        with self._lock:
            return sum(1 for r in self._rows(table) if self._matches(r, eq, gte, lt, None))

    def insert(self, table: str, rows: dict[str, Any] | list[dict[str, Any]]) -> list[dict[str, Any]]:
        inserted = []
        with self._lock:
            for row in _as_list(rows):
                stored = copy.deepcopy(row)
                stored.setdefault("id", str(uuid.uuid4()))
                stored.setdefault("created_at", utc_now_iso())
                self._rows(table).append(stored)
                inserted.append(copy.deepcopy(stored))
        return inserted

    def update(self, table: str, values: dict[str, Any], *, eq: dict[str, Any]) -> list[dict[str, Any]]:
        updated = []
        with self._lock:
            for row in self._rows(table):
                if self._matches(row, eq, None, None, None):
                    row.update(copy.deepcopy(values))
                    updated.append(copy.deepcopy(row))
        return updated

    def upsert(self, table: str, row: dict[str, Any], *, on_conflict: str = "id") -> list[dict[str, Any]]:
        keys = [k.strip() for k in on_conflict.split(",")]
        with self._lock:
            match = {k: row.get(k) for k in keys}
            for existing in self._rows(table):
                if all(existing.get(k) == v for k, v in match.items()):
                    existing.update(copy.deepcopy(row))
                    return [copy.deepcopy(existing)]
            return self.insert(table, row)

    def delete(
        self, table: str, *, eq: dict[str, Any] | None = None, lt: dict[str, Any] | None = None
    ) -> list[dict[str, Any]]:
        with self._lock:
            rows = self._rows(table)
            removed = [r for r in rows if self._matches(r, eq, None, lt, None)]
            self._tables[table] = [r for r in rows if not self._matches(r, eq, None, lt, None)]
            return removed

    # ----- auth -----

    def register_user(self, token: str, user: dict[str, Any]) -> None:
        """Make ``token`` resolve to ``user`` (development and tests)."""
        with self._lock:
            user = {"user_metadata": {}, **user}
            self._auth_users[user["id"]] = user
            self._tokens[token] = user["id"]

    def get_user(self, token: str) -> dict[str, Any] | None:
        with self._lock:
            user_id = self._tokens.get(token)
            user = self._auth_users.get(user_id) if user_id else None
            return copy.deepcopy(user) if user else None

    def update_user_metadata(self, user_id: str, metadata: dict[str, Any]) -> None:
        with self._lock:
            user = self._auth_users.setdefault(user_id, {"id": user_id, "user_metadata": {}})
            user["user_metadata"].update(metadata)

    def delete_user(self, user_id: str) -> None:
        with self._lock:
            self._auth_users.pop(user_id, None)
            self._tokens = {t: uid for t, uid in self._tokens.items() if uid != user_id}


# ============================================================================
# Supabase backend
# ============================================================================


class SupabaseBackend:
    """PostgREST table access through ``supabase-py``."""

    name = "supabase"

    def __init__(self, client: Any) -> None:
        self.client = client

    @staticmethod
    def _apply_filters(query: Any, eq=None, gte=None, lt=None, in_=None) -> Any:
        for key, value in (eq or {}).items():
            query = query.eq(key, value)
        for key, value in (gte or {}).items():
            query = query.gte(key, value)
        for key, value in (lt or {}).items():
            query = query.lt(key, value)
        for key, values in (in_ or {}).items():
            query = query.in_(key, list(values))
        return query

    @staticmethod
    def _execute(query: Any, table: str, action: str) -> Any:
        try:
            return query.execute()
        except Exception as e:
            raise StoreError(f"{action} on {table} failed: {e}") from e

    def select(
        self,
        table: str,
        columns: str = "*",
        *,
        eq=None,
        gte=None,
        lt=None,
        in_=None,
        order: str | None = None,
        desc: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        query = self._apply_filters(self.client.table(table).select(columns), eq, gte, lt, in_)
        if order:
            query = query.order(order, desc=desc)
        if limit is not None:
            query = query.limit(limit)
        return self._execute(query, table, "select").data or []

    def count(self, table: str, *, eq=None, gte=None, lt=None) -> int:
        query = self._apply_filters(self.client.table(table).select("id", count="exact"), eq, gte, lt)
        return self._execute(query, table, "count").count or 0

    def insert(self, table: str, rows) -> list[dict[str, Any]]:
        return self._execute(self.client.table(table).insert(rows), table, "insert").data or []

    def update(self, table: str, values: dict[str, Any], *, eq: dict[str, Any]) -> list[dict[str, Any]]:
        query = self._apply_filters(self.client.table(table).update(values), eq)
        return self._execute(query, table, "update").data or []

    def upsert(self, table: str, row: dict[str, Any], *, on_conflict: str = "id") -> list[dict[str, Any]]:
        query = self.client.table(table).upsert(row, on_conflict=on_conflict)
        return self._execute(query, table, "upsert").data or []

    def delete(self, table: str, *, eq=None, lt=None) -> list[dict[str, Any]]:
        query = self._apply_filters(self.client.table(table).delete(), eq, None, lt)
        return self._execute(query, table, "delete").data or []

    def get_user(self, token: str) -> dict[str, Any] | None:
        try:
            response = self.client.auth.get_user(token)
        except Exception as e:
            logger.info("Token rejected by Supabase auth: %s", e)
            return None
        user = getattr(response, "user", None)
        if user is None:
            return None
        return {
            "id": user.id,
            "email": getattr(user, "email", None),
            "user_metadata": getattr(user, "user_metadata", None) or {},
        }

    def update_user_metadata(self, user_id: str, metadata: dict[str, Any]) -> None:
        try:
            self.client.auth.admin.update_user_by_id(user_id, {"user_metadata": metadata})
        except Exception as e:
            raise StoreError(f"Updating auth metadata failed: {e}") from e

    def delete_user(self, user_id: str) -> None:
        try:
            self.client.auth.admin.delete_user(user_id)
        except Exception as e:
            raise StoreError(f"Deleting auth user failed: {e}") from e


# ============================================================================
# Adapter
# ============================================================================


class StoreAdapter:
    """Table access for API endpoints.

    Args:
        backend: ``SupabaseBackend`` or ``MemoryBackend``.
    """

    def __init__(self, backend: MemoryBackend | SupabaseBackend) -> None:
        self._backend = backend

    @property
    def backend(self) -> MemoryBackend | SupabaseBackend:
        return self._backend

    @property
    def backend_name(self) -> str:
        return self._backend.name

    # ----- tables -----

    def select(self, table: str, columns: str = "*", **filters: Any) -> list[dict[str, Any]]:
        """Select rows.

        Args:
            table: Table name.
            columns: Comma-separated column list or ``*``.
            **filters: ``eq``, ``gte``, ``lt``, ``in_`` dicts plus
                ``order``, ``desc`` and ``limit``.
        """
        return self._backend.select(table, columns, **filters)

    def select_one(self, table: str, columns: str = "*", **filters: Any) -> dict[str, Any] | None:
        """Return the first matching row or ``None``."""
        rows = self._backend.select(table, columns, limit=1, **filters)
        return rows[0] if rows else None

    def count(self, table: str, **filters: Any) -> int:
        return self._backend.count(table, **filters)

    def insert(self, table: str, rows: dict[str, Any] | list[dict[str, Any]]) -> list[dict[str, Any]]:
        if isinstance(rows, list) and not rows:
            return []
        return self._backend.insert(table, rows)

    def insert_one(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        """Insert one row and return it as stored."""
        inserted = self._backend.insert(table, row)
        if not inserted:
            raise StoreError(f"Insert into {table} returned no row")
        return inserted[0]

    def update(self, table: str, values: dict[str, Any], **eq: Any) -> list[dict[str, Any]]:
        """Update rows matching the ``eq`` keyword filters; returns updated rows."""
        return self._backend.update(table, values, eq=eq)

    def upsert(self, table: str, row: dict[str, Any], on_conflict: str = "id") -> list[dict[str, Any]]:
        return self._backend.upsert(table, row, on_conflict=on_conflict)

    def delete(self, table: str, **eq: Any) -> list[dict[str, Any]]:
        """Delete rows matching the ``eq`` keyword filters."""
        if not eq:
            raise StoreError(f"Refusing unfiltered delete on {table}")
        return self._backend.delete(table, eq=eq)

    def delete_before(self, table: str, column: str, cutoff: Any) -> list[dict[str, Any]]:
        """Delete rows whose ``column`` is earlier than ``cutoff``."""
        return self._backend.delete(table, lt={column: cutoff})

    # ----- auth -----

    def get_user_for_token(self, token: str) -> dict[str, Any] | None:
        return self._backend.get_user(token)

    def update_user_metadata(self, user_id: str, metadata: dict[str, Any]) -> None:
        self._backend.update_user_metadata(user_id, metadata)

    def delete_auth_user(self, user_id: str) -> None:
        self._backend.delete_user(user_id)


_store: StoreAdapter | None = None
_store_lock = threading.Lock()


def _create_default_store() -> StoreAdapter:
    settings = get_settings()
    if settings.supabase_configured:
        from supabase import create_client

        key = settings.supabase_service_key or settings.supabase_anon_key
        client = create_client(settings.supabase_url, key)
        logger.info("Using Supabase store at %s", settings.supabase_url)
        return StoreAdapter(SupabaseBackend(client))

    if settings.is_production:
        raise StoreError("Supabase is not configured")
    logger.warning("Supabase not configured; using in-memory store")
    return StoreAdapter(MemoryBackend())


def get_store() -> StoreAdapter:
    """Return the process-wide store adapter."""
    global _store
    with _store_lock:
        if _store is None:
            _store = _create_default_store()
        return _store


def set_store(store: StoreAdapter | None) -> None:
    """Replace the process-wide store (``None`` recreates it on next use)."""
    global _store
    with _store_lock:
        _store = store
