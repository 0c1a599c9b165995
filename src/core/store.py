"""Narrow data store interface used by the cart and webhook services.

Services talk to the remote relational store only through ``DataStore``:
select, insert, update and delete against a named table, filtered by
equality, membership ("value in set") or a lower bound. ``SupabaseStore``
adapts a supabase-py client to it.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Protocol
from uuid import UUID

from postgrest.exceptions import APIError as PostgrestAPIError
from supabase import Client

logger = logging.getLogger(__name__)

# Postgres unique_violation
UNIQUE_VIOLATION = "23505"


class StoreError(Exception):
    """A store call failed."""

    def __init__(self, message: str, code: str | None = None) -> None:
        self.message = message
        self.code = code
        super().__init__(message)


class DuplicateKeyError(StoreError):
    """An insert collided with a unique constraint."""


@dataclass(frozen=True)
class Gte:
    """Filter value meaning ``column >= value``."""

    value: Any


Filters = dict[str, Any]


class DataStore(Protocol):
    """Generic CRUD access to named tables.

    Filter values are matched by equality, except lists/tuples/sets
    (membership) and ``Gte`` (lower bound).
    """

    def select(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        columns: str = "*",
        order_by: str | None = None,
        desc: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]: ...

    def update(self, table: str, patch: dict[str, Any], filters: Filters) -> list[dict[str, Any]]: ...

    def delete(self, table: str, filters: Filters) -> None: ...


def encode_value(value: Any) -> Any:
    """Convert Python values into JSON-safe values for PostgREST."""
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: encode_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [encode_value(v) for v in value]
    return value


class SupabaseStore:
    """``DataStore`` backed by the Supabase PostgREST API."""

    def __init__(self, client: Client) -> None:
        self.client = client

    @staticmethod
    def _apply_filters(query: Any, filters: Filters | None) -> Any:
        for column, value in (filters or {}).items():
            if isinstance(value, Gte):
                query = query.gte(column, encode_value(value.value))
            elif isinstance(value, (list, tuple, set, frozenset)):
                query = query.in_(column, encode_value(value))
            elif value is None:
                query = query.is_(column, "null")
            else:
                query = query.eq(column, encode_value(value))
        return query

    @staticmethod
    def _wrap(table: str, operation: str, error: PostgrestAPIError) -> StoreError:
        code = getattr(error, "code", None)
        if code == UNIQUE_VIOLATION:
            return DuplicateKeyError(f"Duplicate key on {table}", code=code)
        logger.error("Store %s on %s failed: %s", operation, table, error)
        return StoreError(f"Store {operation} on {table} failed", code=code)

    def select(
        self,
        table: str,
        filters: Filters | None = None,
        *,
        columns: str = "*",
        order_by: str | None = None,
        desc: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        query = self._apply_filters(self.client.table(table).select(columns), filters)
        if order_by:
            query = query.order(order_by, desc=desc)
        if limit is not None:
            query = query.limit(limit)

        try:
            response = query.execute()
        except PostgrestAPIError as e:
            raise self._wrap(table, "select", e) from e

        return response.data or []

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        try:
            response = self.client.table(table).insert(encode_value(row)).execute()
        except PostgrestAPIError as e:
            raise self._wrap(table, "insert", e) from e

        if not response.data:
            raise StoreError(f"Insert into {table} returned no row")
        return response.data[0]

    def update(self, table: str, patch: dict[str, Any], filters: Filters) -> list[dict[str, Any]]:
        query = self._apply_filters(self.client.table(table).update(encode_value(patch)), filters)
        try:
            response = query.execute()
        except PostgrestAPIError as e:
            raise self._wrap(table, "update", e) from e

        return response.data or []

    def delete(self, table: str, filters: Filters) -> None:
        query = self._apply_filters(self.client.table(table).delete(), filters)
        try:
            query.execute()
        except PostgrestAPIError as e:
            raise self._wrap(table, "delete", e) from e
