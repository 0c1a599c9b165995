"""Shared test doubles and identifiers."""

from collections import defaultdict
from copy import deepcopy
from datetime import datetime, timedelta, timezone
from itertools import count
from typing import Any
from uuid import uuid4

from src.core.store import DuplicateKeyError, Gte, StoreError, encode_value
from src.schemas.auth import TokenPayload

USER_ID = "11111111-1111-4111-8111-111111111111"
OTHER_USER_ID = "22222222-2222-4222-8222-222222222222"
PRODUCT_ID = "33333333-3333-4333-8333-333333333333"
VARIANT_ID = "44444444-4444-4444-8444-444444444444"
SECOND_VARIANT_ID = "55555555-5555-4555-8555-555555555555"

SERVICE_MODULES = [
    "src.services.cart_repository",
    "src.services.cart_mutator",
    "src.services.session_service",
    "src.services.checkout_service",
    "src.services.webhook_processor",
]


def _as_datetime(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


class InMemoryStore:
    """``DataStore`` fake with the same unique constraints as the database."""

    UNIQUE_KEYS: dict[str, list[tuple[str, ...]]] = {
        "cart_transaction_items": [("transaction_id", "product_id", "variant_id")],
        "webhook_events": [("stripe_event_id",)],
        "guest_sessions": [("session_token",)],
    }
    INTEGER_IDS = {"webhook_events"}

    def __init__(self) -> None:
        self.tables: dict[str, list[dict[str, Any]]] = defaultdict(list)
        self.failures: dict[tuple[str, str], Exception] = {}
        self._ids = count(1)
        self._clock = count(1)
        self._epoch = datetime(2025, 1, 1, tzinfo=timezone.utc)

    def fail(self, table: str, operation: str, error: Exception | None = None) -> None:
        """Make every ``operation`` on ``table`` raise until cleared."""
        self.failures[(table, operation)] = error or StoreError(f"{operation} on {table} failed")

    def seed(self, table: str, *rows: dict[str, Any]) -> None:
        for row in rows:
            self.tables[table].append(encode_value(dict(row)))

    def rows(self, table: str) -> list[dict[str, Any]]:
        return deepcopy(self.tables[table])

    def now(self) -> str:
        return (self._epoch + timedelta(seconds=next(self._clock))).isoformat()

    def _check(self, table: str, operation: str) -> None:
        error = self.failures.get((table, operation))
        if error:
            raise error

    @staticmethod
    def _matches(row: dict[str, Any], filters: dict[str, Any] | None) -> bool:
        for column, value in (filters or {}).items():
            actual = row.get(column)
            if isinstance(value, Gte):
                if actual is None or _as_datetime(actual) < _as_datetime(value.value):
                    return False
            elif isinstance(value, (list, tuple, set, frozenset)):
                if actual not in encode_value(value):
                    return False
            elif value is None:
                if actual is not None:
                    return False
            elif actual != encode_value(value):
                return False
        return True

    def _violates(self, table: str, candidate: dict[str, Any], exclude: dict[str, Any] | None = None) -> bool:
        others = [row for row in self.tables[table] if row is not exclude]
        for key in self.UNIQUE_KEYS.get(table, []):
            if any(all(row.get(col) == candidate.get(col) for col in key) for row in others):
                return True
        if table == "cart_transactions" and candidate.get("status") == "pending":
            owner = ("owner_type", "user_id", "guest_session_id")
            return any(
                row.get("status") == "pending" and all(row.get(col) == candidate.get(col) for col in owner)
                for row in others
            )
        return False

    def select(
        self,
        table: str,
        filters: dict[str, Any] | None = None,
        *,
        columns: str = "*",
        order_by: str | None = None,
        desc: bool = False,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        self._check(table, "select")
        rows = [deepcopy(row) for row in self.tables[table] if self._matches(row, filters)]
        if order_by:
            rows.sort(key=lambda row: (row.get(order_by) is None, row.get(order_by) or ""), reverse=desc)
        return rows[:limit] if limit is not None else rows

    def insert(self, table: str, row: dict[str, Any]) -> dict[str, Any]:
        self._check(table, "insert")
        stored = encode_value(dict(row))
        stored.setdefault("id", next(self._ids) if table in self.INTEGER_IDS else str(uuid4()))
        stored.setdefault("created_at", self.now())
        if self._violates(table, stored):
            raise DuplicateKeyError(f"Duplicate key on {table}", code="23505")
        self.tables[table].append(stored)
        return deepcopy(stored)

    def update(self, table: str, patch: dict[str, Any], filters: dict[str, Any]) -> list[dict[str, Any]]:
        self._check(table, "update")
        updated = []
        for row in self.tables[table]:
            if not self._matches(row, filters):
                continue
            candidate = {**row, **encode_value(dict(patch))}
            if self._violates(table, candidate, exclude=row):
                raise DuplicateKeyError(f"Duplicate key on {table}", code="23505")
            row.update(candidate)
            updated.append(deepcopy(row))
        return updated

    def delete(self, table: str, filters: dict[str, Any]) -> None:
        self._check(table, "delete")
        self.tables[table] = [row for row in self.tables[table] if not self._matches(row, filters)]


def make_token_payload(
    user_id: str = USER_ID,
    email: str | None = "shopper@example.com",
    role: str = "authenticated",
) -> TokenPayload:
    now = int(datetime.now(timezone.utc).timestamp())
    return TokenPayload(sub=user_id, email=email, role=role, exp=now + 3600, iat=now)
