"""Guest session model type definitions for database operations."""

from datetime import datetime
from uuid import UUID

from typing_extensions import TypedDict


class GuestSession(TypedDict):
    """guest_sessions table row representation.

    An anonymous shopper's durable identity. Carts owned by the session
    reference ``id``; the browser only ever sees ``session_token``.
    """

    id: UUID
    session_token: str
    expires_at: datetime
    claimed_by_user_id: UUID | None
    created_at: datetime


class GuestSessionCreate(TypedDict, total=False):
    """Data required to create a new guest session."""

    session_token: str
    expires_at: datetime
