"""Guest session business logic service."""

import logging
import secrets
from datetime import datetime, timedelta, timezone
from uuid import UUID

from src.core.config import get_settings
from src.core.store import DataStore
from src.core.supabase import get_store
from src.models.session import GuestSession, GuestSessionCreate

logger = logging.getLogger(__name__)

SESSIONS_TABLE = "guest_sessions"


class SessionService:
    """Service for managing anonymous guest sessions."""

    TOKEN_LENGTH = 64  # Length of session token in characters

    def __init__(self, store: DataStore | None = None) -> None:
        """Initialize session service.

        Args:
            store: Data store to use; defaults to the Supabase-backed store.
        """
        self.store = store if store is not None else get_store()
        self.settings = get_settings()

    def _generate_token(self) -> str:
        """Generate a cryptographically secure session token.

        Returns:
            str: A 64-character hex token.
        """
        return secrets.token_hex(self.TOKEN_LENGTH // 2)

    async def create_session(self) -> tuple[GuestSession, str]:
        """Create a new guest session with a unique token.

        Returns:
            tuple: (session_data, session_token)
        """
        token = self._generate_token()
        expires_at = datetime.now(timezone.utc) + timedelta(days=self.settings.session_expiry_days)

        new_session: GuestSessionCreate = {"session_token": token, "expires_at": expires_at}
        session = self.store.insert(SESSIONS_TABLE, new_session)
        logger.info("Created guest session %s", session["id"])

        return session, token

    async def get_session_by_token(self, token: str) -> GuestSession | None:
        """Get a guest session by its token.

        Args:
            token: The session token from header or cookie.

        Returns:
            dict | None: The session data or None if not found.
        """
        rows = self.store.select(SESSIONS_TABLE, {"session_token": token}, limit=1)
        return rows[0] if rows else None

    async def is_session_valid(self, token: str) -> bool:
        """Check if a session token is valid, unexpired and unclaimed.

        Args:
            token: The session token to validate.

        Returns:
            bool: True if the session can still own a cart.
        """
        session = await self.get_session_by_token(token)

        if not session:
            return False

        expires_at = session.get("expires_at")
        if expires_at:
            if isinstance(expires_at, str):
                expires_at = datetime.fromisoformat(expires_at.replace("Z", "+00:00"))
            if expires_at < datetime.now(timezone.utc):
                return False

        # A claimed session handed its cart to a user
        if session.get("claimed_by_user_id"):
            return False

        return True

    async def mark_claimed(self, session_id: UUID, user_id: UUID) -> None:
        """Record that a registered user claimed this guest session.

        Args:
            session_id: The guest session UUID.
            user_id: The user who now owns the session's cart.
        """
        self.store.update(
            SESSIONS_TABLE,
            {"claimed_by_user_id": str(user_id)},
            {"id": str(session_id)},
        )
        logger.info("Guest session %s claimed by user %s", session_id, user_id)
