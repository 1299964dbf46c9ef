"""Client identity used to namespace stored bucket state.

Rate limiting has to work before authentication (login itself is gated),
so the identity never comes from a user account. By default a random
identifier is created once per session and kept in session-scoped
storage. A network identifier is used instead only when the host has one
that a trusted reverse proxy already verified; headers read by the
client itself are never trusted.
"""

import time
import uuid
from typing import Optional

from governor.app.core.logging import get_logger
from governor.app.exceptions import StorageError
from governor.app.rate_limit.storage import InMemoryStorage, StorageBackend

logger = get_logger(__name__)

SESSION_KEY = "_client_id"


class ClientIdentityResolver:
    """Resolves a stable-for-the-session client identifier."""

    def __init__(
        self,
        session_storage: Optional[StorageBackend] = None,
        trusted_network_id: Optional[str] = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            session_storage: Storage cleared when the session ends.
                Defaults to a private in-memory store.
            trusted_network_id: Server-verified network identifier, if any.
        """
        self._session_storage = session_storage if session_storage is not None else InMemoryStorage()
        self._trusted_network_id = (trusted_network_id or "").strip() or None
        self._unstored_id: Optional[str] = None

    @property
    def uses_trusted_network_id(self) -> bool:
        return self._trusted_network_id is not None

    def resolve(self) -> str:
        """Return the client identifier, creating the session one if needed."""
        if self._trusted_network_id is not None:
            return self._trusted_network_id

        try:
            identifier = self._session_storage.get(SESSION_KEY)
            if not identifier:
                identifier = generate_session_id()
                self._session_storage.set(SESSION_KEY, identifier)
            return identifier
        except StorageError as e:
            # keep one identifier for this resolver when session storage is unusable
            if self._unstored_id is None:
                logger.debug(f"Session storage unavailable, using process identifier: {e}")
                self._unstored_id = generate_session_id()
            return self._unstored_id


def generate_session_id() -> str:
    """Random session identifier: creation time plus a random suffix."""
    return f"{time.time_ns() // 1_000_000}_{uuid.uuid4().hex[:9]}"
