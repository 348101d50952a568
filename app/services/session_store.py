"""In-process store of per-user conversation sessions.

Each LINE user (or chat, depending on the session scope) owns at most one
live session.  A session wraps the opaque handle returned by the
conversation backend plus the user's optional prompt override.

How it works:
  - get_or_create() lazily starts a backend session on first contact.
  - reset() starts a fresh backend session and releases the old one, dropping
    the prompt override with it.
  - set_prompt() stores the prompt override, creating the session if needed.

Every mutation for a key runs under that key's asyncio.Lock, so two webhook
deliveries for the same user can never both create a session and overwrite
each other.  Different users never wait on each other.

Sessions live for the lifetime of the process; nothing is persisted.
"""
from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional

logger = logging.getLogger(__name__)


@dataclass
class Session:
    """One user's conversation with the backend."""

    user_id: str
    handle: Any
    prompt_prefix: Optional[str] = None
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    # Serialises backend sends on this handle; chat history is not
    # safe to extend from two coroutines at once.
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)


class SessionStore:
    """Maps user IDs to their live Session."""

    def __init__(self, backend):
        """Initialize the store.

        Args:
            backend: ConversationBackend used to open and close sessions.
        """
        self.backend = backend
        self._sessions: dict[str, Session] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, user_id: str) -> asyncio.Lock:
        # setdefault is atomic on the event loop (no await in between).
        return self._locks.setdefault(user_id, asyncio.Lock())

    async def _start(self, user_id: str) -> Session:
        handle = await self.backend.new_session(user_id)
        session = Session(user_id=user_id, handle=handle)
        logger.info(f"Created new session {session.session_id} for user {user_id}")
        return session

    async def _open(self, user_id: str) -> Session:
        session = await self._start(user_id)
        self._sessions[user_id] = session
        return session

    async def _release(self, session: Session) -> None:
        # Wait for any send still running on the old handle.
        async with session.lock:
            try:
                await self.backend.close_session(session.handle)
            except Exception as e:
                # The replacement is already in place; a stale handle is harmless.
                logger.warning(f"Failed to release session {session.session_id}: {e}")

    def get(self, user_id: str) -> Optional[Session]:
        """Return the live session for ``user_id`` without creating one."""
        return self._sessions.get(user_id)

    async def get_or_create(self, user_id: str) -> Session:
        """Return the user's session, starting one on first contact."""
        async with self._lock_for(user_id):
            session = self._sessions.get(user_id)
            if session is None:
                session = await self._open(user_id)
            return session

    async def reset(self, user_id: str) -> Session:
        """Replace the user's session with a fresh one.

        The previous backend handle and prompt override are discarded.  For a
        user that has never been seen this creates exactly one session.  If
        the backend cannot start the new session, the old one stays in place
        and the error propagates.
        """
        async with self._lock_for(user_id):
            session = await self._start(user_id)
            previous = self._sessions.get(user_id)
            self._sessions[user_id] = session
        if previous is not None:
            logger.info(
                f"Session {previous.session_id} for user {user_id} "
                f"superseded by {session.session_id}"
            )
            await self._release(previous)
        return session

    async def set_prompt(self, user_id: str, text: Optional[str]) -> Session:
        """Store (or clear, when empty) the user's prompt override."""
        async with self._lock_for(user_id):
            session = self._sessions.get(user_id)
            if session is None:
                session = await self._open(user_id)
            session.prompt_prefix = text or None
            return session

    def __contains__(self, user_id: str) -> bool:
        return user_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)
