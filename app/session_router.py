"""Routes one user's text message to a reply.

Order of checks for every text message:
  1) ``reset``           -> fresh session, greeting.  No backend chat call.
  2) ``prompt:<text>``   -> store prompt override, confirmation.  No backend call.
  3) topic filter        -> refusal when the text is off-topic.  No backend call.
  4) session lookup      -> lazily create the user's session.
  5) prompt override     -> "<override> <text>".
  6) backend send        -> reply with the backend's answer, or a fixed
                            apology if the call fails.

The commands are checked before the topic filter, so a user can always reset
or set a prompt even when a filter is configured.
"""
import asyncio
import logging
import time
import traceback
from typing import Optional

from gemini_chat import constants
from gemini_chat.backend import is_rate_limit_error
from gemini_chat.topic_filter import TopicFilter

from app.metrics import BACKEND_ERRORS, BACKEND_LATENCY, COMMAND_TOTAL, TOPIC_REJECTIONS
from app.services.session_store import SessionStore

logger = logging.getLogger(__name__)


def _record_backend_error(exc: Exception) -> None:
    if isinstance(exc, asyncio.TimeoutError):
        BACKEND_ERRORS.labels(type="timeout").inc()
    elif is_rate_limit_error(exc):
        BACKEND_ERRORS.labels(type="rate_limit").inc()
    else:
        BACKEND_ERRORS.labels(type="other").inc()


class SessionRouter:
    """Applies commands and topic gating, then talks to the backend."""

    def __init__(
        self,
        store: SessionStore,
        topic_filter: Optional[TopicFilter] = None,
        reset_command: str = constants.RESET_COMMAND,
        prompt_prefix: str = constants.PROMPT_COMMAND_PREFIX,
        greeting_text: str = constants.GREETING_TEXT,
        refusal_text: str = constants.REFUSAL_TEXT,
        apology_text: str = constants.APOLOGY_TEXT,
        max_concurrency: int = constants.DEFAULT_BACKEND_CONCURRENCY,
        timeout: float = constants.DEFAULT_BACKEND_TIMEOUT_SECONDS,
    ):
        self.store = store
        self.topic_filter = topic_filter
        self.reset_command = reset_command
        self.prompt_prefix = prompt_prefix
        self.greeting_text = greeting_text
        self.refusal_text = refusal_text
        self.apology_text = apology_text
        self.timeout = timeout
        # Concurrency limit for backend calls (protects the AI quota).
        self._backend_semaphore = asyncio.Semaphore(max_concurrency)

    @property
    def backend(self):
        return self.store.backend

    def _is_prompt_command(self, text: str) -> bool:
        return bool(self.prompt_prefix) and text.startswith(self.prompt_prefix)

    async def handle_message(self, user_id: str, text: str) -> str:
        """Produce the reply for ``text`` sent by ``user_id``.

        Raises:
            ValueError: If ``user_id`` is empty.
        """
        if not user_id:
            raise ValueError("user_id must be a non-empty string")
        text = text or ""

        if text == self.reset_command:
            await self.store.reset(user_id)
            COMMAND_TOTAL.labels(command="reset").inc()
            logger.info(f"Session reset for user {user_id}")
            return self.greeting_text

        if self._is_prompt_command(text):
            COMMAND_TOTAL.labels(command="prompt").inc()
            prompt = text[len(self.prompt_prefix):].strip()
            await self.store.set_prompt(user_id, prompt)
            if not prompt:
                logger.info(f"Prompt override cleared for user {user_id}")
                return constants.PROMPT_CLEARED_TEXT
            logger.info(f"Prompt override set for user {user_id}: {prompt[:50]}")
            return constants.PROMPT_SET_TEXT

        if self.topic_filter is not None and not self.topic_filter.matches(text):
            TOPIC_REJECTIONS.inc()
            logger.info(f"Off-topic message from {user_id} refused: {text[:50]}")
            return self.refusal_text

        session = await self.store.get_or_create(user_id)
        message = text
        if session.prompt_prefix:
            message = f"{session.prompt_prefix} {text}"

        return await self._send(session, message)

    async def _send(self, session, message: str) -> str:
        start_time = time.monotonic()
        async with session.lock, self._backend_semaphore:
            try:
                response_text = await asyncio.wait_for(
                    self.backend.send(session.handle, message),
                    timeout=self.timeout,
                )
                if not response_text:
                    response_text = constants.EMPTY_RESPONSE_TEXT
                return response_text
            except Exception as e:
                logger.error(f"Error getting backend response for {session.user_id}: {e}")
                logger.error(traceback.format_exc())
                _record_backend_error(e)
                return self.apology_text
            finally:
                elapsed = time.monotonic() - start_time
                BACKEND_LATENCY.labels(kind="chat").observe(elapsed)
                logger.info(
                    f"Backend response time for {session.user_id}: {elapsed * 1000:.0f}ms"
                )

    async def describe_image(self, data: bytes) -> str:
        """Ask the backend to describe an image; errors propagate to the caller."""
        start_time = time.monotonic()
        async with self._backend_semaphore:
            try:
                return await asyncio.wait_for(
                    self.backend.describe_image(data),
                    timeout=self.timeout,
                )
            except Exception as e:
                _record_backend_error(e)
                raise
            finally:
                BACKEND_LATENCY.labels(kind="image").observe(time.monotonic() - start_time)
