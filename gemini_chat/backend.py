"""Conversation backends that turn user text into Gemini answers.

The session router never talks to an AI SDK directly.  It only knows the
``ConversationBackend`` protocol:

  new_session(user_id)   -> opaque handle owned by the backend
  send(handle, text)     -> display text of the model's answer
  close_session(handle)  -> release a superseded handle
  describe_image(data)   -> one-shot description of an image

Two implementations are provided:
  - GeminiChatBackend: google-genai chat sessions, either against the Gemini
    Developer API (API key) or Vertex AI (project + location, optionally with a
    service-account credentials file).
  - AdkAgentBackend: an ADK agent run through a Runner, with one in-memory ADK
    session per handle.  Useful when the agent needs an instruction block or
    tools instead of a bare chat.
"""
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from google import genai
from google.adk.agents import Agent
from google.adk.runners import Runner
from google.adk.sessions import InMemorySessionService
from google.genai import errors as genai_errors
from google.genai import types
from google.oauth2 import service_account

from .constants import APP_NAME, DEFAULT_LOCATION, DEFAULT_MODEL, IMAGE_PROMPT

logger = logging.getLogger(__name__)

_PNG_MAGIC = b"\x89PNG\r\n\x1a\n"
_GIF_MAGIC = (b"GIF87a", b"GIF89a")
_WEBP_MAGIC = b"WEBP"


class ConversationBackend(Protocol):
    """Capability the session router needs from an AI provider."""

    async def new_session(self, user_id: str) -> Any: ...

    async def send(self, handle: Any, text: str) -> str: ...

    async def close_session(self, handle: Any) -> None: ...

    async def describe_image(self, data: bytes) -> str: ...


def is_rate_limit_error(exc: Exception) -> bool:
    """Check if an exception is a Gemini rate limit (429) error.

    Both the typed API error and the string representation are checked
    because some errors come wrapped in generic exceptions.
    """
    if isinstance(exc, genai_errors.APIError) and exc.code == 429:
        return True
    err_str = str(exc)
    return "RESOURCE_EXHAUSTED" in err_str or "429" in err_str


def guess_image_mime_type(data: bytes) -> str:
    """Guess the MIME type of image bytes from their magic number.

    LINE delivers photos as JPEG; PNG, GIF and WebP show up when users forward
    images from other apps.
    """
    if data.startswith(_PNG_MAGIC):
        return "image/png"
    if data[:6] in _GIF_MAGIC:
        return "image/gif"
    if data[:4] == b"RIFF" and data[8:12] == _WEBP_MAGIC:
        return "image/webp"
    return "image/jpeg"


def extract_response_text(response: Any) -> str:
    """Join the text parts of the first candidate of a Gemini response."""
    candidates = getattr(response, "candidates", None)
    if not candidates:
        return ""
    content = candidates[0].content
    if not content or not content.parts:
        return ""
    return "".join(part.text for part in content.parts if getattr(part, "text", None)).strip()


def build_genai_client(
    api_key: Optional[str] = None,
    vertexai: bool = False,
    project: Optional[str] = None,
    location: Optional[str] = None,
    credentials_file: Optional[str] = None,
) -> genai.Client:
    """Create a google-genai client for the Developer API or Vertex AI."""
    if not vertexai:
        return genai.Client(api_key=api_key)

    credentials = None
    if credentials_file:
        credentials = service_account.Credentials.from_service_account_file(
            credentials_file,
            scopes=["https://www.googleapis.com/auth/cloud-platform"],
        )
    return genai.Client(
        vertexai=True,
        project=project,
        location=location or DEFAULT_LOCATION,
        credentials=credentials,
    )


async def _describe_image(client: genai.Client, model: str, data: bytes) -> str:
    """Send image bytes inline with a description prompt and return the text."""
    if not data:
        raise ValueError("Image content is empty")
    response = await client.aio.models.generate_content(
        model=model,
        contents=[
            types.Content(
                role="user",
                parts=[
                    types.Part.from_bytes(data=data, mime_type=guess_image_mime_type(data)),
                    types.Part.from_text(text=IMAGE_PROMPT),
                ],
            )
        ],
    )
    return extract_response_text(response)


class GeminiChatBackend:
    """Backend where each handle is a google-genai async chat session.

    The chat object keeps the conversation history on the client side, so a
    fresh handle means a fresh conversation.
    """

    def __init__(
        self,
        client: genai.Client,
        model: str = DEFAULT_MODEL,
        image_model: Optional[str] = None,
        system_instruction: Optional[str] = None,
    ):
        self.client = client
        self.model = model
        self.image_model = image_model or model
        self.system_instruction = system_instruction

    async def new_session(self, user_id: str):
        config = None
        if self.system_instruction:
            config = types.GenerateContentConfig(system_instruction=self.system_instruction)
        logger.info(f"Starting Gemini chat ({self.model}) for user {user_id}")
        return self.client.aio.chats.create(model=self.model, config=config)

    async def send(self, handle, text: str) -> str:
        response = await handle.send_message(text)
        return extract_response_text(response)

    async def close_session(self, handle) -> None:
        # Chat history lives on the handle; dropping the reference releases it.
        return None

    async def describe_image(self, data: bytes) -> str:
        return await _describe_image(self.client, self.image_model, data)


@dataclass(frozen=True)
class AdkSessionHandle:
    """Address of one ADK session inside the in-memory session service."""

    user_id: str
    session_id: str


class AdkAgentBackend:
    """Backend that runs an ADK agent, one ADK session per handle."""

    def __init__(
        self,
        agent,
        client: genai.Client,
        image_model: str = DEFAULT_MODEL,
        session_service=None,
        app_name: str = APP_NAME,
    ):
        self.agent = agent
        self.client = client
        self.image_model = image_model
        self.app_name = app_name
        self.session_service = session_service or InMemorySessionService()
        self.runner = Runner(
            agent=agent,
            app_name=app_name,
            session_service=self.session_service,
        )
        logger.info("ADK Runner initialized")

    async def new_session(self, user_id: str) -> AdkSessionHandle:
        session = await self.session_service.create_session(
            app_name=self.app_name,
            user_id=user_id,
            session_id=f"line_{user_id}_{uuid.uuid4().hex[:8]}",
        )
        logger.info(f"Created ADK session {session.id} for user {user_id}")
        return AdkSessionHandle(user_id=user_id, session_id=session.id)

    async def send(self, handle: AdkSessionHandle, text: str) -> str:
        """Run the agent and collect streamed response parts into one string."""
        user_content = types.Content(
            role="user",
            parts=[types.Part.from_text(text=text)],
        )
        response_parts = []
        async for event in self.runner.run_async(
            user_id=handle.user_id,
            session_id=handle.session_id,
            new_message=user_content,
        ):
            if hasattr(event, "content") and event.content:
                if hasattr(event.content, "parts") and event.content.parts:
                    for part in event.content.parts:
                        if hasattr(part, "text") and part.text:
                            response_parts.append(part.text)
        return "".join(response_parts)

    async def close_session(self, handle: AdkSessionHandle) -> None:
        await self.session_service.delete_session(
            app_name=self.app_name,
            user_id=handle.user_id,
            session_id=handle.session_id,
        )

    async def describe_image(self, data: bytes) -> str:
        return await _describe_image(self.client, self.image_model, data)


def build_adk_agent(model: str = DEFAULT_MODEL, instruction: Optional[str] = None):
    """Create the ADK agent used by AdkAgentBackend."""
    return Agent(
        name=APP_NAME,
        model=model,
        description="Chat assistant answering LINE users.",
        instruction=instruction or "You are a helpful assistant chatting with users on LINE. Keep answers short.",
    )
