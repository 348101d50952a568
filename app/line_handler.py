"""LINE webhook handler for the Gemini conversation bridge.

This module is the bridge between LINE and the conversation backend.  It
receives event batches from the LINE platform (via webhooks), dispatches each
event by kind, hands text to the session router and sends the reply back with
the event's reply token.

Architecture overview:
  LINE Platform  ──webhook POST──►  FastAPI (main.py)
                                        │
                                        ▼
                              LineBotHandler.parse()  (signature check)
                                        │
                                        ▼
                              LineBotHandler.handle_events()
                                        │
              ┌──────────────┬──────────┼───────────┬─────────────────┐
              ▼              ▼          ▼           ▼                 ▼
            text          sticker     image       video       follow / postback /
              │         (template)      │        (log only)     beacon (log only)
              ▼                         ▼
     SessionRouter.handle_message   blob fetch → SessionRouter.describe_image
              │                         │
              └────────────┬────────────┘
                           ▼
                 reply_message(reply_token)

Key design decisions:
  - Events in one batch are handled one after another, in delivery order, so
    a "reset" followed by a question from the same user stays ordered.
  - Stickers, images and everything else never touch the user's session.
  - Backend failures are turned into fixed replies; only signature and payload
    errors reach the HTTP layer.
  - Reply failures are logged and counted, never retried.  Reply tokens are
    single-use and expire quickly.
"""
import logging
import traceback

from linebot.v3 import WebhookParser
from linebot.v3.messaging import (
    AsyncApiClient,
    AsyncMessagingApi,
    AsyncMessagingApiBlob,
    Configuration,
    ReplyMessageRequest,
    TextMessage,
)
from linebot.v3.webhooks import (
    BeaconEvent,
    FollowEvent,
    ImageMessageContent,
    MessageEvent,
    PostbackEvent,
    StickerMessageContent,
    TextMessageContent,
    VideoMessageContent,
)

from gemini_chat import constants

from app.identity import extract_session_key
from app.metrics import EVENT_TOTAL, REPLY_ERRORS
from app.session_router import SessionRouter

logger = logging.getLogger(__name__)


def format_sticker_reply(sticker_id: str, package_id: str, keywords, text) -> str:
    """Render the acknowledgement sent back for a sticker.

    Each keyword is prefixed with a comma, so ["a", "b"] renders as ",a,b".
    """
    kw = "".join("," + k for k in (keywords or []))
    return constants.STICKER_TEMPLATE.format(
        sticker_id=sticker_id,
        package_id=package_id,
        keywords=kw,
        text=text or "",
    )


def split_reply_text(text: str) -> list[str]:
    """Split text into LINE-sized chunks.

    LINE rejects text messages longer than 5000 characters and a reply may
    carry at most 5 messages.  Anything beyond that is dropped.
    """
    size = constants.LINE_MAX_TEXT_LENGTH
    chunks = [text[i:i + size] for i in range(0, len(text), size)] or [""]
    if len(chunks) > constants.LINE_MAX_REPLY_MESSAGES:
        logger.warning(
            f"Reply of {len(text)} chars truncated to "
            f"{constants.LINE_MAX_REPLY_MESSAGES} messages"
        )
        chunks = chunks[:constants.LINE_MAX_REPLY_MESSAGES]
    return chunks


class LineBotHandler:
    """Handler for LINE webhook integration with the session router."""

    def __init__(
        self,
        channel_secret: str,
        channel_access_token: str,
        router: SessionRouter,
        session_scope: str = constants.SESSION_SCOPE_USER,
    ):
        """Initialize LINE bot handler.

        Note: This only stores references.  The LINE API clients are created
        later in initialize() because the async client opens an HTTP session.

        Args:
            channel_secret: Channel secret used to verify webhook signatures.
            channel_access_token: Long-lived channel access token.
            router: SessionRouter that answers text messages.
            session_scope: "user" or "chat"; see app.identity.
        """
        self.channel_access_token = channel_access_token
        self.router = router
        self.session_scope = session_scope
        self.parser = WebhookParser(channel_secret)
        self.api_client = None      # AsyncApiClient (created in initialize)
        self.line_bot_api = None    # AsyncMessagingApi for replies
        self.blob_api = None        # AsyncMessagingApiBlob for media content

    async def initialize(self):
        """Create the LINE Messaging API clients."""
        if self.line_bot_api is not None:
            return
        configuration = Configuration(access_token=self.channel_access_token)
        self.api_client = AsyncApiClient(configuration)
        self.line_bot_api = AsyncMessagingApi(self.api_client)
        self.blob_api = AsyncMessagingApiBlob(self.api_client)
        logger.info("LINE Messaging API clients initialized")

    async def shutdown(self):
        """Close the LINE API HTTP session."""
        if self.api_client:
            await self.api_client.close()
            self.api_client = None

    # ------------------------------------------------------------------
    # Webhook entry points (called by main.py's FastAPI route)
    # ------------------------------------------------------------------

    def parse(self, body: str, signature: str) -> list:
        """Verify the signature of a webhook body and parse its events.

        Raises:
            linebot.v3.exceptions.InvalidSignatureError: If the signature does
                not match the channel secret.
            Exception: If the body is not a valid webhook payload.
        """
        return self.parser.parse(body, signature)

    async def handle_events(self, events: list):
        """Handle every event of one webhook delivery, in order."""
        for event in events:
            logger.info(f"Got event {type(event).__name__}")
            try:
                await self.handle_event(event)
            except Exception as e:
                logger.error(f"Error processing LINE event: {e}")
                logger.error(traceback.format_exc())

    async def handle_event(self, event):
        """Dispatch one event by its kind."""
        if isinstance(event, MessageEvent):
            await self.handle_message_event(event)
        elif isinstance(event, FollowEvent):
            EVENT_TOTAL.labels(type="follow").inc()
            logger.info("Got followed event")
        elif isinstance(event, PostbackEvent):
            EVENT_TOTAL.labels(type="postback").inc()
            logger.info(f"Got postback: {event.postback.data}")
        elif isinstance(event, BeaconEvent):
            EVENT_TOTAL.labels(type="beacon").inc()
            logger.info(f"Got beacon: {event.beacon.hwid}")
        else:
            EVENT_TOTAL.labels(type="unknown").inc()
            logger.info(f"Unhandled event: {type(event).__name__}")

    async def handle_message_event(self, event: MessageEvent):
        """Dispatch a message event by the kind of its content."""
        message = event.message
        if isinstance(message, TextMessageContent):
            await self.handle_text_message(event)
        elif isinstance(message, StickerMessageContent):
            await self.handle_sticker_message(event)
        elif isinstance(message, ImageMessageContent):
            await self.handle_image_message(event)
        elif isinstance(message, VideoMessageContent):
            EVENT_TOTAL.labels(type="video").inc()
            logger.info(f"Got video msg ID: {message.id}")
        else:
            EVENT_TOTAL.labels(type="unknown_message").inc()
            logger.info(f"Unknown message: {type(message).__name__}")

    # ------------------------------------------------------------------
    # Message handlers
    # ------------------------------------------------------------------

    async def handle_text_message(self, event: MessageEvent):
        """Route a text message through the user's session."""
        EVENT_TOTAL.labels(type="text").inc()
        user_id = extract_session_key(event.source, self.session_scope)
        if not user_id:
            logger.warning("Text message without an extractable user identity, ignoring")
            return

        text = event.message.text or ""
        logger.info(f"Processing LINE message from {user_id}: {text[:50]}")
        try:
            response_text = await self.router.handle_message(user_id, text)
        except Exception as e:
            logger.error(f"Error processing LINE message: {e}")
            logger.error(traceback.format_exc())
            response_text = self.router.apology_text

        await self._send_response(event.reply_token, response_text)

    async def handle_sticker_message(self, event: MessageEvent):
        """Acknowledge a sticker with its identifying fields."""
        EVENT_TOTAL.labels(type="sticker").inc()
        message = event.message
        reply = format_sticker_reply(
            message.sticker_id, message.package_id, message.keywords, message.text
        )
        await self._send_response(event.reply_token, reply)

    async def handle_image_message(self, event: MessageEvent):
        """Fetch an image from LINE and reply with the backend's description.

        Flow:
          1. Download the image bytes by message ID from the LINE content API.
          2. Send the bytes to the backend's image description call.
          3. Reply with the description, or the failure text plus the error.
        """
        EVENT_TOTAL.labels(type="image").inc()
        message_id = event.message.id
        logger.info(f"Got img msg ID: {message_id}")

        try:
            data = bytes(await self.blob_api.get_message_content(message_id))
        except Exception as e:
            logger.error(f"Got GetMessageContent err for {message_id}: {e}")
            await self._send_response(event.reply_token, constants.IMAGE_FAILURE_TEXT + str(e))
            return

        try:
            description = await self.router.describe_image(data)
        except Exception as e:
            logger.error(f"Error describing image {message_id}: {e}")
            logger.error(traceback.format_exc())
            description = constants.IMAGE_FAILURE_TEXT + str(e)

        await self._send_response(event.reply_token, description or constants.EMPTY_RESPONSE_TEXT)

    # ------------------------------------------------------------------
    # Reply channel
    # ------------------------------------------------------------------

    async def _send_response(self, reply_token, response_text: str) -> bool:
        """Reply to one event, splitting text that exceeds LINE's limits.

        Returns:
            True if LINE accepted the reply.
        """
        if not reply_token:
            logger.warning("Cannot send response: event has no reply token")
            return False
        if not response_text:
            response_text = constants.EMPTY_RESPONSE_TEXT

        request = ReplyMessageRequest(
            reply_token=reply_token,
            messages=[TextMessage(text=chunk) for chunk in split_reply_text(response_text)],
        )
        try:
            await self.line_bot_api.reply_message(request)
            return True
        except Exception as e:
            REPLY_ERRORS.inc()
            logger.error(f"Failed to reply to LINE: {e}")
            return False
