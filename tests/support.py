"""Fakes and webhook payload builders shared by the tests."""
import asyncio
import base64
import hashlib
import hmac
import json

CHANNEL_SECRET = "test-channel-secret"


class FakeBackend:
    """In-memory ConversationBackend that records every call."""

    def __init__(self, reply="backend answer", error=None, delay=0.0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.created = []
        self.sent = []
        self.closed = []
        self.images = []

    async def new_session(self, user_id):
        # Yield to the loop so concurrent callers can interleave here.
        await asyncio.sleep(0)
        handle = f"handle-{len(self.created) + 1}"
        self.created.append((user_id, handle))
        return handle

    async def send(self, handle, text):
        self.sent.append((handle, text))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.reply

    async def close_session(self, handle):
        self.closed.append(handle)

    async def describe_image(self, data):
        self.images.append(data)
        if self.error:
            raise self.error
        return "a red car"


def sign(body: str, secret: str = CHANNEL_SECRET) -> str:
    digest = hmac.new(secret.encode("utf-8"), body.encode("utf-8"), hashlib.sha256).digest()
    return base64.b64encode(digest).decode("utf-8")


def webhook_body(*events) -> str:
    return json.dumps({"destination": "Uxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxxx", "events": list(events)})


def _event(event_type, source=None, reply_token="reply-token-1", **extra):
    event = {
        "type": event_type,
        "mode": "active",
        "timestamp": 1625665242211,
        "webhookEventId": "01FZ74A0TDDPYRVKNK77XKC3ZR",
        "deliveryContext": {"isRedelivery": False},
        "source": source or {"type": "user", "userId": "U1"},
    }
    if reply_token:
        event["replyToken"] = reply_token
    event.update(extra)
    return event


def text_event(text, source=None, reply_token="reply-token-1"):
    return _event(
        "message",
        source=source,
        reply_token=reply_token,
        message={"type": "text", "id": "468789577898262530", "text": text, "quoteToken": "q3Plxr4AgKd"},
    )


def sticker_event(sticker_id="X", package_id="Y", keywords=None, text=None):
    message = {
        "type": "sticker",
        "id": "1501597916",
        "quoteToken": "q3Plxr4AgKd",
        "stickerId": sticker_id,
        "packageId": package_id,
        "stickerResourceType": "STATIC",
    }
    if keywords is not None:
        message["keywords"] = keywords
    if text is not None:
        message["text"] = text
    return _event("message", message=message)


def image_event(message_id="325708"):
    return _event(
        "message",
        message={
            "type": "image",
            "id": message_id,
            "quoteToken": "q3Plxr4AgKd",
            "contentProvider": {"type": "line"},
        },
    )


def video_event():
    return _event(
        "message",
        message={
            "type": "video",
            "id": "325709",
            "quoteToken": "q3Plxr4AgKd",
            "duration": 60000,
            "contentProvider": {"type": "line"},
        },
    )


def follow_event():
    return _event("follow", follow={"isUnblocked": False})


def postback_event(data="action=buy&itemid=111"):
    return _event("postback", postback={"data": data})


def beacon_event():
    return _event("beacon", beacon={"hwid": "d41d8cd97f", "type": "enter"})
