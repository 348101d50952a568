from unittest.mock import AsyncMock

import pytest
from linebot.v3.exceptions import InvalidSignatureError

from gemini_chat import constants
from gemini_chat.topic_filter import SubstringTopicFilter

import app.line_handler as lh
from app.services.session_store import SessionStore
from app.session_router import SessionRouter
from tests.support import (
    CHANNEL_SECRET,
    FakeBackend,
    beacon_event,
    follow_event,
    image_event,
    postback_event,
    sign,
    sticker_event,
    text_event,
    video_event,
    webhook_body,
)


def make_handler(backend, topic_filter=None, session_scope="user"):
    router = SessionRouter(SessionStore(backend), topic_filter=topic_filter)
    handler = lh.LineBotHandler(
        CHANNEL_SECRET, "token", router=router, session_scope=session_scope
    )
    handler.line_bot_api = AsyncMock()
    handler.blob_api = AsyncMock()
    return handler


async def deliver(handler, *events):
    body = webhook_body(*events)
    await handler.handle_events(handler.parse(body, sign(body)))


def replied_texts(handler):
    return [
        [m.text for m in call.args[0].messages]
        for call in handler.line_bot_api.reply_message.call_args_list
    ]


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def test_sticker_reply_format():
    reply = lh.format_sticker_reply("X", "Y", ["a", "b"], "")
    assert reply == "Received sticker: X, pkg: Y kw: ,a,b  text: "


def test_sticker_reply_without_keywords_or_text():
    assert lh.format_sticker_reply("X", "Y", None, None) == "Received sticker: X, pkg: Y kw:   text: "


def test_split_reply_text_short():
    assert lh.split_reply_text("hi") == ["hi"]


def test_split_reply_text_long_is_capped():
    text = "a" * (constants.LINE_MAX_TEXT_LENGTH * 7 + 1)
    chunks = lh.split_reply_text(text)
    assert len(chunks) == constants.LINE_MAX_REPLY_MESSAGES
    assert all(len(c) == constants.LINE_MAX_TEXT_LENGTH for c in chunks)


def test_parse_rejects_bad_signature(backend):
    handler = make_handler(backend)
    body = webhook_body(text_event("hello"))
    with pytest.raises(InvalidSignatureError):
        handler.parse(body, sign(body, secret="someone-else"))


# ---------------------------------------------------------------------------
# Text messages
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_text_message_replies_with_backend_answer(backend):
    handler = make_handler(backend, topic_filter=SubstringTopicFilter(["mazda"]))

    await deliver(handler, text_event("What is the price of a Mazda CX-5?"))

    assert backend.sent == [("handle-1", "What is the price of a Mazda CX-5?")]
    assert replied_texts(handler) == [["backend answer"]]
    request = handler.line_bot_api.reply_message.call_args.args[0]
    assert request.reply_token == "reply-token-1"


@pytest.mark.asyncio
async def test_off_topic_text_gets_refusal(backend):
    handler = make_handler(backend, topic_filter=SubstringTopicFilter(["mazda"]))

    await deliver(handler, text_event("What's the weather?"))

    assert backend.sent == []
    assert replied_texts(handler) == [[constants.REFUSAL_TEXT]]


@pytest.mark.asyncio
async def test_batch_is_handled_in_order(backend):
    handler = make_handler(backend)

    await deliver(
        handler,
        text_event("first", reply_token="t1"),
        text_event("reset", reply_token="t2"),
        text_event("second", reply_token="t3"),
    )

    assert backend.sent == [("handle-1", "first"), ("handle-2", "second")]
    assert replied_texts(handler) == [
        ["backend answer"],
        [constants.GREETING_TEXT],
        ["backend answer"],
    ]


@pytest.mark.asyncio
async def test_group_members_have_separate_sessions_by_default(backend):
    handler = make_handler(backend)

    await deliver(
        handler,
        text_event("hi", source={"type": "group", "groupId": "G1", "userId": "U1"}),
        text_event("hi", source={"type": "group", "groupId": "G1", "userId": "U2"}),
    )

    assert [user for user, _ in backend.created] == ["U1", "U2"]


@pytest.mark.asyncio
async def test_chat_scope_shares_group_session(backend):
    handler = make_handler(backend, session_scope="chat")

    await deliver(
        handler,
        text_event("hi", source={"type": "group", "groupId": "G1", "userId": "U1"}),
        text_event("hi", source={"type": "group", "groupId": "G1", "userId": "U2"}),
    )

    assert backend.created == [("G1", "handle-1")]


@pytest.mark.asyncio
async def test_text_without_identity_is_ignored(backend):
    handler = make_handler(backend)

    await deliver(handler, text_event("hi", source={"type": "group", "groupId": "G1"}))

    assert backend.created == []
    handler.line_bot_api.reply_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_reply_failure_is_swallowed(backend):
    handler = make_handler(backend)
    handler.line_bot_api.reply_message.side_effect = RuntimeError("invalid reply token")

    await deliver(handler, text_event("hello"))

    assert backend.sent == [("handle-1", "hello")]


@pytest.mark.asyncio
async def test_missing_reply_token_skips_reply(backend):
    handler = make_handler(backend)

    sent = await handler._send_response(None, "hello")

    assert sent is False
    handler.line_bot_api.reply_message.assert_not_awaited()


# ---------------------------------------------------------------------------
# Non-text messages
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_sticker_gets_template_reply_without_session(backend):
    handler = make_handler(backend)

    await deliver(handler, sticker_event("X", "Y", keywords=["a", "b"]))

    assert replied_texts(handler) == [["Received sticker: X, pkg: Y kw: ,a,b  text: "]]
    assert backend.created == []


@pytest.mark.asyncio
async def test_image_is_fetched_and_described(backend):
    handler = make_handler(backend)
    handler.blob_api.get_message_content.return_value = bytearray(b"\xff\xd8\xffimage")

    await deliver(handler, image_event("325708"))

    handler.blob_api.get_message_content.assert_awaited_once_with("325708")
    assert backend.images == [b"\xff\xd8\xffimage"]
    assert replied_texts(handler) == [["a red car"]]
    assert backend.created == []


@pytest.mark.asyncio
async def test_image_fetch_failure_replies_with_error():
    backend = FakeBackend()
    handler = make_handler(backend)
    handler.blob_api.get_message_content.side_effect = RuntimeError("404 not found")

    await deliver(handler, image_event())

    assert backend.images == []
    assert replied_texts(handler) == [[constants.IMAGE_FAILURE_TEXT + "404 not found"]]


@pytest.mark.asyncio
async def test_image_description_failure_replies_with_error():
    backend = FakeBackend(error=RuntimeError("vision down"))
    handler = make_handler(backend)
    handler.blob_api.get_message_content.return_value = bytearray(b"\x89PNG")

    await deliver(handler, image_event())

    assert replied_texts(handler) == [[constants.IMAGE_FAILURE_TEXT + "vision down"]]


@pytest.mark.asyncio
async def test_log_only_events_send_no_reply(backend):
    handler = make_handler(backend)

    await deliver(handler, video_event(), follow_event(), postback_event(), beacon_event())

    handler.line_bot_api.reply_message.assert_not_awaited()
    assert backend.created == []


@pytest.mark.asyncio
async def test_unrecognised_event_is_ignored(backend):
    handler = make_handler(backend)

    await handler.handle_event(object())

    handler.line_bot_api.reply_message.assert_not_awaited()


@pytest.mark.asyncio
async def test_shutdown_closes_api_client(backend):
    handler = make_handler(backend)
    api_client = AsyncMock()
    handler.api_client = api_client

    await handler.shutdown()

    api_client.close.assert_awaited_once()
    assert handler.api_client is None
