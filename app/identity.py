"""Session key extraction from the source of a LINE event."""
import logging
from typing import Optional

from linebot.v3.webhooks import GroupSource, RoomSource, UserSource

from gemini_chat.constants import ALLOWED_SESSION_SCOPES, SESSION_SCOPE_CHAT, SESSION_SCOPE_USER

logger = logging.getLogger(__name__)


def extract_session_key(source, scope: str = SESSION_SCOPE_USER) -> Optional[str]:
    """Return the key a message's session is stored under.

    With the "user" scope every LINE user has their own session, even when
    they talk to the bot inside a group or room.  With the "chat" scope a group
    or room shares one session among all of its members.

    Returns:
        The key, or None when the source carries no usable identity (for
        example a group message from a user who has not consented to share
        their profile).
    """
    if scope not in ALLOWED_SESSION_SCOPES:
        raise ValueError(f"Unknown session scope: {scope}")

    if isinstance(source, UserSource):
        return source.user_id or None
    if isinstance(source, GroupSource):
        if scope == SESSION_SCOPE_CHAT:
            return source.group_id or None
        return source.user_id or None
    if isinstance(source, RoomSource):
        if scope == SESSION_SCOPE_CHAT:
            return source.room_id or None
        return source.user_id or None

    logger.warning(f"Unrecognised event source: {type(source).__name__}")
    return None
