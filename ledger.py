"""
Activity ledger for Warn Bot
Last top-level message time of every user in every tracked group
"""
import json
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

logger = logging.getLogger(__name__)

# Last-activity value of a user we have never seen post
NEVER = datetime.min.replace(tzinfo=timezone.utc)
NEVER_TEXT = "0001-01-01T00:00:00Z"

_FRACTION = re.compile(r"(\.\d{6})\d+")


@dataclass
class UserActivity:
    """Activity of one user in one chat"""
    last_message_at: datetime = NEVER


@dataclass
class ChatRecord:
    """One tracked group chat"""
    title: str = ""
    users: dict[int, UserActivity] = field(default_factory=dict)


class LedgerFormatError(ValueError):
    """Serialized ledger has the wrong shape"""


def format_timestamp(value: datetime) -> str:
    if value == NEVER:
        return NEVER_TEXT
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def parse_timestamp(text: str) -> datetime:
    """Parse an RFC 3339 timestamp; returns an aware datetime"""
    if not isinstance(text, str):
        raise LedgerFormatError(f"timestamp must be a string, got {text!r}")
    # Older caches carry nanoseconds
    text = _FRACTION.sub(r"\1", text.strip())
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        value = datetime.fromisoformat(text)
    except ValueError as e:
        raise LedgerFormatError(f"invalid timestamp {text!r}") from e
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    try:
        value.astimezone(timezone.utc)
    except OverflowError as e:
        # Offsets can push year 1 below the minimum, which still means never
        if value.year == datetime.min.year:
            return NEVER
        raise LedgerFormatError(f"timestamp out of range {text!r}") from e
    if value == NEVER:
        return NEVER
    return value


def chats_to_dict(chats: dict[int, ChatRecord]) -> dict:
    return {
        "ChatData": {
            str(chat_id): {
                "Title": chat.title,
                "UserData": {
                    str(user_id): {"LastMessageAt": format_timestamp(user.last_message_at)}
                    for user_id, user in chat.users.items()
                },
            }
            for chat_id, chat in chats.items()
        }
    }


def chats_from_dict(data) -> dict[int, ChatRecord]:
    if not isinstance(data, dict):
        raise LedgerFormatError("ledger must be a JSON object")
    chat_data = data.get("ChatData")
    if chat_data is None:
        chat_data = {}
    if not isinstance(chat_data, dict):
        raise LedgerFormatError("ChatData must be an object")

    chats: dict[int, ChatRecord] = {}
    for chat_key, chat_raw in chat_data.items():
        if not isinstance(chat_raw, dict):
            raise LedgerFormatError(f"chat {chat_key} must be an object")
        title = chat_raw.get("Title") or ""
        if not isinstance(title, str):
            raise LedgerFormatError(f"title of chat {chat_key} must be a string")
        user_data = chat_raw.get("UserData")
        if user_data is None:
            user_data = {}
        if not isinstance(user_data, dict):
            raise LedgerFormatError(f"UserData of chat {chat_key} must be an object")

        users = {}
        for user_key, user_raw in user_data.items():
            if not isinstance(user_raw, dict):
                raise LedgerFormatError(f"user {user_key} in chat {chat_key} must be an object")
            users[_parse_id(user_key)] = UserActivity(
                last_message_at=parse_timestamp(user_raw.get("LastMessageAt", NEVER_TEXT))
            )
        chats[_parse_id(chat_key)] = ChatRecord(title=title, users=users)
    return chats


def _parse_id(key) -> int:
    try:
        return int(key)
    except (TypeError, ValueError) as e:
        raise LedgerFormatError(f"invalid id {key!r}") from e


class Ledger:
    """
    In-memory tracking state shared by the message handler and the saver thread.
    Every read and write of the chats and the dirty flag happens under one lock.
    """

    def __init__(self, chats: Optional[dict[int, ChatRecord]] = None):
        self._chats: dict[int, ChatRecord] = chats if chats is not None else {}
        self._dirty = False
        self._lock = threading.Lock()

    @property
    def dirty(self) -> bool:
        with self._lock:
            return self._dirty

    def record_activity(self, chat_id: int, user_id: int, chat_title: str, now: datetime) -> datetime:
        """
        Set the user's last activity to `now` and return the previous value.
        Returns NEVER for a user not seen before in this chat.
        """
        with self._lock:
            chat = self._chats.get(chat_id)
            if chat is None:
                chat = self._chats[chat_id] = ChatRecord()
            chat.title = chat_title

            user = chat.users.get(user_id)
            if user is None:
                user = chat.users[user_id] = UserActivity()
            previous = user.last_message_at
            user.last_message_at = now
            self._dirty = True
            return previous

    def last_activity(self, chat_id: int, user_id: int) -> Optional[datetime]:
        """Inspection helper; the message path uses record_activity"""
        with self._lock:
            chat = self._chats.get(chat_id)
            if chat is None or user_id not in chat.users:
                return None
            return chat.users[user_id].last_message_at

    def snapshot_if_dirty(self) -> tuple[bytes, bool]:
        """
        Serialize the ledger if it changed since the last snapshot.
        Returns (b"", False) when there is nothing to save.
        """
        with self._lock:
            if not self._dirty:
                return b"", False
            self._dirty = False
            payload = json.dumps(chats_to_dict(self._chats), ensure_ascii=False, indent=2)
            return payload.encode("utf-8"), True

    def restore(self, raw: bytes):
        """Replace the state with a serialized ledger; bad input leaves an empty ledger"""
        try:
            chats = chats_from_dict(json.loads(raw))
        except (ValueError, UnicodeDecodeError) as e:
            logger.warning("could not load ledger (%s); starting with an empty one", e)
            chats = {}
        with self._lock:
            self._chats = chats
            self._dirty = False

    def to_dict(self) -> dict:
        """Plain-dict copy of the state in cache file shape, for inspection"""
        with self._lock:
            return chats_to_dict(self._chats)

    def __len__(self):
        with self._lock:
            return len(self._chats)
