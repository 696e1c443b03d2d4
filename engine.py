"""
Decision engine for Warn Bot
Decides, per incoming message, whether to warn the sender, leave the chat or do nothing
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Union

from config import ALLOWED_GROUP_TITLES, GROUP_TITLE_BITBOX_DE, Config
from ledger import NEVER, Ledger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class MessageEvent:
    """The parts of an incoming message the engine looks at"""
    chat_id: Optional[int]
    chat_title: str
    sender_id: Optional[int]
    sender_is_bot: bool
    is_reply: bool
    message_id: int
    sent_at: Optional[datetime] = None


@dataclass(frozen=True)
class NoAction:
    pass


@dataclass(frozen=True)
class LeaveChat:
    chat_id: int


@dataclass(frozen=True)
class SendWarning:
    chat_id: int
    reply_to_message_id: int
    text: str


Action = Union[NoAction, LeaveChat, SendWarning]

NO_ACTION = NoAction()


def warn_message_for(config: Config, chat_title: str) -> str:
    if chat_title == GROUP_TITLE_BITBOX_DE:
        return config.warn_message_de
    return config.warn_message_en


def is_stale(previous: datetime, now: datetime, warn_after) -> bool:
    """A user never seen before is always stale"""
    if previous == NEVER:
        return True
    return now - previous > warn_after


def handle(config: Config, ledger: Ledger, event: MessageEvent, now: Optional[datetime] = None) -> Action:
    """
    Apply the moderation policy to one message.

    Order: no chat -> nothing; chat not allowed -> leave it; bots, anonymous
    senders and replies -> nothing; otherwise record the activity and warn if
    the sender was inactive for longer than config.warn_after.
    """
    if event.chat_id is None:
        return NO_ACTION

    if event.chat_title not in ALLOWED_GROUP_TITLES:
        return LeaveChat(chat_id=event.chat_id)

    # Bots do not need warnings.
    if event.sender_is_bot:
        logger.info("ignoring msg from bot")
        return NO_ACTION
    if event.sender_id is None:
        return NO_ACTION
    # Replies are not tracked; scammers go after users asking top-level questions.
    if event.is_reply:
        return NO_ACTION

    if now is None:
        now = event.sent_at or datetime.now(timezone.utc)

    logger.info("update: chat_id=%s, chat_title=%s", event.chat_id, event.chat_title)
    previous = ledger.record_activity(event.chat_id, event.sender_id, event.chat_title, now)
    if not is_stale(previous, now, config.warn_after):
        logger.info("didn't warn user; active recently")
        return NO_ACTION

    return SendWarning(
        chat_id=event.chat_id,
        reply_to_message_id=event.message_id,
        text=warn_message_for(config, event.chat_title),
    )
