#!/usr/bin/env python3
"""
🛡️ Warn Bot - scam warnings for returning users

Watches the BitBox community groups and replies with a warning when a user
posts for the first time, or for the first time after a long inactivity.
Scammers target exactly these users with direct messages and calls.

Features:
- Per-group, per-user last activity tracking
- English / German warning texts
- Leaves every group that is not on the allow-list
- Cache file saved every 10 minutes and on shutdown

Setup:
  1. Create bot via @BotFather
  2. Put the token into config.json: {"BotToken": "..."} and chmod 600 it
  3. Add bot to the groups
  4. Run: python warn_bot.py --cache cache.json --config config.json
"""

import logging
import sys
from datetime import timezone
from typing import Optional

from telegram import Message, ReplyParameters, Update
from telegram.error import InvalidToken, TelegramError
from telegram.ext import Application, ContextTypes, MessageHandler, filters

from cache_store import CacheStore, PeriodicSaver
from config import SAVE_INTERVAL_SECONDS, Config, ConfigError, load_config, parse_args
from engine import Action, LeaveChat, MessageEvent, SendWarning, handle
from ledger import Ledger

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: int = logging.INFO):
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # One line per long-poll request otherwise
    logging.getLogger("httpx").setLevel(logging.WARNING)


# === TELEGRAM <-> ENGINE ===
def event_from_message(message: Message) -> MessageEvent:
    chat = message.chat
    sender = message.from_user
    sent_at = message.date
    if sent_at is not None and sent_at.tzinfo is None:
        sent_at = sent_at.replace(tzinfo=timezone.utc)
    return MessageEvent(
        chat_id=chat.id if chat is not None else None,
        chat_title=(chat.title or "") if chat is not None else "",
        sender_id=sender.id if sender is not None else None,
        sender_is_bot=bool(sender and sender.is_bot),
        is_reply=message.reply_to_message is not None,
        message_id=message.message_id,
        sent_at=sent_at,
    )


async def execute_action(bot, action: Action):
    """Carry out the engine's decision. Telegram errors are logged, not retried."""
    if isinstance(action, LeaveChat):
        try:
            await bot.leave_chat(chat_id=action.chat_id)
        except TelegramError as e:
            logger.error("error leaving chat %s: %s", action.chat_id, e)
            return
        logger.info("left group %s", action.chat_id)

    elif isinstance(action, SendWarning):
        try:
            await bot.send_message(
                chat_id=action.chat_id,
                text=action.text,
                reply_parameters=ReplyParameters(message_id=action.reply_to_message_id),
            )
        except TelegramError as e:
            logger.error("error warning user: %s", e)
            return
        logger.info("warned user in chat %s", action.chat_id)


# === MESSAGE HANDLER ===
async def handle_message(update: Update, context: ContextTypes.DEFAULT_TYPE):
    """Handle incoming messages and warn inactive users"""
    message = update.message
    if message is None:
        return

    config: Config = context.bot_data["config"]
    ledger: Ledger = context.bot_data["ledger"]

    event = event_from_message(message)
    action = handle(config, ledger, event)
    if isinstance(action, LeaveChat):
        logger.info("chat %s (%s) is not allowed", event.chat_id, event.chat_title)
    await execute_action(context.bot, action)


# === LIFECYCLE ===
async def post_init(application: Application):
    application.bot_data["saver"].start()


async def post_shutdown(application: Application):
    ledger: Ledger = application.bot_data["ledger"]
    application.bot_data["saver"].stop()
    logger.info("final save; unsaved changes: %s", ledger.dirty)
    application.bot_data["store"].save(ledger)
    logger.info("exiting")


def build_application(
    config: Config,
    store: CacheStore,
    ledger: Ledger,
    save_interval: float = SAVE_INTERVAL_SECONDS,
) -> Application:
    app = (
        Application.builder()
        .token(config.bot_token)
        .post_init(post_init)
        .post_shutdown(post_shutdown)
        .build()
    )
    app.bot_data["config"] = config
    app.bot_data["store"] = store
    app.bot_data["ledger"] = ledger
    app.bot_data["saver"] = PeriodicSaver(store, ledger, save_interval)

    app.add_handler(MessageHandler(filters.UpdateType.MESSAGE, handle_message))
    return app


def main(argv: Optional[list] = None):
    args = parse_args(argv)
    setup_logging()

    try:
        config = load_config(args.config, warn_after=args.warn_after)
    except ConfigError as e:
        logger.critical("%s", e)
        sys.exit(1)

    store = CacheStore(args.cache)
    ledger = store.load()

    try:
        app = build_application(config, store, ledger)
        logger.info("running; warn_after=%s", config.warn_after)
        # SIGINT / SIGTERM stop polling, post_shutdown does the final save
        app.run_polling(allowed_updates=[Update.MESSAGE])
    except InvalidToken as e:
        logger.critical("invalid bot token: %s", e)
        sys.exit(1)


if __name__ == "__main__":
    main()
