from __future__ import annotations

import json
import pathlib
import sys
import tempfile
import unittest
from datetime import datetime, timezone
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

sys.path.insert(0, str(pathlib.Path(__file__).resolve().parents[1]))

from telegram.error import TelegramError
from telegram.ext import MessageHandler

import warn_bot
from cache_store import CacheStore
from config import WARN_MESSAGE_DEFAULT_EN, Config
from engine import LeaveChat, NoAction, SendWarning
from ledger import Ledger

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def make_message(title="BitBox", chat_id=-1001, user_id=42, is_bot=False, reply=None, message_id=3, date=T0):
    return SimpleNamespace(
        chat=SimpleNamespace(id=chat_id, title=title),
        from_user=SimpleNamespace(id=user_id, is_bot=is_bot) if user_id is not None else None,
        reply_to_message=reply,
        message_id=message_id,
        date=date,
    )


class EventFromMessageTest(unittest.TestCase):
    def test_fields(self) -> None:
        event = warn_bot.event_from_message(make_message(reply=object()))
        self.assertEqual(event.chat_id, -1001)
        self.assertEqual(event.chat_title, "BitBox")
        self.assertEqual(event.sender_id, 42)
        self.assertFalse(event.sender_is_bot)
        self.assertTrue(event.is_reply)
        self.assertEqual(event.message_id, 3)
        self.assertEqual(event.sent_at, T0)

    def test_private_chat_and_anonymous_sender(self) -> None:
        event = warn_bot.event_from_message(make_message(title=None, user_id=None))
        self.assertEqual(event.chat_title, "")
        self.assertIsNone(event.sender_id)
        self.assertFalse(event.sender_is_bot)

    def test_naive_date_is_utc(self) -> None:
        event = warn_bot.event_from_message(make_message(date=datetime(2024, 3, 1, 12, 0)))
        self.assertEqual(event.sent_at, T0)


class ExecuteActionTest(unittest.IsolatedAsyncioTestCase):
    async def test_send_warning(self) -> None:
        bot = AsyncMock()
        await warn_bot.execute_action(bot, SendWarning(chat_id=-1, reply_to_message_id=9, text="careful"))
        bot.send_message.assert_awaited_once()
        kwargs = bot.send_message.await_args.kwargs
        self.assertEqual(kwargs["chat_id"], -1)
        self.assertEqual(kwargs["text"], "careful")
        self.assertEqual(kwargs["reply_parameters"].message_id, 9)

    async def test_leave_chat(self) -> None:
        bot = AsyncMock()
        await warn_bot.execute_action(bot, LeaveChat(chat_id=-5))
        bot.leave_chat.assert_awaited_once_with(chat_id=-5)
        bot.send_message.assert_not_awaited()

    async def test_no_action(self) -> None:
        bot = AsyncMock()
        await warn_bot.execute_action(bot, NoAction())
        bot.leave_chat.assert_not_awaited()
        bot.send_message.assert_not_awaited()

    async def test_errors_are_logged(self) -> None:
        bot = AsyncMock()
        bot.send_message.side_effect = TelegramError("forbidden")
        bot.leave_chat.side_effect = TelegramError("not a member")
        with self.assertLogs("warn_bot", level="ERROR") as logs:
            await warn_bot.execute_action(bot, SendWarning(chat_id=-1, reply_to_message_id=9, text="x"))
            await warn_bot.execute_action(bot, LeaveChat(chat_id=-1))
        self.assertEqual(len(logs.records), 2)


class HandleMessageTest(unittest.IsolatedAsyncioTestCase):
    def setUp(self) -> None:
        self.ledger = Ledger()
        self.context = SimpleNamespace(
            bot=AsyncMock(),
            bot_data={"config": Config(bot_token="t"), "ledger": self.ledger},
        )

    async def test_warns_once(self) -> None:
        await warn_bot.handle_message(SimpleNamespace(message=make_message()), self.context)
        await warn_bot.handle_message(SimpleNamespace(message=make_message(message_id=4)), self.context)

        self.context.bot.send_message.assert_awaited_once()
        kwargs = self.context.bot.send_message.await_args.kwargs
        self.assertEqual(kwargs["text"], WARN_MESSAGE_DEFAULT_EN)
        self.assertEqual(kwargs["reply_parameters"].message_id, 3)
        self.assertEqual(self.ledger.last_activity(-1001, 42), T0)

    async def test_leaves_unknown_group(self) -> None:
        await warn_bot.handle_message(SimpleNamespace(message=make_message(title="Airdrop")), self.context)
        self.context.bot.leave_chat.assert_awaited_once_with(chat_id=-1001)
        self.assertEqual(len(self.ledger), 0)

    async def test_update_without_message(self) -> None:
        await warn_bot.handle_message(SimpleNamespace(message=None), self.context)
        self.context.bot.send_message.assert_not_awaited()


class LifecycleTest(unittest.IsolatedAsyncioTestCase):
    async def test_post_shutdown_saves(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            path = pathlib.Path(td) / "cache.json"
            ledger = Ledger()
            ledger.record_activity(-1001, 42, "BitBox", T0)
            saver = MagicMock()
            application = SimpleNamespace(
                bot_data={"saver": saver, "store": CacheStore(path), "ledger": ledger}
            )

            with self.assertLogs("warn_bot", level="INFO") as logs:
                await warn_bot.post_shutdown(application)

            saver.stop.assert_called_once()
            self.assertIn("unsaved changes: True", "\n".join(logs.output))
            self.assertFalse(ledger.dirty)
            self.assertIn("-1001", json.loads(path.read_text(encoding="utf-8"))["ChatData"])

    async def test_post_init_starts_saver(self) -> None:
        saver = MagicMock()
        await warn_bot.post_init(SimpleNamespace(bot_data={"saver": saver}))
        saver.start.assert_called_once()

    def test_build_application(self) -> None:
        config = Config(bot_token="123456:TEST-token")
        store = CacheStore("unused.json")
        ledger = Ledger()
        app = warn_bot.build_application(config, store, ledger, save_interval=5)

        self.assertIs(app.bot_data["config"], config)
        self.assertIs(app.bot_data["ledger"], ledger)
        self.assertIs(app.bot_data["store"], store)
        self.assertEqual(app.bot_data["saver"].interval, 5)
        handlers = app.handlers[0]
        self.assertEqual(len(handlers), 1)
        self.assertIsInstance(handlers[0], MessageHandler)


class MainTest(unittest.TestCase):
    def test_bad_config_exits_with_error(self) -> None:
        with tempfile.TemporaryDirectory() as td:
            with self.assertRaises(SystemExit) as cm:
                warn_bot.main(["--config", str(pathlib.Path(td) / "nope.json")])
        self.assertEqual(cm.exception.code, 1)


if __name__ == "__main__":
    unittest.main()
