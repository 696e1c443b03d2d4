"""
Configuration for Warn Bot - inactivity scam warnings
"""
import argparse
import json
import logging
import re
import stat
from dataclasses import dataclass, field
from datetime import timedelta
from importlib import metadata
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

# Group settings
GROUP_TITLE_TEST = "Warntest"
GROUP_TITLE_BITBOX_EN = "BitBox"
GROUP_TITLE_BITBOX_DE = "BitBox DE"
ALLOWED_GROUP_TITLES = frozenset({GROUP_TITLE_TEST, GROUP_TITLE_BITBOX_EN, GROUP_TITLE_BITBOX_DE})

# Warning texts used when the config file does not set them
WARN_MESSAGE_DEFAULT_EN = "Do not respond to any direct messages or calls."
WARN_MESSAGE_DEFAULT_DE = "Antworte nicht auf private Nachrichten oder Anrufe. Betrüger am Werk."

# Warn a user who posts after this much inactivity
DEFAULT_WARN_AFTER = timedelta(days=14)

# Paths
DEFAULT_CACHE_FILE = Path("cache.json")
DEFAULT_CONFIG_FILE = Path("config.json")

# Persistence
SAVE_INTERVAL_SECONDS = 10 * 60


class ConfigError(Exception):
    """Config file is missing, unreadable or invalid"""


@dataclass(frozen=True)
class Config:
    bot_token: str = field(repr=False)
    warn_message_en: str = WARN_MESSAGE_DEFAULT_EN
    warn_message_de: str = WARN_MESSAGE_DEFAULT_DE
    warn_after: timedelta = DEFAULT_WARN_AFTER


def load_config(path, warn_after: timedelta = DEFAULT_WARN_AFTER) -> Config:
    """
    Read the JSON config file.
    Raises ConfigError for anything that should stop the bot from starting.
    """
    path = Path(path)
    try:
        raw = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"could not read config file {path}: {e}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"could not parse config file {path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config file {path} must contain a JSON object")

    _check_permissions(path)

    token = data.get("BotToken")
    if not isinstance(token, str) or not token.strip():
        raise ConfigError(f"BotToken missing in config file {path}")

    return Config(
        bot_token=token.strip(),
        warn_message_en=_message_or_default(data, "WarnMessageEn", WARN_MESSAGE_DEFAULT_EN),
        warn_message_de=_message_or_default(data, "WarnMessageDe", WARN_MESSAGE_DEFAULT_DE),
        warn_after=warn_after,
    )


def _message_or_default(data: dict, key: str, default: str) -> str:
    value = data.get(key)
    if value is None or value == "":
        return default
    if not isinstance(value, str):
        raise ConfigError(f"{key} must be a string")
    return value


def _check_permissions(path: Path):
    try:
        mode = path.stat().st_mode
    except OSError:
        return
    if mode & (stat.S_IRWXG | stat.S_IRWXO):
        logger.warning("config file %s is accessible by other users; protect it with 0600", path)


# === DURATIONS ===
_BARE_NUMBER = re.compile(r"\d+(?:\.\d+)?")
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")
_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}


def parse_duration(text: str) -> timedelta:
    """
    Parse durations like "336h", "14d", "1h30m" or "90s".
    A bare number is taken as seconds.
    """
    text = text.strip().lower()
    if not text:
        raise ValueError("empty duration")
    if _BARE_NUMBER.fullmatch(text):
        return timedelta(seconds=float(text))

    pos = 0
    total = timedelta()
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(text):
        raise ValueError(f"invalid duration: {text!r}")
    return total


def _duration_arg(text: str) -> timedelta:
    try:
        return parse_duration(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _version() -> str:
    try:
        return metadata.version("warn-bot")
    except metadata.PackageNotFoundError:
        return "unknown"


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="warn-bot",
        description="Warn users who post in a group after a long time of inactivity.",
    )
    parser.add_argument(
        "--cache",
        type=Path,
        default=DEFAULT_CACHE_FILE,
        help="Filename for the persistent cache (default: %(default)s)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=DEFAULT_CONFIG_FILE,
        help="Config file. Protect with 0600 as it contains the secret bot token. (default: %(default)s)",
    )
    parser.add_argument(
        "--warn-after",
        type=_duration_arg,
        default=DEFAULT_WARN_AFTER,
        help="Warn user when they post a message after this amount of inactivity, "
             "e.g. 336h or 14d. Defaults to two weeks.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {_version()}")
    return parser


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    return build_arg_parser().parse_args(argv)
