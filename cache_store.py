"""
Cache file persistence for Warn Bot
"""
import logging
import os
import threading
from pathlib import Path

from config import SAVE_INTERVAL_SECONDS
from ledger import Ledger

logger = logging.getLogger(__name__)

# Chat membership and activity times are private
CACHE_FILE_MODE = 0o600


class CacheStore:
    """Loads and saves the ledger as a JSON file"""

    def __init__(self, path):
        self.path = Path(path)

    def load(self) -> Ledger:
        """Read the cache file. A missing or broken file gives an empty ledger."""
        ledger = Ledger()
        try:
            raw = self.path.read_bytes()
        except FileNotFoundError:
            logger.info("no cache file at %s; starting fresh", self.path)
            return ledger
        except OSError as e:
            logger.warning("could not read cache file %s: %s; ignoring", self.path, e)
            return ledger

        ledger.restore(raw)
        logger.info("cache loaded from %s (%d chats)", self.path, len(ledger))
        return ledger

    def save(self, ledger: Ledger) -> bool:
        """
        Write the ledger if it changed since the last save.
        Failures are logged only; the snapshot is lost until the next change.
        """
        try:
            payload, ok = ledger.snapshot_if_dirty()
        except (TypeError, ValueError) as e:
            logger.error("could not serialize data: %s", e)
            return False
        if not ok:
            logger.info("save: nothing to do")
            return False

        try:
            self._write(payload)
        except OSError as e:
            logger.error("could not save data to %s: %s", self.path, e)
            return False
        logger.info("cache saved")
        return True

    def _write(self, payload: bytes):
        fd = os.open(self.path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, CACHE_FILE_MODE)
        with os.fdopen(fd, "wb") as f:
            os.fchmod(f.fileno(), CACHE_FILE_MODE)
            f.write(payload)


class PeriodicSaver:
    """Background thread that saves the ledger at a fixed interval"""

    def __init__(self, store: CacheStore, ledger: Ledger, interval: float = SAVE_INTERVAL_SECONDS):
        self.store = store
        self.ledger = ledger
        self.interval = interval
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._run, name="periodic-save", daemon=True)

    def start(self):
        self._thread.start()
        logger.info("periodic save every %ss", self.interval)

    def stop(self):
        """Stop the thread; returns once a save in progress has finished"""
        self._stop.set()
        if self._thread.is_alive():
            self._thread.join()

    def _run(self):
        while not self._stop.wait(self.interval):
            self.store.save(self.ledger)
