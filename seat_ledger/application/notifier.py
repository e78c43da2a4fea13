# seat_ledger/application/notifier.py

import logging
from typing import Protocol


logger = logging.getLogger(__name__)

_LEVELS = {
    "success": logging.INFO,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class Notifier(Protocol):
    def notify(self, level: str, title: str, message: str) -> None:
        ...


class LoggingNotifier:
    """Default notifier for headless callers: every toast becomes a log line."""

    def notify(self, level: str, title: str, message: str) -> None:
        logger.log(_LEVELS.get(level, logging.INFO), "[%s] %s: %s", level, title, message)


class RecordingNotifier:
    def __init__(self):
        self.messages: list[tuple[str, str, str]] = []

    def notify(self, level: str, title: str, message: str) -> None:
        self.messages.append((level, title, message))

    def levels(self) -> list[str]:
        return [level for level, _, _ in self.messages]
