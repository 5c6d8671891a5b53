import logging
from typing import List, Protocol

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """User-facing status sink. Fire-and-forget."""

    def success(self, message: str) -> None: ...

    def error(self, message: str) -> None: ...


class LoggingNotifier:
    def success(self, message):
        logger.info("notify success: %s", message)

    def error(self, message):
        logger.warning("notify error: %s", message)


class CollectingNotifier:
    """Keeps notifications in order so an HTTP response can return them."""

    def __init__(self):
        self.messages: List[dict] = []

    def success(self, message):
        self.messages.append({"level": "success", "message": message})

    def error(self, message):
        self.messages.append({"level": "error", "message": message})

    @property
    def errors(self):
        return [m["message"] for m in self.messages if m["level"] == "error"]

    @property
    def successes(self):
        return [m["message"] for m in self.messages if m["level"] == "success"]
