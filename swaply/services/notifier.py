"""
Notification delivery adapter.

WHAT: Hand off "you have something new" notices for users who missed a live push
WHY: Email/push delivery is owned elsewhere; the core only emits the intent
HOW: Notifier.notify(user_id, kind, payload); the default logs it
"""

from typing import Any, Dict, List, Tuple

from ..utils.logger import get_logger

logger = get_logger(__name__)


class Notifier:
    """Interface for notification delivery."""

    def notify(self, user_id: str, kind: str, payload: Dict[str, Any]):
        raise NotImplementedError


class LoggingNotifier(Notifier):
    def notify(self, user_id: str, kind: str, payload: Dict[str, Any]):
        logger.info(f"Notification '{kind}' for user {user_id}: {payload.get('preview', '')}")


class RecordingNotifier(Notifier):
    """Keeps notifications in memory (tests and local inspection)."""

    def __init__(self):
        self.sent: List[Tuple[str, str, Dict[str, Any]]] = []

    def notify(self, user_id: str, kind: str, payload: Dict[str, Any]):
        self.sent.append((user_id, kind, payload))

    def for_user(self, user_id: str) -> List[Tuple[str, Dict[str, Any]]]:
        return [(kind, payload) for uid, kind, payload in self.sent if uid == user_id]
