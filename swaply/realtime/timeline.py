"""
Client-side message timeline.

WHAT: One conversation's messages as the client should render them
WHY: Live pushes can arrive out of order or be missed entirely; REST history
     is the source of truth
HOW: Messages keyed by id. Snapshots from GET .../messages overwrite what they
     contain; live events append or replace optimistically and flag the
     timeline for a refetch when they cannot be applied
"""

from itertools import count
from typing import Dict, Iterable, List, Optional

from . import protocol
from .protocol import GatewayEvent


class MessageTimeline:
    """Messages (wire dicts, camelCase) of a single conversation."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        self._messages: Dict[str, dict] = {}
        self._sequence: Dict[str, int] = {}
        self._counter = count()
        self._stale = False

    @property
    def needs_refresh(self) -> bool:
        return self._stale

    def mark_stale(self):
        """Call on reconnect: live events may have been missed."""
        self._stale = True

    def apply_snapshot(self, messages: Iterable[dict], replace: bool = True):
        """
        Merge a REST page.

        Args:
            messages: Page items as returned by the API
            replace: Drop everything not in the snapshot (first page / refresh);
                False merges an older page into the current timeline
        """
        if replace:
            self._messages.clear()
            self._sequence.clear()
        for message in messages:
            self._store(message)
        self._stale = False

    def apply_event(self, event: GatewayEvent) -> bool:
        """
        Apply a live gateway event.

        Returns:
            True if the timeline changed
        """
        if event.conversation_id != self.conversation_id:
            return False

        if event.type == protocol.MESSAGE_CREATED:
            message = event.payload.get("message")
            if not message or message.get("id") in self._messages:
                return False
            self._store(message)
            return True

        if event.type == protocol.MESSAGE_UPDATED:
            message = event.payload.get("message")
            if not message:
                return False
            if message.get("id") not in self._messages:
                # Update for something we never saw: the base version was missed
                self._stale = True
            self._store(message)
            return True

        if event.type == protocol.PROPOSAL_RESPONDED:
            # The matching message.updated carries the new state; without it we are behind
            if event.payload.get("proposalId") not in self._messages:
                self._stale = True
            return False

        return False

    def get(self, message_id: str) -> Optional[dict]:
        return self._messages.get(message_id)

    def messages(self) -> List[dict]:
        """Ordered by creation time, ties by arrival order."""
        return sorted(
            self._messages.values(),
            key=lambda m: (m.get("createdAt") or "", self._sequence[m["id"]]),
        )

    def __len__(self):
        return len(self._messages)

    def _store(self, message: dict):
        message_id = message["id"]
        if message_id not in self._sequence:
            self._sequence[message_id] = next(self._counter)
        self._messages[message_id] = message
