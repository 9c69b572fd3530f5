"""
Messaging service.

WHAT: Async facade used by the REST endpoints and the socket gateway
WHY: Durable work must commit before anything is pushed to clients
HOW: Run the synchronous stores in Starlette's threadpool, then publish the
     committed result through the ConnectionManager and notify offline users.
     A store failure raises before any event is emitted.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from starlette.concurrency import run_in_threadpool

from ..models.views import ConversationView, MessageStats, MessageView
from ..realtime import protocol
from ..realtime.connection_manager import Connection, ConnectionManager
from ..realtime.protocol import GatewayEvent, error_event
from ..utils.exceptions import BusinessException, NotParticipantException
from ..utils.logger import get_logger
from .conversation_store import ConversationPage, ConversationStore
from .message_store import MessagePage, MessageStore
from .negotiation_engine import NegotiationEngine, ProposalOutcome
from .notifier import LoggingNotifier, Notifier
from .read_tracker import ReadTracker

logger = get_logger(__name__)

PRESENCE_STATUSES = ("online", "away", "offline")


class MessagingService:
    """
    Orchestrates stores, gateway fan-out and notifications.

    Every durable operation follows the same sequence: store call (one
    transaction) in a worker thread, then gateway events for the committed
    result. Gateway failures are logged and never fail the operation.
    """

    def __init__(
        self,
        manager: Optional[ConnectionManager] = None,
        conversations: Optional[ConversationStore] = None,
        messages: Optional[MessageStore] = None,
        negotiation: Optional[NegotiationEngine] = None,
        tracker: Optional[ReadTracker] = None,
        notifier: Optional[Notifier] = None,
    ):
        self.manager = manager or ConnectionManager()
        self.conversations = conversations or ConversationStore()
        self.messages = messages or MessageStore()
        self.negotiation = negotiation or NegotiationEngine()
        self.tracker = tracker or ReadTracker()
        self.notifier = notifier or LoggingNotifier()
        self.loop: Optional[asyncio.AbstractEventLoop] = None

    # ========== Conversations ==========

    async def get_or_create_conversation(
        self, user_id: str, other_participant_id: str, publication_id: Optional[str] = None
    ) -> Tuple[ConversationView, bool]:
        view, created = await run_in_threadpool(
            self.conversations.get_or_create, user_id, other_participant_id, publication_id
        )
        if created:
            for participant_id in view.participants:
                self.manager.join_user(participant_id, view.id)
            await self._publish(
                GatewayEvent(
                    type=protocol.CONVERSATION_UPDATED,
                    conversation_id=view.id,
                    payload={"reason": "created", "conversationId": view.id, "participants": view.participants},
                ),
                exclude_user_ids=[user_id],
            )
        return view, created

    async def list_conversations(
        self, user_id: str, page: int = 1, limit: Optional[int] = None, include_archived: bool = False
    ) -> ConversationPage:
        result = await run_in_threadpool(
            self.conversations.list_for_user, user_id, page, limit, include_archived
        )
        for message in result.delivered:
            await self._publish_message_updated(message, change="status")
        return result

    async def get_conversation(self, conversation_id: str, user_id: str) -> ConversationView:
        return await run_in_threadpool(self.conversations.get_for_user, conversation_id, user_id)

    async def set_conversation_status(self, conversation_id: str, user_id: str, action: str) -> ConversationView:
        view = await run_in_threadpool(self.conversations.set_status, conversation_id, user_id, action)
        # Per-participant state: only the actor's own devices hear about it
        await self._send_to_user(user_id, GatewayEvent(
            type=protocol.CONVERSATION_UPDATED,
            conversation_id=conversation_id,
            payload={"reason": action, "conversation": view.to_wire()},
        ))
        return view

    async def delete_conversation(self, conversation_id: str, user_id: str):
        await run_in_threadpool(self.conversations.soft_delete_for_user, conversation_id, user_id)
        await self._send_to_user(user_id, GatewayEvent(
            type=protocol.CONVERSATION_UPDATED,
            conversation_id=conversation_id,
            payload={"reason": "deleted", "conversationId": conversation_id},
        ))

    # ========== Messages ==========

    async def send_message(
        self, conversation_id: str, sender_id: str, payload, reply_to: Optional[str] = None
    ) -> MessageView:
        view = await run_in_threadpool(self.messages.send, conversation_id, sender_id, payload, reply_to)
        await self._announce_new_message(view)
        return view

    async def require_participant(self, conversation_id: str, user_id: str):
        """
        Raises:
            ConversationNotFoundException, NotParticipantException
        """
        participants = await run_in_threadpool(self.conversations.participant_ids, conversation_id)
        if user_id not in participants:
            raise NotParticipantException(conversation_id, user_id)

    async def list_messages(
        self,
        conversation_id: str,
        user_id: str,
        page: int = 1,
        limit: Optional[int] = None,
        mark_read: Optional[bool] = None,
    ) -> MessagePage:
        result = await run_in_threadpool(
            self.messages.list, conversation_id, user_id, page, limit, mark_read
        )
        for message in result.updated:
            await self._publish_message_updated(message, change="status")
        return result

    async def mark_read(self, conversation_id: str, user_id: str) -> List[MessageView]:
        updated = await run_in_threadpool(self.messages.mark_read, conversation_id, user_id)
        for message in updated:
            await self._publish_message_updated(message, change="read")
        return updated

    async def edit_message(self, message_id: str, user_id: str, new_text: str) -> MessageView:
        view = await run_in_threadpool(self.messages.edit, message_id, user_id, new_text)
        await self._publish_message_updated(view, change="edited")
        return view

    async def delete_message(self, message_id: str, user_id: str) -> MessageView:
        view = await run_in_threadpool(self.messages.soft_delete, message_id, user_id)
        await self._publish_message_updated(view, change="deleted")
        return view

    async def message_stats(self, user_id: str) -> MessageStats:
        return await run_in_threadpool(self.messages.stats_for_user, user_id)

    # ========== Proposals ==========

    async def propose(
        self,
        conversation_id: str,
        proposer_id: str,
        offered_items,
        requested_items,
        terms: str = "",
        expiration_hours: Optional[int] = None,
    ) -> MessageView:
        view = await run_in_threadpool(
            self.negotiation.propose,
            conversation_id, proposer_id, offered_items, requested_items, terms, expiration_hours,
        )
        await self._announce_new_message(view)
        return view

    async def respond_to_proposal(
        self, message_id: str, responder_id: str, action: str, counter_offer: Optional[dict] = None
    ) -> ProposalOutcome:
        outcome = await run_in_threadpool(
            self.negotiation.respond, message_id, responder_id, action, counter_offer
        )
        conversation_id = outcome.proposal.conversation_id
        await self._publish(GatewayEvent(
            type=protocol.PROPOSAL_RESPONDED,
            conversation_id=conversation_id,
            payload={
                "proposalId": message_id,
                "action": outcome.action,
                "status": outcome.status,
                "respondedBy": outcome.responded_by,
                "counterProposalId": outcome.counter_proposal.id if outcome.counter_proposal else None,
            },
        ))
        await self._publish_message_updated(outcome.proposal, change="proposal")
        if outcome.counter_proposal is not None:
            await self._announce_new_message(outcome.counter_proposal)
        await self._announce_new_message(outcome.system_message)
        return outcome

    async def expire_overdue_proposals(self, conversation_id: Optional[str] = None) -> List[MessageView]:
        expired = await run_in_threadpool(self.negotiation.expire_overdue, conversation_id)
        await self.publish_expired(expired)
        return expired

    async def publish_expired(self, expired: List[MessageView]):
        for message in expired:
            await self._publish_message_updated(message, change="proposal")

    # ========== Gateway ==========

    async def open_connection(self, connection: Connection):
        conversation_ids = await run_in_threadpool(self.conversations.conversation_ids_for_user, connection.user_id)
        await self.manager.connect(connection, conversation_ids)

    async def close_connection(self, connection: Connection):
        await self.manager.disconnect(connection)

    async def handle_client_event(self, connection: Connection, data: Any):
        """
        Apply one client -> server event.

        Rejected events are answered with an "error" event on the same
        connection; the connection stays open.
        """
        try:
            event = GatewayEvent.from_wire(data)
        except ValueError as e:
            await self.manager.send_to_connection(connection, error_event("INVALID_EVENT", str(e)))
            return

        if event.type not in protocol.CLIENT_EVENTS:
            await self.manager.send_to_connection(
                connection, error_event("UNKNOWN_EVENT", f"Evento no soportado: {event.type}", event.conversation_id)
            )
            return

        logger.debug(f"Client event {event.type} from {connection.user_id} ({event.conversation_id})")
        try:
            if event.type == protocol.PRESENCE_UPDATE:
                await self._client_presence(connection, event)
                return

            if not event.conversation_id:
                await self.manager.send_to_connection(
                    connection, error_event("INVALID_EVENT", "conversationId es requerido")
                )
                return

            if event.type == protocol.CONVERSATION_JOIN:
                participants = await run_in_threadpool(self.conversations.participant_ids, event.conversation_id)
                if connection.user_id not in participants:
                    raise NotParticipantException(event.conversation_id, connection.user_id)
                self.manager.join(connection, event.conversation_id)
            elif event.type == protocol.CONVERSATION_LEAVE:
                self.manager.leave(connection, event.conversation_id)
            elif event.type in (protocol.TYPING_START, protocol.TYPING_STOP):
                if not self.manager.in_room(connection, event.conversation_id):
                    raise NotParticipantException(event.conversation_id, connection.user_id)
                await self._publish(
                    GatewayEvent(
                        type=event.type,
                        conversation_id=event.conversation_id,
                        payload={"userId": connection.user_id},
                    ),
                    exclude_user_ids=[connection.user_id],
                )
            elif event.type == protocol.READ_ACK:
                await self.mark_read(event.conversation_id, connection.user_id)
        except BusinessException as e:
            logger.warning(f"Rejected {event.type} from {connection.user_id}: {e.code} - {e.message}")
            await self.manager.send_to_connection(
                connection, error_event(e.code, e.message, event.conversation_id, e.details)
            )

    async def _client_presence(self, connection: Connection, event: GatewayEvent):
        status = event.payload.get("status")
        if status not in PRESENCE_STATUSES:
            await self.manager.send_to_connection(
                connection, error_event("INVALID_EVENT", f"Estado de presencia no válido: {status}")
            )
            return
        await self.manager.broadcast_presence(connection.user_id, status)

    # ========== Fan-out helpers ==========

    async def _announce_new_message(self, message: MessageView):
        """
        Push message.created to the room, record live deliveries and notify the rest.

        Participants who blocked the conversation get neither the push nor a
        notification; the message is still in their history.
        """
        try:
            blocked = await run_in_threadpool(self.conversations.blocked_user_ids, message.conversation_id)
            delivered = await self.manager.publish(
                GatewayEvent(
                    type=protocol.MESSAGE_CREATED,
                    conversation_id=message.conversation_id,
                    payload={"message": message.to_wire()},
                ),
                exclude_user_ids=blocked,
            )

            reached = delivered & set(message.recipients)
            if reached:
                updated = await run_in_threadpool(self.tracker.mark_delivered, message.id, reached)
                if updated is not None:
                    await self._publish_message_updated(updated, change="status")

            for user_id in message.recipients:
                if user_id in blocked or user_id in reached:
                    continue
                self.notifier.notify(user_id, "new_message", {
                    "conversationId": message.conversation_id,
                    "messageId": message.id,
                    "senderId": message.sender_id,
                    "preview": message.display_content,
                })
        except Exception as e:
            logger.error(f"Fan-out of message {message.id} failed after commit: {e}", exc_info=True)

    async def _publish_message_updated(self, message: MessageView, change: str):
        await self._publish(GatewayEvent(
            type=protocol.MESSAGE_UPDATED,
            conversation_id=message.conversation_id,
            payload={"change": change, "message": message.to_wire()},
        ))

    async def _publish(self, event: GatewayEvent, exclude_user_ids=()):
        try:
            return await self.manager.publish(event, exclude_user_ids=exclude_user_ids)
        except Exception as e:
            logger.error(f"Publishing {event.type} failed: {e}", exc_info=True)
            return set()

    async def _send_to_user(self, user_id: str, event: GatewayEvent):
        try:
            await self.manager.send_to_user(user_id, event)
        except Exception as e:
            logger.error(f"Sending {event.type} to {user_id} failed: {e}", exc_info=True)

    def online_users(self) -> Dict[str, Any]:
        return {"online": self.manager.online_user_ids(), "connections": self.manager.connection_count()}


_service: Optional[MessagingService] = None


def get_messaging_service() -> MessagingService:
    """Process-wide service (single in-process gateway)."""
    global _service
    if _service is None:
        _service = MessagingService()
    return _service


def reset_messaging_service(service: Optional[MessagingService] = None) -> MessagingService:
    """Replace the process-wide service (tests, app restarts)."""
    global _service
    _service = service or MessagingService()
    return _service
