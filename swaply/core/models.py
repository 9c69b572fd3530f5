"""
ORM models for the messaging core.

WHAT: SQLAlchemy models for conversations, messages, receipts and proposals
WHY: Conversation and Message are separate aggregates with integrity checked in the stores
HOW: Declarative models with constraints, relationships and indexes
"""

from datetime import datetime
from uuid import uuid4
from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, Text, JSON,
    ForeignKey, CheckConstraint, UniqueConstraint, Index, Enum as SQLEnum
)
from sqlalchemy.orm import relationship
import enum

from .database import Base


def new_id() -> str:
    return str(uuid4())


class MessageType(str, enum.Enum):
    """Message content kinds."""
    TEXT = "text"
    IMAGE = "image"
    FILE = "file"
    LOCATION = "location"
    EXCHANGE_PROPOSAL = "exchange_proposal"
    EXCHANGE_RESPONSE = "exchange_response"
    SYSTEM = "system"


class DeliveryStatus(str, enum.Enum):
    """Message-level delivery state, the minimum across recipients."""
    SENT = "sent"
    DELIVERED = "delivered"
    READ = "read"


class ProposalStatus(str, enum.Enum):
    """Exchange proposal lifecycle."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    COUNTERED = "countered"
    EXPIRED = "expired"



# ========== External directory tables ==========

class User(Base):
    """
    Minimal user directory read by the identity provider.

    Profiles and credentials are owned elsewhere; the messaging core only
    needs existence checks and the opaque bearer token.
    """
    __tablename__ = "users"

    user_id = Column(String(36), primary_key=True, default=new_id)
    display_name = Column(String(100), nullable=False)
    auth_token = Column(String(128), unique=True, nullable=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    def __repr__(self):
        return f"<User(user_id={self.user_id}, name={self.display_name})>"


class Publication(Base):
    """Listing reference; conversations may be scoped to one."""
    __tablename__ = "publications"

    publication_id = Column(String(36), primary_key=True, default=new_id)
    title = Column(String(200), nullable=False)
    owner_id = Column(String(36), ForeignKey("users.user_id"), nullable=True)

    def __repr__(self):
        return f"<Publication(publication_id={self.publication_id}, title={self.title})>"


# ========== Conversation aggregate ==========

class Conversation(Base):
    """
    Conversation table - durable thread between a fixed participant set.

    conversation_key encodes (participant-set, publication) so get-or-create
    stays idempotent even when two requests race to create the same thread.
    """
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String(36), unique=True, nullable=False, default=new_id)
    conversation_key = Column(String(600), unique=True, nullable=False)
    publication_id = Column(String(36), ForeignKey("publications.publication_id"), nullable=True)
    created_by = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_message_id = Column(String(36), nullable=True)
    last_message_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    total_messages = Column(Integer, nullable=False, default=0)

    participants = relationship(
        "ConversationParticipant",
        back_populates="conversation",
        cascade="all, delete-orphan",
        lazy="selectin"
    )

    __table_args__ = (
        Index("idx_conversation_activity", "last_message_at"),
        Index("idx_conversation_publication", "publication_id"),
    )

    def participant_ids(self) -> list[str]:
        return [p.user_id for p in self.participants]

    def participant(self, user_id: str):
        return next((p for p in self.participants if p.user_id == user_id), None)

    def __repr__(self):
        return f"<Conversation(conversation_id={self.conversation_id}, participants={self.participant_ids()})>"


class ConversationParticipant(Base):
    """
    Per-participant conversation state.

    Archive, block, per-user delete and the unread counter live here so one
    participant's view never changes the other's.
    """
    __tablename__ = "conversation_participants"

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_db_id = Column(Integer, ForeignKey("conversations.id", ondelete="CASCADE"), nullable=False)
    user_id = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    joined_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    last_read_at = Column(DateTime, nullable=True)
    unread_count = Column(Integer, nullable=False, default=0)
    is_archived = Column(Boolean, nullable=False, default=False)
    is_blocked = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)

    conversation = relationship("Conversation", back_populates="participants")

    __table_args__ = (
        UniqueConstraint("conversation_db_id", "user_id", name="unique_conversation_participant"),
        CheckConstraint("unread_count >= 0", name="check_unread_non_negative"),
        Index("idx_participant_user", "user_id"),
    )

    @property
    def status(self) -> str:
        if self.is_blocked:
            return "blocked"
        if self.is_archived:
            return "archived"
        return "active"

    def __repr__(self):
        return f"<ConversationParticipant(user={self.user_id}, unread={self.unread_count})>"


# ========== Message aggregate ==========

class Message(Base):
    """
    Message table - one unit of communication in a conversation.

    id is the insertion sequence used to break created_at ties; message_id is
    the public identifier. Content columns are filled according to type.
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(36), unique=True, nullable=False, default=new_id)
    conversation_id = Column(String(36), ForeignKey("conversations.conversation_id"), nullable=False)
    sender_id = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    type = Column(SQLEnum(MessageType), nullable=False, default=MessageType.TEXT)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Content (tagged by type)
    text = Column(Text, nullable=True)
    attachment = Column(JSON, nullable=True)  # {url, filename, size, mimeType}
    location = Column(JSON, nullable=True)  # {address, coordinates, name}
    system_event = Column(String(50), nullable=True)
    system_data = Column(JSON, nullable=True)
    reply_to_id = Column(String(36), nullable=True)

    status = Column(SQLEnum(DeliveryStatus), nullable=False, default=DeliveryStatus.SENT)

    # Edit state
    is_edited = Column(Boolean, nullable=False, default=False)
    edited_at = Column(DateTime, nullable=True)

    # Soft delete
    is_deleted = Column(Boolean, nullable=False, default=False)
    deleted_at = Column(DateTime, nullable=True)
    deleted_by = Column(String(36), nullable=True)

    receipts = relationship(
        "MessageReceipt",
        back_populates="message",
        cascade="all, delete-orphan",
        lazy="selectin"
    )
    edits = relationship(
        "MessageEdit",
        back_populates="message",
        cascade="all, delete-orphan",
        order_by="MessageEdit.id",
        lazy="selectin"
    )
    proposal = relationship(
        "ExchangeProposal",
        back_populates="message",
        uselist=False,
        cascade="all, delete-orphan",
        foreign_keys="ExchangeProposal.message_id",
        lazy="selectin"
    )

    __table_args__ = (
        Index("idx_message_conversation_order", "conversation_id", "created_at", "id"),
        Index("idx_message_sender", "sender_id"),
    )

    def recipient_ids(self) -> list[str]:
        return [r.user_id for r in self.receipts]

    def __repr__(self):
        return f"<Message(message_id={self.message_id}, type={self.type}, sender={self.sender_id})>"


class MessageReceipt(Base):
    """
    Per-recipient delivery/read state (the readBy / deliveredTo detail).
    """
    __tablename__ = "message_receipts"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_db_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False)
    conversation_id = Column(String(36), nullable=False)
    user_id = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    delivered_at = Column(DateTime, nullable=True)
    read_at = Column(DateTime, nullable=True)

    message = relationship("Message", back_populates="receipts")

    __table_args__ = (
        UniqueConstraint("message_db_id", "user_id", name="unique_message_recipient"),
        Index("idx_receipt_unread", "conversation_id", "user_id", "read_at"),
    )

    def __repr__(self):
        return f"<MessageReceipt(user={self.user_id}, delivered={self.delivered_at}, read={self.read_at})>"


class MessageEdit(Base):
    """Prior text snapshots of an edited message, oldest first."""
    __tablename__ = "message_edits"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_db_id = Column(Integer, ForeignKey("messages.id", ondelete="CASCADE"), nullable=False)
    content = Column(Text, nullable=False)
    edited_at = Column(DateTime, nullable=False, default=datetime.utcnow)

    message = relationship("Message", back_populates="edits")


class ExchangeProposal(Base):
    """
    Exchange proposal embedded in an exchange_proposal message.

    status only leaves "pending" through a conditional UPDATE, which is where
    concurrent responses are resolved.
    """
    __tablename__ = "exchange_proposals"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(String(36), ForeignKey("messages.message_id", ondelete="CASCADE"), unique=True, nullable=False)
    conversation_id = Column(String(36), nullable=False)
    proposed_by = Column(String(36), ForeignKey("users.user_id"), nullable=False)
    offered_items = Column(JSON, nullable=False)  # [{publicationId, description}]
    requested_items = Column(JSON, nullable=False)
    terms = Column(Text, nullable=False, default="")
    status = Column(SQLEnum(ProposalStatus), nullable=False, default=ProposalStatus.PENDING)
    expiration_date = Column(DateTime, nullable=False)
    responded_by = Column(String(36), nullable=True)
    responded_at = Column(DateTime, nullable=True)
    previous_proposal_id = Column(String(36), nullable=True)
    counter_proposal_id = Column(String(36), nullable=True)

    message = relationship("Message", back_populates="proposal", foreign_keys=[message_id])

    __table_args__ = (
        Index("idx_proposal_status_expiry", "status", "expiration_date"),
        Index("idx_proposal_conversation", "conversation_id"),
    )

    def is_overdue(self, now: datetime) -> bool:
        return self.status == ProposalStatus.PENDING and now >= self.expiration_date

    def __repr__(self):
        return f"<ExchangeProposal(message_id={self.message_id}, status={self.status})>"
