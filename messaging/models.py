"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import Boolean, Column, ForeignKey, Index, Integer, String, Text, UniqueConstraint

from messaging.storage import Base


class User(Base):
    """
    Directory entry for a user.

    Owned by the profile subsystem; the messaging core only reads the
    display fields.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    user_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    photo_url = Column(String, nullable=True)


class Conversation(Base):
    """
    A dialogue between exactly two users.

    Table: conversations
    The participant pair is stored sorted (participant_a < participant_b) so the
    unique constraint covers the unordered pair.
    """
    __tablename__ = "conversations"
    __table_args__ = (
        UniqueConstraint("participant_a", "participant_b", name="uq_conversation_pair"),
    )

    id = Column(String, primary_key=True)
    participant_a = Column(String, nullable=False, index=True)
    participant_b = Column(String, nullable=False, index=True)
    last_message_text = Column(Text, nullable=True)
    last_message_at = Column(String, nullable=True)  # ISO-8601 UTC string
    last_message_sender_id = Column(String, nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601

    @property
    def participant_ids(self) -> frozenset:
        return frozenset((self.participant_a, self.participant_b))

    def other_participant(self, user_id: str) -> str:
        return self.participant_b if user_id == self.participant_a else self.participant_a


class Message(Base):
    """
    A single text message inside a conversation.

    Table: messages
    Primary Key: id (autoincrement, follows insertion order)
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index("ix_messages_conversation_created", "conversation_id", "created_at"),
        Index("ix_messages_conversation_unread", "conversation_id", "is_read", "sender_id"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    conversation_id = Column(String, ForeignKey("conversations.id"), nullable=False)
    sender_id = Column(String, nullable=False)
    content = Column(Text, nullable=False)
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    is_read = Column(Boolean, nullable=False, default=False)
