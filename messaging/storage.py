import logging
import uuid
from typing import Generator, Optional, Tuple

from sqlalchemy import create_engine, text, func, inspect, or_
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from messaging.config import settings
from messaging.utils import utc_now_iso

logger = logging.getLogger(__name__)

# check_same_thread=False lets SQLite sessions be used from the worker threadpool
connect_args = {"check_same_thread": False, "timeout": 30} if settings.DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    settings.DATABASE_URL,
    connect_args=connect_args,
    echo=False,
)

# Objects handed back by the gateway stay readable after commit and close
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


class StorageError(Exception):
    """The persistence layer failed for an infrastructure reason; nothing was written."""


class ConversationNotFoundError(Exception):
    """No conversation exists with the requested id."""


class NotParticipantError(Exception):
    """The requesting user is not one of the conversation's two participants."""


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from messaging import models  # noqa: F401

        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and the conversations/messages tables exist, False otherwise.
    """
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
        inspector = inspect(engine)
        for table in ("conversations", "messages"):
            if not inspector.has_table(table):
                logger.error(f"Database schema not applied: '{table}' table not found")
                return False
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Directory Lookups
# =============================================================================

def get_user(db: Session, user_id: str):
    from messaging.models import User

    try:
        return db.get(User, user_id)
    except SQLAlchemyError as e:
        raise StorageError(f"Failed to look up user {user_id}") from e


def resolve_display_name(user, email: Optional[str] = None) -> str:
    """Directory user name, else the local part of the email, else 'User'."""
    if user is not None and user.user_name:
        return user.user_name
    email = (user.email if user is not None and user.email else None) or email
    if email:
        return email.split("@")[0]
    return "User"


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def _find_conversation_by_pair(db: Session, first: str, second: str):
    from messaging.models import Conversation

    return (
        db.query(Conversation)
        .filter(Conversation.participant_a == first, Conversation.participant_b == second)
        .first()
    )


def get_conversation(db: Session, conversation_id: str):
    from messaging.models import Conversation

    try:
        return db.get(Conversation, conversation_id)
    except SQLAlchemyError as e:
        raise StorageError(f"Failed to load conversation {conversation_id}") from e


def require_participant(db: Session, conversation_id: str, user_id: str):
    """
    Load a conversation and check that user_id takes part in it.

    Raises:
        ConversationNotFoundError: unknown conversation id
        NotParticipantError: user_id is not one of the two participants
    """
    conversation = get_conversation(db, conversation_id)
    if conversation is None:
        raise ConversationNotFoundError(conversation_id)
    if user_id not in conversation.participant_ids:
        raise NotParticipantError(conversation_id)
    return conversation


def get_or_create_conversation(db: Session, user_id_a: str, user_id_b: str):
    """
    Return the conversation between two users, creating it on first use.

    Safe under concurrent calls for the same pair from either direction: the
    pair is stored sorted under a unique constraint, and losing the insert race
    re-fetches the row the winner created.

    Args:
        db: Database session
        user_id_a: One participant
        user_id_b: The other participant (must differ from user_id_a)

    Returns:
        The Conversation row
    """
    from messaging.models import Conversation

    if user_id_a == user_id_b:
        raise ValueError("A conversation needs two distinct participants")

    first, second = sorted((user_id_a, user_id_b))

    try:
        conversation = _find_conversation_by_pair(db, first, second)
        if conversation is not None:
            return conversation

        conversation = Conversation(
            id=uuid.uuid4().hex,
            participant_a=first,
            participant_b=second,
            created_at=utc_now_iso(),
        )
        db.add(conversation)
        db.commit()
        logger.info(f"Conversation created: id={conversation.id}")
        return conversation

    except IntegrityError:
        # Another request created the same pair first
        db.rollback()
        logger.info("Conversation for pair already created concurrently, re-fetching")
        try:
            conversation = _find_conversation_by_pair(db, first, second)
        except SQLAlchemyError as e:
            raise StorageError("Failed to load conversation after insert race") from e
        if conversation is None:
            raise StorageError("Conversation missing after unique constraint violation")
        return conversation

    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to get or create conversation: {e}")
        raise StorageError("Failed to get or create conversation") from e


def append_message(db: Session, conversation_id: str, sender_id: str, content: str):
    """
    Store a message and refresh the conversation's last-message summary in one transaction.

    created_at never precedes the conversation's current last_message_at, so
    timestamps are non-decreasing within a conversation.

    Returns:
        The committed Message row

    Raises:
        ConversationNotFoundError: conversation_id does not exist
        StorageError: the write failed; nothing was stored
    """
    from messaging.models import Conversation, Message

    try:
        conversation = db.get(Conversation, conversation_id)
        if conversation is None:
            raise ConversationNotFoundError(conversation_id)

        created_at = utc_now_iso()
        if conversation.last_message_at and conversation.last_message_at > created_at:
            created_at = conversation.last_message_at

        message = Message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content,
            created_at=created_at,
            is_read=False,
        )
        db.add(message)

        # Only move the summary forward; a slower concurrent writer must not roll it back
        (
            db.query(Conversation)
            .filter(
                Conversation.id == conversation_id,
                or_(Conversation.last_message_at.is_(None), Conversation.last_message_at <= created_at),
            )
            .update(
                {
                    Conversation.last_message_text: content,
                    Conversation.last_message_at: created_at,
                    Conversation.last_message_sender_id: sender_id,
                },
                synchronize_session=False,
            )
        )
        db.commit()
        logger.info(f"Message stored: id={message.id}, conversation={conversation_id}")
        return message

    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to store message in {conversation_id}: {e}")
        raise StorageError("Failed to store message") from e


def list_conversations(db: Session, user_id: str, page: int = 1, limit: int = 20) -> Tuple[list, int]:
    """
    List a user's conversations, most recent activity first.

    Returns:
        Tuple of (rows, total count). Each row is a dict with the other
        participant's display fields, the last message summary and the
        number of messages not authored by user_id that are still unread.
    """
    from messaging.models import Conversation, Message, User

    logger.info(f"Listing conversations: user={user_id}, page={page}, limit={limit}")

    try:
        query = db.query(Conversation).filter(
            or_(Conversation.participant_a == user_id, Conversation.participant_b == user_id)
        )
        total = query.count()

        conversations = (
            query.order_by(
                func.coalesce(Conversation.last_message_at, Conversation.created_at).desc(),
                Conversation.id.asc(),
            )
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )

        ids = [c.id for c in conversations]
        unread = {}
        if ids:
            unread = dict(
                db.query(Message.conversation_id, func.count(Message.id))
                .filter(
                    Message.conversation_id.in_(ids),
                    Message.sender_id != user_id,
                    Message.is_read.is_(False),
                )
                .group_by(Message.conversation_id)
                .all()
            )

        other_ids = {c.other_participant(user_id) for c in conversations}
        users = {}
        if other_ids:
            users = {u.id: u for u in db.query(User).filter(User.id.in_(other_ids)).all()}
    except SQLAlchemyError as e:
        raise StorageError("Failed to list conversations") from e

    rows = []
    for conversation in conversations:
        other_id = conversation.other_participant(user_id)
        other = users.get(other_id)
        rows.append({
            "id": conversation.id,
            "userId": other_id,
            "userName": resolve_display_name(other),
            "email": other.email if other else None,
            "photoUrl": other.photo_url if other else None,
            "lastMessage": conversation.last_message_text,
            "lastMessageTime": conversation.last_message_at,
            "lastMessageSenderId": conversation.last_message_sender_id,
            "unreadCount": unread.get(conversation.id, 0),
        })

    return rows, total


def get_conversation_messages(
    db: Session,
    conversation_id: str,
    user_id: str,
    page: int = 1,
    limit: int = 20
) -> Tuple[list, int]:
    """
    Fetch one page of a conversation's history for a participant.

    Page 1 holds the most recent messages; each page is returned oldest-first.

    Raises:
        ConversationNotFoundError, NotParticipantError, StorageError
    """
    from messaging.models import Message, User

    require_participant(db, conversation_id, user_id)

    try:
        query = db.query(Message).filter(Message.conversation_id == conversation_id)
        total = query.count()
        messages = (
            query.order_by(Message.created_at.desc(), Message.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        sender_ids = {m.sender_id for m in messages}
        users = {}
        if sender_ids:
            users = {u.id: u for u in db.query(User).filter(User.id.in_(sender_ids)).all()}
    except SQLAlchemyError as e:
        raise StorageError("Failed to load messages") from e

    rows = []
    for message in reversed(messages):
        sender = users.get(message.sender_id)
        rows.append({
            "id": str(message.id),
            "conversationId": message.conversation_id,
            "senderId": message.sender_id,
            "senderName": resolve_display_name(sender),
            "senderPhoto": sender.photo_url if sender else None,
            "content": message.content,
            "timestamp": message.created_at,
            "isRead": message.is_read,
            "isOwn": message.sender_id == user_id,
        })

    logger.debug(f"Loaded {len(rows)} of {total} messages for {conversation_id}")
    return rows, total


# =============================================================================
# Read State
# =============================================================================

def mark_conversation_read(db: Session, conversation_id: str, user_id: str) -> int:
    """
    Mark every unread message in a conversation that user_id did not author as read.

    Idempotent: a second call finds nothing left to update. Messages only ever
    move from unread to read.

    Returns:
        Number of messages transitioned by this call

    Raises:
        ConversationNotFoundError, NotParticipantError, StorageError
    """
    from messaging.models import Message

    require_participant(db, conversation_id, user_id)

    try:
        updated = (
            db.query(Message)
            .filter(
                Message.conversation_id == conversation_id,
                Message.sender_id != user_id,
                Message.is_read.is_(False),
            )
            .update({Message.is_read: True}, synchronize_session=False)
        )
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to mark messages read in {conversation_id}: {e}")
        raise StorageError("Failed to mark messages as read") from e

    logger.info(f"Marked {updated} messages read: conversation={conversation_id}, reader={user_id}")
    return updated
