"""
Live connection hub.

Authenticates WebSocket handshakes, keeps the ConnectionRegistry in step with
connection lifecycle, and turns inbound events into persistence and delivery:

- send_message: resolve-or-create the conversation, store the message, then
  acknowledge the sender and push to the recipient if they are live.
- typing / stop_typing: relayed to the recipient if live, otherwise dropped.

A message is always stored before any acknowledgment or push for it is sent.
Errors are reported to the originating connection only.
"""

import logging
import time
import uuid
from typing import Any, Callable, Optional

from fastapi import WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from starlette.websockets import WebSocketState

from messaging import storage
from messaging.config import settings
from messaging.logging_utils import connection_id_ctx
from messaging.metrics import record_auth_failure, record_socket_event, set_live_connections
from messaging.registry import ConnectionRegistry
from messaging.schemas import (
    MessageReceivedEvent,
    MessageSentEvent,
    SendMessagePayload,
    SocketFrame,
    TypingEvent,
    TypingPayload,
    describe_validation_error,
)
from messaging.utils import AuthenticationError, TokenClaims, authenticate_cookies

logger = logging.getLogger(__name__)


class EventError(Exception):
    """An inbound event was rejected; the message goes back to the sender only."""

    def __init__(self, message: str, result: str = "validation_error"):
        super().__init__(message)
        self.message = message
        self.result = result


class LiveConnection:
    """An authenticated WebSocket and the identity bound to it at handshake."""

    def __init__(self, websocket: WebSocket, user_id: str, display_name: str):
        self.websocket = websocket
        self.user_id = user_id
        self.display_name = display_name
        self.connection_id = uuid.uuid4().hex
        self.last_message_time: Optional[float] = None

    async def emit(self, event: str, data: Any) -> None:
        await self.websocket.send_json({"event": event, "data": data})

    def __repr__(self) -> str:
        return f"<LiveConnection {self.connection_id} user={self.user_id}>"


class ConnectionHub:
    """
    Serves the /ws endpoint.

    Args:
        registry: user id -> LiveConnection map shared by every connection
        session_factory: callable returning a new SQLAlchemy session
        message_interval: minimum seconds between two send_message events per connection
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        session_factory: Callable = storage.SessionLocal,
        message_interval: Optional[float] = None,
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.message_interval = (
            settings.MESSAGE_RATE_LIMIT_SECONDS if message_interval is None else message_interval
        )
        self._handlers = {
            "send_message": self.handle_send_message,
            "typing": self.handle_typing,
            "stop_typing": self.handle_stop_typing,
        }

    # -------------------------------------------------------------------------
    # Connection lifecycle
    # -------------------------------------------------------------------------

    async def serve(self, websocket: WebSocket) -> None:
        """Run one connection from handshake to disconnect."""
        try:
            claims = authenticate_cookies(websocket.cookies)
        except AuthenticationError as e:
            logger.warning(f"Socket handshake rejected: {e.reason}")
            record_auth_failure(e.code)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason=e.reason)
            return

        display_name = await run_in_threadpool(self._resolve_display_name, claims)
        connection = LiveConnection(websocket, claims.user_id, display_name)
        token = connection_id_ctx.set(connection.connection_id)

        try:
            await websocket.accept()
            self.registry.register(connection.user_id, connection)
            set_live_connections(len(self.registry))
            logger.info(f"Live connection opened for user {connection.user_id}")
            await connection.emit("connected", {"userId": connection.user_id})

            while True:
                message = await websocket.receive()
                if message["type"] == "websocket.disconnect":
                    raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
                await self.dispatch(connection, message.get("text"))

        except WebSocketDisconnect as e:
            logger.info(f"Live connection closed for user {connection.user_id} (code={e.code})")
        finally:
            self.registry.unregister_if_current(connection.user_id, connection)
            set_live_connections(len(self.registry))
            connection_id_ctx.reset(token)

    def _resolve_display_name(self, claims: TokenClaims) -> str:
        try:
            with self.session_factory() as db:
                user = storage.get_user(db, claims.user_id)
        except storage.StorageError as e:
            logger.warning(f"Directory lookup failed for {claims.user_id}: {e}")
            user = None
        return storage.resolve_display_name(user, claims.email)

    # -------------------------------------------------------------------------
    # Inbound events
    # -------------------------------------------------------------------------

    async def dispatch(self, connection: LiveConnection, raw: Optional[str]) -> None:
        """Parse one frame and route it to its handler. Binary frames arrive as None."""
        frame = None
        if raw is not None:
            try:
                frame = SocketFrame.model_validate_json(raw)
            except ValidationError:
                pass
        if frame is None:
            record_socket_event("unknown", "validation_error")
            await connection.emit("error", "Malformed event frame")
            return

        handler = self._handlers.get(frame.event)
        if handler is None:
            record_socket_event("unknown", "unknown_event")
            await connection.emit("error", f"Unknown event: {frame.event}")
            return

        try:
            await handler(connection, frame.data if frame.data is not None else {})
        except EventError as e:
            record_socket_event(frame.event, e.result)
            await connection.emit("error", e.message)
        else:
            record_socket_event(frame.event, "ok")

    async def handle_send_message(self, connection: LiveConnection, data: Any) -> None:
        try:
            payload = SendMessagePayload.model_validate(data)
        except ValidationError as e:
            raise EventError(describe_validation_error(e))

        if payload.recipient_id == connection.user_id:
            raise EventError("Cannot send a message to yourself")

        now = time.monotonic()
        if (
            self.message_interval > 0
            and connection.last_message_time is not None
            and now - connection.last_message_time < self.message_interval
        ):
            raise EventError(
                "Message rate limit exceeded. Please wait before sending another message.",
                result="rate_limited",
            )
        connection.last_message_time = now

        # Stored before anything is sent to either side
        stored = await run_in_threadpool(self._persist_message, connection.user_id, payload)

        await self._deliver(connection, "message_sent", MessageSentEvent(
            id=stored["id"],
            conversation_id=stored["conversation_id"],
            content=stored["content"],
            timestamp=stored["timestamp"],
        ).model_dump(by_alias=True))

        pushed = await self._push(payload.recipient_id, "receive_message", MessageReceivedEvent(
            id=stored["id"],
            conversation_id=stored["conversation_id"],
            sender_id=connection.user_id,
            sender_name=connection.display_name,
            content=stored["content"],
            timestamp=stored["timestamp"],
        ).model_dump(by_alias=True))
        if not pushed:
            logger.debug(f"Recipient {payload.recipient_id} offline; message {stored['id']} left unread")

    def _persist_message(self, sender_id: str, payload: SendMessagePayload) -> dict:
        """Resolve the conversation and append the message. Runs in the worker threadpool."""
        with self.session_factory() as db:
            try:
                if payload.conversation_id is None:
                    conversation = storage.get_or_create_conversation(db, sender_id, payload.recipient_id)
                else:
                    conversation = storage.get_conversation(db, payload.conversation_id)
                    if conversation is None:
                        raise EventError("Conversation not found")
                    if conversation.participant_ids != frozenset((sender_id, payload.recipient_id)):
                        raise EventError("You are not a participant in this conversation")

                message = storage.append_message(db, conversation.id, sender_id, payload.content)
            except storage.ConversationNotFoundError:
                raise EventError("Conversation not found")
            except storage.StorageError as e:
                logger.error(f"Failed to send message: {e}")
                raise EventError("Failed to send message", result="storage_error")

            return {
                "id": str(message.id),
                "conversation_id": message.conversation_id,
                "content": message.content,
                "timestamp": message.created_at,
            }

    async def handle_typing(self, connection: LiveConnection, data: Any) -> None:
        await self._relay_typing(connection, data, "user_typing")

    async def handle_stop_typing(self, connection: LiveConnection, data: Any) -> None:
        await self._relay_typing(connection, data, "user_stop_typing")

    async def _relay_typing(self, connection: LiveConnection, data: Any, outbound: str) -> None:
        try:
            payload = TypingPayload.model_validate(data)
        except ValidationError as e:
            raise EventError(describe_validation_error(e))

        if payload.recipient_id == connection.user_id:
            logger.debug(f"Dropped {outbound} addressed to its own sender {connection.user_id}")
            return

        # Best-effort: nothing stored, nothing queued when the recipient is offline
        await self._push(payload.recipient_id, outbound, TypingEvent(
            conversation_id=payload.conversation_id,
            user_id=connection.user_id,
        ).model_dump(by_alias=True))

    # -------------------------------------------------------------------------
    # Delivery
    # -------------------------------------------------------------------------

    async def _push(self, user_id: str, event: str, data: dict) -> bool:
        """
        Send an event to a user's live connection if one is registered.

        Returns:
            True if the event was handed to a live connection
        """
        target = self.registry.lookup(user_id)
        if target is None:
            return False
        return await self._deliver(target, event, data)

    async def _deliver(self, target: LiveConnection, event: str, data: dict) -> bool:
        """
        Best-effort send on one connection.

        A socket that is closing or gone is logged and skipped; the failure
        never propagates to the connection whose event triggered the send.
        Each connection's own task cleans up its registration on disconnect.
        """
        if target.websocket.application_state != WebSocketState.CONNECTED:
            logger.debug(f"Skipped {event} to user {target.user_id}: socket not connected")
            return False
        try:
            await target.emit(event, data)
        except Exception as e:
            logger.warning(f"Delivery of {event} to user {target.user_id} failed: {e}")
            return False
        return True
