"""
Real-time fan-out for conversations.

Each conversation id is a room. Connections authenticate with a session token,
join the rooms of conversations they take part in and receive every event
published to those rooms. Delivery is fire-and-forget: nothing is acknowledged,
retried or persisted here.
"""
import asyncio
import logging
import threading
from typing import Callable, Dict, Optional, Set

from fastapi import WebSocket

from errors import ServiceError

logger = logging.getLogger(__name__)


class Connection:
    """One client transport. Subclasses implement ``deliver`` and ``close``."""

    def __init__(self, connection_id: str):
        self.id = connection_id
        self.user_id: Optional[str] = None

    @property
    def authenticated(self) -> bool:
        return self.user_id is not None

    def deliver(self, event: str, payload) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class WebSocketConnection(Connection):
    """Adapts a FastAPI WebSocket.

    Sends are scheduled on the loop that accepted the socket, so ``deliver`` may
    be called from request threads as well as from the loop itself.
    """

    def __init__(self, websocket: WebSocket, loop: asyncio.AbstractEventLoop):
        super().__init__(f"ws-{id(websocket):x}")
        self.websocket = websocket
        self.loop = loop
        self.closed = False

    def _schedule(self, coro) -> None:
        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        future.add_done_callback(self._report)

    def _report(self, future) -> None:
        if future.cancelled():
            return
        exc = future.exception()
        if exc is not None:
            logger.warning("Send to %s failed: %s", self.id, exc)

    def deliver(self, event: str, payload) -> None:
        if self.closed:
            return
        self._schedule(self.websocket.send_json({"event": event, "data": payload}))

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._schedule(self.websocket.close(code=4000, reason="Superseded by a newer connection"))


class ConnectionRegistry:
    """Maps each authenticated user id to their current connection."""

    def __init__(self):
        self._by_user: Dict[str, Connection] = {}

    def bind(self, user_id: str, connection: Connection) -> Optional[Connection]:
        """Bind ``connection`` to ``user_id``; return the connection it replaces."""
        previous = self._by_user.get(user_id)
        self._by_user[user_id] = connection
        if previous is connection:
            return None
        return previous

    def unbind(self, user_id: str, connection: Connection) -> None:
        if self._by_user.get(user_id) is connection:
            del self._by_user[user_id]

    def lookup(self, user_id: str) -> Optional[Connection]:
        return self._by_user.get(user_id)

    def __len__(self):
        return len(self._by_user)


class RealtimeHub:
    """Rooms plus identity registry for one process.

    ``verify_token`` maps a session token to a user id and raises ServiceError
    when it is not valid. ``can_join`` decides whether a user may join a
    conversation room.
    """

    def __init__(self, verify_token: Callable[[str], str], can_join: Callable[[str, str], bool]):
        self.verify_token = verify_token
        self.can_join = can_join
        self.registry = ConnectionRegistry()
        self.rooms: Dict[str, Set[Connection]] = {}
        self._lock = threading.RLock()

    def authenticate(self, connection: Connection, token: Optional[str]) -> bool:
        try:
            user_id = self.verify_token(token)
        except ServiceError as exc:
            connection.deliver("error", {"error": exc.message})
            return False

        with self._lock:
            if connection.user_id and connection.user_id != user_id:
                self._drop_from_rooms(connection)
                self.registry.unbind(connection.user_id, connection)
            connection.user_id = user_id
            previous = self.registry.bind(user_id, connection)
            if previous is not None:
                self._drop_from_rooms(previous)
        if previous is not None:
            logger.info("User %s reconnected, closing %s", user_id, previous.id)
            previous.close()
        logger.info("User %s authenticated with %s", user_id, connection.id)
        connection.deliver("authenticated", {"userId": user_id})
        return True

    def join(self, connection: Connection, conversation_id: str) -> bool:
        if not conversation_id:
            return False
        if not connection.authenticated:
            connection.deliver("error", {"error": "Authenticate before joining a conversation"})
            return False
        if not self.can_join(conversation_id, connection.user_id):
            connection.deliver("error", {"error": "Conversation not found or access denied"})
            return False
        with self._lock:
            self.rooms.setdefault(conversation_id, set()).add(connection)
        logger.info("%s joined conversation %s", connection.id, conversation_id)
        connection.deliver("joinedConversation", {"conversationId": conversation_id})
        return True

    def leave(self, connection: Connection, conversation_id: str) -> None:
        with self._lock:
            members = self.rooms.get(conversation_id)
            if not members or connection not in members:
                return
            members.discard(connection)
            if not members:
                del self.rooms[conversation_id]
        logger.info("%s left conversation %s", connection.id, conversation_id)

    def typing(self, connection: Connection, conversation_id: str, is_typing: bool) -> None:
        if not conversation_id or not connection.authenticated:
            return
        with self._lock:
            if connection not in self.rooms.get(conversation_id, ()):
                return
        self.publish(
            conversation_id,
            "userTyping",
            {"userId": connection.user_id, "isTyping": bool(is_typing)},
            exclude=connection,
        )

    def publish(self, room: str, event: str, payload, exclude: Optional[Connection] = None) -> int:
        """Send ``event`` to every connection in ``room``; return how many were attempted."""
        with self._lock:
            members = list(self.rooms.get(room, ()))
        sent = 0
        for connection in members:
            if connection is exclude:
                continue
            try:
                connection.deliver(event, payload)
                sent += 1
            except Exception:
                logger.warning("Dropping %s for %s in room %s", event, connection.id, room, exc_info=True)
        logger.debug("Emitted %s to room %s (%d connections)", event, room, sent)
        return sent

    def disconnect(self, connection: Connection) -> None:
        with self._lock:
            self._drop_from_rooms(connection)
            if connection.user_id:
                self.registry.unbind(connection.user_id, connection)
        if connection.user_id:
            logger.info("User %s disconnected (%s)", connection.user_id, connection.id)

    def _drop_from_rooms(self, connection: Connection) -> None:
        with self._lock:
            for room in [r for r, members in self.rooms.items() if connection in members]:
                self.leave(connection, room)

    def handle(self, connection: Connection, event: str, data) -> None:
        """Dispatch one client event."""
        if event == "authenticate":
            token = data.get("token") if isinstance(data, dict) else data
            self.authenticate(connection, token)
        elif event == "joinConversation":
            self.join(connection, _conversation_id(data))
        elif event == "leaveConversation":
            self.leave(connection, _conversation_id(data))
        elif event == "typing" and isinstance(data, dict):
            self.typing(connection, data.get("conversationId"), data.get("isTyping", False))
        else:
            connection.deliver("error", {"error": f"Unknown event: {event}"})


def _conversation_id(data) -> Optional[str]:
    if isinstance(data, dict):
        return data.get("conversationId")
    return data
