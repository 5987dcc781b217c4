"""WebSocket connection manager for chat connections."""

import asyncio
import json
import logging
from uuid import uuid4

from starlette.websockets import WebSocketState

logger = logging.getLogger(__name__)

# Heartbeat interval (seconds) — ping all connections periodically
HEARTBEAT_INTERVAL = 30

# Maximum connections per user before oldest is evicted
MAX_CONNECTIONS_PER_USER = 3

# Maximum inbound message size (bytes); a chat frame carries a message and a file list
MAX_MESSAGE_SIZE = 64 * 1024

# Upper bound on a single outbound frame
SEND_TIMEOUT = 5.0


class WebSocketChannel:
    """One accepted WebSocket: serialised sends plus a liveness flag.

    The relay and the heartbeat both write to the socket; the send lock keeps
    their frames from interleaving.  Once a send fails or the socket closes
    the channel reports ``is_open == False`` for good.
    """

    def __init__(self, websocket) -> None:  # noqa: ANN001
        self.websocket = websocket
        self.connection_id = uuid4().hex[:12]
        self._send_lock = asyncio.Lock()
        self._closed = False

    @property
    def is_open(self) -> bool:
        if self._closed:
            return False
        state = getattr(self.websocket, "application_state", WebSocketState.CONNECTED)
        return state == WebSocketState.CONNECTED

    def mark_closed(self) -> None:
        self._closed = True

    async def send_json(self, data: dict) -> bool:
        """Send one JSON frame.  Returns False (and closes the channel) on failure."""
        if not self.is_open:
            return False
        message = json.dumps(data, default=str)
        try:
            async with self._send_lock:
                await asyncio.wait_for(self.websocket.send_text(message), timeout=SEND_TIMEOUT)
        except Exception as exc:
            logger.debug("WS send failed conn=%s: %s", self.connection_id, exc)
            self._closed = True
            return False
        return True

    async def send_event(self, event: str, payload: dict | None = None) -> bool:
        frame: dict = {"type": event}
        if payload is not None:
            frame["payload"] = payload
        return await self.send_json(frame)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.websocket.close(code=code, reason=reason)
        except Exception as exc:
            logger.debug("WS close failed conn=%s: %s", self.connection_id, exc)


class ConnectionManager:
    """Tracks open chat channels keyed by user_id."""

    def __init__(self) -> None:
        self._connections: dict[str, list[WebSocketChannel]] = {}
        self._lock = asyncio.Lock()
        self._heartbeat_task: asyncio.Task | None = None

    # ── lifecycle ─────────────────────────────────────────────

    async def start_heartbeat(self) -> None:
        """Start the background heartbeat loop (call from lifespan startup)."""
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop_heartbeat(self) -> None:
        """Cancel the heartbeat task (call from lifespan shutdown)."""
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            try:
                await self._heartbeat_task
            except asyncio.CancelledError:
                pass
            self._heartbeat_task = None

    # ── connection management ─────────────────────────────────

    async def connect(self, user_id: str, channel: WebSocketChannel) -> None:
        """Register a channel for a user.

        Enforces MAX_CONNECTIONS_PER_USER — the oldest channel is closed
        when the limit is reached.
        """
        async with self._lock:
            conns = self._connections.setdefault(user_id, [])
            while len(conns) >= MAX_CONNECTIONS_PER_USER:
                oldest = conns.pop(0)
                await oldest.close(code=1008, reason="Connection limit reached")
            conns.append(channel)

    def connection_count(self, user_id: str) -> int:
        """Return the number of active connections for a user (lock-free)."""
        return len(self._connections.get(user_id, []))

    async def disconnect(self, user_id: str, channel: WebSocketChannel) -> None:
        """Remove a channel for a user."""
        async with self._lock:
            self._remove(user_id, [channel])

    def _remove(self, user_id: str, channels: list[WebSocketChannel]) -> None:
        conns = self._connections.get(user_id, [])
        for channel in channels:
            if channel in conns:
                conns.remove(channel)
        if not conns:
            self._connections.pop(user_id, None)

    # ── heartbeat ─────────────────────────────────────────────

    async def _heartbeat_loop(self) -> None:
        """Ping every connection periodically and prune dead ones."""
        while True:
            await asyncio.sleep(HEARTBEAT_INTERVAL)
            try:
                await self._ping_all()
            except Exception:
                logger.exception("Heartbeat sweep error")

    async def _ping_all(self) -> None:
        """Send a ping frame to every channel; remove dead ones."""
        async with self._lock:
            snapshot = {uid: list(conns) for uid, conns in self._connections.items()}

        for uid, conns in snapshot.items():
            dead = [channel for channel in conns if not await channel.send_json({"type": "ping"})]
            if dead:
                async with self._lock:
                    self._remove(uid, dead)


manager = ConnectionManager()
