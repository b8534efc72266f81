"""
Fan-out of cache change notifications to live browser connections.

Each connection may subscribe to one instance with
{"type": "subscribe", "containerId": id}. Instance-scoped broadcasts go to
every connection subscribed to that instance and to every connection that has
not subscribed at all. Delivery is best effort: closed connections are
skipped and nothing is queued or retried.

Keepalive pings are sent by the ASGI server, which closes sockets that stop
answering them. A periodic sweep then reaps handles whose socket is closed: a
handle is kept while its socket is open or it has sent any frame since the
previous sweep.
"""

import asyncio
import json
from typing import Any, Dict, List, Optional, Set

from starlette.websockets import WebSocket, WebSocketState

from .config import Config
from .logger import logger


class LiveConnection:
    """
    A handle on one live client connection.

    Subclasses provide the transport; the notifier only relies on is_open,
    send_json and terminate.
    """

    def __init__(self):
        self.subscription: Optional[int] = None
        self.is_alive = True

    @property
    def is_open(self) -> bool:
        raise NotImplementedError

    async def send_json(self, payload: Dict[str, Any]) -> None:
        raise NotImplementedError

    async def terminate(self) -> None:
        raise NotImplementedError

    def mark_alive(self) -> None:
        self.is_alive = True

    def check_open(self) -> None:
        if self.is_open:
            self.mark_alive()


class WebSocketConnection(LiveConnection):
    def __init__(self, websocket: WebSocket):
        super().__init__()
        self.websocket = websocket

    @property
    def is_open(self) -> bool:
        return (self.websocket.client_state == WebSocketState.CONNECTED
                and self.websocket.application_state == WebSocketState.CONNECTED)

    async def send_json(self, payload: Dict[str, Any]) -> None:
        await self.websocket.send_text(json.dumps(payload))

    async def terminate(self) -> None:
        if self.is_open:
            await self.websocket.close(code=1001)


class ChangeNotifier:
    """
    Registry of live connections and the fan-out over them.

    Only used from the event loop thread.
    """

    def __init__(self, heartbeat_interval: int = Config.HEARTBEAT_INTERVAL):
        self.heartbeat_interval = heartbeat_interval
        self._connections: Set[LiveConnection] = set()
        self._heartbeat: Optional[asyncio.Task] = None

    @property
    def connections(self) -> List[LiveConnection]:
        return list(self._connections)

    @property
    def client_count(self) -> int:
        """Number of registered connections that are still open."""
        return sum(1 for conn in self._connections if conn.is_open)

    async def register(self, conn: LiveConnection) -> None:
        self._connections.add(conn)
        logger.info(f"Live client connected ({len(self._connections)} total)")
        await self._send(conn, {"type": "connected", "message": "Connected to qBittorrent manager"})

    def unregister(self, conn: LiveConnection) -> None:
        self._connections.discard(conn)
        logger.info(f"Live client disconnected ({len(self._connections)} total)")

    async def handle_message(self, conn: LiveConnection, raw: str) -> None:
        """Handle one text frame received from a connection."""
        conn.mark_alive()

        try:
            message = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.warning(f"Ignoring unparsable live message: {e}")
            return

        if not isinstance(message, dict):
            logger.warning(f"Ignoring live message that is not an object: {message!r}")
            return

        msg_type = message.get("type")
        if msg_type == "subscribe":
            conn.subscription = self._subscription_id(message.get("containerId"))
            logger.debug(f"Live client subscribed to instance {conn.subscription}")
        elif msg_type == "ping":
            await self._send(conn, {"type": "pong"})
        else:
            logger.debug(f"Ignoring unknown live message type: {msg_type}")

    @staticmethod
    def _subscription_id(value) -> Optional[int]:
        if value is None or value == "":
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            logger.warning(f"Ignoring subscription to invalid instance id {value!r}")
            return None

    async def _send(self, conn: LiveConnection, payload: Dict[str, Any]) -> bool:
        if not conn.is_open:
            return False
        try:
            await conn.send_json(payload)
            return True
        except Exception as e:
            logger.debug(f"Failed to deliver live message: {e}")
            return False

    async def broadcast(self, payload: Dict[str, Any]) -> int:
        """Send a message to every open connection. Returns the number delivered."""
        delivered = 0
        for conn in list(self._connections):
            if await self._send(conn, payload):
                delivered += 1
        return delivered

    async def broadcast_to_instance(self, instance_id: int, payload: Dict[str, Any]) -> int:
        """
        Send a message about one instance.

        Delivered to connections subscribed to instance_id and to connections
        without a subscription. Returns the number delivered.
        """
        delivered = 0
        for conn in list(self._connections):
            if conn.subscription is not None and conn.subscription != instance_id:
                continue
            if await self._send(conn, payload):
                delivered += 1
        return delivered

    async def sweep(self) -> int:
        """
        Reap handles that were closed and silent since the previous sweep.

        Returns:
            Number of connections terminated
        """
        dropped = 0
        for conn in list(self._connections):
            if not conn.is_alive:
                self._connections.discard(conn)
                dropped += 1
                try:
                    await conn.terminate()
                except Exception as e:
                    logger.debug(f"Error terminating dead live connection: {e}")
                continue
            conn.is_alive = False
            conn.check_open()

        if dropped:
            logger.info(f"Reaped {dropped} closed live clients")
        return dropped

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            await self.sweep()

    def start_heartbeat(self) -> None:
        if self._heartbeat is None:
            self._heartbeat = asyncio.create_task(self._heartbeat_loop())

    async def stop(self) -> None:
        if self._heartbeat is not None:
            self._heartbeat.cancel()
            try:
                await self._heartbeat
            except asyncio.CancelledError:
                pass
            self._heartbeat = None

        for conn in list(self._connections):
            try:
                await conn.terminate()
            except Exception as e:
                logger.debug(f"Error closing live connection: {e}")
        self._connections.clear()
