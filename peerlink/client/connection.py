import asyncio
import logging
import websockets
from websockets.protocol import State

from ..protocol import SERVER_EVENTS, ProtocolError, decode_event, encode_event

logger = logging.getLogger(__name__)

DEFAULT_RECONNECTION_ATTEMPTS = 5
DEFAULT_RECONNECTION_DELAY = 1.0


class SignalingClient:
    def __init__(self, url, on_event, ui_queue=None,
                 reconnection_attempts=DEFAULT_RECONNECTION_ATTEMPTS,
                 reconnection_delay=DEFAULT_RECONNECTION_DELAY,
                 connect=None):
        """
        Client side of the relay connection.
        Args:
            url: ws:// or wss:// address of the relay.
            on_event: Callable(event, data) for every decoded relay event,
                      usually HandshakeController.post_relay_event.
            ui_queue: asyncio.Queue receiving connectivity status events.
            reconnection_attempts: Connection attempts before reporting failure.
            reconnection_delay: Seconds to wait between attempts.
            connect: Override for websockets.connect.
        """
        self.url = url
        self.on_event = on_event
        self.ui_queue = ui_queue
        self.reconnection_attempts = reconnection_attempts
        self.reconnection_delay = reconnection_delay
        self._connect = connect or websockets.connect
        self.websocket = None
        self._closing = False

    def _status(self, status, **extra):
        if self.ui_queue is not None:
            self.ui_queue.put_nowait({"type": "status", "status": status, **extra})

    @property
    def is_open(self):
        return self.websocket is not None and self.websocket.state == State.OPEN

    async def connect(self):
        """
        Open the relay connection, retrying a bounded number of times.
        Returns the websocket, or None after reporting a connectivity failure.
        """
        for attempt in range(1, self.reconnection_attempts + 1):
            try:
                self.websocket = await self._connect(self.url)
                logger.info(f"Connected to relay {self.url}")
                self._status("connect")
                return self.websocket
            except (OSError, asyncio.TimeoutError, websockets.exceptions.WebSocketException) as e:
                logger.warning(f"Relay connection attempt {attempt}/{self.reconnection_attempts} failed: {e}")
                self._status("connect_error", attempt=attempt, error=str(e))
                if attempt < self.reconnection_attempts:
                    await asyncio.sleep(self.reconnection_delay)
        logger.error(f"Giving up on relay {self.url} after {self.reconnection_attempts} attempts.")
        self._status("failed")
        return None

    async def emit(self, event, data=None):
        if not self.is_open:
            logger.warning(f"Cannot send '{event}': relay connection is not open.")
            return False
        try:
            await self.websocket.send(encode_event(event, data))
            return True
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"Relay connection closed while sending '{event}': {e}")
            return False

    async def listen(self):
        """Receive relay events until the connection closes."""
        if self.websocket is None:
            raise RuntimeError("listen() called before connect()")
        try:
            async for message in self.websocket:
                try:
                    event, data = decode_event(message, allowed=SERVER_EVENTS)
                except ProtocolError as e:
                    logger.warning(f"Ignoring malformed relay frame: {e}")
                    continue
                self.on_event(event, data)
        except websockets.exceptions.ConnectionClosedError as e:
            logger.warning(f"Relay connection closed with error: {e}")
        finally:
            logger.info("Disconnected from relay.")
            self._status("disconnect")

    async def run(self):
        """Connect and listen, reconnecting after drops until attempts are exhausted."""
        while not self._closing and await self.connect() is not None:
            await self.listen()

    async def close(self):
        self._closing = True
        if self.websocket is not None:
            await self.websocket.close()
            self.websocket = None
