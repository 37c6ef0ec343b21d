# peerlink/router.py
import asyncio
import logging
import websockets

from .protocol import (
    ANSWER_CALL, CALL_ACCEPTED, CALL_ENDED, CALL_USER, ME, SEND_FEEDBACK,
    USER_UNAVAILABLE, encode_event,
)

logger = logging.getLogger(__name__)


class SignalingRouter:
    def __init__(self, registry):
        """
        Routes call setup envelopes between live sessions.
        Args:
            registry: The process-wide IdentityRegistry.
        """
        self.registry = registry
        self._connections = {} # {connection_handle: websocket}

    def get_websocket(self, connection_handle):
        return self._connections.get(connection_handle)

    def session_count(self):
        return len(self._connections)

    # --- Session lifecycle ---

    async def connect(self, connection_handle, websocket):
        """Register a new session, allocate its peerId and tell it with a `me` event."""
        peer_id = self.registry.allocate(connection_handle)
        self._connections[connection_handle] = websocket
        logger.info(f"User connected: {peer_id}")
        await self._send(connection_handle, ME, peer_id)
        return peer_id

    async def disconnect(self, connection_handle):
        """
        Forget a session and tell every other live session the call ended.
        Safe to call more than once for the same handle.
        """
        websocket = self._connections.pop(connection_handle, None)
        peer_id = self.registry.release(connection_handle)
        if websocket is None and peer_id is None:
            return
        logger.info(f"User disconnected: {peer_id or connection_handle}")
        await self._broadcast(CALL_ENDED, {"from": peer_id}, exclude=connection_handle)

    # --- Inbound events ---

    async def dispatch(self, connection_handle, event, data):
        """Apply one decoded client event. Returns False for events the relay does not handle."""
        if event == CALL_USER:
            await self.call_user(connection_handle, data)
        elif event == ANSWER_CALL:
            await self.answer_call(connection_handle, data)
        elif event == SEND_FEEDBACK:
            self.send_feedback(connection_handle, data)
        else:
            logger.warning(f"Ignoring unsupported event '{event}' from {self.label(connection_handle)}")
            return False
        return True

    async def call_user(self, sender_handle, data):
        """Forward a call initiation (offer or caller candidate) to the addressed peer."""
        data = data if isinstance(data, dict) else {}
        target_id = data.get("userToCall")
        target_handle = self.registry.resolve(target_id)
        if target_handle is None or target_handle not in self._connections or target_handle == sender_handle:
            await self._report_unavailable(sender_handle, target_id)
            return False

        logger.debug(f"Relaying callUser {self.label(sender_handle)} -> {self.label(target_handle)}")
        await self._send(target_handle, CALL_USER, {
            "signal": data.get("signalData"),
            "from": data.get("from"),
            "name": data.get("name"),
        })
        return True

    async def answer_call(self, sender_handle, data):
        """Forward an answer (or callee candidate) to the caller as `callAccepted`."""
        data = data if isinstance(data, dict) else {}
        target_id = data.get("to")
        target_handle = self.registry.resolve(target_id)
        if target_handle is None or target_handle not in self._connections:
            await self._report_unavailable(sender_handle, target_id)
            return False

        logger.debug(f"Relaying answerCall {self.label(sender_handle)} -> {self.label(target_handle)}")
        await self._send(target_handle, CALL_ACCEPTED, {
            "signal": data.get("signal"),
            "from": self.registry.peer_id_for(sender_handle),
        })
        return True

    def send_feedback(self, sender_handle, text):
        logger.info(f"Feedback from {self.label(sender_handle)}: {text}")

    # --- Delivery ---

    async def _report_unavailable(self, sender_handle, target_id):
        logger.warning(f"User {target_id!r} unavailable for {self.label(sender_handle)}")
        await self._send(sender_handle, USER_UNAVAILABLE, {"userToCall": target_id})

    async def _send(self, connection_handle, event, data):
        """Best-effort unicast. Returns True if the frame was handed to the socket."""
        websocket = self._connections.get(connection_handle)
        if websocket is None:
            return False
        try:
            await websocket.send(encode_event(event, data))
            return True
        except websockets.exceptions.ConnectionClosed as e:
            # The closed session's own handler performs its cleanup
            logger.debug(f"Dropped '{event}' for {self.label(connection_handle)}: connection closed ({e})")
            return False

    async def _broadcast(self, event, data, exclude=None):
        targets = [h for h in self._connections if h != exclude]
        if not targets:
            return
        results = await asyncio.gather(
            *(self._send(h, event, data) for h in targets), return_exceptions=True
        )
        for handle, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.error(f"Broadcast of '{event}' to {self.label(handle)} failed: {result}")

    def label(self, connection_handle):
        return self.registry.peer_id_for(connection_handle) or connection_handle
