# peerlink/client/handshake.py
import asyncio
import logging
from collections import deque
from enum import Enum

from ..protocol import (
    ANSWER_CALL, CALL_ACCEPTED, CALL_ENDED, CALL_USER, ME, USER_UNAVAILABLE,
)
from .channel import KEEPALIVE_MARKER, ChannelMultiplexer

logger = logging.getLogger(__name__)

DEFAULT_HEARTBEAT_INTERVAL = 4.0


class Phase(Enum):
    IDLE = "idle"
    DIALING = "dialing"
    RINGING = "ringing"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


class Role(Enum):
    CALLER = "caller"
    CALLEE = "callee"


class Negotiator:
    """
    Transport negotiation engine for one call attempt (offer/answer/candidates,
    NAT traversal, the data channel itself). Implementations are built by a
    factory called as ``factory(initiator, emit)`` and report back through
    ``emit(kind, payload)`` with kind one of "signal", "connect", "data",
    "error" or "close".
    """

    def signal(self, blob):
        raise NotImplementedError

    def send(self, data):
        raise NotImplementedError

    def destroy(self):
        raise NotImplementedError

    @property
    def connected(self):
        raise NotImplementedError

    @property
    def destroyed(self):
        raise NotImplementedError


def is_offer(blob):
    return isinstance(blob, dict) and blob.get("type") == "offer"


class HandshakeController:
    def __init__(self, relay, negotiator_factory, ui_queue=None, channel=None,
                 display_name="", heartbeat_interval=DEFAULT_HEARTBEAT_INTERVAL):
        """
        Per-client call state machine.
        Args:
            relay: Signaling connection with an async emit(event, data) method.
            negotiator_factory: Callable(initiator, emit) -> Negotiator.
            ui_queue: asyncio.Queue for user-facing notifications.
            channel: ChannelMultiplexer that takes over once connected.
            display_name: Name sent along with outgoing calls.
            heartbeat_interval: Seconds between keep-alive frames while connected.
        """
        self.relay = relay
        self.negotiator_factory = negotiator_factory
        self.ui_queue = ui_queue
        self.channel = channel if channel is not None else ChannelMultiplexer(ui_queue)
        self.display_name = display_name
        self.heartbeat_interval = heartbeat_interval

        self.my_id = None
        self.phase = Phase.IDLE
        self.role = None
        self.remote_id = None
        self.remote_name = None
        self.remote_aliases = set() # every id the counterpart is known by (peerId, raw handle)
        self.negotiator = None
        self.pending_signals = deque() # signals received before the negotiator exists

        self._events = asyncio.Queue()
        self._generation = 0 # bumps per negotiator so late events from a torn-down one are dropped
        self._heartbeat_task = None

        self._handlers = {
            "me": self._on_me,
            "dial": self._on_dial,
            "accept": self._on_accept,
            "hang_up": self._on_hang_up,
            "incoming_signal": self._on_incoming_signal,
            "call_accepted": self._on_call_accepted,
            "user_unavailable": self._on_user_unavailable,
            "call_ended": self._on_call_ended,
            "local_signal": self._on_local_signal,
            "connected": self._on_connected,
            "data": self._on_data,
            "error": self._on_error,
            "closed": self._on_closed,
        }

    def _notify(self, event):
        if self.ui_queue is not None:
            self.ui_queue.put_nowait(event)

    # --- Event intake ---

    def post(self, kind, **payload):
        """Queue an event for run() / process_pending()."""
        self._events.put_nowait({"type": kind, **payload})

    def post_relay_event(self, event, data):
        """Translate a relay event into a controller event."""
        if event == ME:
            self.post("me", peer_id=data)
        elif event == CALL_USER:
            data = data if isinstance(data, dict) else {}
            self.post("incoming_signal", signal=data.get("signal"), peer_id=data.get("from"), name=data.get("name"))
        elif event == CALL_ACCEPTED:
            if isinstance(data, dict) and "signal" in data:
                self.post("call_accepted", signal=data["signal"], peer_id=data.get("from"))
            else:
                self.post("call_accepted", signal=data, peer_id=None)
        elif event == USER_UNAVAILABLE:
            data = data if isinstance(data, dict) else {}
            self.post("user_unavailable", peer_id=data.get("userToCall"))
        elif event == CALL_ENDED:
            data = data if isinstance(data, dict) else {}
            self.post("call_ended", peer_id=data.get("from"))
        else:
            logger.debug(f"Ignoring relay event '{event}'")

    def dial(self, target_id, name=None):
        self.post("dial", peer_id=target_id, name=name)

    def accept(self):
        self.post("accept")

    def hang_up(self):
        self.post("hang_up")

    async def run(self):
        """Process queued events until cancelled."""
        try:
            while True:
                event = await self._events.get()
                await self.handle(event)
        finally:
            self._stop_heartbeat()

    async def process_pending(self):
        """Handle everything currently queued, including events queued while handling."""
        while not self._events.empty():
            await self.handle(self._events.get_nowait())

    async def handle(self, event):
        """Apply a single event. Returns False when the event was rejected or ignored."""
        handler = self._handlers.get(event.get("type"))
        if handler is None:
            logger.warning(f"Unknown controller event: {event}")
            return False
        generation = event.get("generation")
        if generation is not None and generation != self._generation:
            logger.debug(f"Dropping stale negotiator event '{event['type']}'")
            return False
        try:
            return await handler(event)
        except Exception as e:
            logger.exception(f"Error handling '{event['type']}' in phase {self.phase.value}: {e}")
            await self._close(f"Internal error: {e}")
            return False

    # --- Transitions ---

    def _set_phase(self, phase):
        previous = self.phase
        self.phase = phase
        if previous in (Phase.DIALING, Phase.RINGING) and phase not in (Phase.DIALING, Phase.RINGING):
            self.pending_signals.clear()
        logger.debug(f"Call phase {previous.value} -> {phase.value}")
        self._notify({"type": "call_state", "phase": phase.value})

    def _create_negotiator(self, initiator):
        self._generation += 1
        generation = self._generation

        def emit(kind, payload=None):
            if kind == "signal":
                self.post("local_signal", signal=payload, generation=generation)
            elif kind == "connect":
                self.post("connected", generation=generation)
            elif kind == "data":
                self.post("data", data=payload, generation=generation)
            elif kind == "error":
                self.post("error", error=payload, generation=generation)
            elif kind == "close":
                self.post("closed", generation=generation)
            else:
                logger.debug(f"Ignoring negotiator event '{kind}'")

        self.negotiator = self.negotiator_factory(initiator, emit)
        return self.negotiator

    def _reject(self, action, reason):
        logger.warning(f"Cannot {action}: {reason}")
        self._notify({"type": "status", "status": "rejected", "action": action, "reason": reason})
        return False

    async def _on_me(self, event):
        self.my_id = event.get("peer_id")
        logger.info(f"Registered with relay as {self.my_id}")
        self._notify({"type": "me", "peer_id": self.my_id})
        return True

    async def _on_dial(self, event):
        if self.phase != Phase.IDLE:
            return self._reject("dial", f"call already {self.phase.value}")
        target = event.get("peer_id")
        target = target.strip() if isinstance(target, str) else ""
        if not target:
            return self._reject("dial", "no peer id given")
        if self.my_id is None:
            return self._reject("dial", "not registered with the relay yet")
        if target == self.my_id:
            return self._reject("dial", "cannot call yourself")

        if event.get("name") is not None:
            self.display_name = event["name"]
        self.role = Role.CALLER
        self.remote_id = target
        self.remote_aliases = {target}
        self._set_phase(Phase.DIALING)
        self._create_negotiator(initiator=True)
        logger.info(f"Calling {target}...")
        return True

    async def _on_incoming_signal(self, event):
        caller = event.get("peer_id")
        signal = event.get("signal")

        if self.phase == Phase.IDLE:
            self.role = Role.CALLEE
            self.remote_id = caller
            self.remote_aliases = {caller}
            self.remote_name = event.get("name")
            self._set_phase(Phase.RINGING)
            self.pending_signals.append(signal)
            logger.info(f"Incoming call from {caller}")
            self._notify({"type": "incoming_call", "from": caller, "name": self.remote_name})
            return True

        if self.role != Role.CALLEE or caller != self.remote_id:
            logger.warning(f"Ignoring call signal from {caller}: busy ({self.phase.value} with {self.remote_id})")
            return False

        if self.phase == Phase.RINGING:
            self.pending_signals.append(signal)
            if is_offer(signal):
                self._notify({"type": "incoming_call", "from": caller, "name": self.remote_name})
            return True

        # Negotiator exists, apply directly
        self.negotiator.signal(signal)
        return True

    async def _on_accept(self, event):
        if self.phase != Phase.RINGING:
            return self._reject("accept", f"no incoming call ({self.phase.value})")
        negotiator = self._create_negotiator(initiator=False)
        # Offer must reach the negotiator before the candidates that reference it
        while self.pending_signals:
            negotiator.signal(self.pending_signals.popleft())
        self._set_phase(Phase.NEGOTIATING)
        logger.info(f"Accepted call from {self.remote_id}")
        return True

    async def _on_local_signal(self, event):
        signal = event.get("signal")
        if self.role == Role.CALLER:
            await self.relay.emit(CALL_USER, {
                "userToCall": self.remote_id,
                "signalData": signal,
                "from": self.my_id,
                "name": self.display_name,
            })
        elif self.role == Role.CALLEE:
            await self.relay.emit(ANSWER_CALL, {"signal": signal, "to": self.remote_id})
        else:
            logger.debug("Dropping local signal produced outside a call.")
            return False
        return True

    async def _on_call_accepted(self, event):
        if self.role != Role.CALLER or self.phase not in (Phase.DIALING, Phase.NEGOTIATING, Phase.CONNECTED):
            logger.debug(f"Ignoring callAccepted in phase {self.phase.value}")
            return False
        if event.get("peer_id"):
            self.remote_aliases.add(event["peer_id"])
        self.negotiator.signal(event.get("signal"))
        if self.phase == Phase.DIALING:
            self._set_phase(Phase.NEGOTIATING)
        return True

    async def _on_user_unavailable(self, event):
        peer_id = event.get("peer_id")
        self._notify({"type": "unavailable", "peer_id": peer_id})
        if self.phase in (Phase.IDLE, Phase.CLOSED) or peer_id not in self.remote_aliases:
            logger.info(f"User {peer_id} is unavailable.")
            return False
        await self._close(f"User {peer_id} is unavailable")
        return True

    async def _on_call_ended(self, event):
        if self.phase in (Phase.IDLE, Phase.CLOSED):
            return False
        peer_id = event.get("peer_id")
        if peer_id is not None and peer_id not in self.remote_aliases:
            # Broadcast for some other pair
            logger.debug(f"Ignoring callEnded for {peer_id}")
            return False
        await self._close("Remote peer ended the call")
        return True

    async def _on_connected(self, event):
        if self.phase != Phase.NEGOTIATING:
            logger.warning(f"Unexpected connect event in phase {self.phase.value}")
            return False
        self._set_phase(Phase.CONNECTED)
        self.channel.reset("New peer connection")
        self.channel.attach(self.negotiator)
        self._start_heartbeat()
        logger.info(f"Peer connection with {self.remote_id} established.")
        self._notify({"type": "status", "status": "connected", "peer_id": self.remote_id})
        return True

    async def _on_data(self, event):
        if self.phase != Phase.CONNECTED:
            logger.debug(f"Dropping data frame in phase {self.phase.value}")
            return False
        self.channel.receive(event.get("data"))
        return True

    async def _on_error(self, event):
        error = event.get("error")
        logger.error(f"Negotiation error with {self.remote_id}: {error}")
        self._notify({"type": "status", "status": "error", "error": str(error)})
        await self._close(f"Negotiation error: {error}")
        return True

    async def _on_closed(self, event):
        await self._close("Peer connection closed")
        return True

    async def _on_hang_up(self, event):
        if self.phase in (Phase.IDLE, Phase.CLOSED):
            return self._reject("hang up", "no active call")
        await self._close("Call ended locally")
        return True

    async def shutdown(self):
        """Abandon any call in progress."""
        await self._close("Session shutting down")

    async def _close(self, reason):
        """Tear down the current attempt and return to idle."""
        if self.phase == Phase.IDLE:
            return
        logger.info(f"Closing call with {self.remote_id}: {reason}")
        self._set_phase(Phase.CLOSED)
        self._stop_heartbeat()
        negotiator, self.negotiator = self.negotiator, None
        self._generation += 1
        if negotiator is not None:
            try:
                negotiator.destroy()
            except Exception as e:
                logger.warning(f"Error destroying negotiator: {e}")
        self.channel.detach(reason)
        self.pending_signals.clear()
        self.role = None
        self.remote_id = None
        self.remote_name = None
        self.remote_aliases = set()
        self._set_phase(Phase.IDLE)

    # --- Heartbeat ---

    def _start_heartbeat(self):
        self._stop_heartbeat()
        self._heartbeat_task = asyncio.create_task(self._heartbeat(), name="Heartbeat")

    def _stop_heartbeat(self):
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    async def _heartbeat(self):
        while self.phase == Phase.CONNECTED:
            await asyncio.sleep(self.heartbeat_interval)
            self.send_heartbeat()

    def send_heartbeat(self):
        """Send one keep-alive frame if the transport is live. Failures are ignored."""
        negotiator = self.negotiator
        if self.phase != Phase.CONNECTED or negotiator is None:
            return False
        if not negotiator.connected or negotiator.destroyed:
            return False
        try:
            negotiator.send(KEEPALIVE_MARKER)
            return True
        except Exception as e:
            logger.debug(f"Heartbeat send failed: {e}")
            return False
