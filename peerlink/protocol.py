# peerlink/protocol.py
import json
import logging

logger = logging.getLogger(__name__)

# --- Relay event names ---
ME = "me"
CALL_USER = "callUser"
ANSWER_CALL = "answerCall"
CALL_ACCEPTED = "callAccepted"
USER_UNAVAILABLE = "userUnavailable"
CALL_ENDED = "callEnded"
SEND_FEEDBACK = "sendFeedback"

# Events a client may send to the relay
CLIENT_EVENTS = frozenset({CALL_USER, ANSWER_CALL, SEND_FEEDBACK})
# Events the relay sends to clients
SERVER_EVENTS = frozenset({ME, CALL_USER, CALL_ACCEPTED, USER_UNAVAILABLE, CALL_ENDED})


class ProtocolError(ValueError):
    """Raised when a relay frame cannot be decoded into an event."""


def encode_event(event, data=None):
    """Serialize one relay event as a JSON text frame."""
    return json.dumps({"event": event, "data": data})


def decode_event(raw, allowed=None):
    """
    Parse a relay text frame.
    Args:
        raw: The frame as received from the websocket.
        allowed: Optional set of accepted event names.
    Returns:
        (event, data) tuple.
    Raises:
        ProtocolError: binary frame, invalid JSON, wrong shape or unknown event.
    """
    if not isinstance(raw, str):
        raise ProtocolError(f"expected text frame, got {type(raw).__name__}")
    try:
        message = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"invalid JSON: {e}") from e
    if not isinstance(message, dict):
        raise ProtocolError("frame is not a JSON object")
    event = message.get("event")
    if not isinstance(event, str) or not event:
        raise ProtocolError("frame has no event name")
    if allowed is not None and event not in allowed:
        raise ProtocolError(f"unknown event '{event}'")
    return event, message.get("data")
