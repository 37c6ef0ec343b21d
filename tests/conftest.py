import uuid

import pytest
from websockets.protocol import State


class FakeWebSocket:
    """In-memory stand-in for a websockets connection."""

    def __init__(self, incoming=None, handle=None):
        self.id = uuid.UUID(handle) if handle else uuid.uuid4()
        self.incoming = list(incoming or [])
        self.sent = []
        self.state = State.OPEN
        self.closed_with = None
        self.send_error = None

    async def send(self, message):
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)

    async def close(self, code=1000, reason=""):
        self.state = State.CLOSED
        self.closed_with = (code, reason)

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for message in self.incoming:
            yield message


class FakeRelay:
    def __init__(self):
        self.emitted = []

    async def emit(self, event, data=None):
        self.emitted.append((event, data))
        return True


class FakeNegotiator:
    def __init__(self, initiator, emit):
        self.initiator = initiator
        self.emit = emit
        self.applied = []
        self.sent = []
        self.fail_send = False
        self._connected = False
        self._destroyed = False

    def signal(self, blob):
        self.applied.append(blob)

    def send(self, data):
        if self.fail_send:
            raise RuntimeError("data channel closed")
        self.sent.append(data)

    def destroy(self):
        self._destroyed = True
        self._connected = False
        self.emit("close")

    def go_live(self):
        self._connected = True
        self.emit("connect")

    @property
    def connected(self):
        return self._connected

    @property
    def destroyed(self):
        return self._destroyed


class NegotiatorFactory:
    def __init__(self):
        self.created = []

    def __call__(self, initiator, emit):
        negotiator = FakeNegotiator(initiator, emit)
        self.created.append(negotiator)
        return negotiator

    @property
    def last(self):
        return self.created[-1]


class FakeTransport:
    def __init__(self):
        self.sent = []
        self.destroyed = False

    def send(self, data):
        self.sent.append(data)


def drain(queue):
    items = []
    while not queue.empty():
        items.append(queue.get_nowait())
    return items


@pytest.fixture
def relay():
    return FakeRelay()


@pytest.fixture
def factory():
    return NegotiatorFactory()
