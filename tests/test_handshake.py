import asyncio

from conftest import FakeWebSocket, drain
from peerlink.client.channel import KEEPALIVE_MARKER
from peerlink.client.handshake import HandshakeController, Phase, Role
from peerlink.protocol import CALL_ACCEPTED, CALL_ENDED, CALL_USER, ME, USER_UNAVAILABLE, decode_event
from peerlink.registry import IdentityRegistry
from peerlink.router import SignalingRouter

OFFER = {"type": "offer", "sdp": "v=0 offer"}
ANSWER = {"type": "answer", "sdp": "v=0 answer"}
CAND1 = {"type": "candidate", "candidate": {"candidate": "c1"}}
CAND2 = {"type": "candidate", "candidate": {"candidate": "c2"}}
CAND3 = {"type": "candidate", "candidate": {"candidate": "c3"}}


def make_controller(relay, factory, my_id, **kwargs):
    controller = HandshakeController(relay, factory, ui_queue=asyncio.Queue(), **kwargs)
    controller.post_relay_event(ME, my_id)
    return controller


def incoming(controller, signal, sender="aaaa", name="Alice"):
    controller.post_relay_event(CALL_USER, {"signal": signal, "from": sender, "name": name})


def test_callee_buffers_and_drains_in_arrival_order(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "bbbb")
        for signal in (OFFER, CAND1, CAND2):
            incoming(c, signal)
        await c.process_pending()
        ringing = (c.phase, list(c.pending_signals), list(factory.created))
        c.accept()
        await c.process_pending()
        incoming(c, CAND3)
        await c.process_pending()
        return c, ringing

    c, (phase, buffered, created) = asyncio.run(scenario())
    assert phase == Phase.RINGING
    assert buffered == [OFFER, CAND1, CAND2]
    assert created == []
    negotiator = factory.last
    assert negotiator.initiator is False
    assert negotiator.applied == [OFFER, CAND1, CAND2, CAND3]
    assert len(c.pending_signals) == 0
    assert c.phase == Phase.NEGOTIATING
    assert c.role == Role.CALLEE
    calls = [e for e in drain(c.ui_queue) if e["type"] == "incoming_call"]
    assert calls == [{"type": "incoming_call", "from": "aaaa", "name": "Alice"}]


def test_candidate_first_still_rings_and_offer_renotifies(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "bbbb")
        incoming(c, CAND1)
        incoming(c, OFFER)
        incoming(c, CAND2)
        await c.process_pending()
        return c

    c = asyncio.run(scenario())
    assert list(c.pending_signals) == [CAND1, OFFER, CAND2]
    calls = [e for e in drain(c.ui_queue) if e["type"] == "incoming_call"]
    assert len(calls) == 2


def test_callee_answers_through_answer_call(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "bbbb")
        incoming(c, OFFER)
        c.accept()
        await c.process_pending()
        factory.last.emit("signal", ANSWER)
        factory.last.emit("signal", CAND1)
        await c.process_pending()

    asyncio.run(scenario())
    assert relay.emitted == [
        ("answerCall", {"signal": ANSWER, "to": "aaaa"}),
        ("answerCall", {"signal": CAND1, "to": "aaaa"}),
    ]


def test_caller_sends_each_signal_as_produced(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "aaaa", display_name="Alice")
        c.dial(" bbbb ")
        await c.process_pending()
        assert c.phase == Phase.DIALING
        factory.last.emit("signal", OFFER)
        await c.process_pending()
        sent_after_offer = len(relay.emitted)
        factory.last.emit("signal", CAND1)
        await c.process_pending()
        return c, sent_after_offer

    c, sent_after_offer = asyncio.run(scenario())
    assert factory.last.initiator is True
    assert sent_after_offer == 1
    assert relay.emitted == [
        ("callUser", {"userToCall": "bbbb", "signalData": OFFER, "from": "aaaa", "name": "Alice"}),
        ("callUser", {"userToCall": "bbbb", "signalData": CAND1, "from": "aaaa", "name": "Alice"}),
    ]


def test_caller_applies_accepted_signals_and_connects(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "aaaa")
        c.dial("bbbb")
        await c.process_pending()
        c.post_relay_event(CALL_ACCEPTED, {"signal": ANSWER})
        await c.process_pending()
        negotiating = c.phase
        c.post_relay_event(CALL_ACCEPTED, {"signal": CAND2})
        factory.last.go_live()
        await c.process_pending()
        phase = c.phase
        transport = c.channel.transport
        await c.shutdown()
        return negotiating, phase, transport

    negotiating, phase, transport = asyncio.run(scenario())
    assert negotiating == Phase.NEGOTIATING
    assert phase == Phase.CONNECTED
    assert factory.created[0].applied == [ANSWER, CAND2]
    assert transport is factory.created[0]


def test_unavailable_target_closes_attempt(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "aaaa")
        c.dial("zzzz")
        await c.process_pending()
        c.post_relay_event(USER_UNAVAILABLE, {"userToCall": "zzzz"})
        await c.process_pending()
        return c

    c = asyncio.run(scenario())
    assert c.phase == Phase.IDLE
    assert c.negotiator is None
    assert factory.last.destroyed
    assert {"type": "unavailable", "peer_id": "zzzz"} in drain(c.ui_queue)


def test_call_ended_only_from_counterpart(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "bbbb")
        c.post_relay_event(CALL_ENDED, {"from": "aaaa"})
        await c.process_pending()
        idle_ok = c.phase
        incoming(c, OFFER)
        c.accept()
        await c.process_pending()
        c.post_relay_event(CALL_ENDED, {"from": "cccc"})
        await c.process_pending()
        still = c.phase
        c.post_relay_event(CALL_ENDED, {"from": "aaaa"})
        await c.process_pending()
        return idle_ok, still, c

    idle_ok, still, c = asyncio.run(scenario())
    assert idle_ok == Phase.IDLE
    assert still == Phase.NEGOTIATING
    assert c.phase == Phase.IDLE
    assert c.remote_id is None


def test_call_ended_without_sender_closes_active_call(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "bbbb")
        incoming(c, OFFER)
        await c.process_pending()
        c.post_relay_event(CALL_ENDED, None)
        await c.process_pending()
        return c

    c = asyncio.run(scenario())
    assert c.phase == Phase.IDLE
    assert len(c.pending_signals) == 0


def test_negotiation_error_resets_and_allows_redial(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "aaaa")
        c.dial("bbbb")
        await c.process_pending()
        factory.last.emit("error", "ice failed")
        await c.process_pending()
        after_error = c.phase
        c.dial("bbbb")
        await c.process_pending()
        return c, after_error

    c, after_error = asyncio.run(scenario())
    assert after_error == Phase.IDLE
    assert c.phase == Phase.DIALING
    assert len(factory.created) == 2
    assert factory.created[0].destroyed
    statuses = [e for e in drain(c.ui_queue) if e["type"] == "status"]
    assert {"type": "status", "status": "error", "error": "ice failed"} in statuses


def test_events_from_torn_down_negotiator_are_ignored(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "aaaa")
        c.dial("bbbb")
        await c.process_pending()
        old = factory.last
        c.hang_up()
        await c.process_pending()
        old.emit("signal", OFFER)
        old.emit("connect")
        await c.process_pending()
        return c

    c = asyncio.run(scenario())
    assert c.phase == Phase.IDLE
    assert relay.emitted == []


def test_actions_rejected_in_wrong_phase(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "aaaa")
        await c.process_pending()
        results = [
            await c.handle({"type": "accept"}),
            await c.handle({"type": "hang_up"}),
            await c.handle({"type": "dial", "peer_id": "aaaa"}),
            await c.handle({"type": "dial", "peer_id": "  "}),
            await c.handle({"type": "dial", "peer_id": "bbbb"}),
            await c.handle({"type": "dial", "peer_id": "cccc"}),
        ]
        return c, results

    c, results = asyncio.run(scenario())
    assert results == [False, False, False, False, True, False]
    assert c.remote_id == "bbbb"


def test_dial_before_registration_rejected(relay, factory):
    async def scenario():
        c = HandshakeController(relay, factory)
        return await c.handle({"type": "dial", "peer_id": "bbbb"})

    assert asyncio.run(scenario()) is False
    assert factory.created == []


def test_second_caller_ignored_while_busy(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "bbbb")
        incoming(c, OFFER, sender="aaaa")
        incoming(c, OFFER, sender="cccc")
        await c.process_pending()
        return c

    c = asyncio.run(scenario())
    assert c.remote_id == "aaaa"
    assert list(c.pending_signals) == [OFFER]


def test_declining_ringing_call_clears_buffer(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "bbbb")
        incoming(c, OFFER)
        incoming(c, CAND1)
        c.hang_up()
        await c.process_pending()
        incoming(c, CAND2, sender="cccc")
        await c.process_pending()
        return c

    c = asyncio.run(scenario())
    assert factory.created == []
    assert c.remote_id == "cccc"
    assert list(c.pending_signals) == [CAND2]


def test_connected_data_reaches_channel(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "bbbb")
        incoming(c, OFFER)
        c.accept()
        await c.process_pending()
        factory.last.go_live()
        factory.last.emit("data", '{"text": "hi there"}')
        await c.process_pending()
        log = list(c.channel.chat_log)
        await c.shutdown()
        return log

    assert asyncio.run(scenario()) == [{"sender": "peer", "text": "hi there"}]


def test_heartbeat_sent_while_connected(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "bbbb", heartbeat_interval=0.01)
        incoming(c, OFFER)
        c.accept()
        await c.process_pending()
        negotiator = factory.last
        negotiator.go_live()
        await c.process_pending()
        await asyncio.sleep(0.05)
        beats = negotiator.sent.count(KEEPALIVE_MARKER)
        await c.shutdown()
        sent_at_close = len(negotiator.sent)
        await asyncio.sleep(0.03)
        return beats, sent_at_close, len(negotiator.sent)

    beats, sent_at_close, sent_later = asyncio.run(scenario())
    assert beats >= 1
    assert sent_later == sent_at_close


def test_heartbeat_failures_are_swallowed(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "bbbb", heartbeat_interval=60)
        incoming(c, OFFER)
        c.accept()
        await c.process_pending()
        factory.last.go_live()
        await c.process_pending()
        factory.last.fail_send = True
        result = c.send_heartbeat()
        phase = c.phase
        await c.shutdown()
        return result, phase

    result, phase = asyncio.run(scenario())
    assert result is False
    assert phase == Phase.CONNECTED


def test_remote_close_returns_to_idle(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "aaaa")
        c.dial("bbbb")
        await c.process_pending()
        c.post_relay_event(CALL_ACCEPTED, {"signal": ANSWER})
        factory.last.go_live()
        await c.process_pending()
        factory.last.emit("close")
        await c.process_pending()
        return c

    c = asyncio.run(scenario())
    assert c.phase == Phase.IDLE
    assert c.channel.transport is None
    phases = [e["phase"] for e in drain(c.ui_queue) if e["type"] == "call_state"]
    assert phases == ["dialing", "negotiating", "connected", "closed", "idle"]


HANDLE_A = "aaaa0000000000000000000000000001"
HANDLE_B = "bbbb0000000000000000000000000002"


async def relay_pair():
    router = SignalingRouter(IdentityRegistry())
    a = FakeWebSocket(handle=HANDLE_A)
    b = FakeWebSocket(handle=HANDLE_B)
    await router.connect(a.id.hex, a)
    await router.connect(b.id.hex, b)
    a.sent.clear()
    return router, a, b


def feed(controller, ws):
    for frame in ws.sent:
        controller.post_relay_event(*decode_event(frame))
    ws.sent.clear()


def test_dial_by_connection_handle_closes_on_call_ended(relay, factory):
    async def scenario():
        router, a, b = await relay_pair()
        c = make_controller(relay, factory, "aaaa")
        c.dial(b.id.hex)
        await c.process_pending()
        await router.answer_call(b.id.hex, {"signal": ANSWER, "to": "aaaa"})
        feed(c, a)
        await c.process_pending()
        factory.last.go_live()
        await c.process_pending()
        connected = (c.phase, set(c.remote_aliases))
        await router.disconnect(b.id.hex)
        feed(c, a)
        await c.process_pending()
        return c, connected

    c, (phase, aliases) = asyncio.run(scenario())
    assert phase == Phase.CONNECTED
    assert aliases == {HANDLE_B, "bbbb"}
    assert factory.last.applied == [ANSWER]
    assert c.phase == Phase.IDLE
    assert factory.last.destroyed


def test_dial_by_connection_handle_closes_on_unavailable(relay, factory):
    async def scenario():
        router, a, b = await relay_pair()
        c = make_controller(relay, factory, "aaaa")
        c.dial(b.id.hex)
        await c.process_pending()
        await router.disconnect(b.id.hex)
        a.sent.clear()
        factory.last.emit("signal", OFFER)
        await c.process_pending()
        event, data = relay.emitted[-1]
        await router.call_user(a.id.hex, data)
        feed(c, a)
        await c.process_pending()
        return c

    c = asyncio.run(scenario())
    assert c.phase == Phase.IDLE
    assert {"type": "unavailable", "peer_id": HANDLE_B} in drain(c.ui_queue)


def test_call_ended_for_other_pair_ignored_when_dialed_by_handle(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "aaaa")
        c.dial(HANDLE_B)
        await c.process_pending()
        c.post_relay_event(CALL_ACCEPTED, {"signal": ANSWER, "from": "bbbb"})
        c.post_relay_event(CALL_ENDED, {"from": "cccc"})
        await c.process_pending()
        return c

    c = asyncio.run(scenario())
    assert c.phase == Phase.NEGOTIATING


def test_new_connection_starts_with_clean_channel(relay, factory):
    async def scenario():
        c = make_controller(relay, factory, "bbbb")
        c.channel.chat_log.append({"sender": "peer", "text": "from an old call"})
        c.channel.incoming.add_chunk(b"stale")
        incoming(c, OFFER)
        c.accept()
        await c.process_pending()
        factory.last.go_live()
        await c.process_pending()
        state = (list(c.channel.chat_log), list(c.channel.incoming.chunks))
        await c.shutdown()
        return state

    assert asyncio.run(scenario()) == ([], [])
