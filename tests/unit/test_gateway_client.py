"""
Gateway client state machine tests.

WHAT: Connect, bounded linear backoff, give-up, resume, room re-join
WHY: A flaky network must end in a clear state instead of retrying forever
HOW: Scripted fake connector/socket and a sleep that only records delays
"""

import asyncio
import json

import pytest
from websockets.exceptions import ConnectionClosed, ConnectionClosedError
from websockets.frames import Close

from swaply.realtime import protocol
from swaply.realtime.client import TRANSITIONS, ConnectionState, GatewayClient
from swaply.realtime.protocol import GatewayEvent
from swaply.utils.exceptions import TransportException

pytestmark = [pytest.mark.unit, pytest.mark.gateway]


class FakeSocket:
    def __init__(self):
        self.incoming: asyncio.Queue = asyncio.Queue()
        self.sent = []
        self.closed = False

    async def recv(self):
        item = await self.incoming.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def send(self, data: str):
        self.sent.append(json.loads(data))

    async def close(self):
        self.closed = True
        self.incoming.put_nowait(ConnectionClosed(Close(1000, ""), None))

    def push(self, event: GatewayEvent):
        self.incoming.put_nowait(json.dumps(event.to_wire()))

    def drop(self):
        self.incoming.put_nowait(ConnectionClosedError(None, None))


class ScriptedConnector:
    """Each call consumes the next outcome: a FakeSocket or an exception."""

    def __init__(self, outcomes=None, default=None):
        self.outcomes = list(outcomes or [])
        self.default = default
        self.urls = []

    async def __call__(self, url: str):
        self.urls.append(url)
        outcome = self.outcomes.pop(0) if self.outcomes else self.default
        if isinstance(outcome, BaseException):
            raise outcome
        if outcome is None:
            raise OSError("connection refused")
        return outcome


class RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, delay: float):
        self.delays.append(delay)
        await asyncio.sleep(0)


async def settle(predicate, rounds: int = 200) -> bool:
    for _ in range(rounds):
        if predicate():
            return True
        await asyncio.sleep(0)
    return predicate()


def make_client(connector, sleep=None, **kwargs) -> GatewayClient:
    return GatewayClient(
        "ws://testserver/api/v1/ws",
        "token-a",
        connector=connector,
        sleep=sleep or RecordingSleep(),
        max_attempts=kwargs.pop("max_attempts", 5),
        base_delay=kwargs.pop("base_delay", 1.0),
        **kwargs,
    )


class TestTransitions:

    def test_table_covers_every_state(self):
        assert set(TRANSITIONS) == set(ConnectionState)
        assert TRANSITIONS[ConnectionState.DISCONNECTED] == {ConnectionState.CONNECTING}
        assert ConnectionState.CONNECTED not in TRANSITIONS[ConnectionState.BACKOFF_WAIT]

    def test_invalid_transition_raises(self):
        client = make_client(ScriptedConnector())
        with pytest.raises(RuntimeError):
            client._transition(ConnectionState.CONNECTED)


class TestConnect:

    @pytest.mark.asyncio
    async def test_connects_with_token(self):
        socket = FakeSocket()
        connector = ScriptedConnector([socket])
        client = make_client(connector)

        await client.start()
        assert await settle(lambda: client.state == ConnectionState.CONNECTED)

        assert connector.urls == ["ws://testserver/api/v1/ws?token=token-a"]
        assert client.history == [
            ConnectionState.DISCONNECTED, ConnectionState.CONNECTING, ConnectionState.CONNECTED,
        ]
        await client.close()
        assert client.state == ConnectionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_events_are_dispatched(self):
        socket = FakeSocket()
        received = []
        client = make_client(ScriptedConnector([socket]), on_event=received.append)
        await client.start()
        await settle(lambda: client.state == ConnectionState.CONNECTED)

        socket.incoming.put_nowait("not json")
        socket.push(GatewayEvent(type=protocol.TYPING_START, conversation_id="conv-1", payload={"userId": "user-b"}))

        assert await settle(lambda: len(received) == 1)
        assert received[0].type == protocol.TYPING_START
        assert received[0].payload == {"userId": "user-b"}
        await client.close()

    @pytest.mark.asyncio
    async def test_client_events_are_sent(self):
        socket = FakeSocket()
        client = make_client(ScriptedConnector([socket]))
        await client.start()
        await settle(lambda: client.state == ConnectionState.CONNECTED)

        assert await client.join("conv-1") is True
        await client.typing("conv-1")
        await client.typing("conv-1", active=False)
        await client.ack_read("conv-1")
        await client.set_presence("away")

        assert [e["type"] for e in socket.sent] == [
            protocol.CONVERSATION_JOIN, protocol.TYPING_START, protocol.TYPING_STOP,
            protocol.READ_ACK, protocol.PRESENCE_UPDATE,
        ]
        assert socket.sent[-1]["payload"] == {"status": "away"}
        await client.close()

    @pytest.mark.asyncio
    async def test_emit_while_disconnected_is_dropped(self):
        client = make_client(ScriptedConnector())
        assert await client.typing("conv-1") is False
        assert await client.join("conv-1") is False
        # Rooms are still remembered for the next connection
        assert client.rooms == {"conv-1"}


class TestReconnect:

    @pytest.mark.asyncio
    async def test_gives_up_after_bounded_attempts(self):
        sleep = RecordingSleep()
        connector = ScriptedConnector(default=OSError("network unreachable"))
        client = make_client(connector, sleep=sleep, max_attempts=5, base_delay=0.5)

        await client.start()
        await client.wait()

        assert client.state == ConnectionState.DISCONNECTED
        assert isinstance(client.last_error, TransportException)
        assert client.last_error.code == "TRANSPORT_ERROR"
        assert len(connector.urls) == 6
        assert sleep.delays == [0.5, 1.0, 1.5, 2.0, 2.5]

        # Stays down until resumed
        for _ in range(20):
            await asyncio.sleep(0)
        assert len(connector.urls) == 6

    @pytest.mark.asyncio
    async def test_resume_after_giving_up(self):
        socket = FakeSocket()
        connector = ScriptedConnector(default=OSError("offline"))
        client = make_client(connector, max_attempts=1)
        await client.start()
        await client.wait()
        assert client.state == ConnectionState.DISCONNECTED

        connector.default = socket
        await client.resume()

        assert await settle(lambda: client.state == ConnectionState.CONNECTED)
        assert client.last_error is None
        await client.close()

    @pytest.mark.asyncio
    async def test_drop_reconnects_and_rejoins(self):
        first, second = FakeSocket(), FakeSocket()
        reconnects = []
        sleep = RecordingSleep()
        client = make_client(
            ScriptedConnector([first, second]),
            sleep=sleep,
            on_reconnect=lambda: reconnects.append(True),
        )
        await client.start()
        await settle(lambda: client.state == ConnectionState.CONNECTED)
        await client.join("conv-1")

        first.drop()

        assert await settle(lambda: reconnects == [True])
        assert client.state == ConnectionState.CONNECTED
        assert sleep.delays == [1.0]
        assert [(e["type"], e["conversationId"]) for e in second.sent] == [
            (protocol.CONVERSATION_JOIN, "conv-1")
        ]
        assert ConnectionState.BACKOFF_WAIT in client.history
        await client.close()

    @pytest.mark.asyncio
    async def test_unauthorized_close_does_not_retry(self):
        socket = FakeSocket()
        connector = ScriptedConnector([socket], default=FakeSocket())
        client = make_client(connector)
        await client.start()
        await settle(lambda: client.state == ConnectionState.CONNECTED)

        socket.incoming.put_nowait(ConnectionClosed(Close(protocol.CLOSE_UNAUTHORIZED, "unauthorized"), None))
        await client.wait()

        assert client.state == ConnectionState.DISCONNECTED
        assert client.last_error.message == "Token inválido"
        assert len(connector.urls) == 1

    @pytest.mark.asyncio
    async def test_close_stops_reconnecting(self):
        socket = FakeSocket()
        connector = ScriptedConnector([socket], default=FakeSocket())
        client = make_client(connector)
        await client.start()
        await settle(lambda: client.state == ConnectionState.CONNECTED)

        await client.close()

        assert socket.closed is True
        assert client.state == ConnectionState.DISCONNECTED
        assert len(connector.urls) == 1
