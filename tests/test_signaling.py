"""Tests for the signaling relay and the ICE server lookup."""

import httpx
import pytest

from config import DEFAULT_STUN_SERVERS
from directory.service import PeerDirectory
from signaling.ice import (
    default_ice_servers,
    fetch_metered_servers,
    get_ice_servers,
    manual_turn_servers,
)
from signaling.protocol import Event
from signaling.relay import SignalingRelay


class Outbox:
    def __init__(self):
        self.delivered = []

    async def __call__(self, connection_id, event, data):
        self.delivered.append((connection_id, event, data))
        return True


@pytest.fixture
def directory():
    names = iter(["Swift-Falcon-01", "Calm-Orb-02", "Bold-Kite-03"])
    return PeerDirectory(name_factory=lambda: next(names))


class TestSignalingRelay:
    @pytest.mark.asyncio
    async def test_offer_carries_sender_name(self, directory):
        await directory.register("a")
        await directory.register("b")
        outbox = Outbox()
        relay = SignalingRelay(directory, outbox)

        sdp = {"type": "offer", "sdp": "v=0"}
        assert await relay.forward(Event.OFFER, "a", {"targetId": "b", "offer": sdp})
        assert outbox.delivered == [
            ("b", "offer", {"fromId": "a", "offer": sdp, "fromName": "Swift-Falcon-01"})
        ]

    @pytest.mark.asyncio
    async def test_answer_and_candidate_shapes(self, directory):
        await directory.register("a")
        await directory.register("b")
        outbox = Outbox()
        relay = SignalingRelay(directory, outbox)

        await relay.forward(Event.ANSWER, "b", {"targetId": "a", "answer": {"type": "answer"}})
        await relay.forward(
            Event.ICE_CANDIDATE, "b", {"targetId": "a", "candidate": {"candidate": "c"}}
        )
        assert outbox.delivered == [
            ("a", "answer", {"fromId": "b", "answer": {"type": "answer"}}),
            ("a", "ice-candidate", {"fromId": "b", "candidate": {"candidate": "c"}}),
        ]

    @pytest.mark.asyncio
    async def test_missing_target_is_dropped(self, directory):
        await directory.register("a")
        outbox = Outbox()
        relay = SignalingRelay(directory, outbox)

        assert not await relay.forward(Event.OFFER, "a", {"targetId": "gone", "offer": {}})
        assert not await relay.forward(Event.OFFER, "a", {"offer": {}})
        assert not await relay.forward(Event.OFFER, "a", "garbage")
        assert outbox.delivered == []

    @pytest.mark.asyncio
    async def test_target_removed_mid_negotiation(self, directory):
        await directory.register("a")
        await directory.register("b")
        outbox = Outbox()
        relay = SignalingRelay(directory, outbox)

        await relay.forward(Event.OFFER, "a", {"targetId": "b", "offer": {}})
        await directory.remove("b")
        assert not await relay.forward(Event.ICE_CANDIDATE, "a", {"targetId": "b", "candidate": {}})
        assert len(outbox.delivered) == 1


def metered_transport(status=200, body=None, fail=False):
    def handler(request: httpx.Request) -> httpx.Response:
        if fail:
            raise httpx.ConnectError("unreachable", request=request)
        assert request.url.host == "myapp.metered.ca"
        assert request.url.params["apiKey"] == "secret"
        return httpx.Response(status, json=body)

    return httpx.MockTransport(handler)


TURN = [{"urls": "turn:relay.metered.ca:80", "username": "u", "credential": "c"}]
METERED_ENV = {"METERED_API_KEY": "secret", "METERED_APP_NAME": "myapp"}


class TestIceServers:
    def test_defaults_are_public_stun(self):
        assert default_ice_servers() == [{"urls": url} for url in DEFAULT_STUN_SERVERS]
        assert len(default_ice_servers()) == 3

    def test_manual_turn_adds_tcp_variant(self):
        env = {"TURN_URL": "turn:example.com:3478", "TURN_USERNAME": "u", "TURN_CREDENTIAL": "p"}
        servers = manual_turn_servers(env)
        assert [s["urls"] for s in servers] == [
            "turn:example.com:3478",
            "turn:example.com:3478?transport=tcp",
        ]
        assert all(s["username"] == "u" and s["credential"] == "p" for s in servers)

    def test_manual_turn_needs_all_three(self):
        assert manual_turn_servers({"TURN_URL": "turn:x", "TURN_USERNAME": "u"}) == []

    @pytest.mark.asyncio
    async def test_stun_only_without_configuration(self):
        assert await get_ice_servers(env={}) == default_ice_servers()

    @pytest.mark.asyncio
    async def test_metered_servers_are_appended(self):
        async with httpx.AsyncClient(transport=metered_transport(body=TURN)) as client:
            servers = await get_ice_servers(client=client, env=METERED_ENV)
        assert servers == default_ice_servers() + TURN

    @pytest.mark.asyncio
    async def test_metered_error_status_falls_back(self):
        async with httpx.AsyncClient(transport=metered_transport(status=401, body={})) as client:
            servers = await get_ice_servers(client=client, env=METERED_ENV)
        assert servers == default_ice_servers()

    @pytest.mark.asyncio
    async def test_metered_unreachable_falls_back(self):
        async with httpx.AsyncClient(transport=metered_transport(fail=True)) as client:
            assert await fetch_metered_servers(client, "myapp", "secret") == []

    @pytest.mark.asyncio
    async def test_metered_unexpected_payload(self):
        async with httpx.AsyncClient(transport=metered_transport(body={"oops": 1})) as client:
            assert await fetch_metered_servers(client, "myapp", "secret") == []

    @pytest.mark.asyncio
    async def test_metered_and_manual_combined(self):
        env = dict(METERED_ENV, TURN_URL="turn:own:3478", TURN_USERNAME="u", TURN_CREDENTIAL="p")
        async with httpx.AsyncClient(transport=metered_transport(body=TURN)) as client:
            servers = await get_ice_servers(client=client, env=env)
        assert len(servers) == 3 + 1 + 2
        assert servers[3:4] == TURN
