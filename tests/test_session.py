"""Tests for session collaborators and the msgpack wire helpers."""

import asyncio

import msgpack
import pytest
import zmq
import zmq.asyncio

from fleet_stress.errors import InvocationError, SessionConnectionError
from fleet_stress.session import (
    LoopbackSessionClient,
    ZmqSessionClient,
    create_session_client,
    decode_message,
    encode_message,
)


class TestWireHelpers:
    def test_decode_rejects_garbage(self):
        with pytest.raises(ValueError):
            decode_message(b"\xc1")

    def test_decode_requires_op(self):
        with pytest.raises(ValueError, match="op"):
            decode_message(msgpack.packb({"procedure": "x"}))

    def test_encode_carries_fields(self):
        message = decode_message(encode_message("call", procedure="p", args=[1, "a"]))
        assert message == {"op": "call", "procedure": "p", "args": [1, "a"]}


class TestLoopbackSessionClient:
    @pytest.mark.asyncio
    async def test_connect_invoke_disconnect(self):
        client = LoopbackSessionClient()
        session = await client.connect()
        await client.invoke(session, "update_player_input", {"forward": True})

        assert client.call_counts["update_player_input"] == 1
        assert client.calls[-1][0] == session.identity

        client.disconnect(session)
        client.disconnect(session)
        with pytest.raises(InvocationError):
            await client.invoke(session, "update_player_input")

    @pytest.mark.asyncio
    async def test_failure_injection(self):
        client = LoopbackSessionClient(fail_connects=1)
        with pytest.raises(SessionConnectionError):
            await client.connect()
        session = await client.connect()
        assert session.identity

    @pytest.mark.asyncio
    async def test_ping_reports_simulated_latency(self):
        client = LoopbackSessionClient(latency_ms=20)
        session = await client.connect()
        assert await client.ping(session) >= 15.0


def test_create_session_client_dry_run():
    client = create_session_client("tcp://localhost:1", "m", 1.0, 1.0, dry_run=True)
    assert isinstance(client, LoopbackSessionClient)


class FakeBackend:
    """Minimal ROUTER that speaks the session protocol."""

    def __init__(self, context, reject=False):
        self.socket = context.socket(zmq.ROUTER)
        self.socket.setsockopt(zmq.LINGER, 0)
        port = self.socket.bind_to_random_port("tcp://127.0.0.1")
        self.address = f"tcp://127.0.0.1:{port}"
        self.reject = reject
        self.calls = []
        self.modules = set()
        self._next_identity = 0

    async def serve(self):
        while True:
            identity, module, payload = await self.socket.recv_multipart()
            self.modules.add(module.decode())
            message = decode_message(payload)
            if message["op"] == "connect":
                if self.reject:
                    reply = encode_message("reject", reason="full")
                else:
                    self._next_identity += 1
                    reply = encode_message("welcome", identity=f"player-{self._next_identity}")
                await self.socket.send_multipart([identity, module, reply])
            elif message["op"] == "ping":
                await self.socket.send_multipart(
                    [identity, module, encode_message("pong", nonce=message["nonce"])]
                )
            elif message["op"] == "call":
                self.calls.append((message["procedure"], message["args"]))


class TestZmqSessionClient:
    @pytest.mark.asyncio
    async def test_handshake_call_and_ping(self):
        context = zmq.asyncio.Context()
        backend = FakeBackend(context)
        server = asyncio.create_task(backend.serve())
        client = ZmqSessionClient(backend.address, "multiplayer", 2.0, 1.0, context=context)
        try:
            session = await client.connect()
            assert session.identity == "player-1"

            await client.invoke(session, "register_player", "Bot_abc", "Wizard", {"r": 0.5})
            latency = await client.ping(session)
            assert latency >= 0.0

            # The pong proves the earlier call was processed first
            assert backend.calls == [("register_player", ["Bot_abc", "Wizard", {"r": 0.5}])]
            assert backend.modules == {"multiplayer"}

            client.disconnect(session)
            assert session.closed
            with pytest.raises(InvocationError):
                await client.invoke(session, "update_player_input")
        finally:
            server.cancel()
            await asyncio.gather(server, return_exceptions=True)
            backend.socket.close()
            context.destroy(linger=0)

    @pytest.mark.asyncio
    async def test_rejected_handshake(self):
        context = zmq.asyncio.Context()
        backend = FakeBackend(context, reject=True)
        server = asyncio.create_task(backend.serve())
        client = ZmqSessionClient(backend.address, "multiplayer", 2.0, 1.0, context=context)
        try:
            with pytest.raises(SessionConnectionError, match="rejected"):
                await client.connect()
        finally:
            server.cancel()
            await asyncio.gather(server, return_exceptions=True)
            backend.socket.close()
            context.destroy(linger=0)

    @pytest.mark.asyncio
    async def test_connect_timeout(self):
        client = ZmqSessionClient("tcp://127.0.0.1:1", "multiplayer", connect_timeout=0.2)
        try:
            with pytest.raises(SessionConnectionError, match="No handshake"):
                await client.connect()
        finally:
            client.close()
