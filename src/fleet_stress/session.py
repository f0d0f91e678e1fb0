"""
Session collaborators that connect bots to the backend under test.

Bots only see the ``SessionClient`` interface. Two implementations ship:

``ZmqSessionClient``
    One asyncio ZeroMQ DEALER socket per session. Every frame sent is
    ``[module_name, payload]`` where ``payload`` is a msgpack map:

    - ``{"op": "connect"}``: handshake, answered by
      ``{"op": "welcome", "identity": <str>}`` or
      ``{"op": "reject", "reason": <str>}``
    - ``{"op": "call", "procedure": <str>, "args": [...]}``: fire-and-forget
    - ``{"op": "ping", "nonce": <int>, "sent_at": <float>}``: answered by
      ``{"op": "pong", "nonce": <int>}``

``LoopbackSessionClient``
    In-process stand-in that accepts every call without a network, used for
    dry runs and tests.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import time
import uuid
from abc import ABC, abstractmethod
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Any

import msgpack
import zmq
import zmq.asyncio

from .errors import InvocationError, SessionConnectionError

logger = logging.getLogger(__name__)


def encode_message(op: str, **fields: Any) -> bytes:
    """Serialize one protocol message."""
    return msgpack.packb({"op": op, **fields}, use_bin_type=True)


def decode_message(data: bytes) -> dict[str, Any]:
    """Deserialize one protocol message.

    Raises:
        ValueError: If the payload is not a msgpack map with an ``op`` key.
    """
    try:
        message = msgpack.unpackb(data, raw=False)
    except (ValueError, msgpack.exceptions.UnpackException) as e:
        raise ValueError(f"Malformed message: {e}") from e
    if not isinstance(message, dict) or "op" not in message:
        raise ValueError("Message is not a map with an 'op' field")
    return message


@dataclass
class Session:
    """Opaque handle for one established session."""

    identity: str
    endpoint: str
    transport: Any = None
    opened_at: float = field(default_factory=time.monotonic)
    closed: bool = False


class SessionClient(ABC):
    """Connect/disconnect and remote invocation primitives consumed by bots."""

    supports_ping = False

    @abstractmethod
    async def connect(self) -> Session:
        """Open a session.

        Raises:
            SessionConnectionError: If the endpoint is unreachable or rejects us.
        """

    @abstractmethod
    async def invoke(self, session: Session, procedure: str, *args: Any) -> None:
        """Fire-and-forget remote call.

        Raises:
            InvocationError: If the session is closed or the send fails.
        """

    @abstractmethod
    def disconnect(self, session: Session) -> None:
        """Release the session. Safe to call on an already closed session."""

    async def ping(self, session: Session) -> float:
        """Measure one round trip in milliseconds."""
        raise NotImplementedError(f"{self.__class__.__name__} cannot measure latency")

    def close(self) -> None:
        """Release resources shared by all sessions."""


# ============================================================================
# ZeroMQ Transport
# ============================================================================


class ZmqSessionClient(SessionClient):
    """Opens one DEALER socket per bot session."""

    supports_ping = True

    def __init__(
        self,
        server_address: str = "tcp://localhost:5555",
        module_name: str = "multiplayer",
        connect_timeout: float = 5.0,
        invoke_timeout: float = 1.0,
        context: zmq.asyncio.Context | None = None,
    ):
        self.server_address = server_address
        self.module_name = module_name
        self.connect_timeout = connect_timeout
        self.invoke_timeout = invoke_timeout
        self._topic = module_name.encode("utf-8")
        self._owns_context = context is None
        self._context = context or zmq.asyncio.Context()
        self._nonces = itertools.count(1)

    async def connect(self) -> Session:
        socket = self._context.socket(zmq.DEALER)
        socket.setsockopt(zmq.LINGER, 0)
        try:
            socket.connect(self.server_address)
            reply = await asyncio.wait_for(self._handshake(socket), self.connect_timeout)
        except asyncio.TimeoutError as e:
            socket.close()
            raise SessionConnectionError(
                f"No handshake from {self.server_address} within {self.connect_timeout}s"
            ) from e
        except zmq.ZMQError as e:
            socket.close()
            raise SessionConnectionError(
                f"Failed to connect to {self.server_address}: {e}"
            ) from e
        except BaseException:
            # Cancellation or a rejected handshake
            socket.close()
            raise

        identity = str(reply.get("identity") or "")
        if not identity:
            socket.close()
            raise SessionConnectionError(
                f"Handshake from {self.server_address} carried no identity"
            )
        logger.debug(f"Session {identity} established with {self.server_address}")
        return Session(identity=identity, endpoint=self.server_address, transport=socket)

    async def _handshake(self, socket: zmq.asyncio.Socket) -> dict[str, Any]:
        await socket.send_multipart([self._topic, encode_message("connect")])
        reply = await self._receive(socket, ("welcome", "reject"))
        if reply["op"] == "reject":
            reason = reply.get("reason", "no reason given")
            raise SessionConnectionError(f"{self.server_address} rejected session: {reason}")
        return reply

    async def _receive(
        self,
        socket: zmq.asyncio.Socket,
        ops: tuple[str, ...],
        nonce: int | None = None,
    ) -> dict[str, Any]:
        """Wait for the next message whose op is in ``ops``; others are dropped."""
        while True:
            frames = await socket.recv_multipart()
            if not frames:
                continue
            try:
                message = decode_message(frames[-1])
            except ValueError as e:
                logger.debug(f"Dropping malformed reply: {e}")
                continue
            if message["op"] not in ops:
                continue
            if nonce is not None and message.get("nonce") != nonce:
                continue
            return message

    async def invoke(self, session: Session, procedure: str, *args: Any) -> None:
        socket = session.transport
        if session.closed or socket is None:
            raise InvocationError(f"Session {session.identity} is closed")

        payload = encode_message("call", procedure=procedure, args=list(args))
        try:
            await asyncio.wait_for(
                socket.send_multipart([self._topic, payload]), self.invoke_timeout
            )
        except asyncio.TimeoutError as e:
            raise InvocationError(
                f"{procedure} not sent within {self.invoke_timeout}s"
            ) from e
        except zmq.ZMQError as e:
            raise InvocationError(f"{procedure} failed: {e}") from e

    async def ping(self, session: Session) -> float:
        socket = session.transport
        if session.closed or socket is None:
            raise InvocationError(f"Session {session.identity} is closed")

        nonce = next(self._nonces)
        started = time.perf_counter()
        try:
            await asyncio.wait_for(self._round_trip(socket, nonce), self.invoke_timeout)
        except asyncio.TimeoutError as e:
            raise InvocationError(f"No pong within {self.invoke_timeout}s") from e
        except zmq.ZMQError as e:
            raise InvocationError(f"Ping failed: {e}") from e
        return (time.perf_counter() - started) * 1000.0

    async def _round_trip(self, socket: zmq.asyncio.Socket, nonce: int) -> None:
        await socket.send_multipart(
            [self._topic, encode_message("ping", nonce=nonce, sent_at=time.time())]
        )
        await self._receive(socket, ("pong",), nonce=nonce)

    def disconnect(self, session: Session) -> None:
        if session.closed:
            return
        session.closed = True
        socket, session.transport = session.transport, None
        if socket is not None:
            socket.close()
        logger.debug(f"Session {session.identity} closed")

    def close(self) -> None:
        if self._owns_context:
            self._context.destroy(linger=0)


# ============================================================================
# Loopback Transport
# ============================================================================


class LoopbackSessionClient(SessionClient):
    """Accepts every session and call in-process.

    Args:
        latency_ms: Simulated delay for connect and ping.
        fail_connects: Number of upcoming connects to reject.
        call_log_size: How many recent calls to keep in ``calls``.
    """

    supports_ping = True

    def __init__(
        self,
        latency_ms: float = 0.0,
        fail_connects: int = 0,
        call_log_size: int = 1000,
        endpoint: str = "loopback://",
    ):
        self.latency_ms = latency_ms
        self.endpoint = endpoint
        self.fail_connects = fail_connects
        self.calls: deque[tuple[str, str, tuple[Any, ...]]] = deque(maxlen=call_log_size)
        self.call_counts: Counter[str] = Counter()
        self.sessions: dict[str, Session] = {}

    async def connect(self) -> Session:
        await asyncio.sleep(self.latency_ms / 1000.0)
        if self.fail_connects > 0:
            self.fail_connects -= 1
            raise SessionConnectionError(f"{self.endpoint} rejected session")
        session = Session(identity=uuid.uuid4().hex, endpoint=self.endpoint, transport=self)
        self.sessions[session.identity] = session
        return session

    async def invoke(self, session: Session, procedure: str, *args: Any) -> None:
        if session.closed:
            raise InvocationError(f"Session {session.identity} is closed")
        self.calls.append((session.identity, procedure, args))
        self.call_counts[procedure] += 1

    async def ping(self, session: Session) -> float:
        if session.closed:
            raise InvocationError(f"Session {session.identity} is closed")
        started = time.perf_counter()
        await asyncio.sleep(self.latency_ms / 1000.0)
        return (time.perf_counter() - started) * 1000.0

    def disconnect(self, session: Session) -> None:
        session.closed = True
        self.sessions.pop(session.identity, None)


def create_session_client(
    server_address: str,
    module_name: str,
    connect_timeout: float,
    invoke_timeout: float,
    dry_run: bool = False,
) -> SessionClient:
    """Build the session client for a run."""
    if dry_run:
        logger.info("Dry run: bots use the in-process loopback session client")
        return LoopbackSessionClient()
    return ZmqSessionClient(
        server_address=server_address,
        module_name=module_name,
        connect_timeout=connect_timeout,
        invoke_timeout=invoke_timeout,
    )
