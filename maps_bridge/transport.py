"""In-process message transport connecting an MCP client and server.

An endpoint carries ``SessionMessage`` envelopes (JSON-RPC requests,
responses, errors and notifications). Delivery is ordered, lossless and
asynchronous: ``send`` only buffers, the peer picks the envelope up on a
later scheduling turn. Buffers are unbounded; the traffic is local and low
volume so there is no flow control.
"""

import math
from typing import AsyncIterator, Protocol, Union, runtime_checkable

import anyio
from anyio.streams.memory import MemoryObjectReceiveStream, MemoryObjectSendStream
from mcp.shared.message import SessionMessage

from maps_bridge.errors import TransportClosedError

Envelope = SessionMessage


@runtime_checkable
class Transport(Protocol):
    """What the bridge needs from a message channel.

    MCP sessions read and write the raw streams; ``send`` and ``receive`` are
    the envelope-level view of the same channel.
    """

    read_stream: MemoryObjectReceiveStream
    write_stream: MemoryObjectSendStream

    @property
    def closed(self) -> bool: ...

    async def send(self, envelope: Envelope) -> None: ...

    async def receive(self) -> Envelope: ...

    def close(self) -> None: ...


class _Link:
    """Both directions of a linked pair; closing it closes both endpoints."""

    def __init__(self):
        self.a_to_b = anyio.create_memory_object_stream[Union[SessionMessage, Exception]](math.inf)
        self.b_to_a = anyio.create_memory_object_stream[Union[SessionMessage, Exception]](math.inf)
        self.closed = False

    def close(self):
        if self.closed:
            return
        self.closed = True
        # Closing only the send sides lets each receiver drain what is
        # already buffered before it sees end of stream.
        self.a_to_b[0].close()
        self.b_to_a[0].close()


class MemoryEndpoint:
    def __init__(
        self,
        link: _Link,
        write_stream: MemoryObjectSendStream,
        read_stream: MemoryObjectReceiveStream,
        name: str,
    ):
        self._link = link
        self.write_stream = write_stream
        self.read_stream = read_stream
        self.name = name

    def __repr__(self) -> str:
        state = "closed" if self.closed else "open"
        return f"<MemoryEndpoint {self.name} {state}>"

    @property
    def closed(self) -> bool:
        return self._link.closed

    async def send(self, envelope: Envelope) -> None:
        if self._link.closed:
            raise TransportClosedError(f"Cannot send on closed endpoint {self.name}")
        try:
            await self.write_stream.send(envelope)
        except (anyio.ClosedResourceError, anyio.BrokenResourceError) as e:
            raise TransportClosedError(f"Cannot send on closed endpoint {self.name}") from e

    async def receive(self) -> Envelope:
        """Wait for the next envelope; raises TransportClosedError at end of stream."""
        try:
            item = await self.read_stream.receive()
        except (anyio.EndOfStream, anyio.ClosedResourceError) as e:
            raise TransportClosedError(f"Endpoint {self.name} reached end of stream") from e
        if isinstance(item, Exception):
            raise item
        return item

    async def __aiter__(self) -> AsyncIterator[Envelope]:
        while True:
            try:
                yield await self.receive()
            except TransportClosedError:
                return

    def close(self):
        self._link.close()


def create_linked_pair() -> tuple[MemoryEndpoint, MemoryEndpoint]:
    """Create two endpoints; what one sends, the other receives."""
    link = _Link()
    a_send, b_receive = link.a_to_b
    b_send, a_receive = link.b_to_a
    endpoint_a = MemoryEndpoint(link, a_send, a_receive, "a")
    endpoint_b = MemoryEndpoint(link, b_send, b_receive, "b")
    return endpoint_a, endpoint_b
