"""Datagram pumps between a local endpoint and a relay connection.

A relay connection offers ``async read() -> bytes`` and ``async write(data)``.
A local endpoint offers ``async recvfrom() -> (bytes, addr)`` and
``sendto(data, addr)``, which may be plain or async.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import threading
from collections.abc import Callable, Coroutine
from typing import Any

from .transport_types import TRAFFIC_LOCAL_TO_RELAY, TRAFFIC_RELAY_TO_LOCAL, RelayPacket

_LOGGER = logging.getLogger(__name__)

TrafficCallback = Callable[[str, int], None]


def clone_addr(addr: Any) -> Any:
    """Return an independent copy of an address."""
    if isinstance(addr, (list, tuple)):
        return tuple(addr)
    return addr


class LastLocalPeer:
    """Remembers the most recent local sender."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._addr: Any = None

    def store(self, addr: Any) -> None:
        if addr is None:
            return
        with self._lock:
            self._addr = clone_addr(addr)

    def load(self) -> Any:
        """Return the stored address, or ``None`` if nothing was stored."""
        with self._lock:
            return clone_addr(self._addr)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


async def _run_pair(*coros: Coroutine[Any, Any, Any]) -> None:
    tasks = [asyncio.ensure_future(coro) for coro in coros]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    errors = [
        task.exception()
        for task in tasks
        if not task.cancelled() and task.exception() is not None
    ]
    if len(errors) == 1:
        raise errors[0]
    if errors:
        raise ExceptionGroup("forwarding loop failed", errors)


async def run_packet_forwarders(
    local_endpoint: Any,
    relay_conn: Any,
    logger: logging.Logger | None = None,
    on_traffic: TrafficCallback | None = None,
) -> None:
    """Pump datagrams both ways between a local endpoint and the relay."""
    logger = logger or _LOGGER
    target = LastLocalPeer()
    await _run_pair(
        _endpoint_to_relay(local_endpoint, relay_conn, target, on_traffic),
        _relay_to_endpoint(relay_conn, local_endpoint, target, logger, on_traffic),
    )


async def run_channel_forwarders(
    outbound: asyncio.Queue,
    inbound: Callable[[RelayPacket], Any],
    relay_conn: Any,
    logger: logging.Logger | None = None,
    on_traffic: TrafficCallback | None = None,
) -> None:
    """Pump packets from a queue to the relay and from the relay to a handler."""
    logger = logger or _LOGGER
    target = LastLocalPeer()
    await _run_pair(
        channel_to_relay(outbound, relay_conn, target, on_traffic),
        relay_to_handler(relay_conn, inbound, target, logger, on_traffic),
    )


async def _endpoint_to_relay(
    local_endpoint: Any,
    relay_conn: Any,
    target: LastLocalPeer,
    on_traffic: TrafficCallback | None,
) -> None:
    while True:
        try:
            data, addr = await local_endpoint.recvfrom()
        except OSError as exc:
            raise ConnectionError(f"read local datagram: {exc}") from exc

        target.store(addr)
        try:
            await relay_conn.write(data)
        except OSError as exc:
            raise ConnectionError(f"write relay datagram: {exc}") from exc
        if on_traffic is not None:
            on_traffic(TRAFFIC_LOCAL_TO_RELAY, len(data))


async def _relay_to_endpoint(
    relay_conn: Any,
    local_endpoint: Any,
    target: LastLocalPeer,
    logger: logging.Logger,
    on_traffic: TrafficCallback | None,
) -> None:
    async def deliver(packet: RelayPacket) -> None:
        try:
            await _maybe_await(local_endpoint.sendto(packet.payload, packet.reply_to))
        except OSError as exc:
            raise ConnectionError(f"write local datagram: {exc}") from exc
        if on_traffic is not None:
            on_traffic(TRAFFIC_RELAY_TO_LOCAL, len(packet.payload))

    await relay_to_handler(relay_conn, deliver, target, logger, None)


async def channel_to_relay(
    outbound: asyncio.Queue,
    relay_conn: Any,
    target: LastLocalPeer,
    on_traffic: TrafficCallback | None = None,
) -> None:
    """Send queued packets through the relay; ``None`` on the queue closes it."""
    while True:
        packet = await outbound.get()
        if packet is None:
            raise ConnectionError("worker outbound channel closed")

        target.store(packet.reply_to)
        try:
            await relay_conn.write(packet.payload)
        except OSError as exc:
            raise ConnectionError(f"write relay datagram: {exc}") from exc
        if on_traffic is not None:
            on_traffic(TRAFFIC_LOCAL_TO_RELAY, len(packet.payload))


async def relay_to_handler(
    relay_conn: Any,
    inbound: Callable[[RelayPacket], Any],
    target: LastLocalPeer,
    logger: logging.Logger | None = None,
    on_traffic: TrafficCallback | None = None,
) -> None:
    """Hand relay datagrams to ``inbound``, addressed to the last local sender."""
    logger = logger or _LOGGER
    while True:
        try:
            data = await relay_conn.read()
        except OSError as exc:
            raise ConnectionError(f"read relay datagram: {exc}") from exc

        addr = target.load()
        if addr is None:
            logger.debug("dropping relay datagram without known local peer")
            continue

        packet = RelayPacket(payload=bytes(data), reply_to=addr)
        await _maybe_await(inbound(packet))
        if on_traffic is not None:
            on_traffic(TRAFFIC_RELAY_TO_LOCAL, len(packet.payload))