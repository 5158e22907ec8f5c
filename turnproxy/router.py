"""Spreading local datagrams over ready workers and delivering replies."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any

from .forwarders import clone_addr
from .transport_types import RelayPacket

_LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class _RouterWorker:
    index: int
    outbound: asyncio.Queue


class LocalRouter:
    """Round-robin router from one local endpoint to worker queues.

    The endpoint offers ``async recvfrom() -> (bytes, addr)`` and
    ``sendto(data, addr)``, plain or async.
    """

    def __init__(self, local_endpoint: Any, logger: logging.Logger | None = None) -> None:
        self._endpoint = local_endpoint
        self._logger = logger or _LOGGER
        self._workers: list[_RouterWorker] = []
        self._next = 0

    async def run(self) -> None:
        """Read local datagrams forever, queueing each on the next ready worker."""
        while True:
            try:
                data, addr = await self._endpoint.recvfrom()
            except OSError as exc:
                raise ConnectionError(f"read local datagram: {exc}") from exc

            worker = self._next_worker()
            if worker is None:
                self._logger.debug("dropping local datagram without ready workers")
                continue

            packet = RelayPacket(payload=bytes(data), reply_to=clone_addr(addr))
            try:
                worker.outbound.put_nowait(packet)
            except asyncio.QueueFull:
                self._logger.debug(
                    "dropping local datagram because worker %d queue is full", worker.index
                )

    async def deliver(self, packet: RelayPacket) -> None:
        """Send a relay datagram back to the local peer it is addressed to."""
        if packet.reply_to is None:
            self._logger.debug("dropping relay datagram without known local peer")
            return
        try:
            result = self._endpoint.sendto(packet.payload, packet.reply_to)
            if inspect.isawaitable(result):
                await result
        except OSError as exc:
            raise ConnectionError(f"write local datagram: {exc}") from exc

    def set_ready(self, index: int, outbound: asyncio.Queue) -> None:
        """Add worker ``index`` to the rotation, replacing any earlier entry."""
        self._remove(index)
        self._workers.append(_RouterWorker(index, outbound))
        if self._next >= len(self._workers):
            self._next = 0

    def remove(self, index: int) -> None:
        """Take worker ``index`` out of the rotation."""
        self._remove(index)

    def ready_indexes(self) -> list[int]:
        """Indexes of the workers in rotation, in rotation order."""
        return [worker.index for worker in self._workers]

    def _next_worker(self) -> _RouterWorker | None:
        if not self._workers:
            return None
        worker = self._workers[self._next % len(self._workers)]
        self._next = (self._next + 1) % len(self._workers)
        return worker

    def _remove(self, index: int) -> None:
        for position, worker in enumerate(self._workers):
            if worker.index != index:
                continue
            del self._workers[position]
            if not self._workers or self._next >= len(self._workers):
                self._next = 0
            return