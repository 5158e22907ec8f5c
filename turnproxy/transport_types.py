"""Value types shared by the client transport."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from ipaddress import IPv4Address, IPv6Address
from typing import Any, Protocol, runtime_checkable

TRAFFIC_LOCAL_TO_RELAY = "local_to_relay"
TRAFFIC_RELAY_TO_LOCAL = "relay_to_local"


@dataclass(frozen=True)
class RelayPacket:
    """A datagram and the local peer that should receive any reply."""

    payload: bytes
    reply_to: Any = None


class TURNMode(StrEnum):
    """Transport used to reach the TURN server."""

    UDP = "udp"
    TCP = "tcp"


class PeerMode(StrEnum):
    """How traffic is carried to the peer through the relay."""

    DTLS = "dtls"
    PLAIN = "plain"


@dataclass
class TURNCredentials:
    """Address and long-term credentials of a TURN server."""

    address: str = ""
    username: str = ""
    password: str = ""


@dataclass
class ClientHooks:
    """Optional callbacks fired at points of a worker's life."""

    on_local_bind: Callable[[Any], None] | None = None
    on_turn_base_bind: Callable[[Any], None] | None = None
    on_relay_allocate: Callable[[Any], None] | None = None
    on_traffic: Callable[[str, int], None] | None = None
    on_ready: Callable[[], None] | None = None


@dataclass
class ClientConfig:
    """Everything one transport worker needs to run.

    ``outbound`` is a queue of :class:`RelayPacket` to send through the relay;
    putting ``None`` on it closes it. ``inbound`` receives packets coming back
    from the relay and may be a plain or an async callable.
    """

    listen_addr: str = ""
    peer_addr: str = ""
    turn: TURNCredentials = field(default_factory=TURNCredentials)
    turn_mode: TURNMode = TURNMode.UDP
    peer_mode: PeerMode = PeerMode.DTLS
    bind_ip: IPv4Address | IPv6Address | None = None
    worker_index: int = 0
    outbound: asyncio.Queue | None = None
    inbound: Callable[[RelayPacket], None | Awaitable[None]] | None = None
    logger: logging.Logger | None = None
    hooks: ClientHooks = field(default_factory=ClientHooks)

    def replace(self, **kwargs: Any) -> ClientConfig:
        """Return a copy with the given fields changed."""
        return dataclasses.replace(self, **kwargs)


@runtime_checkable
class Runner(Protocol):
    """Something that runs a transport worker until it fails or is cancelled."""

    async def run(self) -> None:
        """Run until cancelled; raise on failure."""