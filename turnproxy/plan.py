"""Turning a client configuration into a session and transport plan."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from enum import StrEnum
from ipaddress import IPv4Address, IPv6Address

from .transport_types import PeerMode, TURNMode

DEFAULT_WORKER_RESTART_BACKOFF = 0.2
DEFAULT_MAX_WORKER_RESTARTS = 1


class TransportMode(StrEnum):
    """Transport requested by the operator."""

    AUTO = "auto"
    UDP = "udp"
    TCP = "tcp"


@dataclass
class SessionConfig:
    """Settings of a client session."""

    provider: str = ""
    link: str = ""
    listen_addr: str = ""
    peer_addr: str = ""
    connections: int = 1
    mode: TransportMode | str = TransportMode.AUTO
    use_dtls: bool = True
    bind_interface: str = ""
    turn_server: str = ""
    turn_port: str = ""


@dataclass
class TransportPlan:
    """Resolved transport choices for every worker."""

    mode: TransportMode = TransportMode.UDP
    turn_mode: TURNMode = TURNMode.UDP
    peer_mode: PeerMode = PeerMode.DTLS
    bind_ip: IPv4Address | IPv6Address | None = None


@dataclass
class SessionPlan:
    """Worker count, restart policy and transport of a session."""

    connections: int = 1
    restart_backoff: float = DEFAULT_WORKER_RESTART_BACKOFF
    max_worker_restarts: int = DEFAULT_MAX_WORKER_RESTARTS
    transport: TransportPlan = field(default_factory=TransportPlan)


def build_transport_plan(cfg: SessionConfig) -> TransportPlan:
    """Resolve the transport mode, peer mode and bind address of ``cfg``."""
    try:
        mode = TransportMode(cfg.mode)
    except ValueError:
        raise ValueError(f"unsupported transport mode {cfg.mode!r}") from None
    if mode is TransportMode.AUTO:
        mode = TransportMode.UDP

    turn_mode = TURNMode.UDP if mode is TransportMode.UDP else TURNMode.TCP
    peer_mode = PeerMode.DTLS if cfg.use_dtls else PeerMode.PLAIN

    bind_ip = None
    if trimmed := (cfg.bind_interface or "").strip():
        try:
            bind_ip = ipaddress.ip_address(trimmed)
        except ValueError:
            raise ValueError(
                f"unsupported bind-interface {cfg.bind_interface!r}: expected literal IP address"
            ) from None

    return TransportPlan(mode=mode, turn_mode=turn_mode, peer_mode=peer_mode, bind_ip=bind_ip)


def build_session_plan(
    cfg: SessionConfig,
    restart_backoff: float | None = None,
    max_worker_restarts: int | None = None,
) -> SessionPlan:
    """Build the session plan; positive overrides replace the default policy."""
    plan = SessionPlan(connections=cfg.connections, transport=build_transport_plan(cfg))
    if restart_backoff is not None and restart_backoff > 0:
        plan.restart_backoff = restart_backoff
    if max_worker_restarts is not None and max_worker_restarts > 0:
        plan.max_worker_restarts = max_worker_restarts
    return plan