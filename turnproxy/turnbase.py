"""Opening the base socket that carries traffic to the TURN server."""

from __future__ import annotations

import ipaddress
import socket
from ipaddress import IPv4Address, IPv6Address

IPAddress = IPv4Address | IPv6Address


def _coerce_ip(value: IPAddress | str | None) -> IPAddress | None:
    if value is None or isinstance(value, (IPv4Address, IPv6Address)):
        return value
    return ipaddress.ip_address(value.strip())


def _is_ipv4(ip: IPAddress) -> bool:
    return isinstance(ip, IPv4Address) or ip.ipv4_mapped is not None


def _ip_text(ip: IPAddress) -> str:
    if isinstance(ip, IPv6Address) and ip.ipv4_mapped is not None:
        return str(ip.ipv4_mapped)
    return str(ip)


def _split_host_port(address: str) -> tuple[str, str]:
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError(f"missing ']' in address {address!r}")
        host, rest = address[1:end], address[end + 1:]
        if not rest.startswith(":"):
            raise ValueError(f"missing port in address {address!r}")
        return host, rest[1:]
    host, sep, port = address.rpartition(":")
    if not sep:
        raise ValueError(f"missing port in address {address!r}")
    if ":" in host:
        raise ValueError(f"too many colons in address {address!r}")
    return host, port


def _join_host_port(host: str, port: str) -> str:
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def _port_number(port: str) -> int:
    if port.isdigit():
        number = int(port)
    else:
        number = socket.getservbyname(port, "udp")
    if not 0 <= number <= 65535:
        raise ValueError(f"invalid port {port!r}")
    return number


def _resolve_udp_ip(address: str) -> IPAddress | None:
    host, port = _split_host_port(address)
    _port_number(port)
    if not host:
        return None
    try:
        return ipaddress.ip_address(host)
    except ValueError:
        pass
    infos = socket.getaddrinfo(host, None, type=socket.SOCK_DGRAM)
    candidates = [ipaddress.ip_address(info[4][0].split("%")[0]) for info in infos]
    for candidate in candidates:
        if _is_ipv4(candidate):
            return candidate
    if not candidates:
        raise OSError(f"no addresses for host {host!r}")
    return candidates[0]


def packet_listen_config(
    bind_ip: IPAddress | str | None, remote_ip: IPAddress | str | None
) -> tuple[str, str]:
    """Return the (network, local address) a UDP client socket should use."""
    bind = _coerce_ip(bind_ip)
    remote = _coerce_ip(remote_ip)
    if bind is not None:
        network = "udp4" if _is_ipv4(bind) else "udp6"
        return network, _join_host_port(_ip_text(bind), "0")
    if remote is not None and not _is_ipv4(remote):
        return "udp6", "[::]:0"
    return "udp4", "0.0.0.0:0"


def validate_ip_family(bind_ip: IPAddress | str | None, remote_ip: IPAddress | str | None) -> None:
    """Raise ValueError when the bind address and the remote differ in family."""
    bind = _coerce_ip(bind_ip)
    remote = _coerce_ip(remote_ip)
    if bind is None or remote is None:
        return None
    if _is_ipv4(bind) == _is_ipv4(remote):
        return None
    raise ValueError(
        f"bind target {_ip_text(bind)} does not match turn address family {_ip_text(remote)}"
    )


def listen_turn_packet_socket(turn_addr: str, bind_ip: IPAddress | str | None = None) -> socket.socket:
    """Open a bound UDP socket suitable for talking to ``turn_addr``."""
    bind = _coerce_ip(bind_ip)
    try:
        remote_ip = _resolve_udp_ip(turn_addr)
    except (ValueError, OSError) as exc:
        raise OSError(f"resolve turn udp address {turn_addr!r}: {exc}") from exc
    validate_ip_family(bind, remote_ip)

    network, local = packet_listen_config(bind, remote_ip)
    family = socket.AF_INET if network == "udp4" else socket.AF_INET6
    host, port = _split_host_port(local)
    sock = socket.socket(family, socket.SOCK_DGRAM)
    try:
        sock.bind((host, int(port)))
    except OSError as exc:
        sock.close()
        raise OSError(f"bind turn client socket: {exc}") from exc
    return sock