"""Pinning outgoing sockets to a chosen local address."""

from __future__ import annotations

import ipaddress
from ipaddress import IPv4Address, IPv6Address

IPAddress = IPv4Address | IPv6Address


def _coerce_ip(value: IPAddress | str | None) -> IPAddress | None:
    if value is None or isinstance(value, (IPv4Address, IPv6Address)):
        return value
    return ipaddress.ip_address(value.strip())


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


def is_socket_network(network: str) -> bool:
    """True for tcp* and udp* network names."""
    return network.startswith("tcp") or network.startswith("udp")


def local_addr_for_network(network: str, bind_ip: IPAddress | str | None) -> tuple[str, int] | None:
    """Local (host, port) to bind before dialling on ``network``, if any."""
    bind = _coerce_ip(bind_ip)
    if bind is None or not is_socket_network(network):
        return None
    return (str(bind), 0)


def rewrite_bind_address(network: str, address: str, bind_ip: IPAddress | str | None) -> str:
    """Replace an unspecified or named host in ``address`` with ``bind_ip``."""
    bind = _coerce_ip(bind_ip)
    if bind is None or not is_socket_network(network):
        return address

    try:
        host, port = _split_host_port(address)
    except ValueError:
        return address

    if host:
        try:
            ip = ipaddress.ip_address(host)
        except ValueError:
            ip = None
        if ip is not None and not ip.is_unspecified:
            return address

    return _join_host_port(str(bind), port)


class BindNet:
    """Applies one bind address to every dial and listen it is asked about."""

    def __init__(self, bind_ip: IPAddress | str | None = None) -> None:
        self.bind_ip = _coerce_ip(bind_ip)

    def local_address(self, network: str) -> tuple[str, int] | None:
        return local_addr_for_network(network, self.bind_ip)

    def rewrite(self, network: str, address: str) -> str:
        return rewrite_bind_address(network, address, self.bind_ip)