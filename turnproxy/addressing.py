"""Session identifiers and TURN address handling."""

from __future__ import annotations

import secrets


def new_session_id() -> str:
    """Return a fresh random session identifier of 32 hex digits."""
    return secrets.token_hex(16)


def _split(address: str) -> tuple[str, str]:
    if address.startswith("["):
        end = address.find("]")
        if end < 0:
            raise ValueError("missing ']' in address")
        host, rest = address[1:end], address[end + 1:]
        if not rest:
            raise ValueError("missing port in address")
        if not rest.startswith(":"):
            raise ValueError("unexpected characters after ']'")
        port = rest[1:]
    else:
        host, sep, port = address.rpartition(":")
        if not sep:
            raise ValueError("missing port in address")
        if ":" in host:
            raise ValueError("too many colons in address")
        if "[" in host or "]" in host:
            raise ValueError("unexpected bracket in address")
    if "[" in port or "]" in port:
        raise ValueError("unexpected bracket in port")
    return host, port


def split_host_port(address: str) -> tuple[str, str]:
    """Split ``host:port`` or ``[host]:port`` into its parts."""
    try:
        return _split(address)
    except ValueError as exc:
        raise ValueError(f"parse turn address {address!r}: {exc}") from None


def join_host_port(host: str, port: str) -> str:
    """Join a host and a port, bracketing IPv6 hosts."""
    if not host:
        raise ValueError("override turn address is missing host")
    if not port:
        raise ValueError("override turn address is missing port")
    if ":" in host:
        return f"[{host}]:{port}"
    return f"{host}:{port}"


def apply_turn_overrides(creds: str, host_override: str = "", port_override: str = "") -> str:
    """Replace the host and/or port of a TURN address with non-blank overrides."""
    host, port = split_host_port(creds)
    if trimmed := (host_override or "").strip():
        host = trimmed
    if trimmed := (port_override or "").strip():
        port = trimmed
    return join_host_port(host, port)