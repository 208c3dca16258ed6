"""Request utility functions."""

import ipaddress

from fastapi import Request

# Longest textual IPv6 form (IPv4-mapped), matching the security_events column
MAX_IP_LENGTH = 45


def _valid_ip(value: str | None) -> str | None:
    """Return ``value`` as a normalized IP address, or None when it is not one."""
    if not value:
        return None
    value = value.strip()
    if not value or len(value) > MAX_IP_LENGTH:
        return None
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        return None


def get_client_ip(request: Request) -> str:
    """
    Extract the client IP from proxy headers.

    Checks headers in order:
    1. X-Forwarded-For (may contain chain: "client, proxy1, proxy2")
    2. X-Real-IP (single IP from nginx)

    The socket peer is not used: behind the load balancer it is always the
    proxy. Header values that are not IP addresses are ignored. Returns
    "unknown" when no usable header is present.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        # First IP in chain is the original client
        client_ip = _valid_ip(forwarded.split(",")[0])
        if client_ip:
            return client_ip

    real_ip = _valid_ip(request.headers.get("X-Real-IP"))
    if real_ip:
        return real_ip

    return "unknown"


def get_user_agent(request: Request) -> str:
    return request.headers.get("User-Agent") or "unknown"
