from __future__ import annotations

import ipaddress
import secrets
from functools import lru_cache

from fastapi import Request

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def tokens_match(*, expected: str, received: str | None) -> bool:
    if not expected or not received:
        return False
    return secrets.compare_digest(expected.encode("utf-8"), received.encode("utf-8"))


def is_internal_request_authenticated(request: Request, *, expected_token: str) -> bool:
    return tokens_match(expected=expected_token, received=request.headers.get("X-Internal-Token"))


@lru_cache(maxsize=32)
def parse_networks(raw: str) -> tuple[IPNetwork, ...]:
    """Parses a comma separated list of IPs and CIDRs, skipping malformed entries."""
    networks: list[IPNetwork] = []
    for entry in (part.strip() for part in raw.split(",")):
        if not entry:
            continue
        try:
            networks.append(ipaddress.ip_network(entry, strict=False))
        except ValueError:
            continue
    return tuple(networks)


def _parse_ip(value: str | None) -> str | None:
    if value is None or not value.strip():
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def is_client_ip_allowed(*, client_ip: str | None, allowlist: str) -> bool:
    if client_ip is None:
        return False
    try:
        parsed_ip = ipaddress.ip_address(client_ip)
    except ValueError:
        return False
    return any(parsed_ip in network for network in parse_networks(allowlist))


def extract_client_ip(request: Request, *, trusted_proxies: str = "") -> str | None:
    client_host = _parse_ip(request.client.host if request.client is not None else None)
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for and is_client_ip_allowed(client_ip=client_host, allowlist=trusted_proxies):
        return _parse_ip(forwarded_for.split(",", maxsplit=1)[0])
    return client_host
