"""Client address resolution for the audit trail.

Only IPv4 is persisted: IPv4-mapped IPv6 and the IPv6 loopback are folded
into their IPv4 form, any other IPv6 address resolves to ``None``.
"""
import ipaddress
from collections.abc import Iterable, Mapping

IPV4_LOOPBACK = "127.0.0.1"


def _strip_port_and_brackets(raw: str) -> str:
    value = raw.strip()
    if value.startswith("["):
        closing = value.find("]")
        if closing != -1:
            return value[1:closing]
    # "a.b.c.d:port"
    if value.count(":") == 1 and "." in value:
        host, _, port = value.partition(":")
        if port.isdigit():
            return host
    return value


def normalize_ipv4(raw: str | None) -> str | None:
    if not raw:
        return None
    value = _strip_port_and_brackets(raw)
    if not value:
        return None
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return None
    if isinstance(address, ipaddress.IPv4Address):
        return str(address)
    if address.ipv4_mapped is not None:
        return str(address.ipv4_mapped)
    if address.is_loopback:
        return IPV4_LOOPBACK
    return None


def candidate_addresses(
    headers: Mapping[str, str],
    *,
    resolved_host: str | None = None,
    peer_host: str | None = None,
) -> list[str]:
    candidates: list[str] = []
    forwarded = headers.get("x-forwarded-for", "")
    if forwarded:
        candidates.extend(part.strip() for part in forwarded.split(",") if part.strip())
    for header in ("x-real-ip", "cf-connecting-ip"):
        value = headers.get(header, "").strip()
        if value:
            candidates.append(value)
    for host in (resolved_host, peer_host):
        if host:
            candidates.append(host)
    return candidates


def first_ipv4(candidates: Iterable[str]) -> str | None:
    for candidate in candidates:
        ipv4 = normalize_ipv4(candidate)
        if ipv4:
            return ipv4
    return None


def resolve_client_ip(
    headers: Mapping[str, str],
    *,
    resolved_host: str | None = None,
    peer_host: str | None = None,
) -> str | None:
    return first_ipv4(candidate_addresses(headers, resolved_host=resolved_host, peer_host=peer_host))
