"""Caller identity and rate limit key derivation."""

import hashlib
import ipaddress
from typing import Iterable, List, Optional, Union

from starlette.requests import Request

from gatekeeper.app.core.logging import get_logger
from gatekeeper.app.middleware.rate_limit.models import RateLimitPolicy, Scope

logger = get_logger(__name__)

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]

UNKNOWN_CLIENT = "unknown"


def parse_networks(entries: Iterable[str]) -> List[IPNetwork]:
    """Parse IPs and CIDRs; a bare address becomes a single-host network.

    Raises:
        ValueError: An entry is neither an IP address nor a CIDR block
    """
    networks: List[IPNetwork] = []
    for entry in entries:
        networks.append(ipaddress.ip_network(entry.strip(), strict=False))
    return networks


def normalize_ip(raw: Optional[str]) -> str:
    """Canonical text form of an IP, or ``unknown``.

    IPv4-mapped IPv6 addresses collapse to IPv4 so ``::ffff:1.2.3.4`` and
    ``1.2.3.4`` share one counter. A port suffix on IPv4 is dropped.
    """
    if not raw:
        return UNKNOWN_CLIENT
    value = raw.strip().strip('"')
    if value.startswith("[") and "]" in value:
        value = value[1:value.index("]")]
    elif value.count(":") == 1:
        value = value.split(":", 1)[0]
    try:
        address = ipaddress.ip_address(value)
    except ValueError:
        return UNKNOWN_CLIENT
    if isinstance(address, ipaddress.IPv6Address) and address.ipv4_mapped is not None:
        address = address.ipv4_mapped
    return str(address)


def ip_in_networks(ip: str, networks: Iterable[IPNetwork]) -> bool:
    if ip == UNKNOWN_CLIENT:
        return False
    address = ipaddress.ip_address(ip)
    return any(address in network for network in networks)


class ClientIpResolver:
    """Resolves the real client IP behind trusted reverse proxies.

    ``X-Forwarded-For`` is honoured only when the direct peer is a trusted
    proxy. The header is then walked right to left, skipping further trusted
    hops, and the first untrusted address is the client. Without trusted
    proxies the socket peer is used as-is, so clients cannot spoof their IP.
    """

    def __init__(
        self,
        trusted_proxies: Iterable[str] = (),
        header_name: str = "X-Forwarded-For",
    ):
        self._trusted = parse_networks(trusted_proxies)
        self._header_name = header_name

    def resolve(self, request: Request) -> str:
        peer = normalize_ip(request.client.host if request.client else None)
        if not self._trusted or not ip_in_networks(peer, self._trusted):
            return peer

        forwarded = request.headers.get(self._header_name)
        if not forwarded:
            return peer

        hops = [normalize_ip(part) for part in forwarded.split(",")]
        for hop in reversed(hops):
            if hop == UNKNOWN_CLIENT:
                continue
            if not ip_in_networks(hop, self._trusted):
                return hop
        # Every hop is a trusted proxy; the left-most is the origin
        return next((hop for hop in hops if hop != UNKNOWN_CLIENT), peer)


def get_user_id(request: Request, attribute: str = "user_id") -> Optional[str]:
    """Authenticated user id placed on ``request.state`` by upstream auth."""
    value = getattr(request.state, attribute, None)
    if value is None or value == "":
        return None
    return str(value)


def get_api_key(request: Request, header_name: str = "X-API-Key") -> Optional[str]:
    """API key sent by the caller, or None when the header is absent or blank."""
    value = request.headers.get(header_name, "").strip()
    return value or None


def _digest(value: str) -> str:
    # 32 hex chars (128 bits) for collision resistance; raw ids never stored
    return hashlib.sha256(value.encode()).hexdigest()[:32]


def build_rate_limit_key(
    policy: RateLimitPolicy,
    client_ip: str,
    user_id: Optional[str],
    api_key: Optional[str] = None,
) -> str:
    """Derive the key identifying one sliding window.

    - ip scope: the client IP
    - user scope: the user id, falling back to IP for anonymous callers
    - composite scope: user id and IP together (IP alone when anonymous)
    - api_key scope: the API key, falling back to IP when none is sent
    """
    scope = policy.scope
    if scope is Scope.API_KEY and api_key:
        return f"{policy.name}:api_key:{_digest(api_key)}"
    if scope is Scope.USER and user_id:
        return f"{policy.name}:user:{_digest(user_id)}"
    if scope is Scope.COMPOSITE and user_id:
        return f"{policy.name}:composite:{_digest(f'{user_id}|{client_ip}')}"
    return f"{policy.name}:ip:{_digest(client_ip)}"
