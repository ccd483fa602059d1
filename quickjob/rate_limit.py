"""Rate limiting for the QuickJob backend.

Requests are keyed on the client address. ``X-Forwarded-For`` is honored
only when the direct peer is one of our own proxies, so a caller cannot pick
its own rate limit bucket.
"""

import ipaddress
import os

from slowapi import Limiter
from slowapi.util import get_remote_address

# Private ranges used by the hosting platform's load balancers.
# Override with TRUSTED_PROXY_CIDRS (comma-separated).
DEFAULT_TRUSTED_CIDRS = (
    "10.0.0.0/8",
    "172.16.0.0/12",
    "192.168.0.0/16",
    "127.0.0.0/8",
    "::1/128",
)

# Limits shared by several routers
PUBLIC_LIMIT = "120/minute"
LOGIN_LIMIT = "10 per 10 minutes"
CREATE_JOB_LIMIT = "3/minute"


class TrustedProxies:
    """Set of networks whose forwarded headers we believe."""

    def __init__(self, cidrs):
        self.networks = []
        for cidr in cidrs:
            try:
                self.networks.append(ipaddress.ip_network(cidr.strip(), strict=False))
            except ValueError:
                continue

    @classmethod
    def from_env(cls) -> "TrustedProxies":
        raw = os.environ.get("TRUSTED_PROXY_CIDRS", "")
        custom = [part for part in raw.split(",") if part.strip()]
        return cls(custom or DEFAULT_TRUSTED_CIDRS)

    def __contains__(self, ip: str) -> bool:
        try:
            address = ipaddress.ip_address(ip)
        except ValueError:
            return False
        return any(address in network for network in self.networks)

    def __len__(self) -> int:
        return len(self.networks)


_proxies: TrustedProxies | None = None


def trusted_proxies() -> TrustedProxies:
    """Process-wide proxy list, read from the environment on first use."""
    global _proxies
    if _proxies is None:
        _proxies = TrustedProxies.from_env()
    return _proxies


def get_client_ip(request) -> str:
    """Rate limit key: the first forwarded hop behind a trusted proxy, else the peer."""
    peer = get_remote_address(request)
    if peer not in trusted_proxies():
        return peer

    forwarded = request.headers.get("x-forwarded-for", "")
    first_hop = forwarded.split(",")[0].strip()
    return first_hop or peer


limiter = Limiter(key_func=get_client_ip)
