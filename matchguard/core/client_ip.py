"""Client identity resolution shared by every defense component.

The brute-force guard, rate limiter and session monitor must key their state
on the same identity, so the resolver is built once and injected into all of
them rather than re-implemented at each call site.
"""
import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Iterable, Mapping, Optional

logger = logging.getLogger(__name__)

LOOPBACK_SENTINEL = "127.0.0.1"

_PRIVATE_NETWORKS = (
    ipaddress.ip_network("10.0.0.0/8"),
    ipaddress.ip_network("172.16.0.0/12"),
    ipaddress.ip_network("192.168.0.0/16"),
    ipaddress.ip_network("fc00::/7"),
)
_THIS_NETWORK = ipaddress.ip_network("0.0.0.0/8")

_TAG_RE = re.compile(r"<[^>]*>")
_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]+")
_MAX_USER_AGENT_LENGTH = 512


def sanitize_text(value: Optional[str], max_length: int = _MAX_USER_AGENT_LENGTH) -> str:
    """Strip markup and control characters from a header value."""
    if not value:
        return ""
    cleaned = _CONTROL_RE.sub(" ", _TAG_RE.sub("", value))
    cleaned = " ".join(cleaned.split())
    return cleaned[:max_length]


def normalize_ip(value: Optional[str]) -> Optional[str]:
    """Standard text form of an address, or None when it is not one.

    IPv6 is lowercased and zero runs are compressed, so every spelling of
    one address maps to the same cache and ban keys.
    """
    if not value:
        return None
    try:
        return str(ipaddress.ip_address(value.strip()))
    except ValueError:
        return None


def is_public_ip(value: Optional[str]) -> bool:
    """Valid IP outside private, loopback, link-local and reserved ranges."""
    if not value:
        return False
    try:
        ip = ipaddress.ip_address(value.strip())
    except ValueError:
        return False

    if any(ip in network for network in _PRIVATE_NETWORKS if network.version == ip.version):
        return False
    if ip.is_loopback or ip.is_link_local or ip.is_unspecified or ip.is_reserved:
        return False
    if ip.version == 4 and ip in _THIS_NETWORK:
        return False
    return True


def mask_ip_for_logging(ip: str) -> str:
    """Hide the host part of an address in log lines."""
    try:
        parsed = ipaddress.ip_address(ip)
    except ValueError:
        return "invalid"
    if parsed.version == 4:
        return str(ipaddress.ip_network(f"{ip}/24", strict=False).network_address) + "/24"
    return str(ipaddress.ip_network(f"{ip}/64", strict=False).network_address) + "/64"


@dataclass
class RequestContext:
    """Per-request metadata consumed by the defense components.

    Headers are stored with lowercase names so lookups are case-insensitive.
    ``confirmed_bans`` records identities found banned earlier in this request;
    a later ban check that cannot reach the durable store stays closed for them.
    """

    headers: Mapping[str, str] = field(default_factory=dict)
    remote_addr: Optional[str] = None
    user_agent: str = ""
    path: str = ""
    user_id: Optional[str] = None
    session_token: Optional[str] = None
    confirmed_bans: set[str] = field(default_factory=set)

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}
        if not self.user_agent:
            self.user_agent = sanitize_text(self.headers.get("user-agent"))
        else:
            self.user_agent = sanitize_text(self.user_agent)

    def header(self, name: str) -> Optional[str]:
        return self.headers.get(name.lower())

    @classmethod
    def from_request(cls, request) -> "RequestContext":
        """Build a context from a Starlette/FastAPI request."""
        return cls(
            headers=dict(request.headers.items()),
            remote_addr=request.client.host if request.client else None,
            path=request.url.path,
        )


class ClientIdentityResolver:
    """Resolve the canonical public IP of a request.

    Headers are tried in priority order; the first present value that is a
    public address wins. Comma-separated values contribute only their first
    entry. Falls back to the direct connection address, then to loopback.
    """

    def __init__(self, headers: Iterable[str], fallback: str = LOOPBACK_SENTINEL):
        self._headers = tuple(headers)
        self._fallback = fallback

    @property
    def headers(self) -> tuple[str, ...]:
        return self._headers

    def resolve(self, ctx: Optional[RequestContext]) -> str:
        if ctx is None:
            return self._fallback

        for name in self._headers:
            raw = ctx.header(name)
            if not raw:
                continue
            candidate = raw.split(",")[0].strip()
            if is_public_ip(candidate):
                return normalize_ip(candidate)

        if not ctx.remote_addr:
            return self._fallback
        return normalize_ip(ctx.remote_addr) or ctx.remote_addr
