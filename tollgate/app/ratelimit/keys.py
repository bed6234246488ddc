"""Rate limit key derivation.

Turns a ``RuleSet`` plus the attributes of one inbound request into zero or
more key tuples. Every tuple names one independently limited bucket and the
request is admitted only if all of them admit it. An empty result means the
rules do not apply to this request at all.
"""

import ipaddress
import itertools
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from tollgate.app.core.logging import get_logger
from tollgate.app.ratelimit.rules import IPLookup, RuleSet

logger = get_logger(__name__)

KEY_SEPARATOR = "|"

KeyTuple = Tuple[str, ...]

# Request-scoped value lookup supplied by the caller, e.g. backed by request.state
ContextLookup = Callable[[str], Optional[str]]


def _no_context(key: str) -> Optional[str]:
    return None


@dataclass(frozen=True)
class RequestAttributes:
    """Transport-neutral view of the request fields used for key derivation.

    Header names are matched case-insensitively.
    """
    path: str
    method: str
    headers: Mapping[str, Sequence[str]] = field(default_factory=dict)
    remote_addr: Optional[str] = None
    basic_auth_user: Optional[str] = None
    context: ContextLookup = _no_context

    def __post_init__(self) -> None:
        folded: Dict[str, List[str]] = {}
        for name, values in self.headers.items():
            if isinstance(values, str):
                values = [values]
            folded.setdefault(name.lower(), []).extend(values)
        object.__setattr__(self, "headers", folded)
        object.__setattr__(self, "method", self.method.upper())

    def header_values(self, name: str) -> List[str]:
        return list(self.headers.get(name.lower(), ()))

    def header(self, name: str) -> Optional[str]:
        values = self.headers.get(name.lower())
        return values[0] if values else None

    def context_value(self, key: str) -> Optional[str]:
        value = self.context(key)
        return None if value is None else str(value)


def _strip_port(addr: str) -> str:
    addr = addr.strip()
    if addr.startswith("["):
        # [2001:db8::1]:8080
        end = addr.find("]")
        return addr[1:end] if end != -1 else addr
    if addr.count(":") == 1:
        # 10.0.0.1:8080, a bare IPv6 address has more than one colon
        return addr.split(":", 1)[0]
    return addr


def canonical_ip(raw: str, ipv6_prefix_length: int = 64) -> Optional[str]:
    """Parse ``raw`` as an IP address.

    IPv6 addresses are reduced to their network prefix since a single client
    commonly owns a whole /64. Returns None for anything that is not an IP.
    """
    try:
        ip = ipaddress.ip_address(raw.strip())
    except ValueError:
        return None
    if ip.version == 6:
        if ip.ipv4_mapped is not None:
            return str(ip.ipv4_mapped)
        network = ipaddress.ip_network(f"{ip}/{ipv6_prefix_length}", strict=False)
        return str(network.network_address)
    return str(ip)


def _pick_from_chain(value: str, index_from_right: int) -> str:
    chain = [part.strip() for part in value.split(",")]
    # Clamp so a misconfigured index never reaches past either end.
    offset = min(max(index_from_right, 0), len(chain) - 1)
    return chain[len(chain) - 1 - offset]


def _identifier(raw: str, prefix_length: int) -> Optional[str]:
    # Non-IP values, e.g. a unix socket peer name, are used verbatim
    raw = raw.strip()
    if not raw:
        return None
    return canonical_ip(raw, prefix_length) or raw


def _lookup_ip(lookup: IPLookup, attrs: RequestAttributes, prefix_length: int) -> Optional[str]:
    if lookup.is_remote_addr:
        if not attrs.remote_addr:
            return None
        return _identifier(_strip_port(attrs.remote_addr), prefix_length)

    values = attrs.header_values(lookup.source)
    if not values:
        return None
    # Repeated headers form one logical comma separated list
    joined = ",".join(v for v in values if v.strip())
    if not joined:
        return None
    return _identifier(_pick_from_chain(joined, lookup.index_from_right), prefix_length)


def resolve_client_ip(rules: RuleSet, attrs: RequestAttributes) -> Optional[str]:
    """Return the client identifier from the first source that yields one."""
    for lookup in rules.ip_lookups:
        ip = _lookup_ip(lookup, attrs, rules.ipv6_prefix_length)
        if ip:
            return ip
    return None


def _matches(
    rules: Mapping[str, frozenset],
    lookup: Callable[[str], List[str]],
) -> List[Tuple[str, str]]:
    matched: List[Tuple[str, str]] = []
    for name in sorted(rules, key=str.lower):
        allowed = rules[name]
        for value in lookup(name):
            if value == "":
                continue
            if not allowed or value in allowed:
                matched.append((name, value))
    return matched


def header_matches(rules: RuleSet, attrs: RequestAttributes) -> List[Tuple[str, str]]:
    return _matches(rules.header_rules, attrs.header_values)


def context_matches(rules: RuleSet, attrs: RequestAttributes) -> List[Tuple[str, str]]:
    def lookup(key: str) -> List[str]:
        value = attrs.context_value(key)
        return [] if value is None else [value]

    return _matches(rules.context_rules, lookup)


def build_keys(rules: RuleSet, attrs: RequestAttributes) -> List[KeyTuple]:
    """Derive the key tuples that must all admit this request.

    Layout of each tuple::

        (ip, path?, method?, header?, header_value?, user?, context_key?, context_value?)

    Header and context rules act as gates: when configured, a request that
    matches none of them is not limited at all. When both are configured the
    matches are compounded into one tuple per combination, never emitted as
    separate per-dimension tuples. A matching basic-auth user is appended to
    those tuples; on its own, the basic-auth rule limits only listed users.
    """
    ip = resolve_client_ip(rules, attrs)
    if ip is None:
        logger.debug(
            f"No client address for {attrs.method} {attrs.path}, skipping rate limit",
            extra={"path": attrs.path, "method": attrs.method},
        )
        return []

    if rules.methods and attrs.method not in rules.methods:
        return []

    base: KeyTuple = (ip,)
    if not rules.ignore_path:
        base += (attrs.path,)
    if rules.methods:
        base += (attrs.method,)

    user: KeyTuple = ()
    if rules.basic_auth_users and attrs.basic_auth_user in rules.basic_auth_users:
        user = (attrs.basic_auth_user,)

    if rules.header_rules or rules.context_rules:
        headers = header_matches(rules, attrs) if rules.header_rules else [None]
        contexts = context_matches(rules, attrs) if rules.context_rules else [None]
        if not headers or not contexts:
            return []
        return [
            base + (header or ()) + user + (context or ())
            for header, context in itertools.product(headers, contexts)
        ]

    if rules.basic_auth_users:
        return [base + user] if user else []

    return [base]


def _escape_part(part: str) -> str:
    return part.replace("%", "%25").replace(KEY_SEPARATOR, "%7C")


def join_key(parts: Sequence[str]) -> str:
    """Join a key tuple into the store's lookup key.

    Parts may carry client supplied text, so ``%`` and the separator are
    percent-encoded to keep distinct tuples from joining to the same key.
    """
    return KEY_SEPARATOR.join(_escape_part(part) for part in parts)
