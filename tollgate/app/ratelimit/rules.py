"""Declarative rate limit rules.

A ``RuleSet`` is an immutable value describing which request attributes make
up the limiter key and how fast buckets refill. It is built once, usually via
``RuleSet.builder()`` or ``rule_set_from_settings()``, and swapped as a whole
when configuration changes at runtime.
"""

from __future__ import annotations

import dataclasses
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import TYPE_CHECKING, Iterable, Mapping, Optional

from tollgate.app.core.logging import get_logger
from tollgate.app.exceptions import ConfigurationError
from tollgate.app.ratelimit.expiring_store import DEFAULT_SWEEP_INTERVAL, DEFAULT_TTL

if TYPE_CHECKING:
    from tollgate.app.core.config import Settings

logger = get_logger(__name__)

REMOTE_ADDR = "RemoteAddr"
DEFAULT_MESSAGE = "You have reached maximum request limit."
DEFAULT_CONTENT_TYPE = "text/plain; charset=utf-8"
DEFAULT_STATUS_CODE = 429


@dataclass(frozen=True)
class IPLookup:
    """One place to look for the client address.

    ``source`` is either ``"RemoteAddr"`` (the socket peer) or a header name.
    For headers holding a proxy chain, ``index_from_right`` selects which hop
    to trust: 0 is the last address appended by the nearest proxy.
    """
    source: str
    index_from_right: int = 0

    @classmethod
    def parse(cls, raw: "str | IPLookup") -> "IPLookup":
        """Parse ``"X-Forwarded-For"`` or ``"X-Forwarded-For:1"``."""
        if isinstance(raw, IPLookup):
            return raw
        name, sep, index = str(raw).strip().partition(":")
        if not name:
            raise ConfigurationError(f"Invalid IP lookup source: {raw!r}")
        if not sep:
            return cls(source=name)
        try:
            return cls(source=name, index_from_right=int(index))
        except ValueError as e:
            raise ConfigurationError(f"Invalid IP lookup index in {raw!r}") from e

    @property
    def is_remote_addr(self) -> bool:
        return self.source.lower() in ("remoteaddr", "remote-addr", "socket-address")


DEFAULT_IP_LOOKUPS = (
    IPLookup(REMOTE_ADDR),
    IPLookup("X-Forwarded-For"),
    IPLookup("X-Real-IP"),
)


def _freeze_rules(rules: Mapping[str, Iterable[str]]) -> Mapping[str, frozenset]:
    return MappingProxyType({name: frozenset(values) for name, values in rules.items()})


@dataclass(frozen=True)
class RuleSet:
    """Immutable limiter configuration.

    Attributes:
        rate_per_second: Sustained admission rate, may be fractional
        burst: Bucket capacity, i.e. requests admitted back-to-back
        ip_lookups: Ordered client address sources; first non-empty wins
        methods: Limited HTTP methods; empty means all methods
        header_rules: Header name -> allowed values (empty set = any value)
        basic_auth_users: Limited basic-auth usernames
        context_rules: Context key -> allowed values (empty set = any value)
        ignore_path: Leave the request path out of the key
        ipv6_prefix_length: IPv6 clients are grouped by this network prefix
        entry_ttl: Idle lifetime of a bucket before eviction, in seconds
        sweep_interval: Seconds between eviction sweeps
        status_code: HTTP status sent when limited
        message: Response body sent when limited
        content_type: Content-Type of the rejection body
    """
    rate_per_second: float = 1.0
    burst: int = 1
    ip_lookups: tuple = DEFAULT_IP_LOOKUPS
    methods: frozenset = frozenset()
    header_rules: Mapping[str, frozenset] = field(default_factory=lambda: MappingProxyType({}))
    basic_auth_users: frozenset = frozenset()
    context_rules: Mapping[str, frozenset] = field(default_factory=lambda: MappingProxyType({}))
    ignore_path: bool = False
    ipv6_prefix_length: int = 64
    entry_ttl: float = DEFAULT_TTL
    sweep_interval: float = DEFAULT_SWEEP_INTERVAL
    status_code: int = DEFAULT_STATUS_CODE
    message: str = DEFAULT_MESSAGE
    content_type: str = DEFAULT_CONTENT_TYPE

    def __post_init__(self) -> None:
        rate = self.rate_per_second
        if isinstance(rate, bool) or not isinstance(rate, (int, float)) or not rate > 0 or math.isinf(rate):
            raise ConfigurationError(f"rate_per_second must be positive, got {rate!r}")
        if isinstance(self.burst, bool) or not isinstance(self.burst, int) or self.burst < 1:
            raise ConfigurationError(f"burst must be an integer >= 1, got {self.burst!r}")
        status = self.status_code
        if isinstance(status, bool) or not isinstance(status, int) or not 100 <= status <= 599:
            raise ConfigurationError(f"status_code must be a valid HTTP status, got {self.status_code!r}")
        if not 0 <= self.ipv6_prefix_length <= 128:
            raise ConfigurationError("ipv6_prefix_length must be within 0..128")

        # Normalize collections so equal configurations compare equal
        set_ = object.__setattr__
        set_(self, "ip_lookups", tuple(IPLookup.parse(x) for x in self.ip_lookups))
        set_(self, "methods", frozenset(m.upper() for m in self.methods))
        set_(self, "basic_auth_users", frozenset(self.basic_auth_users))
        set_(self, "header_rules", _freeze_rules(self.header_rules))
        set_(self, "context_rules", _freeze_rules(self.context_rules))
        if self.entry_ttl <= 0:
            set_(self, "entry_ttl", DEFAULT_TTL)
        if self.sweep_interval <= 0:
            set_(self, "sweep_interval", DEFAULT_SWEEP_INTERVAL)

        if self.entry_ttl < self.burst / self.rate_per_second:
            logger.warning(
                f"entry_ttl={self.entry_ttl}s is shorter than the refill time "
                f"({self.burst / self.rate_per_second:.3f}s); idle clients regain "
                "a full bucket on eviction"
            )

    @property
    def window_seconds(self) -> float:
        """Time for an empty bucket to refill completely."""
        return self.burst / self.rate_per_second

    def replace(self, **changes) -> "RuleSet":
        """Return a validated copy with ``changes`` applied."""
        return dataclasses.replace(self, **changes)

    @classmethod
    def builder(cls) -> "RuleSetBuilder":
        return RuleSetBuilder()


class RuleSetBuilder:
    """Chainable builder for ``RuleSet``.

    Example:
        >>> rules = (
        ...     RuleSet.builder()
        ...     .rate(1).burst(1)
        ...     .methods(["POST"])
        ...     .header("X-Auth-Token", ["secret"])
        ...     .build()
        ... )
    """

    def __init__(self, base: Optional[RuleSet] = None):
        base = base or RuleSet()
        self._values = {f.name: getattr(base, f.name) for f in dataclasses.fields(RuleSet)}
        self._values["header_rules"] = {k: set(v) for k, v in base.header_rules.items()}
        self._values["context_rules"] = {k: set(v) for k, v in base.context_rules.items()}
        self._values["basic_auth_users"] = set(base.basic_auth_users)

    def rate(self, per_second: float) -> "RuleSetBuilder":
        self._values["rate_per_second"] = per_second
        return self

    def burst(self, burst: int) -> "RuleSetBuilder":
        self._values["burst"] = burst
        return self

    def methods(self, methods: Iterable[str]) -> "RuleSetBuilder":
        self._values["methods"] = frozenset(methods)
        return self

    def ip_lookups(self, lookups: Iterable["str | IPLookup"]) -> "RuleSetBuilder":
        self._values["ip_lookups"] = tuple(IPLookup.parse(x) for x in lookups)
        return self

    def header(self, name: str, values: Iterable[str] = ()) -> "RuleSetBuilder":
        """Limit requests carrying ``name``; adds to any existing allowed values."""
        self._values["header_rules"].setdefault(name, set()).update(values)
        return self

    def headers(self, rules: Mapping[str, Iterable[str]]) -> "RuleSetBuilder":
        for name, values in rules.items():
            self.header(name, values)
        return self

    def remove_header(self, name: str) -> "RuleSetBuilder":
        self._values["header_rules"].pop(name, None)
        return self

    def remove_header_values(self, name: str, values: Iterable[str]) -> "RuleSetBuilder":
        existing = self._values["header_rules"].get(name)
        if existing is not None:
            existing.difference_update(values)
        return self

    def basic_auth_users(self, users: Iterable[str]) -> "RuleSetBuilder":
        self._values["basic_auth_users"].update(users)
        return self

    def remove_basic_auth_users(self, users: Iterable[str]) -> "RuleSetBuilder":
        self._values["basic_auth_users"].difference_update(users)
        return self

    def context_value(self, key: str, values: Iterable[str] = ()) -> "RuleSetBuilder":
        self._values["context_rules"].setdefault(key, set()).update(values)
        return self

    def remove_context_value(self, key: str) -> "RuleSetBuilder":
        self._values["context_rules"].pop(key, None)
        return self

    def ignore_path(self, ignore: bool = True) -> "RuleSetBuilder":
        self._values["ignore_path"] = ignore
        return self

    def ipv6_prefix_length(self, length: int) -> "RuleSetBuilder":
        self._values["ipv6_prefix_length"] = length
        return self

    def entry_ttl(self, seconds: float) -> "RuleSetBuilder":
        self._values["entry_ttl"] = seconds
        return self

    def sweep_interval(self, seconds: float) -> "RuleSetBuilder":
        self._values["sweep_interval"] = seconds
        return self

    def status_code(self, code: int) -> "RuleSetBuilder":
        self._values["status_code"] = code
        return self

    def message(self, message: str) -> "RuleSetBuilder":
        self._values["message"] = message
        return self

    def content_type(self, content_type: str) -> "RuleSetBuilder":
        self._values["content_type"] = content_type
        return self

    def build(self) -> RuleSet:
        return RuleSet(**self._values)


def rule_set_from_settings(settings: "Settings") -> RuleSet:
    """Build a ``RuleSet`` from application settings."""
    return RuleSet(
        rate_per_second=settings.rate_limit_per_second,
        burst=settings.rate_limit_burst,
        ip_lookups=tuple(settings.rate_limit_ip_lookups),
        methods=frozenset(settings.rate_limit_methods),
        header_rules=settings.rate_limit_headers,
        basic_auth_users=frozenset(settings.rate_limit_basic_auth_users),
        context_rules=settings.rate_limit_context_values,
        ignore_path=settings.rate_limit_ignore_path,
        ipv6_prefix_length=settings.rate_limit_ipv6_prefix_length,
        entry_ttl=settings.rate_limit_entry_ttl_seconds,
        sweep_interval=settings.rate_limit_sweep_interval_seconds,
        status_code=settings.rate_limit_status_code,
        message=settings.rate_limit_message,
        content_type=settings.rate_limit_content_type,
    )
