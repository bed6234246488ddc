"""Per-key rate admission.

Re-exports the public pieces: rules, key derivation, token buckets, the
expiring store, the admission engine and the counter store backends.
"""

from tollgate.app.ratelimit.backends import (
    CounterStore,
    FixedWindowLimiter,
    InMemoryCounterStore,
    RedisCounterStore,
)
from tollgate.app.ratelimit.engine import AdmissionEngine, AdmissionResult, RequestLimiter
from tollgate.app.ratelimit.expiring_store import ExpiringStore
from tollgate.app.ratelimit.keys import (
    RequestAttributes,
    build_keys,
    join_key,
    resolve_client_ip,
)
from tollgate.app.ratelimit.rules import IPLookup, RuleSet, RuleSetBuilder, rule_set_from_settings
from tollgate.app.ratelimit.token_bucket import TokenBucket

__all__ = [
    # Rules
    "IPLookup",
    "RuleSet",
    "RuleSetBuilder",
    "rule_set_from_settings",
    # Keys
    "RequestAttributes",
    "build_keys",
    "join_key",
    "resolve_client_ip",
    # State
    "TokenBucket",
    "ExpiringStore",
    # Limiters
    "RequestLimiter",
    "AdmissionEngine",
    "AdmissionResult",
    "FixedWindowLimiter",
    # Counter stores
    "CounterStore",
    "InMemoryCounterStore",
    "RedisCounterStore",
]
