"""Tests for rate limit key derivation."""

import pytest

from conftest import make_request
from tollgate.app.ratelimit.keys import (
    RequestAttributes,
    build_keys,
    canonical_ip,
    join_key,
    resolve_client_ip,
)
from tollgate.app.ratelimit.rules import IPLookup, RuleSet


IPV6 = "2601:7:1c82:4097:59a0:a80b:2841:b8c8"
IPV6_PREFIX = "2601:7:1c82:4097::"


class TestResolveClientIp:
    """Client identifier lookup order."""

    def test_first_source_wins(self):
        rules = RuleSet(ip_lookups=("X-Real-IP", "RemoteAddr"))
        attrs = make_request(remote_addr="10.0.0.1", headers={"X-Real-IP": "172.217.0.46"})
        assert resolve_client_ip(rules, attrs) == "172.217.0.46"

    def test_falls_through_empty_sources(self):
        rules = RuleSet(ip_lookups=("X-Real-IP", "X-Forwarded-For", "RemoteAddr"))
        attrs = make_request(remote_addr="10.0.0.1:54321")
        assert resolve_client_ip(rules, attrs) == "10.0.0.1"

    def test_forwarded_for_index_from_right(self):
        chain = "1.1.1.1, 2.2.2.2, 3.3.3.3"
        attrs = make_request(remote_addr=None, headers={"X-Forwarded-For": chain})

        for index, expected in [(0, "3.3.3.3"), (1, "2.2.2.2"), (2, "1.1.1.1")]:
            rules = RuleSet(ip_lookups=(IPLookup("X-Forwarded-For", index),))
            assert resolve_client_ip(rules, attrs) == expected

    @pytest.mark.parametrize("index", [3, 50])
    def test_forwarded_for_index_out_of_range_clamps_to_first(self, index):
        attrs = make_request(remote_addr=None, headers={"X-Forwarded-For": "1.1.1.1, 2.2.2.2, 3.3.3.3"})
        rules = RuleSet(ip_lookups=(IPLookup("X-Forwarded-For", index),))
        assert resolve_client_ip(rules, attrs) == "1.1.1.1"

    def test_negative_index_clamps_to_last(self):
        attrs = make_request(remote_addr=None, headers={"X-Forwarded-For": "1.1.1.1, 2.2.2.2"})
        rules = RuleSet(ip_lookups=(IPLookup("X-Forwarded-For", -4),))
        assert resolve_client_ip(rules, attrs) == "2.2.2.2"

    def test_repeated_forwarded_for_headers_form_one_chain(self):
        attrs = make_request(remote_addr=None, headers={"X-Forwarded-For": ["1.1.1.1", "2.2.2.2"]})
        rules = RuleSet(ip_lookups=("X-Forwarded-For",))
        assert resolve_client_ip(rules, attrs) == "2.2.2.2"

    def test_non_ip_value_used_verbatim(self):
        """A non-empty value that is not an address still identifies the client."""
        rules = RuleSet(ip_lookups=("X-Real-IP", "RemoteAddr"))
        attrs = make_request(remote_addr="10.0.0.9", headers={"X-Real-IP": " unknown "})
        assert resolve_client_ip(rules, attrs) == "unknown"

    def test_non_ip_remote_addr_used_verbatim(self):
        attrs = make_request(remote_addr="testclient")
        assert resolve_client_ip(RuleSet(), attrs) == "testclient"

    def test_blank_header_falls_through(self):
        rules = RuleSet(ip_lookups=("X-Real-IP", "RemoteAddr"))
        attrs = make_request(remote_addr="10.0.0.9", headers={"X-Real-IP": "  "})
        assert resolve_client_ip(rules, attrs) == "10.0.0.9"

    def test_unresolvable_returns_none(self):
        rules = RuleSet(ip_lookups=("X-Real-IP",))
        assert resolve_client_ip(rules, make_request(remote_addr="1.2.3.4")) is None

    def test_ipv6_grouped_by_prefix(self):
        rules = RuleSet(ip_lookups=("X-Real-IP",))
        attrs = make_request(headers={"X-Real-IP": IPV6})
        assert resolve_client_ip(rules, attrs) == IPV6_PREFIX

    def test_bracketed_ipv6_remote_addr(self):
        rules = RuleSet(ip_lookups=("RemoteAddr",), ipv6_prefix_length=128)
        attrs = make_request(remote_addr="[2001:db8::1]:8080")
        assert resolve_client_ip(rules, attrs) == "2001:db8::1"

    def test_canonical_ip_unwraps_ipv4_mapped(self):
        assert canonical_ip("::ffff:10.1.2.3") == "10.1.2.3"


class TestBuildKeys:
    """Key tuples per rule dimension."""

    def test_default_limits_by_ip_and_path(self):
        keys = build_keys(RuleSet(), make_request(path="/"))
        assert keys == [("172.217.0.46", "/")]

    def test_default_ipv6(self):
        rules = RuleSet(ip_lookups=("X-Real-IP",))
        keys = build_keys(rules, make_request(headers={"X-Real-IP": IPV6}))
        assert keys == [(IPV6_PREFIX, "/")]

    def test_ignore_path(self):
        keys = build_keys(RuleSet(ignore_path=True), make_request(path="/anything"))
        assert keys == [("172.217.0.46",)]

    def test_unresolved_identity_yields_no_keys(self):
        assert build_keys(RuleSet(), make_request(remote_addr=None)) == []

    def test_method_included_when_restricted(self):
        rules = RuleSet(methods={"GET"})
        assert build_keys(rules, make_request(method="get")) == [("172.217.0.46", "/", "GET")]

    def test_unrestricted_method_passes_through(self):
        """A method outside the restricted set is never limited."""
        rules = RuleSet(methods={"POST"})
        assert build_keys(rules, make_request(method="GET")) == []

    def test_basic_auth_only(self):
        rules = RuleSet(basic_auth_users={"bro"})
        assert build_keys(rules, make_request(user="bro")) == [("172.217.0.46", "/", "bro")]
        assert build_keys(rules, make_request(user="someone-else")) == []
        assert build_keys(rules, make_request(user=None)) == []

    def test_method_and_basic_auth(self):
        rules = RuleSet(methods={"GET"}, basic_auth_users={"bro"})
        assert build_keys(rules, make_request(user="bro")) == [("172.217.0.46", "/", "GET", "bro")]

    def test_header_with_allowed_values(self):
        rules = RuleSet(header_rules={"X-Auth-Token": {"totally-top-secret", "another-secret"}})
        attrs = make_request(headers={"X-Auth-Token": "totally-top-secret"})
        assert build_keys(rules, attrs) == [
            ("172.217.0.46", "/", "X-Auth-Token", "totally-top-secret")
        ]

    def test_header_value_not_allowed(self):
        rules = RuleSet(header_rules={"X-Auth-Token": {"secret"}})
        attrs = make_request(headers={"X-Auth-Token": "other"})
        assert build_keys(rules, attrs) == []

    def test_header_missing(self):
        rules = RuleSet(header_rules={"X-Auth-Token": {"secret"}})
        assert build_keys(rules, make_request()) == []

    def test_header_with_empty_allowed_set_matches_any_value(self):
        rules = RuleSet(header_rules={"X-Api-Key": frozenset()})
        attrs = make_request(headers={"x-api-key": "abc"})
        assert build_keys(rules, attrs) == [("172.217.0.46", "/", "X-Api-Key", "abc")]

    def test_each_matching_header_gets_its_own_key(self):
        rules = RuleSet(header_rules={"X-B": set(), "X-A": {"1", "2"}})
        attrs = make_request(headers={"X-A": ["1", "2", "3"], "X-B": "b"})
        assert build_keys(rules, attrs) == [
            ("172.217.0.46", "/", "X-A", "1"),
            ("172.217.0.46", "/", "X-A", "2"),
            ("172.217.0.46", "/", "X-B", "b"),
        ]

    def test_context_value(self):
        rules = RuleSet(context_rules={"API-access-level": {"basic"}})
        attrs = make_request(context={"API-access-level": "basic"})
        assert build_keys(rules, attrs) == [
            ("172.217.0.46", "/", "API-access-level", "basic")
        ]
        assert build_keys(rules, make_request(context={"API-access-level": "pro"})) == []

    def test_method_header_and_basic_auth_compound(self):
        """All three discriminators land in one tuple."""
        rules = RuleSet(
            methods={"GET"},
            header_rules={"X-Auth-Token": {"secret1", "secret2"}},
            basic_auth_users={"bob"},
        )
        attrs = make_request(headers={"X-Auth-Token": "secret1"}, user="bob")
        assert build_keys(rules, attrs) == [
            ("172.217.0.46", "/", "GET", "X-Auth-Token", "secret1", "bob")
        ]

        unlisted = make_request(headers={"X-Auth-Token": "secret3"}, user="bob")
        assert build_keys(rules, unlisted) == []

    def test_header_rule_without_listed_user_still_limits(self):
        rules = RuleSet(header_rules={"X-Auth-Token": set()}, basic_auth_users={"bob"})
        attrs = make_request(headers={"X-Auth-Token": "t"}, user="eve")
        assert build_keys(rules, attrs) == [("172.217.0.46", "/", "X-Auth-Token", "t")]

    def test_all_dimensions_compound(self):
        rules = RuleSet(
            methods={"GET"},
            header_rules={"X-Auth-Token": {"totally-top-secret", "another-secret"}},
            context_rules={"API-access-level": {"basic"}},
            basic_auth_users={"bro"},
        )
        attrs = make_request(
            headers={"X-Auth-Token": "totally-top-secret"},
            user="bro",
            context={"API-access-level": "basic"},
        )
        assert build_keys(rules, attrs) == [(
            "172.217.0.46", "/", "GET",
            "X-Auth-Token", "totally-top-secret",
            "bro",
            "API-access-level", "basic",
        )]

    def test_header_and_context_both_gate(self):
        rules = RuleSet(
            header_rules={"X-Auth-Token": set()},
            context_rules={"tier": {"free"}},
        )
        no_context = make_request(headers={"X-Auth-Token": "t"})
        assert build_keys(rules, no_context) == []

        no_header = make_request(context={"tier": "free"})
        assert build_keys(rules, no_header) == []

    def test_deterministic_order(self):
        rules = RuleSet(header_rules={"X-C": set(), "x-a": set(), "X-B": set()})
        attrs = make_request(headers={"X-B": "2", "X-C": "3", "X-A": "1"})
        expected = [
            ("172.217.0.46", "/", "x-a", "1"),
            ("172.217.0.46", "/", "X-B", "2"),
            ("172.217.0.46", "/", "X-C", "3"),
        ]
        for _ in range(5):
            assert build_keys(rules, attrs) == expected


class TestRequestAttributes:
    def test_header_lookup_is_case_insensitive(self):
        attrs = RequestAttributes(path="/", method="get", headers={"X-Token": "a"})
        assert attrs.header_values("x-token") == ["a"]
        assert attrs.header("X-TOKEN") == "a"
        assert attrs.method == "GET"

    def test_context_defaults_to_empty(self):
        attrs = RequestAttributes(path="/", method="GET")
        assert attrs.context_value("anything") is None

    def test_context_values_are_stringified(self):
        attrs = RequestAttributes(path="/", method="GET", context={"tier": 3}.get)
        assert attrs.context_value("tier") == "3"


class TestJoinKey:
    def test_plain_parts(self):
        assert join_key(("127.0.0.1", "/", "GET")) == "127.0.0.1|/|GET"

    def test_separator_in_parts_is_escaped(self):
        assert join_key(("1.2.3.4", "a|b", "50%")) == "1.2.3.4|a%7Cb|50%25"

    def test_distinct_tuples_never_share_a_key(self):
        """A header value carrying the separator cannot impersonate a user suffix."""
        rules = RuleSet(header_rules={"X-Token": set()}, basic_auth_users={"bob"})
        as_bob = build_keys(rules, make_request(headers={"X-Token": "t"}, user="bob"))
        forged = build_keys(rules, make_request(headers={"X-Token": "t|bob"}))

        assert as_bob == [("172.217.0.46", "/", "X-Token", "t", "bob")]
        assert forged == [("172.217.0.46", "/", "X-Token", "t|bob")]
        assert join_key(as_bob[0]) != join_key(forged[0])

    def test_escaping_is_unambiguous(self):
        assert join_key(("a%7Cb",)) != join_key(("a|b",))
