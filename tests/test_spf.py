from unittest.mock import AsyncMock

import pytest

from conftest import FakeResolver
from email_auth_engine.errors import DnsTimeout, MalformedRecord
from email_auth_engine.models import MechanismKind, Qualifier, SpfMechanism, SpfPolicy, Verdict
from email_auth_engine.spf import SpfEvaluator, build_spf_record, count_lookups, parse_spf_record


class TestSpfRecords:

    def test_build_groups_mechanisms_by_kind(self):
        policy = SpfPolicy(domain="example.com", mechanisms=[
            SpfMechanism(kind=MechanismKind.INCLUDE, target="_spf.provider.example"),
            SpfMechanism(kind=MechanismKind.IP4, target="192.0.2.0/24"),
            SpfMechanism(kind=MechanismKind.MX),
            SpfMechanism(kind=MechanismKind.IP4, qualifier=Qualifier.FAIL, target="198.51.100.1"),
        ], redirect=None, all_qualifier=Qualifier.FAIL)
        assert build_spf_record(policy) == (
            "v=spf1 ip4:192.0.2.0/24 -ip4:198.51.100.1 mx include:_spf.provider.example -all"
        )

    def test_default_all_is_softfail(self):
        assert build_spf_record(SpfPolicy(domain="example.com")) == "v=spf1 ~all"

    def test_round_trip(self):
        policy = SpfPolicy(domain="example.com", mechanisms=[
            SpfMechanism(kind=MechanismKind.IP4, target="192.0.2.0/24"),
            SpfMechanism(kind=MechanismKind.IP6, target="2001:db8::/32"),
            SpfMechanism(kind=MechanismKind.A, target="/28"),
            SpfMechanism(kind=MechanismKind.MX, qualifier=Qualifier.NEUTRAL, target="mail.example.com"),
            SpfMechanism(kind=MechanismKind.INCLUDE, target="_spf.example.net"),
        ], redirect="_spf.example.com", explanation="explain.example.com", all_qualifier=Qualifier.FAIL)
        record = parse_spf_record(build_spf_record(policy))
        assert record.mechanisms == policy.mechanisms
        assert record.redirect == "_spf.example.com"
        assert record.explanation == "explain.example.com"
        assert record.all_qualifier is Qualifier.FAIL

    def test_parse_keeps_unknown_terms(self):
        record = parse_spf_record("v=spf1 ptr exists:%{i}.example.com ip4:192.0.2.1 ~all")
        assert record.unknown == ["ptr", "exists:%{i}.example.com"]
        assert [m.kind for m in record.mechanisms] == [MechanismKind.IP4]

    def test_parse_terms_after_all_are_ignored(self):
        record = parse_spf_record("v=spf1 -all ip4:192.0.2.1")
        assert record.mechanisms == []
        assert record.unknown == ["ip4:192.0.2.1"]

    @pytest.mark.parametrize("text", [
        "spf1 -all",
        "v=spf1 redirect=a.example redirect=b.example",
        "v=spf1 ip4:not-an-ip -all",
        "v=spf1 ip4:2001:db8::1 -all",
    ])
    def test_parse_rejects_malformed(self, text):
        with pytest.raises(MalformedRecord):
            parse_spf_record(text)

    def test_budget_limited_to_ten(self):
        with pytest.raises(ValueError):
            SpfPolicy(domain="example.com", dns_lookup_budget=11)


class TestSpfEvaluation:

    @pytest.mark.asyncio
    async def test_first_match_wins(self, settings):
        resolver = FakeResolver(txt={"example.com": ["v=spf1 -ip4:10.0.0.0/8 +ip4:10.0.0.5 ~all"]})
        result = await SpfEvaluator(resolver, settings).evaluate("example.com", "10.0.0.5")
        assert result.verdict is Verdict.FAIL

    @pytest.mark.asyncio
    async def test_corp_example_scenario(self, settings):
        resolver = FakeResolver(txt={"corp.example": ["v=spf1 ip4:203.0.113.0/24 -all"]})
        evaluator = SpfEvaluator(resolver, settings)
        assert (await evaluator.evaluate("corp.example", "203.0.113.9")).verdict is Verdict.PASS
        assert (await evaluator.evaluate("corp.example", "198.51.100.9")).verdict is Verdict.FAIL

    @pytest.mark.asyncio
    async def test_no_record_is_none(self, settings):
        result = await SpfEvaluator(FakeResolver(), settings).evaluate("example.com", "192.0.2.1")
        assert result.verdict is Verdict.NONE

    @pytest.mark.asyncio
    async def test_multiple_records_is_permerror(self, settings):
        resolver = FakeResolver(txt={"example.com": ["v=spf1 -all", "v=spf1 ~all"]})
        result = await SpfEvaluator(resolver, settings).evaluate("example.com", "192.0.2.1")
        assert result.verdict is Verdict.PERMERROR

    @pytest.mark.asyncio
    async def test_invalid_ip_is_permerror(self, settings):
        resolver = FakeResolver(txt={"example.com": ["v=spf1 -all"]})
        result = await SpfEvaluator(resolver, settings).evaluate("example.com", "999.1.1.1")
        assert result.verdict is Verdict.PERMERROR

    @pytest.mark.asyncio
    async def test_missing_all_defaults_to_softfail(self, settings):
        resolver = FakeResolver(txt={"example.com": ["v=spf1 ip4:192.0.2.1"]})
        result = await SpfEvaluator(resolver, settings).evaluate("example.com", "198.51.100.1")
        assert result.verdict is Verdict.SOFTFAIL

    @pytest.mark.asyncio
    async def test_ip6(self, settings):
        resolver = FakeResolver(txt={"example.com": ["v=spf1 ip6:2001:db8::/32 -all"]})
        evaluator = SpfEvaluator(resolver, settings)
        assert (await evaluator.evaluate("example.com", "2001:db8::25")).verdict is Verdict.PASS
        assert (await evaluator.evaluate("example.com", "192.0.2.1")).verdict is Verdict.FAIL

    @pytest.mark.asyncio
    async def test_a_and_mx(self, settings):
        resolver = FakeResolver(
            txt={"example.com": ["v=spf1 a mx/24 -all"]},
            addresses={"example.com": ["192.0.2.10"], "mx1.example.com": ["198.51.100.20"]},
            mx={"example.com": ["mx1.example.com"]},
        )
        evaluator = SpfEvaluator(resolver, settings)
        assert (await evaluator.evaluate("example.com", "192.0.2.10")).verdict is Verdict.PASS
        assert (await evaluator.evaluate("example.com", "198.51.100.77")).verdict is Verdict.PASS
        assert (await evaluator.evaluate("example.com", "192.0.2.11")).verdict is Verdict.FAIL

    @pytest.mark.asyncio
    async def test_include_pass_and_fail(self, settings):
        resolver = FakeResolver(txt={
            "example.com": ["v=spf1 include:_spf.provider.example -all"],
            "_spf.provider.example": ["v=spf1 ip4:192.0.2.0/24 -all"],
        })
        evaluator = SpfEvaluator(resolver, settings)
        assert (await evaluator.evaluate("example.com", "192.0.2.7")).verdict is Verdict.PASS
        # nested fail means "no match", so the outer -all decides
        assert (await evaluator.evaluate("example.com", "198.51.100.7")).verdict is Verdict.FAIL

    @pytest.mark.asyncio
    async def test_include_without_record_is_permerror(self, settings):
        resolver = FakeResolver(txt={"example.com": ["v=spf1 include:missing.example ~all"]})
        result = await SpfEvaluator(resolver, settings).evaluate("example.com", "192.0.2.7")
        assert result.verdict is Verdict.PERMERROR

    @pytest.mark.asyncio
    async def test_redirect_replaces_all(self, settings):
        resolver = FakeResolver(txt={
            "example.com": ["v=spf1 ip4:192.0.2.1 redirect=_spf.example.com"],
            "_spf.example.com": ["v=spf1 ip4:198.51.100.0/24 -all"],
        })
        evaluator = SpfEvaluator(resolver, settings)
        assert (await evaluator.evaluate("example.com", "198.51.100.3")).verdict is Verdict.PASS
        assert (await evaluator.evaluate("example.com", "203.0.113.3")).verdict is Verdict.FAIL

    @pytest.mark.asyncio
    async def test_redirect_to_missing_record_is_permerror(self, settings):
        resolver = FakeResolver(txt={"example.com": ["v=spf1 redirect=nothing.example"]})
        result = await SpfEvaluator(resolver, settings).evaluate("example.com", "192.0.2.1")
        assert result.verdict is Verdict.PERMERROR

    @pytest.mark.asyncio
    async def test_explanation_appended_on_fail(self, settings):
        resolver = FakeResolver(txt={
            "example.com": ["v=spf1 -all exp=explain.example.com"],
            "explain.example.com": ["Not an authorized sender"],
        })
        result = await SpfEvaluator(resolver, settings).evaluate("example.com", "192.0.2.1")
        assert result.verdict is Verdict.FAIL
        assert "Not an authorized sender" in result.reason

    @pytest.mark.asyncio
    async def test_eleven_nested_includes_stop_before_eleventh_lookup(self, settings):
        txt = {"example.com": ["v=spf1 include:d1.example -all"]}
        for i in range(1, 12):
            txt[f"d{i}.example"] = [f"v=spf1 include:d{i + 1}.example -all"]
        resolver = FakeResolver(txt=txt)

        result = await SpfEvaluator(resolver, settings).evaluate("example.com", "192.0.2.1")

        assert result.verdict is Verdict.PERMERROR
        assert resolver.queried("d10.example")
        assert not resolver.queried("d11.example")

    @pytest.mark.asyncio
    async def test_smaller_budget(self, settings):
        resolver = FakeResolver(txt={
            "example.com": ["v=spf1 a:one.example a:two.example a:three.example -all"],
        })
        result = await SpfEvaluator(resolver, settings, lookup_budget=2).evaluate("example.com", "192.0.2.1")
        assert result.verdict is Verdict.PERMERROR
        assert not resolver.queried("three.example")

    @pytest.mark.asyncio
    async def test_timeout_is_temperror(self, settings):
        resolver = FakeResolver()
        resolver.query_txt = AsyncMock(side_effect=DnsTimeout("example.com"))
        result = await SpfEvaluator(resolver, settings).evaluate("example.com", "192.0.2.1")
        assert result.verdict is Verdict.TEMPERROR

    @pytest.mark.asyncio
    async def test_include_timeout_propagates_as_temperror(self, settings):
        resolver = FakeResolver(txt={"example.com": ["v=spf1 include:slow.example -all"]}, timeouts=["slow.example"])
        result = await SpfEvaluator(resolver, settings).evaluate("example.com", "192.0.2.1")
        assert result.verdict is Verdict.TEMPERROR


class TestCountLookups:

    @pytest.mark.asyncio
    async def test_counts_nested_terms(self):
        resolver = FakeResolver(txt={
            "_spf.a.example": ["v=spf1 mx a ip4:192.0.2.1 ~all"],
            "_spf.b.example": ["v=spf1 include:_spf.a.example -all"],
        })
        resolved, count, errors = await count_lookups(
            resolver, "example.com", "v=spf1 include:_spf.b.example include:_spf.missing.example -all")
        assert resolved == {"_spf.a.example", "_spf.b.example", "_spf.missing.example"}
        assert count == 2 + 1 + 2
        assert errors == ["include _spf.missing.example has no SPF record"]
