from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock

import dns.exception
import dns.name
import dns.resolver
import pytest

from email_auth_engine.dns_utils import DnsCache, Resolver, dkim_record_name, dmarc_record_name
from email_auth_engine.errors import DnsError, DnsTimeout


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def _dnspython(answers):
    """dnspython resolver stand-in answering from {(name, rdtype): [rdata] or exception}."""
    async def resolve(name, rdtype):
        answer = answers.get((name, rdtype), dns.resolver.NXDOMAIN())
        if isinstance(answer, Exception):
            raise answer
        return answer
    inner = Mock()
    inner.resolve = AsyncMock(side_effect=resolve)
    return inner


class TestDnsCache:

    def test_entries_expire(self):
        clock = FakeClock()
        cache = DnsCache(maxsize=10, ttl=30, clock=clock)
        cache.set("k", ["v"])
        clock.now = 29
        assert cache.get("k") == ["v"]
        clock.now = 30
        assert cache.get("k") is None
        assert len(cache) == 0

    def test_least_recently_used_evicted(self):
        cache = DnsCache(maxsize=2, ttl=30)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)
        assert cache.get("a") == 1
        assert cache.get("b") is None
        assert cache.get("c") == 3

    def test_disabled_cache_stores_nothing(self):
        cache = DnsCache(maxsize=0)
        cache.set("a", 1)
        assert len(cache) == 0


class TestResolver:

    @pytest.mark.asyncio
    async def test_txt_strings_are_joined_and_cached(self, settings):
        inner = _dnspython({("example.com", "TXT"): [SimpleNamespace(strings=[b"v=spf1 ", b"-all"])]})
        resolver = Resolver(settings, cache=DnsCache(), resolver=inner)
        assert await resolver.query_txt("Example.com.") == ["v=spf1 -all"]
        assert await resolver.query_txt("example.com") == ["v=spf1 -all"]
        assert inner.resolve.await_count == 1

    @pytest.mark.asyncio
    async def test_nxdomain_and_no_answer_are_empty(self, settings):
        inner = _dnspython({("b.example", "TXT"): dns.resolver.NoAnswer()})
        resolver = Resolver(settings, resolver=inner)
        assert await resolver.query_txt("a.example") == []
        assert await resolver.query_txt("b.example") == []

    @pytest.mark.asyncio
    async def test_timeout_raises_dns_timeout(self, settings):
        inner = _dnspython({("slow.example", "TXT"): dns.exception.Timeout()})
        with pytest.raises(DnsTimeout):
            await Resolver(settings, resolver=inner).query_txt("slow.example")

    @pytest.mark.asyncio
    async def test_servfail_raises_temporary_dns_error(self, settings):
        inner = _dnspython({("broken.example", "TXT"): dns.resolver.NoNameservers()})
        with pytest.raises(DnsError) as excinfo:
            await Resolver(settings, resolver=inner).query_txt("broken.example")
        assert excinfo.value.temporary

    @pytest.mark.asyncio
    async def test_addresses_and_mx(self, settings):
        inner = _dnspython({
            ("example.com", "A"): [SimpleNamespace(address="192.0.2.1")],
            ("example.com", "AAAA"): [SimpleNamespace(address="2001:db8::1")],
            ("example.com", "MX"): [
                SimpleNamespace(preference=20, exchange=dns.name.from_text("mx2.example.com.")),
                SimpleNamespace(preference=10, exchange=dns.name.from_text("mx1.example.com.")),
            ],
        })
        resolver = Resolver(settings, resolver=inner)
        assert await resolver.query_addresses("example.com") == ["192.0.2.1", "2001:db8::1"]
        assert await resolver.query_mx("example.com") == ["mx1.example.com", "mx2.example.com"]

    @pytest.mark.asyncio
    async def test_resolve_txt_prefix(self, settings):
        inner = _dnspython({("_dmarc.example.com", "TXT"): [
            SimpleNamespace(strings=[b"google-site-verification=abc"]),
            SimpleNamespace(strings=[b"v=DMARC1; p=none"]),
        ]})
        resolver = Resolver(settings, resolver=inner)
        assert await resolver.resolve_txt("_dmarc.example.com", "v=dmarc1") == "v=DMARC1; p=none"
        assert await resolver.resolve_txt("_dmarc.example.com") == "google-site-verification=abc"


def test_record_names():
    assert dkim_record_name("s1", "example.com") == "s1._domainkey.example.com"
    assert dmarc_record_name("example.com") == "_dmarc.example.com"
