"""Shared fixtures: an in-memory DNS collaborator and key material."""
from typing import Dict, List, Optional

import pytest

from email_auth_engine import keys
from email_auth_engine.config import Settings
from email_auth_engine.dkim import build_dkim_record
from email_auth_engine.errors import DnsTimeout


class FakeResolver:
    """Answers from dictionaries and records every query it receives."""

    def __init__(self, txt: Optional[Dict[str, List[str]]] = None, addresses: Optional[Dict[str, List[str]]] = None,
                 mx: Optional[Dict[str, List[str]]] = None, timeouts=()):
        self.txt = {k.lower(): v for k, v in (txt or {}).items()}
        self.addresses = {k.lower(): v for k, v in (addresses or {}).items()}
        self.mx = {k.lower(): v for k, v in (mx or {}).items()}
        self.timeouts = {t.lower() for t in timeouts}
        self.queries: List[tuple] = []

    def _check(self, rdtype: str, name: str) -> str:
        name = name.rstrip(".").lower()
        self.queries.append((rdtype, name))
        if name in self.timeouts:
            raise DnsTimeout(name)
        return name

    async def query_txt(self, name: str) -> List[str]:
        return list(self.txt.get(self._check("TXT", name), []))

    async def query_addresses(self, name: str) -> List[str]:
        return list(self.addresses.get(self._check("A", name), []))

    async def query_mx(self, name: str) -> List[str]:
        return list(self.mx.get(self._check("MX", name), []))

    async def resolve_txt(self, name: str, prefix: Optional[str] = None) -> Optional[str]:
        for txt in await self.query_txt(name):
            if prefix is None or txt.lower().startswith(prefix.lower()):
                return txt
        return None

    def queried(self, name: str) -> bool:
        return any(n == name.lower() for _, n in self.queries)


@pytest.fixture
def settings():
    return Settings(nameservers=["127.0.0.1"], dns_cache_size=0)


@pytest.fixture(scope="session")
def keypair():
    return keys.generate(2048)


@pytest.fixture
def resolver():
    return FakeResolver()


@pytest.fixture
def signing_setup(keypair):
    """Resolver publishing the example.com key under selector 'mail'."""
    record = build_dkim_record(keypair.public_key)
    return FakeResolver(txt={"mail._domainkey.example.com": [record]})
