import logging
import time
from collections import OrderedDict
from typing import Any, Callable, Hashable, List, Optional, Tuple

import dns.asyncresolver
import dns.exception
import dns.resolver

from .config import Settings, get_settings
from .errors import DnsError, DnsTimeout

logger = logging.getLogger(__name__)

DEFAULT_DKIM_SELECTORS = [
    "default", "selector1", "selector2", "s1", "s2", "google", "mail", "smtp",
    "dkim", "k1", "k2", "mta",
]

_MISSING = object()


class DnsCache:
    """Size- and time-bounded answer cache.

    Owned by whoever builds the resolver; nothing here is process-global.
    """

    def __init__(self, maxsize: int = 1024, ttl: float = 300.0, clock: Callable[[], float] = time.monotonic):
        self.maxsize = maxsize
        self.ttl = ttl
        self._clock = clock
        self._data: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()

    def get(self, key: Hashable, default: Any = None) -> Any:
        item = self._data.get(key, _MISSING)
        if item is _MISSING:
            return default
        expires, value = item
        if expires <= self._clock():
            del self._data[key]
            return default
        self._data.move_to_end(key)
        return value

    def set(self, key: Hashable, value: Any) -> None:
        if self.maxsize <= 0 or self.ttl <= 0:
            return
        self._data[key] = (self._clock() + self.ttl, value)
        self._data.move_to_end(key)
        while len(self._data) > self.maxsize:
            self._data.popitem(last=False)

    def clear(self) -> None:
        self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


class Resolver:
    """DNS collaborator consumed by the evaluators.

    NXDOMAIN and empty answers come back as empty lists; timeouts raise
    DnsTimeout and any other resolver failure raises a temporary DnsError.
    """

    def __init__(self, settings: Optional[Settings] = None, cache: Optional[DnsCache] = None,
                 resolver: Optional[dns.asyncresolver.Resolver] = None):
        settings = settings or get_settings()
        if resolver is None:
            # use dnspython async resolver
            resolver = dns.asyncresolver.Resolver(configure=not settings.nameservers)
            if settings.nameservers:
                resolver.nameservers = list(settings.nameservers)
            resolver.lifetime = settings.dns_timeout
            resolver.timeout = settings.dns_timeout
        self._resolver = resolver
        self.cache = cache if cache is not None else DnsCache(settings.dns_cache_size, settings.dns_cache_ttl)

    async def _query(self, name: str, rdtype: str) -> List[Any]:
        name = name.rstrip(".").lower()
        key = (name, rdtype)
        cached = self.cache.get(key)
        if cached is not None:
            return cached
        try:
            answers = list(await self._resolver.resolve(name, rdtype))
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            answers = []
        except dns.exception.Timeout:
            logger.warning("DNS %s query for %s timed out", rdtype, name)
            raise DnsTimeout(name)
        except dns.exception.DNSException as e:
            logger.warning("DNS %s query for %s failed: %s", rdtype, name, e)
            raise DnsError(name, str(e) or e.__class__.__name__)
        self.cache.set(key, answers)
        return answers

    async def query_txt(self, name: str) -> List[str]:
        """Return list of TXT strings for a DNS name, or empty list."""
        txts: List[str] = []
        for r in await self._query(name, "TXT"):
            # dnspython v2: r.strings is a list of byte-strings
            txts.append(b"".join(r.strings).decode("utf-8", errors="replace"))
        return txts

    async def query_addresses(self, name: str) -> List[str]:
        addresses = [r.address for r in await self._query(name, "A")]
        addresses.extend(r.address for r in await self._query(name, "AAAA"))
        return addresses

    async def query_mx(self, name: str) -> List[str]:
        records = sorted(await self._query(name, "MX"), key=lambda r: r.preference)
        return [r.exchange.to_text(omit_final_dot=True) for r in records]

    async def resolve_txt(self, name: str, prefix: Optional[str] = None) -> Optional[str]:
        """Return the first TXT string for name, optionally the first starting with prefix."""
        for txt in await self.query_txt(name):
            if prefix is None or txt.strip().lower().startswith(prefix.lower()):
                return txt
        return None


def dkim_record_name(selector: str, domain: str) -> str:
    return f"{selector}._domainkey.{domain}"


def dmarc_record_name(domain: str) -> str:
    return f"_dmarc.{domain}"
