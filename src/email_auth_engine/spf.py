"""SPF record building, parsing and check_host() style evaluation."""
import ipaddress
import logging
import re
from typing import List, Optional, Set, Tuple, Union

from .config import SPF_MAX_MX_HOSTS, Settings, get_settings
from .dns_utils import Resolver
from .errors import DnsError, EngineError, LookupBudgetExceeded, MalformedRecord
from .models import (
    MECHANISM_ORDER, AuthResult, MechanismKind, Protocol, Qualifier, SpfMechanism, SpfPolicy, SpfRecord, Verdict,
)

logger = logging.getLogger(__name__)

MAX_INCLUDE_RECURSION = 10
_MODIFIER_RE = re.compile(r"^([a-z][a-z0-9_.-]*)=(.*)$", re.I)


def build_spf_record(policy: SpfPolicy) -> str:
    """Render a policy as a v=spf1 TXT string.

    Mechanisms are grouped ip4, ip6, a, mx, include; within a kind the
    configured order is kept, since evaluation is first-match.
    """
    parts = ["v=spf1"]
    for mech in sorted(policy.mechanisms, key=lambda m: MECHANISM_ORDER[m.kind]):
        parts.append(mech.render())
    if policy.redirect:
        parts.append(f"redirect={policy.redirect}")
    if policy.explanation:
        parts.append(f"exp={policy.explanation}")
    parts.append(f"{policy.all_qualifier.value}all")
    return " ".join(parts)


def _network(value: str, version: int) -> Union[ipaddress.IPv4Network, ipaddress.IPv6Network]:
    try:
        net = ipaddress.ip_network(value, strict=False)
    except ValueError as e:
        raise MalformedRecord(f"invalid ip{version} network {value!r}") from e
    if net.version != version:
        raise MalformedRecord(f"{value!r} is not an IPv{version} network")
    return net


def parse_spf_record(spf_text: str) -> SpfRecord:
    """Parse SPF string into mechanisms, modifiers and the terminal all."""
    tokens = spf_text.split()
    if not tokens or tokens[0].lower() != "v=spf1":
        raise MalformedRecord(f"not an SPF record: {spf_text!r}")
    record = SpfRecord(raw=spf_text)
    seen_all = False
    for token in tokens[1:]:
        modifier = _MODIFIER_RE.match(token)
        if modifier:
            name, value = modifier.group(1).lower(), modifier.group(2)
            if name == "redirect":
                if record.redirect is not None:
                    raise MalformedRecord("duplicate redirect= modifier")
                record.redirect = value
            elif name == "exp":
                if record.explanation is not None:
                    raise MalformedRecord("duplicate exp= modifier")
                record.explanation = value
            else:
                record.unknown.append(token)
            continue
        if seen_all:
            # mechanisms after all are never reached
            record.unknown.append(token)
            continue

        qualifier = Qualifier.PASS
        body = token
        if token[0] in "+-~?":
            qualifier, body = Qualifier(token[0]), token[1:]
        lower = body.lower()

        if lower == "all":
            record.all_qualifier = qualifier
            seen_all = True
        elif lower.startswith("ip4:"):
            _network(body[4:], 4)
            record.mechanisms.append(SpfMechanism(kind=MechanismKind.IP4, qualifier=qualifier, target=body[4:]))
        elif lower.startswith("ip6:"):
            _network(body[4:], 6)
            record.mechanisms.append(SpfMechanism(kind=MechanismKind.IP6, qualifier=qualifier, target=body[4:]))
        elif lower == "a" or lower.startswith(("a:", "a/")):
            target = body[2:] if lower.startswith("a:") else (body[1:] or None)
            record.mechanisms.append(SpfMechanism(kind=MechanismKind.A, qualifier=qualifier, target=target))
        elif lower == "mx" or lower.startswith(("mx:", "mx/")):
            target = body[3:] if lower.startswith("mx:") else (body[2:] or None)
            record.mechanisms.append(SpfMechanism(kind=MechanismKind.MX, qualifier=qualifier, target=target))
        elif lower.startswith("include:") and len(body) > len("include:"):
            record.mechanisms.append(SpfMechanism(kind=MechanismKind.INCLUDE, qualifier=qualifier, target=body[8:]))
        else:
            logger.debug("unrecognized SPF term %r kept as unknown", token)
            record.unknown.append(token)
    return record


def _split_host_cidr(target: Optional[str], domain: str) -> Tuple[str, int, int]:
    """Split 'host/24//64' style targets into (host, ip4 prefix, ip6 prefix)."""
    spec = target or ""
    cidr4, cidr6 = 32, 128
    try:
        if "//" in spec:
            spec, c6 = spec.split("//", 1)
            cidr6 = int(c6)
        if "/" in spec:
            spec, c4 = spec.split("/", 1)
            cidr4 = int(c4)
    except ValueError as e:
        raise MalformedRecord(f"invalid cidr length in {target!r}") from e
    if not (0 <= cidr4 <= 32 and 0 <= cidr6 <= 128):
        raise MalformedRecord(f"cidr length out of range in {target!r}")
    return (spec or domain), cidr4, cidr6


def _address_matches(ip: Union[ipaddress.IPv4Address, ipaddress.IPv6Address], addresses: List[str], cidr4: int,
                     cidr6: int) -> bool:
    for addr in addresses:
        try:
            candidate = ipaddress.ip_address(addr)
        except ValueError:
            continue
        if candidate.version != ip.version:
            continue
        prefix = cidr4 if ip.version == 4 else cidr6
        if ip in ipaddress.ip_network(f"{candidate}/{prefix}", strict=False):
            return True
    return False


class _LookupBudget:
    def __init__(self, limit: int):
        self.limit = limit
        self.used = 0

    def spend(self, term: str) -> None:
        if self.used >= self.limit:
            logger.warning("SPF lookup budget of %d exhausted before %s", self.limit, term)
            raise LookupBudgetExceeded(self.limit)
        self.used += 1


class SpfEvaluator:
    """Walks a domain's SPF mechanisms against a connecting IP."""

    def __init__(self, resolver: Resolver, settings: Optional[Settings] = None, lookup_budget: Optional[int] = None):
        settings = settings or get_settings()
        self.resolver = resolver
        self.lookup_budget = min(lookup_budget or settings.spf_lookup_limit, settings.spf_lookup_limit)

    async def fetch_record(self, domain: str) -> Optional[SpfRecord]:
        spfs = [t for t in await self.resolver.query_txt(domain) if t.strip().lower().split(" ", 1)[0] == "v=spf1"]
        if not spfs:
            return None
        if len(spfs) > 1:
            raise MalformedRecord(f"{domain} publishes {len(spfs)} SPF records")
        return parse_spf_record(spfs[0].strip())

    async def evaluate(self, domain: str, connecting_ip: str, mail_from: Optional[str] = None,
                       lookup_budget: Optional[int] = None) -> AuthResult:
        domain = domain.strip().lower().rstrip(".")
        try:
            ip = ipaddress.ip_address(connecting_ip.strip())
        except ValueError:
            return AuthResult(protocol=Protocol.SPF, verdict=Verdict.PERMERROR, evaluated_domain=domain,
                              reason=f"invalid connecting IP {connecting_ip!r}")
        limit = min(lookup_budget or self.lookup_budget, self.lookup_budget)
        budget = _LookupBudget(limit)
        try:
            verdict, reason = await self._check_host(domain, ip, budget)
        except EngineError as e:
            verdict, reason = e.verdict, str(e)
        logger.info("SPF %s for %s from %s (mail_from=%s, %d lookups): %s",
                    verdict.value, domain, ip, mail_from, budget.used, reason)
        return AuthResult(protocol=Protocol.SPF, verdict=verdict, evaluated_domain=domain, reason=reason)

    async def _check_host(self, domain: str, ip, budget: _LookupBudget) -> Tuple[Verdict, str]:
        record = await self.fetch_record(domain)
        if record is None:
            return Verdict.NONE, f"no SPF record for {domain}"

        for mech in record.mechanisms:
            if await self._matches(mech, domain, ip, budget):
                verdict = mech.qualifier.verdict
                reason = f"{domain}: matched {mech.render()}"
                if verdict is Verdict.FAIL and record.explanation:
                    explanation = await self._explanation(record.explanation)
                    if explanation:
                        reason = f"{reason} ({explanation})"
                return verdict, reason

        if record.redirect:
            budget.spend(f"redirect={record.redirect}")
            verdict, reason = await self._check_host(record.redirect.lower(), ip, budget)
            if verdict is Verdict.NONE:
                raise MalformedRecord(f"redirect target {record.redirect} has no SPF record")
            return verdict, reason

        qualifier = record.all_qualifier or Qualifier.SOFTFAIL
        if record.all_qualifier is None:
            return qualifier.verdict, f"{domain}: no mechanism matched, default {qualifier.value}all"
        return qualifier.verdict, f"{domain}: matched {qualifier.value}all"

    async def _matches(self, mech: SpfMechanism, domain: str, ip, budget: _LookupBudget) -> bool:
        kind = mech.kind
        if kind is MechanismKind.IP4 or kind is MechanismKind.IP6:
            net = _network(mech.target or "", 4 if kind is MechanismKind.IP4 else 6)
            return ip.version == net.version and ip in net

        if kind is MechanismKind.A:
            host, cidr4, cidr6 = _split_host_cidr(mech.target, domain)
            budget.spend(mech.render())
            return _address_matches(ip, await self.resolver.query_addresses(host), cidr4, cidr6)

        if kind is MechanismKind.MX:
            host, cidr4, cidr6 = _split_host_cidr(mech.target, domain)
            budget.spend(mech.render())
            for exchange in (await self.resolver.query_mx(host))[:SPF_MAX_MX_HOSTS]:
                if _address_matches(ip, await self.resolver.query_addresses(exchange), cidr4, cidr6):
                    return True
            return False

        if kind is MechanismKind.INCLUDE:
            target = (mech.target or "").lower()
            budget.spend(mech.render())
            verdict, reason = await self._check_host(target, ip, budget)
            logger.debug("SPF include:%s -> %s", target, verdict.value)
            if verdict is Verdict.PASS:
                return True
            if verdict is Verdict.TEMPERROR:
                raise DnsError(target, reason)
            if verdict in (Verdict.NONE, Verdict.PERMERROR):
                raise MalformedRecord(f"include:{target} did not yield a usable record ({reason})")
            return False

        return False

    async def _explanation(self, name: str) -> Optional[str]:
        try:
            return await self.resolver.resolve_txt(name)
        except DnsError as e:
            logger.debug("SPF exp=%s lookup failed: %s", name, e)
            return None


async def count_lookups(resolver: Resolver, domain: str, spf_text: str, max_recursion: int = MAX_INCLUDE_RECURSION
                        ) -> Tuple[Set[str], int, List[str]]:
    """
    Follow include:/redirect= recursively and count DNS-lookup-consuming terms.
    Returns (set_of_resolved_domains, total_lookup_count, errors_list)
    """
    resolved: Set[str] = set()
    visited: Set[str] = set()
    errors: List[str] = []
    lookup_count = 0

    async def _recurse(name: str, txt: str, depth: int):
        nonlocal lookup_count
        if depth > max_recursion:
            errors.append(f"spf include recursion depth exceeded at {name}")
            return
        try:
            record = parse_spf_record(txt)
        except MalformedRecord as e:
            errors.append(f"{name}: {e}")
            return
        lookup_count += record.lookup_terms
        targets = [m.target for m in record.mechanisms if m.kind is MechanismKind.INCLUDE]
        if record.redirect:
            targets.append(record.redirect)
        for inc in targets:
            inc = inc.strip().lower()
            if inc in visited:
                continue
            visited.add(inc)
            try:
                found_spf = [t for t in await resolver.query_txt(inc) if t.strip().lower().startswith("v=spf1")]
            except DnsError as e:
                errors.append(f"error resolving include {inc}: {e}")
                continue
            resolved.add(inc)
            if not found_spf:
                errors.append(f"include {inc} has no SPF record")
            for s in found_spf:
                await _recurse(inc, s, depth + 1)

    await _recurse(domain, spf_text, 0)
    return resolved, lookup_count, errors
