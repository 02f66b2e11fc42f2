"""DMARC (RFC 7489) records, alignment and policy evaluation."""
import logging
import random
from functools import lru_cache
from typing import List, Optional, Tuple

from publicsuffixlist import PublicSuffixList

from .config import DMARC_DEFAULT_PCT, DMARC_DEFAULT_REPORT_INTERVAL
from .dns_utils import Resolver, dmarc_record_name
from .errors import EngineError, MalformedRecord
from .models import (
    AlignmentMode, AuthResult, DmarcOutcome, DmarcPolicy, DmarcRecord, PolicyAction, Protocol, Verdict,
)
from .stats import DmarcCounters

logger = logging.getLogger(__name__)


def build_dmarc_record(policy: DmarcPolicy) -> str:
    """Render a policy as a v=DMARC1 TXT string, leaving out default pct and ri."""
    parts = ["v=DMARC1", f"p={policy.policy.value}"]
    if policy.subdomain_policy is not None:
        parts.append(f"sp={policy.subdomain_policy.value}")
    parts.append(f"adkim={policy.dkim_alignment.value}")
    parts.append(f"aspf={policy.spf_alignment.value}")
    if policy.percentage != DMARC_DEFAULT_PCT:
        parts.append(f"pct={policy.percentage}")
    if policy.aggregate_report_uri:
        parts.append(f"rua={policy.aggregate_report_uri}")
    if policy.failure_report_uri:
        parts.append(f"ruf={policy.failure_report_uri}")
    if policy.report_format:
        parts.append(f"rf={policy.report_format}")
    if policy.report_interval != DMARC_DEFAULT_REPORT_INTERVAL:
        parts.append(f"ri={policy.report_interval}")
    if policy.failure_options:
        parts.append(f"fo={policy.failure_options}")
    return "; ".join(parts)


def _action(tags, name: str) -> Optional[PolicyAction]:
    if name not in tags:
        return None
    try:
        return PolicyAction(tags[name].lower())
    except ValueError as e:
        raise MalformedRecord(f"invalid {name}={tags[name]}") from e


def _alignment(tags, name: str) -> AlignmentMode:
    try:
        return AlignmentMode(tags.get(name, "r").lower())
    except ValueError as e:
        raise MalformedRecord(f"invalid {name}={tags[name]}") from e


def parse_dmarc_record(text: str) -> DmarcRecord:
    """Parse DMARC record into a tag map plus typed fields; unknown tags are kept."""
    tags = {}
    for part in text.split(";"):
        part = part.strip()
        if not part:
            continue
        if "=" not in part:
            raise MalformedRecord(f"DMARC tag without value: {part!r}")
        k, v = part.split("=", 1)
        tags.setdefault(k.strip().lower(), v.strip())

    if not tags or next(iter(tags)) != "v" or tags["v"] != "DMARC1":
        raise MalformedRecord("DMARC record must start with v=DMARC1")
    policy = _action(tags, "p")
    if policy is None:
        raise MalformedRecord("DMARC record has no p= tag")
    try:
        pct = int(tags.get("pct", "100"))
        ri = int(tags.get("ri", "86400"))
    except ValueError as e:
        raise MalformedRecord("pct= and ri= must be integers") from e
    if not 0 <= pct <= 100:
        raise MalformedRecord(f"pct={pct} is out of range")

    return DmarcRecord(
        raw=text,
        tags=tags,
        policy=policy,
        subdomain_policy=_action(tags, "sp"),
        dkim_alignment=_alignment(tags, "adkim"),
        spf_alignment=_alignment(tags, "aspf"),
        percentage=pct,
        aggregate_report_uri=tags.get("rua"),
        failure_report_uri=tags.get("ruf"),
        report_format=tags.get("rf"),
        report_interval=ri,
        failure_options=tags.get("fo"),
    )


def policy_from_record(domain: str, record: DmarcRecord) -> DmarcPolicy:
    return DmarcPolicy(
        domain=domain,
        policy=record.policy,
        subdomain_policy=record.subdomain_policy,
        dkim_alignment=record.dkim_alignment,
        spf_alignment=record.spf_alignment,
        percentage=record.percentage,
        aggregate_report_uri=record.aggregate_report_uri,
        failure_report_uri=record.failure_report_uri,
        report_format=record.report_format,
        report_interval=record.report_interval,
        failure_options=record.failure_options,
    )


@lru_cache(maxsize=1)
def _psl() -> PublicSuffixList:
    return PublicSuffixList()


def organizational_domain(domain: str) -> str:
    domain = domain.strip().lower().rstrip(".")
    return _psl().privatesuffix(domain) or domain


def is_aligned(auth_domain: Optional[str], from_domain: str, mode: AlignmentMode) -> bool:
    if not auth_domain:
        return False
    auth_domain = auth_domain.lower().rstrip(".")
    from_domain = from_domain.lower().rstrip(".")
    if mode is AlignmentMode.STRICT:
        return auth_domain == from_domain
    return organizational_domain(auth_domain) == organizational_domain(from_domain)


class DmarcEvaluator:
    """Combines SPF and DKIM results under the From domain's DMARC policy.

    ``rng`` decides pct sampling and can be seeded in tests; ``counters``
    receives one increment per pass/fail evaluation.
    """

    def __init__(self, resolver: Resolver, counters: Optional[DmarcCounters] = None,
                 rng: Optional[random.Random] = None):
        self.resolver = resolver
        self.counters = counters if counters is not None else DmarcCounters()
        self.rng = rng or random.Random()

    async def _records_at(self, domain: str) -> List[str]:
        txts = await self.resolver.query_txt(dmarc_record_name(domain))
        return [t.strip() for t in txts if t.strip().lower().startswith("v=dmarc1")]

    async def fetch_record(self, from_domain: str) -> Optional[Tuple[str, DmarcRecord]]:
        """Find the policy for from_domain, falling back to its organizational domain."""
        tried = []
        for target in (from_domain, organizational_domain(from_domain)):
            if target in tried:
                continue
            tried.append(target)
            records = await self._records_at(target)
            if len(records) > 1:
                raise MalformedRecord(f"_dmarc.{target} publishes {len(records)} DMARC records")
            if records:
                return target, parse_dmarc_record(records[0])
        return None

    def _outcome(self, verdict: Verdict, from_domain: Optional[str], reason: str, **fields) -> DmarcOutcome:
        result = AuthResult(protocol=Protocol.DMARC, verdict=verdict, evaluated_domain=from_domain, reason=reason)
        return DmarcOutcome(result=result, **fields)

    async def evaluate(self, from_domain: Optional[str], spf_result: AuthResult, dkim_result: AuthResult
                       ) -> DmarcOutcome:
        if not from_domain:
            return self._outcome(Verdict.PERMERROR, None, "message has no usable From domain")
        from_domain = from_domain.lower().rstrip(".")
        try:
            found = await self.fetch_record(from_domain)
        except EngineError as e:
            logger.warning("DMARC %s for %s: %s", e.verdict.value, from_domain, e)
            return self._outcome(e.verdict, from_domain, str(e))
        if found is None:
            return self._outcome(Verdict.NONE, from_domain, f"no DMARC record for {from_domain}")
        record_domain, record = found

        spf_aligned = spf_result.passed and is_aligned(spf_result.evaluated_domain, from_domain, record.spf_alignment)
        dkim_aligned = dkim_result.passed and is_aligned(dkim_result.evaluated_domain, from_domain,
                                                         record.dkim_alignment)
        passed = spf_aligned or dkim_aligned
        self.counters.increment(record_domain, passed)

        fields = dict(record_domain=record_domain, spf_aligned=spf_aligned, dkim_aligned=dkim_aligned)
        if passed:
            via = " and ".join(p for p, ok in (("SPF", spf_aligned), ("DKIM", dkim_aligned)) if ok)
            logger.info("DMARC pass for %s via aligned %s", from_domain, via)
            return self._outcome(Verdict.PASS, from_domain, f"aligned {via} pass", policy=record.policy, **fields)

        policy = record.policy
        if from_domain != record_domain and from_domain.endswith("." + record_domain):
            policy = record.subdomain_policy or record.policy
        disposition = policy
        sampled_out = False
        if policy is not PolicyAction.NONE and self.rng.random() * 100 >= record.percentage:
            disposition, sampled_out = PolicyAction.NONE, True
        reason = f"no aligned pass (spf={spf_result.verdict.value}, dkim={dkim_result.verdict.value}); p={policy.value}"
        if sampled_out:
            reason += f", not applied under pct={record.percentage}"
        logger.info("DMARC fail for %s: disposition=%s", from_domain, disposition.value)
        return self._outcome(Verdict.FAIL, from_domain, reason, policy=policy, disposition=disposition,
                             sampled_out=sampled_out, **fields)
