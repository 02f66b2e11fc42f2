import logging
import random
import time
from typing import Dict, List, Optional, Sequence, Union

from . import keys
from .config import SPF_DNS_LOOKUP_LIMIT, Settings, get_settings
from .dkim import DkimSigner, DkimVerifier, dkim_record_for, parse_dkim_record
from .dmarc import (
    DmarcEvaluator, build_dmarc_record, organizational_domain, parse_dmarc_record, policy_from_record,
)
from .dns_utils import DEFAULT_DKIM_SELECTORS, Resolver, dkim_record_name, dmarc_record_name
from .errors import CryptoError, EngineError, MalformedRecord, ProtocolError
from .keys import InMemoryKeyStore
from .message import address_domain, author_domains, first_header, split_message
from .models import (
    AuthResult, CompositeVerdict, DkimKeyConfig, DmarcPolicy, KeyStatus, PolicyAction, Protocol, Qualifier, SpfPolicy,
    Verdict,
)
from .spf import SpfEvaluator, build_spf_record, count_lookups, parse_spf_record
from .stats import DmarcCounters

logger = logging.getLogger(__name__)

RawMessage = Union[bytes, str]


def _as_bytes(raw_message: RawMessage) -> bytes:
    if isinstance(raw_message, str):
        return raw_message.encode("utf-8")
    return raw_message


def _result(protocol: Protocol, verdict: Verdict, reason: str, domain: Optional[str] = None) -> AuthResult:
    return AuthResult(protocol=protocol, verdict=verdict, evaluated_domain=domain, reason=reason)


class AuthenticationEngine:
    """Single entry point for inbound verification and outbound signing.

    The resolver, key store, counters and random source are all owned by the
    caller; nothing here is shared between engine instances.
    """

    def __init__(self, resolver: Optional[Resolver] = None, key_store: Optional[keys.KeyStore] = None,
                 counters: Optional[DmarcCounters] = None, settings: Optional[Settings] = None,
                 rng: Optional[random.Random] = None):
        self.settings = settings or get_settings()
        self.resolver = resolver or Resolver(self.settings)
        self.key_store = key_store if key_store is not None else InMemoryKeyStore()
        self.counters = counters if counters is not None else DmarcCounters()
        self.spf = SpfEvaluator(self.resolver, self.settings)
        self.dkim = DkimVerifier(self.resolver, self.settings)
        self.dmarc = DmarcEvaluator(self.resolver, self.counters, rng)
        self.signer = DkimSigner(self.key_store, self.settings)

    async def verify_email(self, raw_message: RawMessage, connecting_ip: str, mail_from: Optional[str] = None,
                           helo: Optional[str] = None) -> CompositeVerdict:
        """Run SPF, DKIM and DMARC for one inbound message. Never raises."""
        message = _as_bytes(raw_message)
        from_domain = None
        try:
            headers, _ = split_message(message)
            authors = author_domains(headers)
            if len(authors) > 1:
                logger.warning("message names %d From domains, evaluating %s", len(authors), authors[0])
            from_domain = authors[0] if authors else None
            if mail_from is None:
                mail_from = first_header(headers, "Return-Path") or first_header(headers, "From")
        except ProtocolError as e:
            logger.warning("cannot parse message headers: %s", e)
        except Exception:
            logger.exception("unexpected error reading message headers")

        sender_domain = address_domain(mail_from) if mail_from else None
        if sender_domain is None and helo:
            # null reverse-path: SPF checks postmaster@helo
            sender_domain = helo.strip().lower().rstrip(".")

        spf_result = await self._run_spf(sender_domain, connecting_ip, mail_from)
        dkim_result = await self._run_dkim(message, from_domain)
        try:
            outcome = await self.dmarc.evaluate(from_domain, spf_result, dkim_result)
            dmarc_result, disposition = outcome.result, outcome.disposition
        except Exception as e:
            logger.exception("DMARC evaluation failed for %s", from_domain)
            dmarc_result = _result(Protocol.DMARC, Verdict.TEMPERROR, f"internal error: {e}", from_domain)
            disposition = PolicyAction.NONE

        verdict = CompositeVerdict(
            spf=spf_result,
            dkim=dkim_result,
            dmarc=dmarc_result,
            authenticated=dmarc_result.passed,
            disposition=disposition,
            from_domain=from_domain,
            mail_from=mail_from,
            connecting_ip=connecting_ip,
        )
        logger.info("verified message from %s via %s: spf=%s dkim=%s dmarc=%s disposition=%s",
                    from_domain, connecting_ip, spf_result.verdict.value, dkim_result.verdict.value,
                    dmarc_result.verdict.value, disposition.value)
        return verdict

    async def _run_spf(self, domain: Optional[str], connecting_ip: str, mail_from: Optional[str]) -> AuthResult:
        if not domain:
            return _result(Protocol.SPF, Verdict.NONE, "no envelope sender domain")
        try:
            return await self.spf.evaluate(domain, connecting_ip, mail_from=mail_from)
        except EngineError as e:
            return _result(Protocol.SPF, e.verdict, str(e), domain)
        except Exception as e:
            logger.exception("SPF evaluation failed for %s", domain)
            return _result(Protocol.SPF, Verdict.TEMPERROR, f"internal error: {e}", domain)

    async def _run_dkim(self, message: bytes, from_domain: Optional[str]) -> AuthResult:
        try:
            return await self.dkim.verify(message, from_domain=from_domain)
        except EngineError as e:
            return _result(Protocol.DKIM, e.verdict, str(e))
        except Exception as e:
            logger.exception("DKIM verification failed")
            return _result(Protocol.DKIM, Verdict.TEMPERROR, f"internal error: {e}")

    def sign_email(self, raw_message: RawMessage, domain: Optional[str] = None) -> bytes:
        """Sign outbound mail with the domain's active key; unsigned on any problem."""
        return self.signer.sign(_as_bytes(raw_message), domain=domain)

    def statistics(self, domain: str) -> Dict:
        return self.counters.snapshot(domain)


# ---------- Published-record audit ----------

async def check_dkim_selector(resolver: Resolver, domain: str, selector: str) -> Dict:
    """
    Query selector._domainkey.domain for TXT. Return info dict with present flag and
    parsed key type, key length and fingerprint if possible.
    """
    name = dkim_record_name(selector, domain)
    info = {"selector": selector, "name": name, "present": False, "raw": None, "key_type": None,
            "key_bits": None, "fingerprint": None, "test_mode": False, "revoked": False, "error": None}
    txts = await resolver.query_txt(name)
    if not txts:
        return info
    dkim_txt = next((t for t in txts if "v=DKIM1" in t or "p=" in t), txts[0])
    info["present"] = True
    info["raw"] = dkim_txt
    try:
        record = parse_dkim_record(dkim_txt)
    except MalformedRecord as e:
        info["error"] = str(e)
        return info
    info["key_type"] = record.key_type
    info["test_mode"] = record.test_mode
    info["revoked"] = record.revoked
    if not record.revoked:
        try:
            info["key_bits"] = keys.key_bits(record.public_key)
            info["fingerprint"] = keys.fingerprint(record.public_key)
        except CryptoError as e:
            info["error"] = str(e)
    return info


async def discover_dkim_selectors(resolver: Resolver, domain: str,
                                  selectors: Optional[Sequence[str]] = None) -> List[Dict]:
    found: List[Dict] = []
    # sequential to avoid high query burst
    for sel in selectors or DEFAULT_DKIM_SELECTORS:
        try:
            info = await check_dkim_selector(resolver, domain, sel)
        except EngineError as e:
            logger.warning("DKIM selector %s for %s not checked: %s", sel, domain, e)
            continue
        if info["present"]:
            found.append(info)
    return found


def _spf_details(spf_text: str) -> Dict:
    detail = {"raw": spf_text, "mechanisms": [], "redirect": None, "all_mechanism": None, "unknown": [],
              "error": None}
    try:
        record = parse_spf_record(spf_text)
    except MalformedRecord as e:
        detail["error"] = str(e)
        return detail
    detail["mechanisms"] = [m.render() for m in record.mechanisms]
    detail["redirect"] = record.redirect
    detail["unknown"] = record.unknown
    if record.all_qualifier is not None:
        detail["all_mechanism"] = f"{record.all_qualifier.value}all"
    return detail


def _spf_matches(published: str, expected: str) -> bool:
    try:
        a, b = parse_spf_record(published), parse_spf_record(expected)
    except MalformedRecord:
        return False
    return (a.mechanisms, a.redirect, a.all_qualifier or Qualifier.SOFTFAIL) == (b.mechanisms, b.redirect,
                                                                                 b.all_qualifier)


def score_and_conclusions(spf_records: List[str], spf_details: List[Dict], spf_lookup_count: int,
                          dmarc_text: Optional[str], dmarc_tags: Dict, dkim_infos: List[Dict],
                          drift: Sequence[str] = ()) -> Dict:
    score = 100
    reasons = []

    if not spf_records:
        score -= 40
        reasons.append("No SPF record found (high risk of spoofing).")
    else:
        if len(spf_records) > 1:
            score -= 30
            reasons.append("Multiple SPF records found (invalid SPF configuration).")
        for d in spf_details:
            if d.get("error"):
                score -= 30
                reasons.append(f"SPF record is malformed: {d['error']}")
                continue
            all_mech = d.get("all_mechanism")
            if not all_mech:
                if not d.get("redirect"):
                    reasons.append("SPF record has no 'all' mechanism - receivers treat unmatched mail as ~all.")
                    score -= 5
            elif all_mech == "+all":
                score -= 25
                reasons.append("SPF uses +all (permits everything), a critical misconfiguration.")
            elif all_mech == "?all":
                score -= 10
                reasons.append("SPF uses ?all (neutral), weak protection.")
            elif all_mech == "~all":
                score -= 3
                reasons.append("SPF uses ~all (softfail), allows some leeway.")
            elif all_mech == "-all":
                reasons.append("SPF uses -all (reject), strict.")
        if spf_lookup_count > SPF_DNS_LOOKUP_LIMIT:
            score -= 20
            reasons.append(f"SPF needs {spf_lookup_count} DNS lookups (> {SPF_DNS_LOOKUP_LIMIT}); "
                           f"evaluation will end in permerror.")
        elif spf_lookup_count > SPF_DNS_LOOKUP_LIMIT - 3:
            score -= 7
            reasons.append(f"SPF needs {spf_lookup_count} DNS lookups (close to limit).")

    if not dmarc_text:
        score -= 30
        reasons.append("No DMARC record found (no domain-wide policy for unauthenticated mail).")
    elif dmarc_tags.get("error"):
        score -= 30
        reasons.append(f"DMARC record is malformed: {dmarc_tags['error']}")
    else:
        p = dmarc_tags.get("p", "").lower()
        if p == "none":
            score -= 10
            reasons.append("DMARC policy p=none (monitoring only). Consider p=quarantine or p=reject.")
        elif p == "quarantine":
            score -= 3
            reasons.append("DMARC policy p=quarantine (moderate).")
        elif p == "reject":
            reasons.append("DMARC policy p=reject (strong).")
        pct = int(dmarc_tags.get("pct", "100"))
        if pct < 100:
            score -= 5
            reasons.append(f"DMARC pct={pct} (not applied to all mail).")
        if "rua" not in dmarc_tags:
            reasons.append("No RUA (aggregate) reporting configured (you won't get aggregate reports).")
            score -= 3

    if not dkim_infos:
        reasons.append("No DKIM selectors found (may not use DKIM).")
        score -= 10
    else:
        for kinfo in dkim_infos:
            bits = kinfo.get("key_bits")
            if kinfo.get("revoked"):
                reasons.append(f"DKIM selector {kinfo['selector']} publishes a revoked (empty) key.")
            elif kinfo.get("error"):
                score -= 10
                reasons.append(f"DKIM selector {kinfo['selector']} is unusable: {kinfo['error']}")
            elif bits:
                if bits < keys.MIN_KEY_SIZE:
                    score -= 10
                    reasons.append(f"DKIM selector {kinfo['selector']} has a weak public key ({bits} bits).")
                elif bits < keys.RECOMMENDED_KEY_SIZE:
                    score -= 3
                    reasons.append(f"DKIM selector {kinfo['selector']} uses {bits} bits (consider 2048).")
                else:
                    reasons.append(f"DKIM selector {kinfo['selector']} key size looks OK ({bits} bits).")
            if kinfo.get("test_mode"):
                reasons.append(f"DKIM selector {kinfo['selector']} is in test mode (t=y).")

    for item in drift:
        score -= 5
        reasons.append(f"Published record differs from configuration: {item}.")

    return {"score": max(0, min(100, score)), "reasons": reasons}


async def generate_report(domain: str, resolver: Optional[Resolver] = None,
                          selectors: Optional[Sequence[str]] = None, spf_policy: Optional[SpfPolicy] = None,
                          dmarc_policy: Optional[DmarcPolicy] = None,
                          dkim_configs: Sequence[DkimKeyConfig] = ()) -> Dict:
    """Audit the records a domain publishes, optionally against its configuration."""
    resolver = resolver or Resolver()
    domain = domain.strip().lower().rstrip(".")
    t0 = time.time()
    out = {"domain": domain, "time_utc": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())}
    drift: List[str] = []

    # SPF
    try:
        txts = await resolver.query_txt(domain)
    except EngineError as e:
        txts, out["spf_lookup_error"] = [], str(e)
    spf_records = [t for t in txts if t.strip().lower().startswith("v=spf1")]
    spf_details = [_spf_details(s) for s in spf_records]
    total_lookup_count = 0
    spf_errors: List[str] = []
    resolved = set()
    for s in spf_records:
        r, lookup_count, errors = await count_lookups(resolver, domain, s)
        resolved |= r
        total_lookup_count += lookup_count
        spf_errors.extend(errors)
    out["spf"] = {"records": spf_records, "details": spf_details, "resolved_includes": sorted(resolved),
                  "estimated_dns_lookup_count": total_lookup_count, "errors": spf_errors}
    if spf_policy is not None:
        expected = build_spf_record(spf_policy)
        out["spf"]["expected"] = expected
        if not any(_spf_matches(s, expected) for s in spf_records):
            drift.append(f"SPF at {domain}")

    # DMARC
    try:
        dmarc_txts = await resolver.query_txt(dmarc_record_name(domain))
        dmarc_domain = domain
        if not any(t.strip().lower().startswith("v=dmarc1") for t in dmarc_txts):
            dmarc_domain = organizational_domain(domain)
            if dmarc_domain != domain:
                dmarc_txts = await resolver.query_txt(dmarc_record_name(dmarc_domain))
    except EngineError as e:
        dmarc_txts, dmarc_domain = [], domain
        out["dmarc_lookup_error"] = str(e)
    dmarc_text = next((t for t in dmarc_txts if t.strip().lower().startswith("v=dmarc1")), None)
    record = None
    out["dmarc"] = {"raw": dmarc_text, "record_domain": dmarc_domain if dmarc_text else None, "tags": {}}
    if dmarc_text:
        try:
            record = parse_dmarc_record(dmarc_text)
            out["dmarc"]["tags"] = dict(record.tags)
        except MalformedRecord as e:
            out["dmarc"]["tags"] = {"error": str(e)}
    if dmarc_policy is not None:
        expected = build_dmarc_record(dmarc_policy)
        out["dmarc"]["expected"] = expected
        if record is None or build_dmarc_record(policy_from_record(domain, record)) != expected:
            drift.append(f"DMARC at {dmarc_record_name(domain)}")

    # DKIM
    configured = [c.selector for c in dkim_configs]
    wanted = list(dict.fromkeys(configured + list(selectors or DEFAULT_DKIM_SELECTORS)))
    dkim_infos = await discover_dkim_selectors(resolver, domain, wanted)
    out["dkim"] = {"found_selectors": dkim_infos, "checked_selectors": wanted, "configured": []}
    by_selector = {info["selector"]: info for info in dkim_infos}
    for config in dkim_configs:
        entry = {"selector": config.selector, "status": config.status.value, "published": False, "matches": False,
                 "strength": keys.check_key_strength(config)}
        info = by_selector.get(config.selector)
        if info is not None and config.public_key:
            entry["published"] = True
            try:
                entry["matches"] = parse_dkim_record(info["raw"]).public_key == keys.format_for_dns(config.public_key)
            except MalformedRecord:
                entry["matches"] = False
        if config.status is KeyStatus.ACTIVE and config.enabled and not entry["matches"]:
            drift.append(f"DKIM key {dkim_record_name(config.selector, domain)}")
        out["dkim"]["configured"].append(entry)

    # Scoring and conclusions
    out["drift"] = drift
    out["conclusions"] = score_and_conclusions(spf_records, spf_details, total_lookup_count,
                                               dmarc_text, out["dmarc"]["tags"], dkim_infos, drift)
    out["elapsed_seconds"] = round(time.time() - t0, 2)
    return out


def dns_suggestions(domain: str, spf_policy: Optional[SpfPolicy] = None,
                    dmarc_policy: Optional[DmarcPolicy] = None,
                    dkim_configs: Sequence[DkimKeyConfig] = ()) -> List[Dict]:
    """TXT records an operator should publish for domain."""
    domain = domain.strip().lower().rstrip(".")
    spf = build_spf_record(spf_policy) if spf_policy else "v=spf1 mx ~all"
    if dmarc_policy is None:
        dmarc_policy = DmarcPolicy(domain=domain, policy=PolicyAction.QUARANTINE,
                                   aggregate_report_uri=f"mailto:dmarc@{domain}")
    suggestions = [
        {"type": "TXT", "name": domain, "value": spf, "purpose": "SPF"},
        {"type": "TXT", "name": dmarc_record_name(domain), "value": build_dmarc_record(dmarc_policy),
         "purpose": "DMARC"},
    ]
    for config in dkim_configs:
        if config.status is KeyStatus.REVOKED or not config.public_key:
            continue
        suggestions.append({"type": "TXT", "name": keys.dns_record_name(config.selector, domain),
                            "value": dkim_record_for(config), "purpose": "DKIM"})
    if not any(s["purpose"] == "DKIM" for s in suggestions):
        suggestions.append({"type": "TXT", "name": keys.dns_record_name("default", domain),
                            "value": "v=DKIM1; k=rsa; p=<public_key>", "purpose": "DKIM"})
    return suggestions


def human_report(result: Dict) -> str:
    lines = []
    d = result
    lines.append(f"Email authentication report for: {d['domain']}")
    lines.append(f"Checked at (UTC): {d['time_utc']}")
    lines.append("-" * 60)
    lines.append("SPF:")
    if not d["spf"]["records"]:
        lines.append("  - No SPF TXT record found.")
    else:
        for i, r in enumerate(d["spf"]["records"], 1):
            lines.append(f"  - Record #{i}: {r}")
        lines.append(f"  - DNS lookups needed: {d['spf']['estimated_dns_lookup_count']}")
        for e in d["spf"]["errors"]:
            lines.append(f"    ! error: {e}")
        for pd in d["spf"]["details"]:
            if pd.get("all_mechanism"):
                lines.append(f"  - SPF 'all' mechanism: {pd['all_mechanism']}")
    if d["spf"].get("expected"):
        lines.append(f"  - Expected: {d['spf']['expected']}")
    lines.append("")
    lines.append("DMARC:")
    if not d["dmarc"]["raw"]:
        lines.append("  - No DMARC record (no _dmarc.domain TXT).")
    else:
        lines.append(f"  - DMARC record at {d['dmarc']['record_domain']}: {d['dmarc']['raw']}")
        for k, v in d["dmarc"]["tags"].items():
            lines.append(f"    - {k} = {v}")
    if d["dmarc"].get("expected"):
        lines.append(f"  - Expected: {d['dmarc']['expected']}")
    lines.append("")
    lines.append("DKIM:")
    if not d["dkim"]["found_selectors"]:
        lines.append(f"  - No DKIM selectors found among {len(d['dkim']['checked_selectors'])} checked.")
    else:
        for info in d["dkim"]["found_selectors"]:
            lines.append(f"  - Selector: {info['selector']} (DNS name: {info['name']})")
            if info.get("key_bits"):
                lines.append(f"    - key bits: {info['key_bits']}")
            if info.get("key_type"):
                lines.append(f"    - key type: {info['key_type']}")
            if info.get("fingerprint"):
                lines.append(f"    - fingerprint: {info['fingerprint']}")
            lines.append(f"    - raw TXT (first 200 chars): {(info.get('raw') or '')[:200]}")
    for entry in d["dkim"]["configured"]:
        state = "matches" if entry["matches"] else ("differs" if entry["published"] else "not published")
        lines.append(f"  - Configured selector {entry['selector']} ({entry['status']}): {state}, "
                     f"strength {entry['strength']['score']}/100")
    lines.append("")
    lines.append("Summary & score:")
    lines.append(f"  - Score (0-100): {d['conclusions']['score']}")
    for r in d["conclusions"]["reasons"]:
        lines.append(f"    - {r}")
    lines.append("-" * 60)
    lines.append(f"Elapsed time: {d.get('elapsed_seconds', '?')}s")
    return "\n".join(lines)


def verdict_report(verdict: CompositeVerdict) -> str:
    lines = [f"Authentication results for mail from {verdict.from_domain or '?'} via {verdict.connecting_ip}"]
    lines.append("-" * 60)
    for result in (verdict.spf, verdict.dkim, verdict.dmarc):
        domain = f" ({result.evaluated_domain})" if result.evaluated_domain else ""
        lines.append(f"{result.protocol.value.upper():6}{result.verdict.value}{domain}")
        if result.reason:
            lines.append(f"      {result.reason}")
    lines.append("-" * 60)
    lines.append(f"Authenticated: {'yes' if verdict.authenticated else 'no'}")
    lines.append(f"Recommended disposition: {verdict.disposition.value}")
    return "\n".join(lines)
