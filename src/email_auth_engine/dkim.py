"""DKIM (RFC 6376) key records, canonicalization, signing and verification.

Signing is best-effort: a missing, disabled or broken key leaves the
message untouched. Verification always ends in an AuthResult; errors are
mapped to verdicts at the boundary of ``DkimVerifier``.
"""
import base64
import hashlib
import logging
import re
import time
from typing import Dict, List, Optional, Sequence, Tuple

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding

from . import keys
from .config import Settings, get_settings
from .dns_utils import Resolver, dkim_record_name
from .errors import CryptoError, EngineError, MalformedRecord, ProtocolError
from .message import Header, address_domain, first_header, split_message, to_crlf
from .models import (
    AuthResult, Canonicalization, DkimKeyConfig, DkimKeyRecord, DkimSignature, KeyStatus, Protocol, Verdict,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "DKIM-Signature"
SUPPORTED_ALGORITHM = "rsa-sha256"

_WSP_RUN_RE = re.compile(rb"[ \t]+")
_TRAILING_WSP_RE = re.compile(rb"[ \t]+(?=\r\n|\Z)")
_UNFOLD_RE = re.compile(rb"\r\n")
_BTAG_RE = re.compile(rb"(^|;)(\s*b\s*=)[^;]*")
_TAG_NAME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")


# ---------- Key records ----------

def build_dkim_record(public_key: str, test_mode: bool = False, service: Optional[str] = None,
                      key_type: str = "rsa") -> str:
    parts = ["v=DKIM1", f"k={key_type}"]
    if test_mode:
        parts.append("t=y")
    if service:
        parts.append(f"s={service}")
    parts.append(f"p={keys.format_for_dns(public_key)}")
    return "; ".join(parts)


def dkim_record_for(config: DkimKeyConfig) -> str:
    if not config.public_key:
        raise MalformedRecord(f"no public key configured for {config.selector}._domainkey.{config.domain}")
    return build_dkim_record(config.public_key, test_mode=config.test_mode)


def parse_tag_list(text: str) -> Dict[str, str]:
    """Split a tag=value list on ';'; duplicate or nameless tags are malformed."""
    tags: Dict[str, str] = {}
    for segment in text.split(";"):
        segment = segment.strip()
        if not segment:
            continue
        if "=" not in segment:
            raise MalformedRecord(f"tag without value: {segment!r}")
        name, value = segment.split("=", 1)
        name = name.strip()
        if not _TAG_NAME_RE.match(name):
            raise MalformedRecord(f"invalid tag name {name!r}")
        if name in tags:
            raise MalformedRecord(f"duplicate tag {name}=")
        tags[name] = value.strip()
    return tags


def _no_ws(value: str) -> str:
    return re.sub(r"\s+", "", value)


def parse_dkim_record(text: str) -> DkimKeyRecord:
    tags = parse_tag_list(text)
    if tags.get("v") != "DKIM1":
        raise MalformedRecord("DKIM key record must carry v=DKIM1")
    if "p" not in tags:
        raise MalformedRecord("DKIM key record has no p= tag")
    hash_algorithms = tags.get("h")
    return DkimKeyRecord(
        version=tags["v"],
        key_type=tags.get("k", "rsa").lower(),
        public_key=_no_ws(tags["p"]),
        flags=[f.strip().lower() for f in tags.get("t", "").split(":") if f.strip()],
        service_type=tags.get("s"),
        hash_algorithms=[h.strip().lower() for h in hash_algorithms.split(":")] if hash_algorithms else None,
        notes=tags.get("n"),
    )


# ---------- Signature header ----------

def _canonicalization(value: str) -> Tuple[Canonicalization, Canonicalization]:
    header, _, body = value.lower().partition("/")
    try:
        return Canonicalization(header), Canonicalization(body or "simple")
    except ValueError as e:
        raise MalformedRecord(f"unknown canonicalization c={value}") from e


def _int_tag(tags: Dict[str, str], name: str) -> Optional[int]:
    if name not in tags:
        return None
    try:
        return int(tags[name])
    except ValueError as e:
        raise MalformedRecord(f"{name}= is not a number") from e


def parse_signature(value: str) -> DkimSignature:
    tags = parse_tag_list(value)
    for required in ("v", "a", "b", "bh", "d", "h", "s"):
        if required not in tags:
            raise MalformedRecord(f"DKIM-Signature missing {required}=")
    if tags["v"] != "1":
        raise MalformedRecord(f"unsupported DKIM-Signature version v={tags['v']}")
    domain = tags["d"].lower().rstrip(".")
    identity = tags.get("i")
    if identity is not None:
        idomain = identity.rsplit("@", 1)[-1].lower()
        if idomain != domain and not idomain.endswith("." + domain):
            raise MalformedRecord(f"i={identity} is not within d={domain}")
    return DkimSignature(
        tags=tags,
        version=tags["v"],
        algorithm=tags["a"].lower(),
        domain=domain,
        selector=tags["s"].lower(),
        canonicalization=_canonicalization(tags.get("c", "simple/simple")),
        signed_headers=[h.strip().lower() for h in _no_ws(tags["h"]).split(":") if h.strip()],
        body_hash=_no_ws(tags["bh"]),
        signature=_no_ws(tags["b"]),
        timestamp=_int_tag(tags, "t"),
        expiration=_int_tag(tags, "x"),
        identity=identity,
        body_length=_int_tag(tags, "l"),
    )


# ---------- Canonicalization ----------

def canonicalize_header(name: bytes, value: bytes, mode: Canonicalization) -> bytes:
    if mode is Canonicalization.SIMPLE:
        return name + b":" + value
    value = _UNFOLD_RE.sub(b"", value)
    value = _WSP_RUN_RE.sub(b" ", value).strip(b" \t")
    return name.strip().lower() + b":" + value + b"\r\n"


def canonicalize_body(body: bytes, mode: Canonicalization) -> bytes:
    if mode is Canonicalization.RELAXED:
        body = _TRAILING_WSP_RE.sub(b"", body)
        body = _WSP_RUN_RE.sub(b" ", body)
        while body.endswith(b"\r\n"):
            body = body[:-2]
        return body + b"\r\n" if body else b""
    while body.endswith(b"\r\n\r\n"):
        body = body[:-2]
    if not body.endswith(b"\r\n"):
        body += b"\r\n"
    return body


def body_hash(body: bytes, mode: Canonicalization, length: Optional[int] = None) -> str:
    canonical = canonicalize_body(body, mode)
    if length is not None:
        if length > len(canonical):
            raise CryptoError(f"l={length} exceeds the body length {len(canonical)}")
        canonical = canonical[:length]
    return base64.b64encode(hashlib.sha256(canonical).digest()).decode()


def select_headers(headers: Sequence[Header], names: Sequence[str]) -> List[Header]:
    """Pick headers for h=, taking repeated names from the bottom up."""
    selected: List[Header] = []
    last_index: Dict[str, int] = {}
    for name in names:
        i = last_index.get(name, len(headers))
        while i > 0:
            i -= 1
            if headers[i][0].strip().lower().decode() == name:
                selected.append(headers[i])
                break
        last_index[name] = i
    return selected


def signature_base(headers: Sequence[Header], signed_headers: Sequence[str], sig_name: bytes, sig_value: bytes,
                   mode: Canonicalization) -> bytes:
    """Data covered by b=: the selected headers, then the signature header with b= emptied."""
    base = b"".join(canonicalize_header(n, v, mode) for n, v in select_headers(headers, signed_headers))
    unsigned = _BTAG_RE.sub(rb"\1\2", sig_value, count=1)
    return base + canonicalize_header(sig_name, unsigned, mode).rstrip()


# ---------- Signer ----------

class DkimSigner:
    def __init__(self, key_store: keys.KeyStore, settings: Optional[Settings] = None):
        self.key_store = key_store
        self.settings = settings or get_settings()

    def _key_for(self, domain: str, selector: Optional[str]) -> Optional[DkimKeyConfig]:
        if selector:
            return self.key_store.get(domain, selector)
        return self.key_store.active_key(domain)

    def signature_header(self, message: bytes, config: DkimKeyConfig, now: Optional[float] = None) -> bytes:
        """Build the complete DKIM-Signature header line (with CRLF) for message."""
        headers, body = split_message(message)
        header_mode, body_mode = config.canonicalization
        private_key = keys.load_private_key(config.private_key or "")

        tags = [
            ("v", "1"),
            ("a", SUPPORTED_ALGORITHM),
            ("c", config.c_value),
            ("d", config.domain),
            ("s", config.selector),
            ("t", str(int(now if now is not None else time.time()))),
            ("h", ":".join(config.signed_headers)),
            ("bh", body_hash(body, body_mode)),
            ("b", ""),
        ]
        value = (" " + "; ".join(f"{k}={v}" for k, v in tags)).encode()
        base = signature_base(headers, config.signed_headers, SIGNATURE_HEADER.encode(), value, header_mode)
        try:
            signature = private_key.sign(base, padding.PKCS1v15(), hashes.SHA256())
        except ValueError as e:
            raise CryptoError(f"signing failed: {e}") from e
        return SIGNATURE_HEADER.encode() + b":" + value + base64.b64encode(signature) + b"\r\n"

    def sign(self, message: bytes, domain: Optional[str] = None, selector: Optional[str] = None,
             now: Optional[float] = None) -> bytes:
        """Return message with a DKIM-Signature prepended, or unchanged if it cannot be signed."""
        try:
            if domain is None:
                headers, _ = split_message(message)
                domain = address_domain(first_header(headers, "From"))
            if not domain:
                logger.warning("DKIM signing skipped: no From domain")
                return message
            config = self._key_for(domain.lower(), selector)
            if config is None or not config.enabled or config.status is not KeyStatus.ACTIVE or not config.private_key:
                logger.info("DKIM signing skipped: no active key for %s", domain)
                return message
            normalized = to_crlf(message)
            header = self.signature_header(normalized, config, now)
        except (CryptoError, ProtocolError) as e:
            logger.warning("DKIM signing failed for %s: %s", domain, e)
            return message
        logger.debug("DKIM signed for d=%s s=%s", config.domain, config.selector)
        return header + normalized


# ---------- Verifier ----------

class DkimVerifier:
    def __init__(self, resolver: Resolver, settings: Optional[Settings] = None):
        self.resolver = resolver
        self.settings = settings or get_settings()

    async def fetch_key(self, domain: str, selector: str) -> DkimKeyRecord:
        name = dkim_record_name(selector, domain)
        txts = await self.resolver.query_txt(name)
        if not txts:
            raise MalformedRecord(f"no DKIM key published at {name}")
        text = next((t for t in txts if "p=" in t), txts[0])
        return parse_dkim_record(text)

    async def verify_all(self, message: bytes, now: Optional[float] = None) -> List[AuthResult]:
        try:
            headers, body = split_message(message)
        except ProtocolError as e:
            return [self._result(Verdict.PERMERROR, None, f"unparseable message: {e}")]
        signatures = [(n, v) for n, v in headers if n.strip().lower() == b"dkim-signature"]
        if not signatures:
            return [self._result(Verdict.NONE, None, "message carries no DKIM-Signature")]
        limit = self.settings.max_dkim_signatures
        if len(signatures) > limit:
            logger.info("verifying only the first %d of %d DKIM signatures", limit, len(signatures))
        return [await self._verify_one(n, v, headers, body, now) for n, v in signatures[:limit]]

    async def verify(self, message: bytes, from_domain: Optional[str] = None,
                     now: Optional[float] = None) -> AuthResult:
        """Verify every signature; prefer a pass aligned with from_domain, then any pass."""
        results = await self.verify_all(message, now)
        passed = [r for r in results if r.passed]
        if from_domain and passed:
            from_domain = from_domain.lower()
            for r in passed:
                d = r.evaluated_domain or ""
                if d == from_domain or from_domain.endswith("." + d) or d.endswith("." + from_domain):
                    return r
        return passed[0] if passed else results[0]

    def _result(self, verdict: Verdict, domain: Optional[str], reason: str) -> AuthResult:
        return AuthResult(protocol=Protocol.DKIM, verdict=verdict, evaluated_domain=domain, reason=reason)

    async def _verify_one(self, sig_name: bytes, sig_value: bytes, headers: List[Header], body: bytes,
                          now: Optional[float]) -> AuthResult:
        domain = None
        try:
            sig = parse_signature(sig_value.decode("ascii", errors="replace"))
            domain = sig.domain
            if sig.algorithm != SUPPORTED_ALGORITHM:
                raise ProtocolError(f"unsupported algorithm a={sig.algorithm}")
            if "from" not in sig.signed_headers:
                raise ProtocolError("h= does not cover the From header")
            now = now if now is not None else time.time()
            if sig.expiration is not None and sig.expiration < now:
                return self._result(Verdict.FAIL, domain, f"signature expired at {sig.expiration}")

            record = await self.fetch_key(sig.domain, sig.selector)
            if record.revoked:
                raise ProtocolError(f"key {sig.selector}._domainkey.{sig.domain} has been revoked")
            if record.key_type != "rsa":
                raise ProtocolError(f"unsupported key type k={record.key_type}")
            if record.hash_algorithms and "sha256" not in record.hash_algorithms:
                raise ProtocolError("key record does not permit sha256")
            if record.service_type and not {"*", "email"} & set(record.service_type.lower().split(":")):
                raise ProtocolError(f"key record is not for email (s={record.service_type})")
            try:
                public_key = keys.load_public_key(record.public_key)
            except CryptoError as e:
                raise MalformedRecord(str(e)) from e
            if public_key.key_size < keys.MIN_KEY_SIZE:
                raise ProtocolError(f"{public_key.key_size}-bit key is too short")

            header_mode, body_mode = sig.canonicalization
            if body_hash(body, body_mode, sig.body_length) != sig.body_hash:
                return self._result(Verdict.FAIL, domain, "body hash mismatch")

            try:
                signature = base64.b64decode(sig.signature, validate=True)
            except ValueError as e:
                raise MalformedRecord("b= is not valid base64") from e
            base = signature_base(headers, sig.signed_headers, sig_name, sig_value, header_mode)
            try:
                public_key.verify(signature, base, padding.PKCS1v15(), hashes.SHA256())
            except InvalidSignature:
                return self._result(Verdict.FAIL, domain, "signature did not verify")
        except EngineError as e:
            logger.warning("DKIM %s for d=%s: %s", e.verdict.value, domain, e)
            return self._result(e.verdict, domain, str(e))

        reason = f"signature verified with {sig.selector}._domainkey.{sig.domain}"
        if record.test_mode:
            reason += " (key in test mode)"
        logger.info("DKIM pass for d=%s s=%s", sig.domain, sig.selector)
        return self._result(Verdict.PASS, domain, reason)
