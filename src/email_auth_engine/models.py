from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .config import DEFAULT_SIGNED_HEADERS, DMARC_DEFAULT_PCT, DMARC_DEFAULT_REPORT_INTERVAL, SPF_DNS_LOOKUP_LIMIT


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Protocol(str, Enum):
    SPF = "spf"
    DKIM = "dkim"
    DMARC = "dmarc"


class Verdict(str, Enum):
    PASS = "pass"
    FAIL = "fail"
    SOFTFAIL = "softfail"
    NEUTRAL = "neutral"
    NONE = "none"
    TEMPERROR = "temperror"
    PERMERROR = "permerror"


class Qualifier(str, Enum):
    PASS = "+"
    FAIL = "-"
    SOFTFAIL = "~"
    NEUTRAL = "?"

    @property
    def verdict(self) -> Verdict:
        return {
            Qualifier.PASS: Verdict.PASS,
            Qualifier.FAIL: Verdict.FAIL,
            Qualifier.SOFTFAIL: Verdict.SOFTFAIL,
            Qualifier.NEUTRAL: Verdict.NEUTRAL,
        }[self]


class MechanismKind(str, Enum):
    # declaration order used when rendering a record
    IP4 = "ip4"
    IP6 = "ip6"
    A = "a"
    MX = "mx"
    INCLUDE = "include"

    @property
    def needs_lookup(self) -> bool:
        return self in (MechanismKind.A, MechanismKind.MX, MechanismKind.INCLUDE)


MECHANISM_ORDER = {kind: i for i, kind in enumerate(MechanismKind)}


class Canonicalization(str, Enum):
    RELAXED = "relaxed"
    SIMPLE = "simple"


class KeyStatus(str, Enum):
    ACTIVE = "active"
    ROTATING = "rotating"
    REVOKED = "revoked"


class PolicyAction(str, Enum):
    NONE = "none"
    QUARANTINE = "quarantine"
    REJECT = "reject"


class AlignmentMode(str, Enum):
    RELAXED = "r"
    STRICT = "s"


# ---------- Configuration (read-only engine inputs) ----------

class DkimKeyConfig(BaseModel):
    """Signing key for one (domain, selector) pair.

    Frozen: rotation installs a new object instead of mutating this one.
    """

    model_config = ConfigDict(frozen=True)

    domain: str
    selector: str
    algorithm: str = "rsa-sha256"
    canonicalization: Tuple[Canonicalization, Canonicalization] = (Canonicalization.RELAXED, Canonicalization.RELAXED)
    signed_headers: Tuple[str, ...] = tuple(DEFAULT_SIGNED_HEADERS)
    key_size: int = Field(default=2048, ge=1024)
    private_key: Optional[str] = None
    public_key: Optional[str] = None
    test_mode: bool = False
    rotation_interval_days: Optional[int] = Field(default=None, ge=1)
    status: KeyStatus = KeyStatus.ACTIVE
    enabled: bool = True
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("domain", "selector")
    @classmethod
    def _lower(cls, v: str) -> str:
        v = v.strip().lower().rstrip(".")
        if not v:
            raise ValueError("must not be empty")
        return v

    @field_validator("signed_headers", mode="before")
    @classmethod
    def _headers(cls, v):
        if isinstance(v, str):
            v = v.split(",") if "," in v else v.split(":")
        seen: List[str] = []
        for name in v:
            name = name.strip().lower()
            if name and name not in seen:
                seen.append(name)
        if "from" not in seen:
            raise ValueError("the From header must be signed")
        return tuple(seen)

    @property
    def c_value(self) -> str:
        return f"{self.canonicalization[0].value}/{self.canonicalization[1].value}"


class SpfMechanism(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: MechanismKind
    qualifier: Qualifier = Qualifier.PASS
    target: Optional[str] = None

    def render(self) -> str:
        prefix = "" if self.qualifier is Qualifier.PASS else self.qualifier.value
        if self.target is None:
            return f"{prefix}{self.kind.value}"
        # a/24 and mx//64 carry only a cidr suffix
        sep = "" if self.target.startswith("/") else ":"
        return f"{prefix}{self.kind.value}{sep}{self.target}"


class SpfPolicy(BaseModel):
    domain: str
    mechanisms: List[SpfMechanism] = Field(default_factory=list)
    redirect: Optional[str] = None
    explanation: Optional[str] = None
    all_qualifier: Qualifier = Qualifier.SOFTFAIL
    dns_lookup_budget: int = Field(default=SPF_DNS_LOOKUP_LIMIT, ge=1, le=SPF_DNS_LOOKUP_LIMIT)


class DmarcPolicy(BaseModel):
    domain: str
    policy: PolicyAction = PolicyAction.NONE
    subdomain_policy: Optional[PolicyAction] = None
    dkim_alignment: AlignmentMode = AlignmentMode.RELAXED
    spf_alignment: AlignmentMode = AlignmentMode.RELAXED
    percentage: int = Field(default=DMARC_DEFAULT_PCT, ge=0, le=100)
    aggregate_report_uri: Optional[str] = None
    failure_report_uri: Optional[str] = None
    report_format: Optional[str] = None
    report_interval: int = Field(default=DMARC_DEFAULT_REPORT_INTERVAL, ge=0)
    failure_options: Optional[str] = None
    total_messages: int = 0
    passed_messages: int = 0
    failed_messages: int = 0


# ---------- Parsed records ----------

class SpfRecord(BaseModel):
    raw: str
    mechanisms: List[SpfMechanism] = Field(default_factory=list)
    redirect: Optional[str] = None
    explanation: Optional[str] = None
    all_qualifier: Optional[Qualifier] = None
    unknown: List[str] = Field(default_factory=list)

    @property
    def lookup_terms(self) -> int:
        return sum(1 for m in self.mechanisms if m.kind.needs_lookup) + (1 if self.redirect else 0)


class DkimKeyRecord(BaseModel):
    version: str = "DKIM1"
    key_type: str = "rsa"
    public_key: str
    flags: List[str] = Field(default_factory=list)
    service_type: Optional[str] = None
    hash_algorithms: Optional[List[str]] = None
    notes: Optional[str] = None

    @property
    def test_mode(self) -> bool:
        return "y" in self.flags

    @property
    def revoked(self) -> bool:
        return not self.public_key


class DkimSignature(BaseModel):
    tags: Dict[str, str]
    version: str
    algorithm: str
    domain: str
    selector: str
    canonicalization: Tuple[Canonicalization, Canonicalization]
    signed_headers: List[str]
    body_hash: str
    signature: str
    timestamp: Optional[int] = None
    expiration: Optional[int] = None
    identity: Optional[str] = None
    body_length: Optional[int] = None


class DmarcRecord(BaseModel):
    raw: str
    tags: Dict[str, str]
    policy: PolicyAction
    subdomain_policy: Optional[PolicyAction] = None
    dkim_alignment: AlignmentMode = AlignmentMode.RELAXED
    spf_alignment: AlignmentMode = AlignmentMode.RELAXED
    percentage: int = DMARC_DEFAULT_PCT
    aggregate_report_uri: Optional[str] = None
    failure_report_uri: Optional[str] = None
    report_format: Optional[str] = None
    report_interval: int = DMARC_DEFAULT_REPORT_INTERVAL
    failure_options: Optional[str] = None


# ---------- Per-message results ----------

class AuthResult(BaseModel):
    protocol: Protocol
    verdict: Verdict
    evaluated_domain: Optional[str] = None
    reason: str = ""
    evaluated_at: datetime = Field(default_factory=utcnow)

    @property
    def passed(self) -> bool:
        return self.verdict is Verdict.PASS


class DmarcOutcome(BaseModel):
    result: AuthResult
    disposition: PolicyAction = PolicyAction.NONE
    policy: Optional[PolicyAction] = None
    record_domain: Optional[str] = None
    spf_aligned: bool = False
    dkim_aligned: bool = False
    sampled_out: bool = False


class CompositeVerdict(BaseModel):
    spf: AuthResult
    dkim: AuthResult
    dmarc: AuthResult
    authenticated: bool
    disposition: PolicyAction = PolicyAction.NONE
    from_domain: Optional[str] = None
    mail_from: Optional[str] = None
    connecting_ip: Optional[str] = None
