"""DKIM key material: generation, DNS formatting, fingerprints and a key store."""
import base64
import hashlib
import logging
import re
import threading
from datetime import datetime, timedelta
from typing import Dict, List, NamedTuple, Optional, Protocol, Tuple

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from .dns_utils import dkim_record_name
from .errors import ConfigError, CryptoError, KeyGenFailed
from .models import DkimKeyConfig, KeyStatus, utcnow

logger = logging.getLogger(__name__)

MIN_KEY_SIZE = 1024
RECOMMENDED_KEY_SIZE = 2048
MAX_KEY_AGE = timedelta(days=365)

_PEM_LINE_RE = re.compile(r"-----(BEGIN|END) [A-Z ]+-----")


class KeyPair(NamedTuple):
    private_key: str
    public_key: str


def generate(key_size: int = RECOMMENDED_KEY_SIZE) -> KeyPair:
    """Generate an RSA key pair for DKIM signing.

    Returns (private_pem, public_pem) as strings.
    """
    if key_size < MIN_KEY_SIZE:
        raise KeyGenFailed(f"key size {key_size} is below the {MIN_KEY_SIZE}-bit minimum")
    try:
        private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    except (ValueError, UnsupportedAlgorithm) as e:
        raise KeyGenFailed(f"cannot generate {key_size}-bit RSA key: {e}") from e
    private_pem = private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return KeyPair(private_pem, public_pem)


def format_for_dns(public_key: str) -> str:
    """Extract raw base64 key data from PEM."""
    return re.sub(r"\s+", "", _PEM_LINE_RE.sub("", public_key))


def load_private_key(private_pem: str) -> rsa.RSAPrivateKey:
    try:
        key = serialization.load_pem_private_key(private_pem.encode(), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise CryptoError(f"unusable private key: {e}") from e
    if not isinstance(key, rsa.RSAPrivateKey):
        raise CryptoError("private key is not an RSA key")
    return key


def load_public_key(key_data: str) -> rsa.RSAPublicKey:
    """Load a public key from PEM or from the bare base64 found in p=."""
    if "-----BEGIN" in key_data:
        try:
            key = serialization.load_pem_public_key(key_data.encode())
        except (ValueError, UnsupportedAlgorithm) as e:
            raise CryptoError(f"unusable public key: {e}") from e
    else:
        try:
            der = base64.b64decode(format_for_dns(key_data), validate=True)
        except ValueError as e:
            raise CryptoError(f"public key is not valid base64: {e}") from e
        try:
            key = serialization.load_der_public_key(der)
        except (ValueError, UnsupportedAlgorithm):
            # some publishers put a bare PKCS#1 RSAPublicKey in p=
            pem = ("-----BEGIN RSA PUBLIC KEY-----\n" + base64.encodebytes(der).decode()
                   + "-----END RSA PUBLIC KEY-----\n")
            try:
                key = serialization.load_pem_public_key(pem.encode())
            except (ValueError, UnsupportedAlgorithm) as e:
                raise CryptoError(f"unusable public key: {e}") from e
    if not isinstance(key, rsa.RSAPublicKey):
        raise CryptoError("public key is not an RSA key")
    return key


def key_bits(public_key: str) -> int:
    return load_public_key(public_key).key_size


def fingerprint(public_key: str) -> str:
    """Base64 SHA-256 over the DER SubjectPublicKeyInfo."""
    der = load_public_key(public_key).public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return base64.b64encode(hashlib.sha256(der).digest()).decode()


def dns_record_name(selector: str, domain: str) -> str:
    return dkim_record_name(selector.lower(), domain.lower().rstrip("."))


def generate_selector(now: Optional[datetime] = None) -> str:
    timestamp = str(int((now or utcnow()).timestamp()))
    return "default" + timestamp[-6:]


def check_key_strength(config: DkimKeyConfig, now: Optional[datetime] = None) -> Dict:
    """Score a configured key and list what should be fixed."""
    now = now or utcnow()
    issues: List[str] = []
    recommendations: List[str] = []

    bits = config.key_size
    if config.public_key:
        try:
            bits = key_bits(config.public_key)
        except CryptoError as e:
            issues.append(f"Public key cannot be loaded: {e}")
            recommendations.append("Regenerate the key pair.")
    if bits < RECOMMENDED_KEY_SIZE:
        issues.append(f"Key is {bits} bits; {RECOMMENDED_KEY_SIZE} or more is recommended.")
        recommendations.append("Rotate to a 2048-bit or 4096-bit key.")
    if now - config.created_at > MAX_KEY_AGE:
        issues.append("Key has been in use for more than a year.")
        recommendations.append("Configure a rotation interval.")
    if config.status is KeyStatus.REVOKED or not config.enabled:
        issues.append("Key is not usable for signing.")

    score = 100 - 20 * len(issues)
    if bits < RECOMMENDED_KEY_SIZE:
        score -= 30
    return {
        "domain": config.domain,
        "selector": config.selector,
        "key_bits": bits,
        "algorithm": config.algorithm,
        "issues": issues,
        "recommendations": recommendations,
        "score": max(0, score),
    }


class KeyStore(Protocol):
    def load_private_key(self, domain: str, selector: str) -> Optional[str]: ...

    def store_key_pair(self, config: DkimKeyConfig) -> None: ...

    def get(self, domain: str, selector: str) -> Optional[DkimKeyConfig]: ...

    def active_key(self, domain: str) -> Optional[DkimKeyConfig]: ...


class InMemoryKeyStore:
    """Key store keyed by (domain, selector).

    Readers never lock: entries are frozen models replaced wholesale, so a
    signer sees either the old key or the new one, never a partial write.
    """

    def __init__(self, configs: Tuple[DkimKeyConfig, ...] = ()):
        self._keys: Dict[Tuple[str, str], DkimKeyConfig] = {}
        self._write_lock = threading.Lock()
        for config in configs:
            self.store_key_pair(config)

    def store_key_pair(self, config: DkimKeyConfig) -> None:
        key = (config.domain, config.selector)
        with self._write_lock:
            existing = self._keys.get(key)
            if existing is not None and existing.status is not KeyStatus.REVOKED:
                raise ConfigError(f"selector {config.selector!r} already in use for {config.domain}")
            self._keys[key] = config

    def get(self, domain: str, selector: str) -> Optional[DkimKeyConfig]:
        return self._keys.get((domain.lower(), selector.lower()))

    def load_private_key(self, domain: str, selector: str) -> Optional[str]:
        config = self.get(domain, selector)
        return config.private_key if config else None

    def keys_for(self, domain: str) -> List[DkimKeyConfig]:
        domain = domain.lower()
        return sorted((c for c in list(self._keys.values()) if c.domain == domain), key=lambda c: c.created_at)

    def active_key(self, domain: str) -> Optional[DkimKeyConfig]:
        active = [c for c in self.keys_for(domain) if c.status is KeyStatus.ACTIVE and c.enabled]
        return active[-1] if active else None

    def create(self, domain: str, selector: Optional[str] = None, key_size: int = RECOMMENDED_KEY_SIZE,
               **options) -> DkimKeyConfig:
        pair = generate(key_size)
        config = DkimKeyConfig(
            domain=domain,
            selector=selector or self._free_selector(domain, utcnow()),
            key_size=key_size,
            private_key=pair.private_key,
            public_key=pair.public_key,
            **options,
        )
        self.store_key_pair(config)
        logger.info("DKIM key generated: domain=%s selector=%s bits=%d", config.domain, config.selector, key_size)
        return config

    def rotate(self, domain: str, key_size: Optional[int] = None, now: Optional[datetime] = None) -> DkimKeyConfig:
        """Publish-first rotation: add a new selector, mark the old one Rotating."""
        current = self.active_key(domain)
        if current is None:
            raise ConfigError(f"no active DKIM key for {domain}")
        now = now or utcnow()
        pair = generate(key_size or current.key_size)
        with self._write_lock:
            new = current.model_copy(update={
                "selector": self._free_selector(current.domain, now),
                "key_size": key_size or current.key_size,
                "private_key": pair.private_key,
                "public_key": pair.public_key,
                "status": KeyStatus.ACTIVE,
                "created_at": now,
            })
            self._keys[(new.domain, new.selector)] = new
            self._keys[(current.domain, current.selector)] = current.model_copy(update={"status": KeyStatus.ROTATING})
        logger.info("DKIM key rotated: domain=%s old_selector=%s new_selector=%s",
                    current.domain, current.selector, new.selector)
        return new

    def retire(self, domain: str, selector: str) -> DkimKeyConfig:
        """Revoke a selector once the replacement key has propagated."""
        with self._write_lock:
            config = self._keys.get((domain.lower(), selector.lower()))
            if config is None:
                raise ConfigError(f"no DKIM key {selector!r} for {domain}")
            retired = config.model_copy(update={"status": KeyStatus.REVOKED})
            self._keys[(retired.domain, retired.selector)] = retired
        logger.info("DKIM key retired: domain=%s selector=%s", retired.domain, retired.selector)
        return retired

    def keys_due_for_rotation(self, now: Optional[datetime] = None) -> List[DkimKeyConfig]:
        now = now or utcnow()
        return [
            c for c in list(self._keys.values())
            if c.status is KeyStatus.ACTIVE and c.rotation_interval_days
            and c.created_at + timedelta(days=c.rotation_interval_days) <= now
        ]

    def _free_selector(self, domain: str, now: datetime) -> str:
        base = generate_selector(now)
        selector, n = base, 1
        while (domain.lower(), selector) in self._keys:
            selector = f"{base}-{n}"
            n += 1
        return selector
