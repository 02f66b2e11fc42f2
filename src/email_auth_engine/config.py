import logging
from functools import lru_cache
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# ---------- Protocol constants ----------
SPF_DNS_LOOKUP_LIMIT = 10
SPF_MAX_MX_HOSTS = 10
DEFAULT_SIGNED_HEADERS = ["from", "to", "subject", "date"]
DMARC_DEFAULT_PCT = 100
DMARC_DEFAULT_REPORT_INTERVAL = 86400
# ----------------------------------------


class Settings(BaseSettings):
    """Engine settings, read from EMAIL_AUTH_* environment variables."""

    dns_timeout: float = Field(default=5.0, gt=0, description="Per-query DNS lifetime in seconds")
    nameservers: List[str] = Field(default_factory=list, description="Empty means system resolv.conf")
    spf_lookup_limit: int = Field(default=SPF_DNS_LOOKUP_LIMIT, ge=1, le=SPF_DNS_LOOKUP_LIMIT)
    dns_cache_size: int = Field(default=1024, ge=0)
    dns_cache_ttl: float = Field(default=300.0, ge=0)
    dkim_key_size: int = Field(default=2048, ge=1024)
    dkim_signed_headers: List[str] = Field(default_factory=lambda: list(DEFAULT_SIGNED_HEADERS))
    max_dkim_signatures: int = Field(default=5, ge=1)
    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="EMAIL_AUTH_", case_sensitive=False)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
