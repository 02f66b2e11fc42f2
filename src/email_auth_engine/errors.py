"""Error taxonomy for the authentication engine.

Every error knows the verdict it maps to, so evaluators can turn any
failure into an AuthResult at their boundary::

    except EngineError as e:
        return AuthResult(protocol=..., verdict=e.verdict, reason=str(e))
"""

from .models import Verdict


class EngineError(Exception):
    verdict = Verdict.TEMPERROR


class ConfigError(EngineError):
    """No usable policy or key configured for a domain."""

    verdict = Verdict.NONE


class DnsError(EngineError):
    def __init__(self, name: str, message: str, temporary: bool = True):
        super().__init__(f"{name}: {message}")
        self.name = name
        self.temporary = temporary

    @property
    def verdict(self) -> Verdict:
        return Verdict.TEMPERROR if self.temporary else Verdict.PERMERROR


class DnsTimeout(DnsError):
    def __init__(self, name: str):
        super().__init__(name, "DNS query timed out", temporary=True)


class CryptoError(EngineError):
    verdict = Verdict.FAIL


class KeyGenFailed(CryptoError):
    pass


class ProtocolError(EngineError):
    verdict = Verdict.PERMERROR


class MalformedRecord(ProtocolError):
    pass


class LookupBudgetExceeded(ProtocolError):
    def __init__(self, budget: int):
        super().__init__(f"SPF DNS lookup budget of {budget} exceeded")
        self.budget = budget
