import threading
from typing import Dict

from .models import DmarcPolicy


class _Counter:
    __slots__ = ("lock", "total", "passed", "failed")

    def __init__(self, total: int = 0, passed: int = 0, failed: int = 0):
        self.lock = threading.Lock()
        self.total = total
        self.passed = passed
        self.failed = failed


class DmarcCounters:
    """Per-domain DMARC evaluation counters.

    Each domain has its own lock held only for the increment, so concurrent
    evaluations for different domains never contend and none are lost for
    the same domain.
    """

    def __init__(self):
        self._counters: Dict[str, _Counter] = {}
        self._registry_lock = threading.Lock()

    def _counter(self, domain: str) -> _Counter:
        domain = domain.lower()
        counter = self._counters.get(domain)
        if counter is None:
            with self._registry_lock:
                counter = self._counters.setdefault(domain, _Counter())
        return counter

    def seed(self, policy: DmarcPolicy) -> None:
        """Start a domain's counters from persisted policy totals."""
        with self._registry_lock:
            self._counters[policy.domain.lower()] = _Counter(
                policy.total_messages, policy.passed_messages, policy.failed_messages
            )

    def increment(self, domain: str, passed: bool) -> None:
        counter = self._counter(domain)
        with counter.lock:
            counter.total += 1
            if passed:
                counter.passed += 1
            else:
                counter.failed += 1

    def snapshot(self, domain: str) -> Dict:
        counter = self._counter(domain)
        with counter.lock:
            total, passed, failed = counter.total, counter.passed, counter.failed
        pass_rate = round(passed / total * 100, 2) if total else 0.0
        return {
            "domain": domain.lower(),
            "total_messages": total,
            "passed_messages": passed,
            "failed_messages": failed,
            "pass_rate": pass_rate,
        }

    def apply_to(self, policy: DmarcPolicy) -> DmarcPolicy:
        """Return a copy of policy carrying the current counter values."""
        snap = self.snapshot(policy.domain)
        return policy.model_copy(update={
            "total_messages": snap["total_messages"],
            "passed_messages": snap["passed_messages"],
            "failed_messages": snap["failed_messages"],
        })
