"""
Health aggregation: run the check registry concurrently and fold it into a HealthReport.
"""
import math
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Dict, List, Optional, Sequence

from .audit import AuditLogger
from .checks import Check, CheckRegistry
from .errors import CheckTimeoutError, HealthRunCancelled
from .models import CheckResult, HealthReport
from .utils import Clock, utc_now

POLL_INTERVAL = 0.05


def timeout_result(check: Check, error: CheckTimeoutError) -> CheckResult:
    return check.result(check.timeout_status, f"{check.name}: {error}")

def run_check(check: Check) -> CheckResult:
    """Run one check; a probe that raises degrades to a graded result instead."""
    try:
        result = check.run()
    except CheckTimeoutError as e:
        return timeout_result(check, e)
    except Exception as e:
        return check.result("fail", f"{check.name}: {type(e).__name__}: {e}")
    if not isinstance(result, CheckResult):
        return check.result("fail", f"{check.name}: check returned {type(result).__name__}, not a CheckResult")
    return result


class HealthAggregator:
    """
    Runs checks on a bounded worker pool with a per-check timeout.

    The timeout is measured from the moment a worker picks the check up, so a
    queue behind slow probes does not count against later checks. Hung probes
    keep their workers, so a check still waiting for a worker when the run
    budget (timeout times the number of worker rounds) runs out is graded as
    timed out too. No result short-circuits the others; cancellation discards
    everything collected so far.
    """

    def __init__(
        self,
        registry: CheckRegistry,
        timeout: float = 5.0,
        max_workers: int = 8,
        audit: Optional[AuditLogger] = None,
        clock: Clock = utc_now,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.registry = registry
        self.timeout = timeout
        self.max_workers = max_workers
        self.audit = audit
        self.clock = clock
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    def run(self, services: Optional[Sequence[str]] = None, scoped_only: bool = False) -> HealthReport:
        checks = self.registry.select(services, scoped_only=scoped_only)
        started_at = self.clock()
        results: List[Optional[CheckResult]] = [None] * len(checks)

        if checks:
            self._execute(checks, results)

        if self.cancel_event.is_set():
            raise HealthRunCancelled("Health run cancelled; partial results discarded.")

        report = HealthReport.from_results([r for r in results if r is not None], started_at, self.clock())
        if self.audit is not None:
            self.audit.log(
                "health_run",
                services=list(services or []),
                passed=report.passed,
                warned=report.warned,
                failed=report.failed,
                exit_code=report.exit_code,
            )
        return report

    def _execute(self, checks: List[Check], results: List[Optional[CheckResult]]) -> None:
        began: Dict[int, float] = {}

        def invoke(index: int, check: Check) -> CheckResult:
            began[index] = time.monotonic()
            return run_check(check)

        workers = max(1, min(self.max_workers, len(checks)))
        # Enough time for every check to get a worker if none of them hangs.
        budget = self.timeout * math.ceil(len(checks) / workers)
        executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="homestack-check")
        run_deadline = time.monotonic() + budget
        futures: Dict[Future, int] = {executor.submit(invoke, i, c): i for i, c in enumerate(checks)}
        pending = set(futures)
        try:
            while pending:
                if self.cancel_event.is_set():
                    return
                done, pending = wait(pending, timeout=POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for future in done:
                    results[futures[future]] = future.result()

                now = time.monotonic()
                for future in list(pending):
                    index = futures[future]
                    start = began.get(index)
                    if start is not None and now - start >= self.timeout:
                        error = CheckTimeoutError(f"no answer within {self.timeout:.1f}s")
                    elif start is None and now >= run_deadline:
                        error = CheckTimeoutError(f"no free worker within {budget:.1f}s")
                    else:
                        continue
                    pending.discard(future)
                    results[index] = timeout_result(checks[index], error)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
