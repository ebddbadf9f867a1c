"""
Health Signals — one-hour rolling counters and the derived signals shown
on the operator health endpoint.

Process-local and best-effort. The window resets itself once it is older
than an hour.
"""

import threading
import time
from typing import Callable, List, Optional

from decision_orchestrator.models.health import (
    HealthSignal,
    HealthSnapshot,
    OverallStatus,
    SignalStatus,
    WindowCounters,
)
from decision_orchestrator.timeutil import isoformat

WINDOW_SECONDS = 3600

# (warning, critical); rates above the threshold degrade
DECISION_FAILURE_THRESHOLDS = (0.05, 0.15)
REFUSAL_RATE_THRESHOLDS = (0.4, 0.6)
GENERATION_FAILURE_THRESHOLDS = (0.1, 0.3)
REVIEW_QUEUE_GROWTH_THRESHOLDS = (10, 25)
# rates below the threshold degrade
ASSURANCE_SUCCESS_THRESHOLDS = (0.8, 0.6)

ACTION_REQUIRED_WARNINGS = 3


def _status_above(value: float, thresholds) -> SignalStatus:
    warning, critical = thresholds
    if value > critical:
        return SignalStatus.CRITICAL
    if value > warning:
        return SignalStatus.WARNING
    return SignalStatus.HEALTHY


def _status_below(value: float, thresholds) -> SignalStatus:
    warning, critical = thresholds
    if value < critical:
        return SignalStatus.CRITICAL
    if value < warning:
        return SignalStatus.WARNING
    return SignalStatus.HEALTHY


class HealthSignals:
    def __init__(self, time_fn: Callable[[], float] = time.time):
        self._time = time_fn
        self._lock = threading.Lock()
        self._window_start = self._time()
        self._counters = WindowCounters()

    def _roll_window(self) -> None:
        if self._time() - self._window_start > WINDOW_SECONDS:
            self._window_start = self._time()
            self._counters = WindowCounters()

    def _bump(self, field: str) -> None:
        with self._lock:
            self._roll_window()
            setattr(self._counters, field, getattr(self._counters, field) + 1)

    def record_decision_issued(self) -> None:
        self._bump("decisions_issued")

    def record_decision_refused(self) -> None:
        self._bump("decisions_refused")

    def record_decision_failed(self) -> None:
        self._bump("decisions_failed")

    def record_assurance(self, success: bool) -> None:
        self._bump("assurances_issued" if success else "assurances_failed")

    def record_generation_call(self, success: bool) -> None:
        with self._lock:
            self._roll_window()
            self._counters.generation_calls += 1
            if not success:
                self._counters.generation_failures += 1

    def record_review_created(self) -> None:
        self._bump("reviews_created")

    def record_review_resolved(self) -> None:
        self._bump("reviews_resolved")

    def counters(self) -> WindowCounters:
        with self._lock:
            self._roll_window()
            snapshot = self._counters.model_copy()
            snapshot.window_age_seconds = int(self._time() - self._window_start)
            return snapshot

    def reset(self) -> None:
        with self._lock:
            self._window_start = self._time()
            self._counters = WindowCounters()

    def compute_signals(self, counters: Optional[WindowCounters] = None) -> List[HealthSignal]:
        c = counters or self.counters()
        total = c.decisions_issued + c.decisions_refused + c.decisions_failed
        failure_rate = c.decisions_failed / total if total else 0.0
        refusal_rate = c.decisions_refused / total if total else 0.0
        generation_failure_rate = c.generation_failures / c.generation_calls if c.generation_calls else 0.0
        assurance_total = c.assurances_issued + c.assurances_failed
        assurance_success = c.assurances_issued / assurance_total if assurance_total else 1.0
        queue_growth = c.reviews_created - c.reviews_resolved

        return [
            HealthSignal(
                name="decision_failure_rate",
                value=failure_rate,
                status=_status_above(failure_rate, DECISION_FAILURE_THRESHOLDS),
                threshold_warning=DECISION_FAILURE_THRESHOLDS[0],
                threshold_critical=DECISION_FAILURE_THRESHOLDS[1],
            ),
            HealthSignal(
                name="refusal_rate",
                value=refusal_rate,
                status=_status_above(refusal_rate, REFUSAL_RATE_THRESHOLDS),
                threshold_warning=REFUSAL_RATE_THRESHOLDS[0],
                threshold_critical=REFUSAL_RATE_THRESHOLDS[1],
            ),
            HealthSignal(
                name="generation_failure_rate",
                value=generation_failure_rate,
                status=_status_above(generation_failure_rate, GENERATION_FAILURE_THRESHOLDS),
                threshold_warning=GENERATION_FAILURE_THRESHOLDS[0],
                threshold_critical=GENERATION_FAILURE_THRESHOLDS[1],
            ),
            HealthSignal(
                name="assurance_success_rate",
                value=assurance_success,
                status=_status_below(assurance_success, ASSURANCE_SUCCESS_THRESHOLDS),
                threshold_warning=ASSURANCE_SUCCESS_THRESHOLDS[0],
                threshold_critical=ASSURANCE_SUCCESS_THRESHOLDS[1],
            ),
            HealthSignal(
                name="review_queue_growth",
                value=float(queue_growth),
                status=_status_above(queue_growth, REVIEW_QUEUE_GROWTH_THRESHOLDS),
                threshold_warning=float(REVIEW_QUEUE_GROWTH_THRESHOLDS[0]),
                threshold_critical=float(REVIEW_QUEUE_GROWTH_THRESHOLDS[1]),
            ),
            HealthSignal(
                name="total_decisions",
                value=float(total),
                status=SignalStatus.HEALTHY,
            ),
        ]

    def snapshot(self) -> HealthSnapshot:
        signals = self.compute_signals()
        critical = [s.name for s in signals if s.status == SignalStatus.CRITICAL]
        warnings = [s.name for s in signals if s.status == SignalStatus.WARNING]

        if critical:
            status = OverallStatus.CRITICAL
            summary = f"Critical: {', '.join(critical)}"
        elif warnings:
            status = OverallStatus.DEGRADED
            summary = f"Degraded: {', '.join(warnings)}"
        else:
            status = OverallStatus.HEALTHY
            summary = "All signals healthy"

        return HealthSnapshot(
            timestamp=isoformat(),
            status=status,
            signals=signals,
            action_required=bool(critical) or len(warnings) >= ACTION_REQUIRED_WARNINGS,
            summary=summary,
        )
