"""
Retry orchestration over provider/model combinations.

``ErrorHandler.execute_with_retry(work)`` runs ``work(provider, model)``
against the manager's current combination and decides, after each failure,
whether to retry the same combination, rotate to another one, or fail:

    rate limit / quota      mark rate limited -> automatic switch; with no
                            alternative, optionally wait for the reset
    terminal (auth, ...)    mark unhealthy_auth for auth kinds, fail at once
    recoverable             back off and retry until the kind's max_retries
                            is exceeded, then mark fail_exhausted and rotate

Failures never escape as exceptions; they come back as a failed
ExecutionResult. ConfigurationError is the exception: it signals a defect
and propagates.

Example usage:

    handler = ErrorHandler(manager)
    result = handler.execute_with_retry(invocation_work(invoker, request))
    if not result.ok:
        print(result.to_dict())
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from provider_harness.core.backoff import BackoffCalculator
from provider_harness.core.classifier import (
    RATE_LIMIT_KINDS,
    Classification,
    ErrorClassifier,
    ErrorKind,
    RecoveryAction,
    Terminal,
)
from provider_harness.core.context import execution_context, set_execution_target
from provider_harness.core.errors import ConfigurationError, NoProviderAvailableError
from provider_harness.core.models import RetryContext, utcnow
from provider_harness.core.observability import HarnessEventType, get_metrics
from provider_harness.core.provider_manager import ProviderManager
from provider_harness.core.providers import ProviderResult
from provider_harness.core.rate_limit import NOT_RATE_LIMITED, RateLimitDetection, RateLimitDetector
from provider_harness.core.rotation import RotationStrategy

logger = logging.getLogger(__name__)

Work = Callable[[str, Optional[str]], Any]
Sleeper = Callable[[float], None]

STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"


@dataclass
class ExecutionResult:
    """Outcome of one execute_with_retry call.

    Attributes:
        status: "completed" or "failed"
        value: What ``work`` returned (completed only)
        error: Last error raised by ``work`` (failed only)
        message: Human-readable summary of the outcome
        provider: Combination that produced the outcome
        model: Combination that produced the outcome
        error_type: Classified kind of the last error
        attempts: Number of times ``work`` was invoked
        providers_tried: Every combination attempted, in order
        cancelled: Whether the run stopped on a cancellation request
        duration: Wall time of the whole run in seconds
    """

    status: str
    value: Any = None
    error: Optional[BaseException] = None
    message: str = ""
    provider: Optional[str] = None
    model: Optional[str] = None
    error_type: Optional[str] = None
    attempts: int = 0
    providers_tried: List[Tuple[str, Optional[str]]] = field(default_factory=list)
    cancelled: bool = False
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == STATUS_COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {
            "status": self.status,
            "provider": self.provider,
            "model": self.model,
            "attempts": self.attempts,
            "providers_tried": [
                f"{provider}:{model}" if model else provider
                for provider, model in self.providers_tried
            ],
            "duration": round(self.duration, 3),
        }
        if not self.ok:
            result["error"] = str(self.error) if self.error is not None else None
            result["message"] = self.message
            result["error_type"] = self.error_type
            result["cancelled"] = self.cancelled
        return result


class ErrorHandler:
    """Runs work with classification-driven retry, backoff and rotation.

    Args:
        manager: Shared provider manager
        classifier: Error classifier; defaults to one using the manager's
            configured retry overrides
        backoff: Delay calculator; defaults to the configured jitter settings
        detector: Rate-limit detector
        sleeper: Blocking sleep used for backoff delays (injectable for tests)
    """

    def __init__(
        self,
        manager: ProviderManager,
        *,
        classifier: Optional[ErrorClassifier] = None,
        backoff: Optional[BackoffCalculator] = None,
        detector: Optional[RateLimitDetector] = None,
        sleeper: Optional[Sleeper] = None,
    ):
        config = manager.config
        self.manager = manager
        self.classifier = classifier or ErrorClassifier(config.retry.overrides)
        self.backoff = backoff or BackoffCalculator(
            jitter=config.retry.jitter, jitter_ratio=config.retry.jitter_ratio
        )
        self.detector = detector or RateLimitDetector()
        self._sleeper = sleeper
        self._sleep = sleeper or time.sleep
        self._stats_lock = threading.Lock()
        self._errors_by_kind: Counter = Counter()
        self._errors_by_provider: Counter = Counter()
        self._runs = Counter()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def execute_with_retry(
        self,
        work: Work,
        *,
        cancel_event: Optional[threading.Event] = None,
        correlation_id: Optional[str] = None,
    ) -> ExecutionResult:
        """Run ``work(provider, model)`` until it completes or every option is spent.

        Args:
            work: Callable invoked with the combination to use; a returned
                ProviderResult with a failure status counts as a failure
            cancel_event: Checked before every backoff sleep and rotation
            correlation_id: Run ID for logs and events (generated if None)

        Returns:
            ExecutionResult with status "completed" or "failed"

        Raises:
            ConfigurationError: Raised by ``work`` or by a configuration lookup
        """
        started = time.monotonic()
        try:
            provider, model = self.manager.require_available()
        except NoProviderAvailableError as exc:
            logger.error("No provider available: %s", exc)
            return self._finish(
                ExecutionResult(
                    status=STATUS_FAILED,
                    error=exc,
                    message=str(exc),
                    error_type="no_provider_available",
                ),
                started,
            )

        ctx = RetryContext(provider=provider, model=model)
        ctx.tried.append((provider, model))

        with execution_context(correlation_id=correlation_id, provider=provider, model=model):
            while True:
                set_execution_target(ctx.provider, ctx.model)
                ctx.attempts += 1
                attempt_started = time.monotonic()
                try:
                    value = work(ctx.provider, ctx.model)
                    if isinstance(value, ProviderResult):
                        value.raise_for_status()
                except ConfigurationError:
                    raise
                except Exception as exc:
                    duration = time.monotonic() - attempt_started
                    outcome = self._handle_failure(ctx, exc, duration, cancel_event)
                    if outcome is not None:
                        return self._finish(outcome, started)
                    continue

                return self._finish(
                    self._handle_success(ctx, value, time.monotonic() - attempt_started),
                    started,
                )

    def error_stats(self) -> Dict[str, Any]:
        """Error counts seen by this handler, plus run outcomes."""
        with self._stats_lock:
            total = sum(self._errors_by_kind.values())
            return {
                "total_errors": total,
                "by_kind": dict(self._errors_by_kind),
                "by_provider": dict(self._errors_by_provider),
                "runs_completed": self._runs[STATUS_COMPLETED],
                "runs_failed": self._runs[STATUS_FAILED],
                "runs_recovered": self._runs["recovered"],
            }

    def plan_recovery(self, kind: ErrorKind) -> Dict[str, Any]:
        """Suggested recovery for an error kind, given current availability.

        A switch action with no alternative combination is escalated.
        """
        action = self.classifier.recovery_action(kind)
        provider, model = self.manager.current()
        alternative = None

        if action == RecoveryAction.SWITCH_PROVIDER:
            alternative = self.manager.rotation.next_provider(provider)
        elif action == RecoveryAction.SWITCH_MODEL and provider is not None:
            alternative = self.manager.rotation.next_model(provider, model)
            if not alternative.found:
                alternative = self.manager.rotation.next_provider(provider)

        if alternative is not None and not alternative.found:
            action = RecoveryAction.ESCALATE

        return {
            "kind": kind.value,
            "action": action.value,
            "severity": self.classifier.severity(kind).value,
            "recoverable": self.classifier.recoverable(kind),
            "max_retries": self.classifier.max_retries(kind),
            "alternative": alternative.to_dict() if alternative is not None else None,
            "description": self.classifier.describe(kind),
            "suggestions": self.classifier.recovery_suggestions(kind),
        }

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _handle_success(self, ctx: RetryContext, value: Any, duration: float) -> ExecutionResult:
        tokens = None
        if isinstance(value, ProviderResult):
            tokens = value.tokens.total_tokens or None
        self.manager.record_success(ctx.provider, ctx.model, duration=duration, tokens=tokens)

        if ctx.attempts > 1:
            with self._stats_lock:
                self._runs["recovered"] += 1
            self.manager.events.emit(
                HarnessEventType.RECOVERY,
                provider=ctx.provider,
                model=ctx.model,
                attempts=ctx.attempts,
                recovered_from=ctx.error_kind,
            )
            logger.info(
                "Recovered on %s:%s after %d attempts", ctx.provider, ctx.model, ctx.attempts
            )

        return ExecutionResult(
            status=STATUS_COMPLETED,
            value=value,
            provider=ctx.provider,
            model=ctx.model,
            attempts=ctx.attempts,
            providers_tried=list(ctx.tried),
        )

    def _handle_failure(
        self,
        ctx: RetryContext,
        exc: Exception,
        duration: float,
        cancel_event: Optional[threading.Event],
    ) -> Optional[ExecutionResult]:
        """Decide what follows a failed attempt; None means "run work again"."""
        classification = self._classify(exc)
        kind = classification.kind
        ctx.error_kind = kind.value
        ctx.last_error = exc
        ctx.last_attempt_at = utcnow()

        with self._stats_lock:
            self._errors_by_kind[kind.value] += 1
            self._errors_by_provider[ctx.provider] += 1

        self.manager.record_failure(
            ctx.provider, ctx.model, error=exc, error_kind=kind.value, duration=duration
        )
        logger.warning(
            "Attempt %d on %s:%s failed (%s): %s",
            ctx.attempts,
            ctx.provider,
            ctx.model,
            kind.value,
            exc,
        )
        self.manager.events.emit(
            HarnessEventType.ERROR,
            provider=ctx.provider,
            model=ctx.model,
            error_kind=kind.value,
            severity=self.classifier.severity(kind).value,
            message=str(exc),
            attempt=ctx.attempts,
        )
        get_metrics().counter(
            "provider_errors_total", labels={"provider": ctx.provider, "kind": kind.value}
        )

        if kind in RATE_LIMIT_KINDS:
            return self._handle_rate_limit(ctx, exc, cancel_event)

        if isinstance(classification, Terminal):
            if classification.is_auth:
                self.manager.mark_provider_auth_failure(ctx.provider, ctx.model)
            return self._failed(ctx, f"Non-recoverable {kind.value} error: {exc}")

        ctx.retry_count += 1
        policy = classification.policy
        if ctx.retry_count > policy.max_retries:
            logger.warning(
                "Retries exhausted on %s:%s after %d attempts (%s)",
                ctx.provider,
                ctx.model,
                ctx.retry_count,
                kind.value,
            )
            self._mark_exhausted(ctx)
            return self._rotate(ctx, reason="fail_exhausted", cancel_event=cancel_event)

        if self._cancelled(cancel_event):
            return self._cancelled_result(ctx)

        delay = self.backoff.delay_for(policy, ctx.retry_count - 1)
        self.manager.record_retry(ctx.provider, ctx.model)
        self.manager.events.emit(
            HarnessEventType.RETRY,
            provider=ctx.provider,
            model=ctx.model,
            error_kind=kind.value,
            retry_count=ctx.retry_count,
            max_retries=policy.max_retries,
            delay=round(delay, 3),
        )
        get_metrics().counter("retry_attempts_total", labels={"kind": kind.value})
        logger.info(
            "Retrying %s:%s in %.2fs (%d/%d)",
            ctx.provider,
            ctx.model,
            delay,
            ctx.retry_count,
            policy.max_retries,
        )
        self._sleep(delay)
        return None

    def _handle_rate_limit(
        self,
        ctx: RetryContext,
        exc: Exception,
        cancel_event: Optional[threading.Event],
    ) -> Optional[ExecutionResult]:
        detection = self._detect(exc)
        limit_type = detection.type.value if detection.type else ctx.error_kind
        limited_model = ctx.model if self._model_scoped() else None

        decision = self.manager.mark_rate_limited(
            ctx.provider,
            reset_time=detection.reset_time,
            model=limited_model,
            limit_type=limit_type,
        )
        if decision.found:
            return self._continue_on(ctx, decision.provider, decision.model)

        # The pointer had already moved on (another caller); rotate from ours
        if self.manager.current() != (ctx.provider, ctx.model):
            outcome = self._rotate(ctx, reason=limit_type, cancel_event=cancel_event)
            if outcome is None or outcome.cancelled:
                return outcome

        settings = self.manager.config.rate_limit
        if settings.wait_for_reset and ctx.reset_waits >= settings.max_reset_waits:
            return self._failed(
                ctx,
                f"{ctx.provider} is still rate limited after {ctx.reset_waits} reset wait(s)",
            )

        if settings.wait_for_reset and not self._cancelled(cancel_event):
            ctx.reset_waits += 1
            waited = self.manager.rate_limits.wait_for_reset(
                ctx.provider,
                limited_model,
                tick_seconds=settings.countdown_tick_seconds,
                max_wait_seconds=settings.max_wait_seconds,
                stop_event=cancel_event,
                sleeper=self._sleeper,
            )
            if waited:
                logger.info("Rate limit on %s lifted; retrying", ctx.provider)
                ctx.retry_count = 0
                return None
            if self._cancelled(cancel_event):
                return self._cancelled_result(ctx)

        return self._failed(
            ctx, f"{ctx.provider} is rate limited and no alternative provider is available"
        )

    def _rotate(
        self,
        ctx: RetryContext,
        *,
        reason: str,
        cancel_event: Optional[threading.Event],
    ) -> Optional[ExecutionResult]:
        if self._cancelled(cancel_event):
            return self._cancelled_result(ctx)

        decision = self.manager.switch_provider(reason=reason, current=(ctx.provider, ctx.model))
        if not decision.found:
            return self._failed(ctx, f"All providers exhausted after {ctx.attempts} attempts")
        return self._continue_on(ctx, decision.provider, decision.model)

    def _continue_on(
        self, ctx: RetryContext, provider: Optional[str], model: Optional[str]
    ) -> Optional[ExecutionResult]:
        if provider is None or (provider, model) in ctx.tried:
            return self._failed(ctx, f"All providers exhausted after {ctx.attempts} attempts")
        ctx.reset_for(provider, model)
        ctx.tried.append((provider, model))
        return None

    def _mark_exhausted(self, ctx: RetryContext) -> None:
        if self._model_scoped() and ctx.model:
            self.manager.mark_model_failure_exhausted(ctx.provider, ctx.model)
        else:
            self.manager.mark_provider_failure_exhausted(ctx.provider)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _model_scoped(self) -> bool:
        return self.manager.config.rate_limit.rotation_strategy == RotationStrategy.MODEL_FIRST.value

    def _classify(self, exc: Exception) -> Classification:
        try:
            return self.classifier.classify_result(exc)
        except Exception:
            logger.exception("Error classification failed; treating as unknown")
            return self.classifier.classify_result(None)

    def _detect(self, exc: Exception) -> RateLimitDetection:
        try:
            return self.detector.detect(error=exc)
        except Exception:
            logger.exception("Rate limit detection failed; using the default window")
            return NOT_RATE_LIMITED

    @staticmethod
    def _cancelled(cancel_event: Optional[threading.Event]) -> bool:
        return cancel_event is not None and cancel_event.is_set()

    def _failed(self, ctx: RetryContext, message: str) -> ExecutionResult:
        logger.error("Execution failed on %s:%s: %s", ctx.provider, ctx.model, message)
        return ExecutionResult(
            status=STATUS_FAILED,
            error=ctx.last_error,
            message=message,
            provider=ctx.provider,
            model=ctx.model,
            error_type=ctx.error_kind,
            attempts=ctx.attempts,
            providers_tried=list(ctx.tried),
        )

    def _cancelled_result(self, ctx: RetryContext) -> ExecutionResult:
        logger.info("Execution cancelled after %d attempts", ctx.attempts)
        result = self._failed(ctx, "Execution cancelled")
        result.cancelled = True
        return result

    def _finish(self, result: ExecutionResult, started: float) -> ExecutionResult:
        result.duration = time.monotonic() - started
        with self._stats_lock:
            self._runs[result.status] += 1
        get_metrics().timer(
            "execution_duration_ms",
            result.duration * 1000,
            labels={"status": result.status},
        )
        return result
