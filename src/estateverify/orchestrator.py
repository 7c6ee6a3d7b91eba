"""
Verification orchestrator: the single entry point consumed by callers.

All applicable checks run concurrently; the combine step only happens once
every check has settled (result, error, or deadline). Checks still pending
at the request deadline are cancelled and recorded as ERROR.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from typing import Any

from pydantic import ValidationError

from .combiner import DecisionEngine
from .config import Settings, get_settings
from .errors import InternalFault, InvalidRequestError, VerificationError
from .evaluators import CheckEvaluator, Subject
from .models import CheckResult, Finding, Severity, VerificationDecision, request_adapter

logger = logging.getLogger(__name__)


class VerificationOrchestrator:
    def __init__(
        self,
        evaluators: Sequence[CheckEvaluator],
        *,
        engine: DecisionEngine | None = None,
        timeout: float | None = None,
        settings: Settings | None = None,
    ) -> None:
        names = [evaluator.name for evaluator in evaluators]
        if len(set(names)) != len(names):
            raise ValueError(f"duplicate evaluator names: {names}")
        self._evaluators = list(evaluators)
        settings = settings or get_settings()
        self._engine = engine or DecisionEngine(cap_degraded_approvals=settings.cap_degraded_approvals)
        self._timeout = timeout if timeout is not None else settings.request_timeout
        self._weights = {evaluator.name: evaluator.weight for evaluator in self._evaluators}

    @property
    def weights(self) -> Mapping[str, float]:
        return dict(self._weights)

    def applicable(self, request: Subject) -> list[CheckEvaluator]:
        return [evaluator for evaluator in self._evaluators if evaluator.applies(request)]

    async def verify_payload(self, payload: Mapping[str, Any]) -> VerificationDecision:
        """Parse a raw payload and verify it. Malformed input raises InvalidRequestError."""
        try:
            request = request_adapter.validate_python(payload)
        except ValidationError as exc:
            raise InvalidRequestError("invalid verification request", errors=exc.errors(include_url=False)) from exc
        return await self.verify(request)

    async def verify(self, request: Subject) -> VerificationDecision:
        started = time.perf_counter()
        try:
            evaluators = self.applicable(request)
        except Exception as exc:
            logger.error("[%s] Failed to select checks: %s", request.request_id, exc, exc_info=True)
            raise InternalFault(f"could not determine applicable checks: {exc}") from exc

        logger.info(
            "[%s] Verifying %s %s with checks: %s",
            request.request_id,
            request.subject_type,
            request.subject_id,
            ", ".join(evaluator.name for evaluator in evaluators) or "none",
        )
        results = await self._run_checks(request, evaluators)

        try:
            decision = self._engine.combine(
                results,
                self._weights,
                request_id=request.request_id,
                subject_type=request.subject_type,
                subject_id=request.subject_id,
                execution_time=time.perf_counter() - started,
            )
        except VerificationError:
            raise
        except Exception as exc:
            logger.error("[%s] Failed to combine check results: %s", request.request_id, exc, exc_info=True)
            raise InternalFault(f"could not combine check results: {exc}") from exc

        logger.info(
            "[%s] Decision %s (score %.3f, %d check(s), %d errored) in %.2fs",
            request.request_id,
            decision.decision.value,
            decision.combined_score,
            len(results),
            len(decision.errored_checks),
            decision.execution_time,
        )
        return decision

    async def _run_checks(self, request: Subject, evaluators: Sequence[CheckEvaluator]) -> dict[str, CheckResult]:
        if not evaluators:
            return {}
        tasks = {
            evaluator.name: asyncio.create_task(evaluator.evaluate(request), name=f"{request.request_id}:{evaluator.name}")
            for evaluator in evaluators
        }
        started = time.perf_counter()
        try:
            _, pending = await asyncio.wait(tasks.values(), timeout=self._timeout)
        except asyncio.CancelledError:
            for task in tasks.values():
                task.cancel()
            raise
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        elapsed = time.perf_counter() - started
        results: dict[str, CheckResult] = {}
        for evaluator in evaluators:
            task = tasks[evaluator.name]
            if task in pending:
                logger.warning("[%s] %s check timed out after %.1fs", request.request_id, evaluator.name, self._timeout)
                results[evaluator.name] = evaluator.error_result(
                    Finding(
                        code="check_timeout",
                        message=f"Check did not finish within {self._timeout:g}s.",
                        severity=Severity.MEDIUM,
                        category="orchestrator",
                    ),
                    execution_time=elapsed,
                )
                continue
            error = task.exception()
            if error is not None:
                logger.error(
                    "[%s] %s check failed unexpectedly: %s",
                    request.request_id,
                    evaluator.name,
                    error,
                    exc_info=error,
                )
                results[evaluator.name] = evaluator.error_result(
                    Finding(
                        code="check_failed",
                        message=f"{type(error).__name__}: {error}",
                        severity=Severity.MEDIUM,
                        category="orchestrator",
                    ),
                    execution_time=elapsed,
                )
                continue
            results[evaluator.name] = task.result()
        return results
