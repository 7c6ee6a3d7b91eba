from __future__ import annotations

import logging
from collections.abc import Mapping

import numpy as np

from .errors import InternalFault
from .models import CheckResult, Decision, SubjectType, VerificationDecision

logger = logging.getLogger(__name__)

APPROVE_THRESHOLD = 0.80
FLAG_THRESHOLD = 0.50
SCORE_PRECISION = 3


def decide(score: float) -> Decision:
    """Map a combined score to a decision. Lower bounds are inclusive."""
    if score >= APPROVE_THRESHOLD:
        return Decision.APPROVE
    if score >= FLAG_THRESHOLD:
        return Decision.FLAG
    return Decision.REJECT


class DecisionEngine:
    """
    Weighted combination of per-check scores.

    Errored and absent checks are left out of both the numerator and the
    denominator, so the remaining weights are renormalized. When nothing
    usable is left the decision is forced to FLAG. With
    `cap_degraded_approvals` an APPROVE that relied on a partial check set is
    lowered to FLAG.
    """

    def __init__(self, *, cap_degraded_approvals: bool = False) -> None:
        self._cap_degraded_approvals = cap_degraded_approvals

    def combined_score(self, results: Mapping[str, CheckResult], weights: Mapping[str, float]) -> float | None:
        usable = [(name, result) for name, result in results.items() if not result.errored]
        if not usable:
            return None
        missing = [name for name, _ in usable if weights.get(name, 0.0) <= 0.0]
        if missing:
            raise InternalFault(f"no positive weight configured for check(s): {', '.join(sorted(missing))}")
        weight_vector = np.array([weights[name] for name, _ in usable], dtype=float)
        score_vector = np.array([result.confidence_score for _, result in usable], dtype=float)
        score = float(np.dot(weight_vector, score_vector) / weight_vector.sum())
        return round(min(1.0, max(0.0, score)), SCORE_PRECISION)

    def combine(
        self,
        results: Mapping[str, CheckResult],
        weights: Mapping[str, float],
        *,
        request_id: str,
        subject_type: SubjectType | str,
        subject_id: str,
        execution_time: float = 0.0,
    ) -> VerificationDecision:
        score = self.combined_score(results, weights)
        if score is None:
            logger.warning(
                "[%s] No usable check result (%d applicable); forcing FLAG", request_id, len(results)
            )
            decision, score = Decision.FLAG, 0.0
        else:
            decision = decide(score)
        degraded = any(result.errored for result in results.values())
        if degraded and decision is Decision.APPROVE and self._cap_degraded_approvals:
            logger.info("[%s] Capping APPROVE to FLAG: partial check set", request_id)
            decision = Decision.FLAG
        return VerificationDecision(
            request_id=request_id,
            subject_type=SubjectType(subject_type),
            subject_id=subject_id,
            decision=decision,
            combined_score=score,
            per_check=dict(results),
            degraded=degraded,
            execution_time=execution_time,
        )
