"""
Evaluation Store for Penny - capped evaluation history and dashboard aggregation
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from penny.config import EVALUATION_HISTORY_CAP, EXPERIMENT_RESULTS_CAP, MIN_TREND_SAMPLES
from penny.core.models import EvaluationCriteria, EvaluationResult, ExperimentResult
from penny.utils.logger import AgentLogger

EVALUATIONS_KEY = "penny:evaluations"
EXPERIMENT_RESULTS_KEY = "penny:experiment_results"

CRITERIA_FIELDS = list(EvaluationCriteria.model_fields)


def classify_trend(scores: Sequence[float], threshold: float = 0.05,
                   min_samples: int = MIN_TREND_SAMPLES) -> str:
    """
    Compare the mean of the older half of a score history with the newer half.

    The split point is floor(n / 2), so with an odd count the newer half holds
    the extra sample. Fewer than min_samples scores is always "stable".
    """
    if len(scores) < max(min_samples, 2):
        return "stable"
    midpoint = len(scores) // 2
    older = float(np.mean(scores[:midpoint]))
    newer = float(np.mean(scores[midpoint:]))
    if newer - older > threshold:
        return "improving"
    if newer - older < -threshold:
        return "declining"
    return "stable"


def average_criteria(evaluations: Sequence[EvaluationResult]) -> EvaluationCriteria:
    if not evaluations:
        return EvaluationCriteria(**{name: 0.0 for name in CRITERIA_FIELDS})
    matrix = np.array([[getattr(e.criteria, name) for name in CRITERIA_FIELDS] for e in evaluations])
    means = matrix.mean(axis=0)
    return EvaluationCriteria(**{name: float(means[i]) for i, name in enumerate(CRITERIA_FIELDS)})


class EvaluationStore:
    """
    Keeps evaluation results and experiment results as capped lists in the
    key-value store. Persistence failures are logged and never raised.
    """

    def __init__(self, store, logger: Optional[AgentLogger] = None) -> None:
        self.store = store
        self.logger = logger

    async def _load(self, key: str) -> List[Dict[str, Any]]:
        try:
            return await self.store.get(key) or []
        except Exception as e:
            if self.logger:
                self.logger.log_error("evaluation_store_load", e, {"key": key})
            return []

    async def _append(self, key: str, record: Dict[str, Any], cap: int) -> None:
        try:
            records = await self.store.get(key) or []
            records.append(record)
            await self.store.set(key, records[-cap:])
        except Exception as e:
            if self.logger:
                self.logger.log_error("evaluation_store_save", e, {"key": key})

    # ------------------------------------------------------------------
    # Evaluations
    # ------------------------------------------------------------------

    async def add_evaluation(self, evaluation: EvaluationResult) -> None:
        await self._append(EVALUATIONS_KEY, evaluation.model_dump(mode="json"), EVALUATION_HISTORY_CAP)

    async def get_evaluations(self) -> List[EvaluationResult]:
        return [EvaluationResult.model_validate(r) for r in await self._load(EVALUATIONS_KEY)]

    async def get_recent_evaluations(self, limit: int = 20) -> List[EvaluationResult]:
        """Newest first."""
        evaluations = await self.get_evaluations()
        return list(reversed(evaluations[-limit:]))

    async def get_feature_evaluations(self, feature: str) -> List[EvaluationResult]:
        return [e for e in await self.get_evaluations() if e.feature == feature]

    # ------------------------------------------------------------------
    # Experiment results
    # ------------------------------------------------------------------

    async def add_experiment_result(self, result: ExperimentResult) -> None:
        await self._append(EXPERIMENT_RESULTS_KEY, result.model_dump(mode="json"), EXPERIMENT_RESULTS_CAP)

    async def get_experiment_results(self, experiment_name: Optional[str] = None) -> List[ExperimentResult]:
        results = [ExperimentResult.model_validate(r) for r in await self._load(EXPERIMENT_RESULTS_KEY)]
        if experiment_name:
            results = [r for r in results if r.experiment_name == experiment_name]
        return results

    # ------------------------------------------------------------------
    # Dashboard
    # ------------------------------------------------------------------

    async def get_metrics_summary(self) -> Dict[str, Any]:
        """
        Aggregate everything stored so far.

        Returns:
            total_evaluations, average_scores (per criterion),
            overall_average_score, scores_by_feature ({count, average_score,
            trend}), experiment_results ({variant_scores, winning_variant,
            sample_size}) and last_updated.
        """
        evaluations = await self.get_evaluations()
        experiments = await self.get_experiment_results()

        scores_by_feature: Dict[str, Dict[str, Any]] = {}
        grouped: Dict[str, List[float]] = {}
        for evaluation in evaluations:
            grouped.setdefault(evaluation.feature, []).append(evaluation.overall_score)
        for feature, scores in grouped.items():
            scores_by_feature[feature] = {
                "count": len(scores),
                "average_score": float(np.mean(scores)),
                "trend": classify_trend(scores),
            }

        experiment_results: Dict[str, Dict[str, Any]] = {}
        by_experiment: Dict[str, Dict[str, List[float]]] = {}
        for result in experiments:
            variants = by_experiment.setdefault(result.experiment_name, {})
            variants.setdefault(result.variant_name, []).append(result.overall_score)
        for name, variants in by_experiment.items():
            variant_scores = {variant: float(np.mean(s)) for variant, s in variants.items()}
            experiment_results[name] = {
                "variant_scores": variant_scores,
                "winning_variant": max(variant_scores, key=variant_scores.get),
                "sample_size": sum(len(s) for s in variants.values()),
            }

        overall = float(np.mean([e.overall_score for e in evaluations])) if evaluations else 0.0
        return {
            "total_evaluations": len(evaluations),
            "average_scores": average_criteria(evaluations).model_dump(),
            "overall_average_score": overall,
            "scores_by_feature": scores_by_feature,
            "experiment_results": experiment_results,
            "last_updated": datetime.now().isoformat(),
        }

    async def clear(self) -> None:
        try:
            await self.store.remove(EVALUATIONS_KEY)
            await self.store.remove(EXPERIMENT_RESULTS_KEY)
        except Exception as e:
            if self.logger:
                self.logger.log_error("evaluation_store_clear", e)
