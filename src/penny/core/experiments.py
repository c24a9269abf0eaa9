"""
Prompt Experiments - weighted sticky variant assignment and A/B result aggregation
"""

from __future__ import annotations

import random
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from penny.core.metrics import EvaluationStore
from penny.core.models import EvaluationCriteria, Experiment, ExperimentResult, ExperimentVariant
from penny.utils.logger import AgentLogger

ASSIGNMENTS_KEY = "penny:experiment_assignments"
MIN_SAMPLES_FOR_SIGNIFICANCE = 30

PORTFOLIO_COACHING_EXPERIMENT = Experiment(
    id="portfolio_coaching_v1",
    name="Portfolio Coaching Style",
    description="Compare coaching styles for portfolio analysis",
    feature="portfolio_insights",
    variants=[
        ExperimentVariant(
            id="control",
            name="Control (Balanced)",
            weight=0.33,
            system_prompt=(
                "You are Penny, a supportive financial coach.\n"
                "Provide balanced, educational insights about the portfolio.\n"
                "Focus on diversification and long-term thinking.\n"
                "Never give specific buy/sell advice."
            ),
        ),
        ExperimentVariant(
            id="empathetic",
            name="Empathetic Coach",
            weight=0.33,
            system_prompt=(
                "You are Penny, a warm and empathetic financial coach.\n"
                "Start by acknowledging the user's progress and effort.\n"
                "Frame insights as gentle observations, not criticisms.\n"
                "Never give specific buy/sell advice."
            ),
        ),
        ExperimentVariant(
            id="analytical",
            name="Analytical Coach",
            weight=0.34,
            system_prompt=(
                "You are Penny, a data-driven financial coach.\n"
                "Focus on metrics and numbers when analyzing the portfolio.\n"
                "Provide specific percentages and comparisons.\n"
                "Never give specific buy/sell advice."
            ),
        ),
    ],
)

DAILY_TIPS_EXPERIMENT = Experiment(
    id="daily_tips_v1",
    name="Daily Tips Style",
    description="Compare delivery styles for daily financial tips",
    feature="daily_tip",
    variants=[
        ExperimentVariant(
            id="short",
            name="Short & Punchy",
            weight=0.5,
            prompt_template=(
                "Generate a brief financial tip (1-2 sentences max).\n"
                "Context: {context}\n"
                "Make it memorable and actionable."
            ),
        ),
        ExperimentVariant(
            id="story",
            name="Story-based",
            weight=0.5,
            prompt_template=(
                "Generate a financial tip using a brief relatable scenario or analogy.\n"
                "Context: {context}\n"
                "Keep it under 3 sentences but make it memorable through storytelling."
            ),
        ),
    ],
)

ALL_EXPERIMENTS = [PORTFOLIO_COACHING_EXPERIMENT, DAILY_TIPS_EXPERIMENT]


class ExperimentManager:
    """Assigns users to prompt variants and compares variant outcomes."""

    def __init__(
        self,
        store,
        history: EvaluationStore,
        experiments: Optional[List[Experiment]] = None,
        logger: Optional[AgentLogger] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.store = store
        self.history = history
        self.experiments = experiments if experiments is not None else list(ALL_EXPERIMENTS)
        self.logger = logger
        self._rng = rng or random.Random()

    def get_active_experiments(self) -> List[Experiment]:
        return [e for e in self.experiments if e.is_active]

    def get_experiment(self, experiment_id: str) -> Optional[Experiment]:
        for experiment in self.experiments:
            if experiment.id == experiment_id:
                return experiment
        return None

    def get_experiment_for_feature(self, feature: str) -> Optional[Experiment]:
        for experiment in self.experiments:
            if experiment.feature == feature and experiment.is_active:
                return experiment
        return None

    def select_variant(self, experiment: Experiment) -> ExperimentVariant:
        """Weighted random pick; falls back to the first variant if weights sum below the draw."""
        draw = self._rng.random()
        cumulative = 0.0
        for variant in experiment.variants:
            cumulative += variant.weight
            if draw <= cumulative:
                return variant
        return experiment.variants[0]

    async def get_variant_assignment(self, experiment_id: str) -> str:
        """
        Return the user's sticky variant id, assigning one on first use.

        Raises:
            KeyError: unknown experiment id
        """
        experiment = self.get_experiment(experiment_id)
        if experiment is None:
            raise KeyError(f"Experiment {experiment_id} not found")

        try:
            assignments: Dict[str, str] = await self.store.get(ASSIGNMENTS_KEY) or {}
        except Exception as e:
            if self.logger:
                self.logger.log_error("experiment_assignment_load", e)
            return experiment.variants[0].id

        if experiment_id in assignments:
            return assignments[experiment_id]

        variant = self.select_variant(experiment)
        assignments[experiment_id] = variant.id
        try:
            await self.store.set(ASSIGNMENTS_KEY, assignments)
        except Exception as e:
            if self.logger:
                self.logger.log_error("experiment_assignment_save", e)
        if self.logger:
            self.logger.log_step("experiment_assignment", {"experiment": experiment_id, "variant": variant.id})
        return variant.id

    async def get_assigned_variant(self, experiment_id: str) -> Optional[ExperimentVariant]:
        experiment = self.get_experiment(experiment_id)
        if experiment is None:
            return None
        variant_id = await self.get_variant_assignment(experiment_id)
        for variant in experiment.variants:
            if variant.id == variant_id:
                return variant
        return experiment.variants[0]

    async def record_result(
        self,
        experiment_id: str,
        variant_id: str,
        trace_id: str,
        scores: EvaluationCriteria,
        overall_score: float,
        latency_ms: float = 0.0,
        tokens_used: int = 0,
    ) -> Optional[ExperimentResult]:
        """Store one scored call under its experiment variant; unknown ids are ignored."""
        experiment = self.get_experiment(experiment_id)
        variant = None
        if experiment:
            variant = next((v for v in experiment.variants if v.id == variant_id), None)
        if experiment is None or variant is None:
            if self.logger:
                self.logger.log_step("warning", f"Invalid experiment or variant: {experiment_id}/{variant_id}")
            return None

        result = ExperimentResult(
            id=f"exp_{uuid.uuid4().hex[:12]}",
            experiment_name=experiment.name,
            variant_id=variant.id,
            variant_name=variant.name,
            trace_id=trace_id,
            timestamp=datetime.now(),
            scores=scores,
            overall_score=overall_score,
            latency_ms=latency_ms,
            tokens_used=tokens_used,
        )
        await self.history.add_experiment_result(result)
        return result

    async def get_summary(self, experiment_id: str) -> Dict[str, Any]:
        """Per-variant averages, the winning variant and a sample-size significance flag."""
        experiment = self.get_experiment(experiment_id)
        if experiment is None:
            return {
                "experiment": None,
                "variant_results": {},
                "winning_variant": None,
                "statistical_significance": False,
            }

        results = await self.history.get_experiment_results(experiment.name)
        variant_results: Dict[str, Dict[str, Any]] = {}
        winning_variant = None
        best_score = -1.0
        min_samples = None

        for variant in experiment.variants:
            mine = [r for r in results if r.variant_id == variant.id]
            count = len(mine)
            divisor = count or 1
            average = sum(r.overall_score for r in mine) / divisor
            variant_results[variant.id] = {
                "count": count,
                "average_score": average,
                "average_latency": sum(r.latency_ms for r in mine) / divisor,
                "scores": {
                    name: sum(getattr(r.scores, name) for r in mine) / divisor
                    for name in EvaluationCriteria.model_fields
                },
            }
            min_samples = count if min_samples is None else min(min_samples, count)
            if count > 0 and average > best_score:
                best_score = average
                winning_variant = variant.id

        return {
            "experiment": experiment.model_dump(),
            "variant_results": variant_results,
            "winning_variant": winning_variant,
            "statistical_significance": (min_samples or 0) >= MIN_SAMPLES_FOR_SIGNIFICANCE,
        }

    async def reset_assignments(self) -> None:
        await self.store.remove(ASSIGNMENTS_KEY)
