"""
Tests for evaluation history and dashboard aggregation
"""

import uuid
from datetime import datetime

import pytest

from conftest import FailingStore
from penny.core.metrics import EvaluationStore, classify_trend
from penny.core.models import EvaluationCriteria, EvaluationResult, ExperimentResult


def evaluation(feature: str, score: float, accuracy: float = 0.5) -> EvaluationResult:
    return EvaluationResult(
        id=f"eval_{uuid.uuid4().hex[:8]}",
        trace_id="trace",
        feature=feature,
        timestamp=datetime(2024, 1, 10),
        prompt="p",
        response="r",
        criteria=EvaluationCriteria(accuracy=accuracy),
        overall_score=score,
    )


def experiment_result(variant: str, score: float) -> ExperimentResult:
    return ExperimentResult(
        id=f"exp_{uuid.uuid4().hex[:8]}",
        experiment_name="Daily Tips Style",
        variant_id=variant,
        variant_name=variant.title(),
        trace_id="trace",
        timestamp=datetime(2024, 1, 10),
        scores=EvaluationCriteria(),
        overall_score=score,
    )


@pytest.fixture
def history(store, logger):
    return EvaluationStore(store, logger)


class TestClassifyTrend:
    def test_improving(self):
        assert classify_trend([0.5] * 5 + [0.7] * 5) == "improving"

    def test_declining(self):
        assert classify_trend([0.8] * 5 + [0.6] * 5) == "declining"

    def test_small_change_is_stable(self):
        assert classify_trend([0.50] * 5 + [0.54] * 5) == "stable"
        assert classify_trend([0.54] * 5 + [0.50] * 5) == "stable"

    def test_too_few_samples(self):
        assert classify_trend([]) == "stable"
        assert classify_trend([0.2, 0.9]) == "stable"
        assert classify_trend([0.1] * 5 + [0.9] * 4) == "stable"

    def test_min_samples_override(self):
        assert classify_trend([0.2, 0.9], min_samples=2) == "improving"

    def test_odd_count_puts_extra_sample_in_newer_half(self):
        # older = 5 x 0.2, newer = 6 x 0.2
        assert classify_trend([0.2] * 11) == "stable"
        # older = 5 x 0.9, newer = [0.9, 0.1 x 5]
        assert classify_trend([0.9] * 6 + [0.1] * 5) == "declining"


class TestEvaluationStore:
    async def test_recent_is_newest_first(self, history):
        for score in (0.1, 0.2, 0.3):
            await history.add_evaluation(evaluation("chat", score))
        recent = await history.get_recent_evaluations(limit=2)
        assert [e.overall_score for e in recent] == [0.3, 0.2]

    async def test_feature_filter(self, history):
        await history.add_evaluation(evaluation("chat", 0.5))
        await history.add_evaluation(evaluation("daily_tip", 0.7))
        tips = await history.get_feature_evaluations("daily_tip")
        assert [e.overall_score for e in tips] == [0.7]

    async def test_history_is_capped(self, history, store):
        records = [evaluation("chat", 0.5).model_dump(mode="json") for _ in range(500)]
        await store.set("penny:evaluations", records)
        await history.add_evaluation(evaluation("chat", 0.9))
        stored = await history.get_evaluations()
        assert len(stored) == 500
        assert stored[-1].overall_score == 0.9

    async def test_summary(self, history):
        for score in [0.4] * 5 + [0.8] * 5:
            await history.add_evaluation(evaluation("chat", score, accuracy=1.0))
        await history.add_evaluation(evaluation("daily_tip", 0.6, accuracy=0.0))
        await history.add_experiment_result(experiment_result("short", 0.7))
        await history.add_experiment_result(experiment_result("story", 0.9))
        await history.add_experiment_result(experiment_result("story", 0.5))

        summary = await history.get_metrics_summary()

        assert summary["total_evaluations"] == 11
        assert summary["overall_average_score"] == pytest.approx(0.6)
        assert summary["average_scores"]["accuracy"] == pytest.approx(10 / 11)
        assert summary["average_scores"]["safety"] == pytest.approx(0.5)
        assert summary["scores_by_feature"]["chat"] == {"count": 10, "average_score": pytest.approx(0.6), "trend": "improving"}
        assert summary["scores_by_feature"]["daily_tip"]["trend"] == "stable"

        tips = summary["experiment_results"]["Daily Tips Style"]
        assert tips["variant_scores"] == {"Short": pytest.approx(0.7), "Story": pytest.approx(0.7)}
        assert tips["sample_size"] == 3
        assert tips["winning_variant"] in ("Short", "Story")
        assert "last_updated" in summary

    async def test_empty_summary(self, history):
        summary = await history.get_metrics_summary()
        assert summary["total_evaluations"] == 0
        assert summary["overall_average_score"] == 0.0
        assert summary["scores_by_feature"] == {}

    async def test_experiment_results_filter(self, history):
        await history.add_experiment_result(experiment_result("short", 0.7))
        assert len(await history.get_experiment_results("Daily Tips Style")) == 1
        assert await history.get_experiment_results("Other") == []

    async def test_clear(self, history):
        await history.add_evaluation(evaluation("chat", 0.5))
        await history.add_experiment_result(experiment_result("short", 0.7))
        await history.clear()
        assert await history.get_evaluations() == []
        assert await history.get_experiment_results() == []

    async def test_store_failures_are_swallowed(self, logger):
        history = EvaluationStore(FailingStore(), logger)
        await history.add_evaluation(evaluation("chat", 0.5))
        assert await history.get_evaluations() == []
        assert (await history.get_metrics_summary())["total_evaluations"] == 0
