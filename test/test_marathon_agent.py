"""
Tests for the marathon planning agent: phases, failure handling and autonomy
"""

import json
from types import SimpleNamespace

import pytest

from conftest import FailingStore, FakeGenerator
from penny.core.errors import (
    AgentNotInitializedError,
    GenerationTimeoutError,
    InvalidPhaseError,
    RetriesExhaustedError,
)
from penny.core.generator import LLMGenerator
from penny.core.models import AgentPhase, FinancialContext, ProgressUpdate
from penny.planning.marathon_agent import MarathonAgent

USER = "user_1"

CONTEXT = FinancialContext(
    monthly_income=5000,
    monthly_expenses=3500,
    current_savings=2000,
    debts=1000,
    savings_rate=30,
    months_of_runway=0.6,
    health_score=62,
)

ANALYSIS = {
    "observations": [
        {"category": "savings", "finding": "Runway under one month", "impact": "Negative", "confidence": 0.9},
        {"category": "income", "finding": "Stable salary", "impact": "positive", "confidence": 1.4},
    ],
    "riskFactors": "1. Thin emergency fund 2. Card debt",
    "opportunities": ["Automate transfers"],
    "recommended_goals": [
        {"name": "Emergency Fund", "target_amount": 1200, "timeframe_months": 3,
         "priority": "High", "rationale": "Cover one month of rent"},
    ],
    "thought_summary": "User needs a starter emergency fund before anything else.",
}

PLANNING = {
    "weekly_actions": [
        {"week": 1, "actions": ["Open savings account"], "savings_target": 100, "focus_area": "setup"},
        {"week": 2, "actions": "Automate transfer; Cut delivery", "savings_target": 100, "focus_area": "habits"},
    ],
    "contingency_plans": [{"trigger": "Unexpected bill", "response": "Pause for one week"}],
    "success_metrics": ["Weekly transfer made"],
    "thought_summary": "Plan is two small weekly habits.",
}


def review_reply(on_track=True, corrections=None, summary="Review done."):
    return {
        "progress_assessment": {"on_track": on_track, "percentage_complete": 30, "trend": "Improving"},
        "corrections": corrections or [],
        "encouragement": "Nice work",
        "next_actions": ["Keep the transfer going"],
        "thought_summary": summary,
    }


ADJUSTMENT = {
    "recovery_actions": ["Lower weekly target", "Sell unused gear"],
    "thought_summary": "Recovered with a smaller weekly target.",
}


class ScriptedChat:
    """Chat model stand-in that replays raw reply text."""

    def __init__(self, script):
        self.script = list(script)

    async def ainvoke(self, messages):
        return SimpleNamespace(content=self.script.pop(0), usage_metadata={})


@pytest.fixture
def agent(generator, store, logger, clock):
    return MarathonAgent(generator, store, logger=logger, clock=clock)


async def initialized(agent, generator):
    generator.queue(ANALYSIS)
    return await agent.initialize(USER, CONTEXT)


async def executing(agent, generator):
    await initialized(agent, generator)
    generator.queue(PLANNING)
    return await agent.run_planning_phase(USER, CONTEXT)


class TestInitialize:
    async def test_runs_first_analysis(self, agent, generator, store):
        state = await initialized(agent, generator)

        assert state.current_phase == AgentPhase.PLANNING
        assert state.metrics.total_analysis_runs == 1
        assert state.thought_summary == ANALYSIS["thought_summary"]

        goal = state.goals[0]
        assert goal.name == "Emergency Fund"
        assert goal.priority == "high"
        assert goal.status == "pending"
        assert len(goal.milestones) == 12

        assert [i.type for i in state.insights] == ["observation", "observation"]
        assert state.insights[0].content == "[savings] Runway under one month (negative)"
        assert state.insights[1].confidence == 1.0

        stored = await store.get(agent.state_key(USER))
        assert stored["current_phase"] == "planning"

    async def test_resumes_existing_state(self, agent, generator):
        first = await initialized(agent, generator)
        calls = len(generator.calls)
        second = await agent.initialize(USER, CONTEXT)
        assert second.agent_id == first.agent_id
        assert len(generator.calls) == calls

    async def test_prompt_carries_context(self, agent, generator):
        await initialized(agent, generator)
        prompt = generator.calls[0]["prompt"]
        assert "$5,000.00" in prompt
        assert "None, this is the first analysis" in prompt
        assert generator.calls[0]["feature"] == "marathon_analysis"

    async def test_store_failure_still_returns_state(self, generator, clock):
        agent = MarathonAgent(generator, FailingStore(), clock=clock)
        generator.queue(ANALYSIS)
        state = await agent.initialize(USER, CONTEXT)
        assert state.current_phase == AgentPhase.PLANNING


class TestPhases:
    async def test_planning_moves_goals_in_progress(self, agent, generator):
        state = await executing(agent, generator)
        assert state.current_phase == AgentPhase.EXECUTION
        assert all(g.status == "in_progress" for g in state.goals)
        assert state.insights[-1].type == "recommendation"
        assert state.insights[-1].confidence == 0.85
        assert "2 weeks of actions" in state.insights[-1].content

    async def test_review_on_track(self, agent, generator, clock):
        state = await executing(agent, generator)
        goal_id = state.goals[0].id
        clock.advance(days=7)

        generator.queue(review_reply(on_track=True))
        state = await agent.run_review_phase(USER, CONTEXT, [ProgressUpdate(goal_id=goal_id, current_amount=350)])

        goal = state.get_goal(goal_id)
        assert goal.current_amount == 350
        assert [m.achieved for m in goal.milestones[:4]] == [True, True, True, False]
        assert goal.milestones[0].achieved_at == clock()
        assert state.current_phase == AgentPhase.EXECUTION
        assert state.metrics.successful_predictions == 1
        assert state.metrics.corrections == 0
        types = [i.type for i in state.insights[-2:]]
        assert types == ["observation", "milestone"]
        assert state.last_run_at == clock()

    async def test_review_off_track_applies_corrections(self, agent, generator):
        state = await executing(agent, generator)
        goal = state.goals[0]

        generator.queue(review_reply(on_track=False, corrections=[
            {"goal_id": goal.id, "issue": "Too aggressive", "correction": "Lower the target",
             "new_target_amount": 900},
            {"goal_id": "goal_unknown", "issue": "x", "correction": "y"},
        ]))
        state = await agent.run_review_phase(USER, CONTEXT)

        adjusted = state.get_goal(goal.id)
        assert adjusted.status == "adjusted"
        assert adjusted.target_amount == 900
        assert adjusted.deadline == goal.deadline
        assert state.metrics.corrections == 1
        assert state.metrics.successful_predictions == 0
        assert state.current_phase == AgentPhase.ADJUSTMENT
        assert sum(1 for i in state.insights if i.type == "correction") == 1

    async def test_goal_completion(self, agent, generator):
        state = await executing(agent, generator)
        goal_id = state.goals[0].id
        generator.queue(review_reply())
        state = await agent.run_review_phase(USER, CONTEXT, [ProgressUpdate(goal_id=goal_id, current_amount=1250)])
        assert state.get_goal(goal_id).status == "completed"
        assert all(m.achieved for m in state.get_goal(goal_id).milestones)
        assert state.metrics.goals_completed == 1

    async def test_unknown_progress_update_is_ignored(self, agent, generator):
        await executing(agent, generator)
        generator.queue(review_reply())
        state = await agent.run_review_phase(USER, CONTEXT, [ProgressUpdate(goal_id="nope", current_amount=10)])
        assert state.goals[0].current_amount == 0

    async def test_adjustment_requires_adjustment_phase(self, agent, generator):
        await executing(agent, generator)
        with pytest.raises(InvalidPhaseError):
            await agent.run_adjustment_phase(USER, CONTEXT)

    async def test_adjustment_returns_to_execution(self, agent, generator):
        await executing(agent, generator)
        generator.queue(review_reply(on_track=False))
        await agent.run_review_phase(USER, CONTEXT)

        generator.queue(ADJUSTMENT)
        state = await agent.run_adjustment_phase(USER, CONTEXT)
        assert state.current_phase == AgentPhase.EXECUTION
        assert state.insights[-1].content == "Recovery plan: Lower weekly target; Sell unused gear"

    async def test_analysis_phase_adds_goals(self, agent, generator):
        await executing(agent, generator)
        generator.queue(ANALYSIS)
        state = await agent.run_analysis_phase(USER, CONTEXT)
        assert len(state.goals) == 2
        assert state.metrics.total_analysis_runs == 2
        assert "Plan is two small weekly habits." in generator.calls[-1]["prompt"]

    async def test_phase_without_state(self, agent):
        with pytest.raises(AgentNotInitializedError):
            await agent.run_planning_phase(USER, CONTEXT)

    async def test_thought_summary_is_capped(self, agent, generator):
        await initialized(agent, generator)
        generator.queue(dict(PLANNING, thought_summary="z" * 5000))
        state = await agent.run_planning_phase(USER, CONTEXT)
        assert len(state.thought_summary) == 1000


class TestFailureHandling:
    async def test_timeout_leaves_state_untouched(self, agent, generator, store):
        await initialized(agent, generator)
        before = await store.get(agent.state_key(USER))

        generator.queue(GenerationTimeoutError("slow"))
        state = await agent.run_planning_phase(USER, CONTEXT)

        assert state.current_phase == AgentPhase.PLANNING
        assert await store.get(agent.state_key(USER)) == before

    async def test_malformed_reply_leaves_state_untouched(self, agent, generator, store):
        await initialized(agent, generator)
        before = await store.get(agent.state_key(USER))

        generator.queue("I think you should save more.")
        state = await agent.run_planning_phase(USER, CONTEXT)

        assert state.current_phase == AgentPhase.PLANNING
        assert await store.get(agent.state_key(USER)) == before

    async def test_planning_retry_after_malformed_reply_reaches_the_model(self, store, clock):
        chat = ScriptedChat([json.dumps(ANALYSIS), "not json at all", json.dumps(PLANNING)])
        generator = LLMGenerator(api_key="test", llm_factory=lambda temperature, max_tokens: chat)
        agent = MarathonAgent(generator, store, clock=clock)
        await agent.initialize(USER, CONTEXT)

        first = await agent.run_planning_phase(USER, CONTEXT)
        assert first.current_phase == AgentPhase.PLANNING

        second = await agent.run_planning_phase(USER, CONTEXT)
        assert second.current_phase == AgentPhase.EXECUTION
        assert chat.script == []

    async def test_partial_failure_mid_review_is_not_saved(self, agent, generator, store):
        state = await executing(agent, generator)
        before = await store.get(agent.state_key(USER))

        generator.queue({"corrections": []})
        result = await agent.run_review_phase(USER, CONTEXT, [ProgressUpdate(goal_id=state.goals[0].id, current_amount=500)])

        assert result.goals[0].current_amount == 0
        assert await store.get(agent.state_key(USER)) == before

    async def test_retry_exhaustion_propagates(self, agent, generator, store):
        await initialized(agent, generator)
        generator.queue(RetriesExhaustedError("gone", attempts=4))
        with pytest.raises(RetriesExhaustedError):
            await agent.run_planning_phase(USER, CONTEXT)
        assert (await agent.get_state(USER)).current_phase == AgentPhase.PLANNING

    async def test_failed_first_analysis_keeps_fresh_state(self, agent, generator):
        generator.queue(GenerationTimeoutError("slow"))
        state = await agent.initialize(USER, CONTEXT)
        assert state.current_phase == AgentPhase.ANALYSIS
        assert state.goals == []


class TestAutonomy:
    async def test_no_state(self, agent):
        result = await agent.run_autonomous_check(USER, CONTEXT)
        assert result["action"] == "initialize"

    async def test_weekly_review(self, agent, generator, clock):
        await executing(agent, generator)
        clock.advance(days=7, hours=1)
        generator.queue(review_reply())
        result = await agent.run_autonomous_check(USER, CONTEXT)
        assert result["action"] == "review_completed"
        assert (await agent.get_state(USER)).last_run_at == clock()

    async def test_weekly_review_failure_is_reported(self, agent, generator, clock):
        await executing(agent, generator)
        clock.advance(days=8)
        generator.queue(GenerationTimeoutError("slow"))
        result = await agent.run_autonomous_check(USER, CONTEXT)
        assert result["action"] == "review_failed"

    async def test_due_milestone(self, agent, generator, clock):
        await executing(agent, generator)
        clock.advance(days=1)
        result = await agent.run_autonomous_check(USER, CONTEXT)
        assert result["action"] == "milestone_check"
        assert "Week 1" in result["message"]

    async def test_nothing_to_do(self, agent, clock):
        generator = FakeGenerator([dict(ANALYSIS, recommended_goals=[])])
        agent = MarathonAgent(generator, agent.store, clock=clock)
        await agent.initialize(USER, CONTEXT)
        clock.advance(days=2)
        assert (await agent.run_autonomous_check(USER, CONTEXT))["action"] == "none"


class TestStatusAndTransfer:
    async def test_status(self, agent, generator, clock):
        await executing(agent, generator)
        clock.advance(days=3, hours=5)
        status = await agent.get_status(USER)
        assert status["is_active"] is True
        assert status["current_phase"] == "execution"
        assert status["days_since_last_run"] == 3
        assert len(status["recent_insights"]) == 3
        assert status["metrics"]["total_analysis_runs"] == 1

    async def test_status_without_state(self, agent):
        assert await agent.get_status(USER) is None

    async def test_export_and_import(self, agent, generator):
        await executing(agent, generator)
        exported = await agent.export_state(USER)
        assert json.loads(exported)["current_phase"] == "execution"

        assert await agent.import_state("user_2", exported) is True
        copy = await agent.get_state("user_2")
        assert copy.goals[0].id == (await agent.get_state(USER)).goals[0].id

    async def test_import_with_utc_timestamps(self, agent, generator):
        exported = {
            "agent_id": "agent_user_1_abc",
            "created_at": "2024-01-01T00:00:00Z",
            "last_run_at": "2024-01-02T00:00:00+00:00",
            "current_phase": "execution",
            "goals": [{
                "id": "goal_1", "name": "Trip", "target_amount": 800,
                "deadline": "2024-03-01T00:00:00Z",
                "milestones": [{"week": 1, "target_amount": 100}],
            }],
        }
        assert await agent.import_state(USER, json.dumps(exported)) is True

        state = await agent.get_state(USER)
        assert state.created_at.tzinfo is None
        assert state.goals[0].deadline.tzinfo is None

        status = await agent.get_status(USER)
        assert status["days_since_last_run"] in (7, 8)

        generator.queue(review_reply())
        result = await agent.run_autonomous_check(USER, CONTEXT)
        assert result["action"] == "review_completed"

    async def test_import_rejects_invalid(self, agent):
        assert await agent.import_state(USER, "{not json") is False
        assert await agent.import_state(USER, json.dumps({"agent_id": "x"})) is False
        assert await agent.get_state(USER) is None
