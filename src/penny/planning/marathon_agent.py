"""
Marathon Agent - long-running goal planner with self-correction.

Phases cycle analysis -> planning -> execution -> review <-> adjustment and
never terminate. Each phase call reads the whole agent document, works on a
deep copy, and writes the copy back only if the phase succeeded, so a failed
generator call never leaves a half-updated state behind. The only memory
carried between calls beyond the structured fields is the thought summary.
"""

from __future__ import annotations

import math
import uuid
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Sequence

from pydantic import BaseModel, Field, ValidationError

from penny.config import REVIEW_INTERVAL_DAYS, THOUGHT_SUMMARY_MAX_CHARS
from penny.core.errors import (
    AgentNotInitializedError,
    GenerationError,
    InvalidPhaseError,
    RetriesExhaustedError,
)
from penny.core.models import (
    AgentPhase,
    FinancialContext,
    Insight,
    LocalDatetime,
    MarathonAgentState,
    Priority,
    ProgressUpdate,
    Trend,
)
from penny.planning.milestones import build_goal, milestone_due_date
from penny.utils.logger import AgentLogger

STATE_KEY_PREFIX = "penny:marathon_agent:"

COACH_SYSTEM_PROMPT = """You are Penny, an autonomous financial planning coach.
You help users build savings habits and reach concrete goals.
Be encouraging but realistic. Never recommend specific securities to buy or sell.
Always answer in the exact JSON format requested."""


# ---------------------------------------------------------------------------
# Structured generator replies
# ---------------------------------------------------------------------------

class Observation(BaseModel):
    category: str
    finding: str
    impact: Literal["positive", "neutral", "negative"] = "neutral"
    confidence: float = 0.5


class RecommendedGoal(BaseModel):
    name: str
    target_amount: float = Field(gt=0)
    timeframe_months: float = Field(gt=0)
    priority: Priority = "medium"
    rationale: str = ""


class AnalysisResult(BaseModel):
    observations: List[Observation] = Field(default_factory=list)
    risk_factors: List[str] = Field(default_factory=list)
    opportunities: List[str] = Field(default_factory=list)
    recommended_goals: List[RecommendedGoal] = Field(default_factory=list)
    thought_summary: str


class WeeklyAction(BaseModel):
    week: int
    actions: List[str] = Field(default_factory=list)
    savings_target: float = 0.0
    focus_area: str = ""


class ContingencyPlan(BaseModel):
    trigger: str
    response: str


class PlanningResult(BaseModel):
    weekly_actions: List[WeeklyAction] = Field(default_factory=list)
    contingency_plans: List[ContingencyPlan] = Field(default_factory=list)
    success_metrics: List[str] = Field(default_factory=list)
    thought_summary: str


class ProgressAssessment(BaseModel):
    on_track: bool
    percentage_complete: float = 0.0
    trend: Trend = "stable"


class Correction(BaseModel):
    goal_id: str
    issue: str
    correction: str
    new_target_amount: Optional[float] = Field(default=None, gt=0)
    new_deadline: Optional[LocalDatetime] = None


class ReviewResult(BaseModel):
    progress_assessment: ProgressAssessment
    corrections: List[Correction] = Field(default_factory=list)
    encouragement: str = ""
    next_actions: List[str] = Field(default_factory=list)
    thought_summary: str


class AdjustmentResult(BaseModel):
    recovery_actions: List[str] = Field(default_factory=list)
    thought_summary: str


def _clamp_confidence(value: float) -> float:
    return min(1.0, max(0.0, value))


def _cap_summary(text: str) -> str:
    return text.strip()[:THOUGHT_SUMMARY_MAX_CHARS]


def _previous_context(state: MarathonAgentState, empty: str) -> str:
    return state.thought_summary or empty


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------

class MarathonAgent:
    """Per-user planning agent persisted as one JSON document in the key-value store."""

    def __init__(self, generator, store, logger: Optional[AgentLogger] = None,
                 clock=datetime.now, system_prompt: str = COACH_SYSTEM_PROMPT,
                 timeout: Optional[float] = None):
        self.generator = generator
        self.store = store
        self.logger = logger
        self.clock = clock
        self.system_prompt = system_prompt
        self.timeout = timeout

    def _log(self, step_type: str, content: Any, metadata: Dict[str, Any] = None):
        if self.logger:
            self.logger.log_step(step_type, content, metadata)

    def _log_error(self, where: str, error: Exception, metadata: Dict[str, Any] = None):
        if self.logger:
            self.logger.log_error(where, error, metadata)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    @staticmethod
    def state_key(user_id: str) -> str:
        return f"{STATE_KEY_PREFIX}{user_id}"

    async def _read(self, user_id: str) -> Optional[MarathonAgentState]:
        """Read stored state; store errors propagate, a corrupt document reads as None."""
        raw = await self.store.get(self.state_key(user_id))
        if raw is None:
            return None
        try:
            return MarathonAgentState.model_validate(raw)
        except ValidationError as e:
            self._log_error("load_agent_state", e, {"user_id": user_id})
            return None

    async def get_state(self, user_id: str) -> Optional[MarathonAgentState]:
        try:
            return await self._read(user_id)
        except Exception as e:
            self._log_error("load_agent_state", e, {"user_id": user_id})
            return None

    async def _save(self, user_id: str, state: MarathonAgentState) -> bool:
        try:
            await self.store.set(self.state_key(user_id), state.model_dump(mode="json"))
            return True
        except Exception as e:
            self._log_error("save_agent_state", e, {"user_id": user_id})
            return False

    async def _require_state(self, user_id: str) -> MarathonAgentState:
        state = await self.get_state(user_id)
        if state is None:
            raise AgentNotInitializedError(f"No marathon agent for user {user_id}")
        return state

    async def _run_phase(
        self,
        phase: str,
        state: MarathonAgentState,
        step: Callable[[MarathonAgentState], Awaitable[MarathonAgentState]],
    ) -> MarathonAgentState:
        """
        Run one phase on a deep copy.

        Returns the updated copy on success and the untouched original on a
        generator failure. Retry exhaustion is re-raised for the caller.
        """
        run_id = None
        if self.logger:
            run_id = self.logger.start_run(f"marathon_{phase}", {"agent_id": state.agent_id})
        working = state.model_copy(deep=True)
        try:
            updated = await step(working)
        except RetriesExhaustedError as e:
            self._log_error(f"{phase}_phase", e, {"attempts": e.attempts})
            if self.logger:
                self.logger.end_run({"status": "retries_exhausted"}, run_id=run_id)
            raise
        except GenerationError as e:
            self._log_error(f"{phase}_phase", e)
            if self.logger:
                self.logger.end_run({"status": "unchanged"}, run_id=run_id)
            return state

        self._log("phase_transition", {
            "phase": phase,
            "from": state.current_phase.value,
            "to": updated.current_phase.value,
        })
        if self.logger:
            self.logger.end_run({"status": "ok", "phase": updated.current_phase.value}, run_id=run_id)
        return updated

    async def _structured(self, prompt: str, schema, feature: str):
        return await self.generator.generate_structured(
            prompt,
            schema,
            system_instruction=self.system_prompt,
            temperature=0.3,
            timeout=self.timeout,
            feature=feature,
        )

    # ------------------------------------------------------------------
    # Phase steps (mutate the working copy they are given)
    # ------------------------------------------------------------------

    async def _analyze(self, state: MarathonAgentState, context: FinancialContext) -> MarathonAgentState:
        in_progress = sum(1 for g in state.goals if g.status == "in_progress")
        prompt = f"""You are conducting a comprehensive analysis of a user's finances.

Previous Analysis Context: {_previous_context(state, 'None, this is the first analysis')}

Current Financial Snapshot:
- Monthly Income: ${context.monthly_income:,.2f}
- Monthly Expenses: ${context.monthly_expenses:,.2f}
- Current Savings: ${context.current_savings:,.2f}
- Total Debts: ${context.debts:,.2f}
- Savings Rate: {context.savings_rate:.1f}%
- Emergency Runway: {context.months_of_runway:.1f} months
- Health Score: {context.health_score:.0f}/100

Previous Insights Count: {len(state.insights)}
Goals in Progress: {in_progress}

Consider income stability, expense optimization, debt priorities, emergency
fund adequacy and long-term wealth building readiness. Give specific
observations and recommend concrete savings goals with a timeframe in months.
Include a thought_summary capturing your key reasoning for future sessions."""

        result = await self._structured(prompt, AnalysisResult, "marathon_analysis")
        now = self.clock()

        for observation in result.observations:
            state.insights.append(Insight(
                timestamp=now,
                type="observation",
                content=f"[{observation.category}] {observation.finding} ({observation.impact})",
                confidence=_clamp_confidence(observation.confidence),
            ))
        for recommended in result.recommended_goals:
            state.goals.append(build_goal(
                recommended.name,
                recommended.target_amount,
                recommended.timeframe_months,
                recommended.priority,
                now,
            ))

        self._log("analysis_result", {
            "observations": len(result.observations),
            "risk_factors": result.risk_factors,
            "opportunities": result.opportunities,
            "new_goals": [g.name for g in result.recommended_goals],
        })

        state.current_phase = AgentPhase.PLANNING
        state.last_run_at = now
        state.thought_summary = _cap_summary(result.thought_summary)
        state.metrics.total_analysis_runs += 1
        return state

    async def _plan(self, state: MarathonAgentState, context: FinancialContext) -> MarathonAgentState:
        active = [g for g in state.goals if g.status in ("pending", "in_progress")]
        goal_lines = "\n".join(
            f"- {g.name}: ${g.target_amount:,.0f} by {g.deadline:%Y-%m-%d} ({g.priority} priority)"
            for g in active
        ) or "- No active goals"
        prompt = f"""You are creating an execution plan for a user's savings goals.

Previous Context: {_previous_context(state, 'New session')}

Active Goals:
{goal_lines}

Monthly Disposable Income: ${context.disposable_income:,.2f}
Current Savings: ${context.current_savings:,.2f}

Create a detailed weekly action plan for the next 4 weeks.
Include contingency plans for common obstacles and measurable success metrics."""

        result = await self._structured(prompt, PlanningResult, "marathon_planning")
        now = self.clock()

        active_ids = {g.id for g in active}
        for goal in state.goals:
            if goal.id in active_ids:
                goal.status = "in_progress"

        state.insights.append(Insight(
            timestamp=now,
            type="recommendation",
            content=(
                f"Weekly plan created with {len(result.weekly_actions)} weeks of actions "
                f"and {len(result.contingency_plans)} contingency plans"
            ),
            confidence=0.85,
        ))
        state.current_phase = AgentPhase.EXECUTION
        state.last_run_at = now
        state.thought_summary = _cap_summary(result.thought_summary)
        return state

    async def _review(self, state: MarathonAgentState, context: FinancialContext,
                      updates: Sequence[ProgressUpdate]) -> MarathonAgentState:
        now = self.clock()

        for update in updates:
            goal = state.get_goal(update.goal_id)
            if goal is None:
                self._log("warning", f"Progress update for unknown goal {update.goal_id}")
                continue
            goal.current_amount = update.current_amount

        milestone_insights: List[Insight] = []
        for goal in state.goals:
            reached = []
            for milestone in goal.milestones:
                if not milestone.achieved and goal.current_amount >= milestone.target_amount:
                    milestone.achieved = True
                    milestone.achieved_at = now
                    reached.append(milestone.week)
            if reached:
                milestone_insights.append(Insight(
                    timestamp=now,
                    type="milestone",
                    content=f"{goal.name}: reached {len(reached)} milestone(s), latest week {max(reached)}",
                    confidence=1.0,
                ))
            if goal.status != "completed" and goal.target_amount > 0 and goal.current_amount >= goal.target_amount:
                goal.status = "completed"
                state.metrics.goals_completed += 1

        goal_lines = "\n".join(
            f"- [{g.id}] {g.name}: ${g.current_amount:,.0f}/${g.target_amount:,.0f} "
            f"({g.percent_complete:.1f}%) - {g.status}"
            for g in state.goals
        ) or "- No goals"
        prompt = f"""You are conducting a self-review of a user's savings plan.

Previous Context: {_previous_context(state, 'No previous context')}

Goals Progress:
{goal_lines}

Current Financial State:
- Savings Rate: {context.savings_rate:.1f}%
- Monthly Disposable: ${context.disposable_income:,.2f}

Total Analysis Runs: {state.metrics.total_analysis_runs}
Previous Corrections: {state.metrics.corrections}

Assess progress honestly. If a goal is unrealistic or circumstances changed,
identify the issue, propose a concrete correction using the goal id in
brackets, and adjust target or deadline only if needed."""

        result = await self._structured(prompt, ReviewResult, "marathon_review")
        assessment = result.progress_assessment

        review_insights = [Insight(
            timestamp=now,
            type="observation",
            content=f"Progress: {assessment.percentage_complete:.0f}% complete, trend: {assessment.trend}",
            confidence=0.9,
        )]

        applied = 0
        for correction in result.corrections:
            goal = state.get_goal(correction.goal_id)
            if goal is None:
                self._log("warning", f"Correction for unknown goal {correction.goal_id}")
                continue
            goal.status = "adjusted"
            if correction.new_target_amount is not None:
                goal.target_amount = correction.new_target_amount
            if correction.new_deadline is not None:
                goal.deadline = correction.new_deadline
            applied += 1
            review_insights.append(Insight(
                timestamp=now,
                type="correction",
                content=f"[{correction.goal_id}] {correction.issue} -> {correction.correction}",
                confidence=0.85,
            ))

        state.insights.extend(review_insights)
        state.insights.extend(milestone_insights)
        state.metrics.corrections += applied
        if assessment.on_track:
            state.metrics.successful_predictions += 1
        state.current_phase = AgentPhase.EXECUTION if assessment.on_track else AgentPhase.ADJUSTMENT
        state.last_run_at = now
        state.thought_summary = _cap_summary(result.thought_summary)
        return state

    async def _adjust(self, state: MarathonAgentState, context: FinancialContext) -> MarathonAgentState:
        adjusted = [g for g in state.goals if g.status == "adjusted"]
        goal_lines = "\n".join(
            f"- {g.name}: ${g.current_amount:,.0f}/${g.target_amount:,.0f}, deadline {g.deadline:%Y-%m-%d}"
            for g in adjusted
        ) or "- No goals were adjusted"
        prompt = f"""The last review found the user's plan off track.

Previous Context: {_previous_context(state, 'No previous context')}

Adjusted Goals:
{goal_lines}

Monthly Disposable Income: ${context.disposable_income:,.2f}

List short, concrete recovery actions for the coming weeks."""

        result = await self._structured(prompt, AdjustmentResult, "marathon_adjustment")
        now = self.clock()

        state.insights.append(Insight(
            timestamp=now,
            type="recommendation",
            content="Recovery plan: " + ("; ".join(result.recovery_actions) or "stay the course"),
            confidence=0.8,
        ))
        state.current_phase = AgentPhase.EXECUTION
        state.last_run_at = now
        state.thought_summary = _cap_summary(result.thought_summary)
        return state

    # ------------------------------------------------------------------
    # Public phase API
    # ------------------------------------------------------------------

    async def initialize(self, user_id: str, context: FinancialContext) -> MarathonAgentState:
        """
        Resume the user's agent, or create one and run its first analysis.

        Raises:
            RetriesExhaustedError: the first analysis could not reach the generator
        """
        persist = True
        try:
            existing = await self._read(user_id)
        except Exception as e:
            # Unknown stored state: work in memory rather than overwrite it
            self._log_error("load_agent_state", e, {"user_id": user_id})
            existing, persist = None, False

        if existing is not None:
            self._log("agent_resumed", {"agent_id": existing.agent_id, "phase": existing.current_phase.value})
            return existing

        now = self.clock()
        state = MarathonAgentState(
            agent_id=f"agent_{user_id}_{uuid.uuid4().hex[:8]}",
            created_at=now,
            last_run_at=now,
        )
        analyzed = await self._run_phase("analysis", state, lambda s: self._analyze(s, context))
        if persist:
            await self._save(user_id, analyzed)
        self._log("agent_initialized", {"agent_id": analyzed.agent_id})
        return analyzed

    async def run_analysis_phase(self, user_id: str, context: FinancialContext) -> MarathonAgentState:
        state = await self._require_state(user_id)
        updated = await self._run_phase("analysis", state, lambda s: self._analyze(s, context))
        if updated is not state:
            await self._save(user_id, updated)
        return updated

    async def run_planning_phase(self, user_id: str, context: FinancialContext) -> MarathonAgentState:
        state = await self._require_state(user_id)
        updated = await self._run_phase("planning", state, lambda s: self._plan(s, context))
        if updated is not state:
            await self._save(user_id, updated)
        return updated

    async def run_review_phase(self, user_id: str, context: FinancialContext,
                               progress: Optional[Sequence[ProgressUpdate]] = None) -> MarathonAgentState:
        """
        Merge actual progress, then self-assess and apply corrections.

        Args:
            user_id: Agent owner
            context: Current financial snapshot
            progress: Actual amounts per goal id; unknown ids are ignored

        Returns:
            The new state, or the stored state unchanged if the generator failed
        """
        state = await self._require_state(user_id)
        updates = list(progress or [])
        updated = await self._run_phase("review", state, lambda s: self._review(s, context, updates))
        if updated is not state:
            await self._save(user_id, updated)
        return updated

    async def run_adjustment_phase(self, user_id: str, context: FinancialContext) -> MarathonAgentState:
        """
        Raises:
            InvalidPhaseError: the agent is not in the adjustment phase
        """
        state = await self._require_state(user_id)
        if state.current_phase != AgentPhase.ADJUSTMENT:
            raise InvalidPhaseError(
                f"Adjustment requires phase 'adjustment', agent is in '{state.current_phase.value}'"
            )
        updated = await self._run_phase("adjustment", state, lambda s: self._adjust(s, context))
        if updated is not state:
            await self._save(user_id, updated)
        return updated

    # ------------------------------------------------------------------
    # Status and autonomy
    # ------------------------------------------------------------------

    def _days_since(self, moment: datetime) -> int:
        return math.floor((self.clock() - moment).total_seconds() / 86400)

    async def get_status(self, user_id: str) -> Optional[Dict[str, Any]]:
        state = await self.get_state(user_id)
        if state is None:
            return None
        return {
            "is_active": True,
            "agent_id": state.agent_id,
            "current_phase": state.current_phase.value,
            "goals": [g.model_dump(mode="json") for g in state.goals],
            "recent_insights": [i.model_dump(mode="json") for i in state.insights[-5:]],
            "metrics": state.metrics.model_dump(),
            "thought_summary": state.thought_summary,
            "days_since_last_run": self._days_since(state.last_run_at),
        }

    async def run_autonomous_check(self, user_id: str, context: FinancialContext) -> Dict[str, str]:
        """
        Periodic self-check.

        Returns:
            {"action", "message"} where action is initialize, review_completed,
            review_failed, milestone_check or none
        """
        state = await self.get_state(user_id)
        if state is None:
            return {"action": "initialize", "message": "Agent not initialized"}

        if self._days_since(state.last_run_at) >= REVIEW_INTERVAL_DAYS:
            self._log("decision", {"action": "auto_review", "reason": "review interval elapsed"})
            reviewed = await self.run_review_phase(user_id, context, [])
            if reviewed.last_run_at == state.last_run_at:
                return {"action": "review_failed", "message": "Weekly review could not be completed"}
            return {"action": "review_completed", "message": "Weekly review completed automatically"}

        now = self.clock()
        for goal in state.goals:
            for milestone in goal.milestones:
                if milestone.achieved:
                    continue
                if now >= milestone_due_date(state.created_at, milestone):
                    return {
                        "action": "milestone_check",
                        "message": f'Time to check progress on "{goal.name}" - Week {milestone.week} milestone',
                    }

        return {"action": "none", "message": "All systems nominal"}

    async def export_state(self, user_id: str) -> Optional[str]:
        state = await self.get_state(user_id)
        return state.model_dump_json(indent=2) if state else None

    async def import_state(self, user_id: str, state_json: str) -> bool:
        """Validate and store an exported state; invalid JSON is rejected."""
        try:
            state = MarathonAgentState.model_validate_json(state_json)
        except ValidationError as e:
            self._log_error("import_agent_state", e, {"user_id": user_id})
            return False
        return await self._save(user_id, state)
