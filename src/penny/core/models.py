"""
Models for Penny - explicit schemas for every persisted record
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Set

from pydantic import AfterValidator, BaseModel, Field, field_serializer


def to_local_naive(value: datetime) -> datetime:
    """Clocks are naive local time, so offset-aware input is converted to match"""
    if value.tzinfo is not None:
        return value.astimezone().replace(tzinfo=None)
    return value


LocalDatetime = Annotated[datetime, AfterValidator(to_local_naive)]

InterventionType = Literal[
    "drift_alert",
    "contribution_reminder",
    "milestone",
    "rebalance_suggestion",
    "goal_check",
]
AssetClass = Literal["equity", "debt", "commodity", "real_asset", "cash"]
Priority = Literal["high", "medium", "low"]
GoalStatus = Literal["pending", "in_progress", "completed", "adjusted"]
InsightType = Literal["observation", "recommendation", "correction", "milestone"]
Trend = Literal["improving", "stable", "declining"]

DEFAULT_EFFECTIVE_TYPES = ("drift_alert", "contribution_reminder")


class AgentPhase(str, Enum):
    ANALYSIS = "analysis"
    PLANNING = "planning"
    EXECUTION = "execution"
    REVIEW = "review"
    ADJUSTMENT = "adjustment"


# ---------------------------------------------------------------------------
# Intervention gate
# ---------------------------------------------------------------------------

class AgentRateState(BaseModel):
    """Rate-limiter and learned-effectiveness state for the intervention gate."""
    last_check: LocalDatetime
    last_intervention: Optional[LocalDatetime] = None
    weekly_intervention_count: int = Field(default=0, ge=0)
    week_start_date: str
    user_response_rate: float = Field(default=0.5, ge=0.0, le=1.0)
    preferred_hour: int = Field(default=9, ge=0, le=23)
    effective_intervention_types: Set[str] = Field(
        default_factory=lambda: set(DEFAULT_EFFECTIVE_TYPES)
    )

    @field_serializer("effective_intervention_types")
    def _serialize_types(self, value: Set[str]) -> List[str]:
        return sorted(value)


class Intervention(BaseModel):
    id: str
    type: InterventionType
    title: str
    message: str
    timestamp: LocalDatetime
    responded: bool = False
    response_timestamp: Optional[LocalDatetime] = None
    action_taken: Optional[str] = None


class Holding(BaseModel):
    symbol: str
    asset_class: AssetClass
    quantity: float = 0.0
    purchase_price: float = 0.0
    current_price: Optional[float] = None
    current_value: Optional[float] = None

    @property
    def value(self) -> float:
        if self.current_value:
            return self.current_value
        return self.quantity * (self.current_price or self.purchase_price)


class PortfolioSnapshot(BaseModel):
    """Point-in-time portfolio view handed to each gate tick."""
    holdings: List[Holding] = Field(default_factory=list)
    target_allocation: Dict[str, float] = Field(default_factory=dict)
    monthly_investment_target: float = 0.0

    @property
    def total_value(self) -> float:
        return sum(h.value for h in self.holdings)


# ---------------------------------------------------------------------------
# Goal ledger / marathon agent
# ---------------------------------------------------------------------------

class Milestone(BaseModel):
    week: int = Field(ge=1)
    target_amount: float
    achieved: bool = False
    achieved_at: Optional[LocalDatetime] = None


class Goal(BaseModel):
    id: str
    name: str
    target_amount: float
    current_amount: float = 0.0
    deadline: LocalDatetime
    priority: Priority = "medium"
    status: GoalStatus = "pending"
    milestones: List[Milestone] = Field(default_factory=list)

    @property
    def percent_complete(self) -> float:
        if self.target_amount <= 0:
            return 0.0
        return self.current_amount / self.target_amount * 100


class Insight(BaseModel):
    timestamp: LocalDatetime
    type: InsightType
    content: str
    confidence: float = Field(ge=0.0, le=1.0)


class AgentMetrics(BaseModel):
    total_analysis_runs: int = 0
    successful_predictions: int = 0
    corrections: int = 0
    goals_completed: int = 0


class MarathonAgentState(BaseModel):
    """Per-user planning agent state; the sole owner of its goals."""
    agent_id: str
    created_at: LocalDatetime
    last_run_at: LocalDatetime
    current_phase: AgentPhase = AgentPhase.ANALYSIS
    goals: List[Goal] = Field(default_factory=list)
    insights: List[Insight] = Field(default_factory=list)
    thought_summary: Optional[str] = None
    metrics: AgentMetrics = Field(default_factory=AgentMetrics)

    def get_goal(self, goal_id: str) -> Optional[Goal]:
        for goal in self.goals:
            if goal.id == goal_id:
                return goal
        return None


class FinancialContext(BaseModel):
    monthly_income: float = 0.0
    monthly_expenses: float = 0.0
    current_savings: float = 0.0
    debts: float = 0.0
    savings_rate: float = 0.0
    months_of_runway: float = 0.0
    health_score: float = 0.0

    @property
    def disposable_income(self) -> float:
        return self.monthly_income - self.monthly_expenses


class ProgressUpdate(BaseModel):
    goal_id: str
    current_amount: float


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

class MetricResult(BaseModel):
    """Output of a single heuristic or judge scorer."""
    metric_name: str
    score: float = Field(ge=0.0, le=1.0)
    reason: str
    details: Optional[Dict[str, Any]] = None


class EvaluationContext(BaseModel):
    user_input: str
    response: str
    financial_context: Optional[Dict[str, float]] = None
    user_goals: List[str] = Field(default_factory=list)
    feature: str = "unknown"


class EvaluationCriteria(BaseModel):
    accuracy: float = Field(default=0.5, ge=0.0, le=1.0)
    helpfulness: float = Field(default=0.5, ge=0.0, le=1.0)
    actionability: float = Field(default=0.5, ge=0.0, le=1.0)
    safety: float = Field(default=0.5, ge=0.0, le=1.0)
    clarity: float = Field(default=0.5, ge=0.0, le=1.0)
    relevance: float = Field(default=0.5, ge=0.0, le=1.0)


class EvaluationResult(BaseModel):
    id: str
    trace_id: str
    feature: str
    timestamp: LocalDatetime
    prompt: str
    response: str
    criteria: EvaluationCriteria
    overall_score: float = Field(ge=0.0, le=1.0)
    feedback: str = ""
    model: str = ""


class FullEvaluation(BaseModel):
    heuristic_results: List[MetricResult]
    llm_results: List[MetricResult]
    overall_score: float = Field(ge=0.0, le=1.0)


# ---------------------------------------------------------------------------
# Experiments
# ---------------------------------------------------------------------------

class ExperimentVariant(BaseModel):
    id: str
    name: str
    weight: float = Field(ge=0.0)
    system_prompt: Optional[str] = None
    prompt_template: Optional[str] = None


class Experiment(BaseModel):
    id: str
    name: str
    description: str = ""
    feature: str
    is_active: bool = True
    variants: List[ExperimentVariant]


class ExperimentResult(BaseModel):
    id: str
    experiment_name: str
    variant_id: str
    variant_name: str
    trace_id: str
    timestamp: LocalDatetime
    scores: EvaluationCriteria
    overall_score: float = Field(ge=0.0, le=1.0)
    latency_ms: float = 0.0
    tokens_used: int = 0
