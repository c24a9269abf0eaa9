"""
Intervention Gate - decides whether and when to nudge the user
"""

from typing import Dict, Any, List, Optional, Tuple
from datetime import datetime, timedelta
import uuid

from pydantic import ValidationError

from penny.config import AGENT_CONFIG, INTERVENTION_LOG_CAP, RESPONSE_WINDOW
from penny.core.errors import GenerationError
from penny.core.models import AgentRateState, Intervention, PortfolioSnapshot
from penny.utils.logger import AgentLogger

RATE_STATE_KEY = "penny:agent_state"
INTERVENTION_LOG_KEY = "penny:interventions"

ASSET_CLASSES = ("equity", "debt", "commodity", "real_asset", "cash")


def week_start(moment: datetime) -> str:
    """ISO date of the Sunday that starts the week containing moment."""
    days_since_sunday = (moment.weekday() + 1) % 7
    return (moment.date() - timedelta(days=days_since_sunday)).isoformat()


def calculate_allocation_drift(snapshot: PortfolioSnapshot, threshold: float) -> Tuple[bool, List[str]]:
    """
    Compare current allocation percentages with targets.

    Returns:
        (drifted, details) where details has one line per asset class whose
        drift exceeds threshold percentage points
    """
    if not snapshot.target_allocation:
        return False, []

    current = {asset_class: 0.0 for asset_class in ASSET_CLASSES}
    total_value = 0.0
    for holding in snapshot.holdings:
        value = holding.value
        total_value += value
        current[holding.asset_class] += value

    if total_value == 0:
        return False, []

    details = []
    for asset_class, target in snapshot.target_allocation.items():
        current_pct = current.get(asset_class, 0.0) / total_value * 100
        drift = abs(current_pct - target)
        if drift > threshold:
            direction = "overweight" if current_pct > target else "underweight"
            details.append(f"{asset_class.replace('_', ' ')} is {direction} by {drift:.1f}%")

    return bool(details), details


class InterventionGate:
    """
    Rate-limited, learning intervention loop for one user.

    Each tick checks allocation drift, the contribution reminder day and
    the weekly goal check-in, and fires only what should_intervene allows.
    """

    def __init__(self, store, dispatcher, generator, telemetry,
                 logger: Optional[AgentLogger] = None,
                 config: Optional[Dict[str, Any]] = None,
                 clock=datetime.now):
        self.store = store
        self.dispatcher = dispatcher
        self.generator = generator
        self.telemetry = telemetry
        self.logger = logger
        self.clock = clock

        self.thresholds = dict(AGENT_CONFIG)
        if config:
            self.thresholds.update(config)

    def update_thresholds(self, **overrides):
        """Override gate thresholds at runtime"""
        unknown = set(overrides) - set(self.thresholds)
        if unknown:
            raise KeyError(f"Unknown thresholds: {sorted(unknown)}")
        self.thresholds.update(overrides)

    def _log(self, step_type: str, content: Any, metadata: Dict[str, Any] = None):
        if self.logger:
            self.logger.log_step(step_type, content, metadata)

    def _log_error(self, where: str, error: Exception, metadata: Dict[str, Any] = None):
        if self.logger:
            self.logger.log_error(where, error, metadata)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def default_state(self) -> AgentRateState:
        now = self.clock()
        return AgentRateState(last_check=now, week_start_date=week_start(now))

    async def load_state(self) -> AgentRateState:
        """Load rate state, resetting the weekly counter when the week has rolled over"""
        try:
            raw = await self.store.get(RATE_STATE_KEY)
        except Exception as e:
            self._log_error("load_state", e)
            return self.default_state()

        if raw is None:
            return self.default_state()

        try:
            state = AgentRateState.model_validate(raw)
        except ValidationError as e:
            self._log_error("load_state", e)
            return self.default_state()

        current_week = week_start(self.clock())
        if state.week_start_date != current_week:
            self._log("week_rollover", {"previous": state.week_start_date, "current": current_week})
            state.weekly_intervention_count = 0
            state.week_start_date = current_week
        return state

    async def save_state(self, state: AgentRateState) -> bool:
        try:
            await self.store.set(RATE_STATE_KEY, state.model_dump(mode="json"))
            return True
        except Exception as e:
            self._log_error("save_state", e)
            return False

    async def _load_log(self) -> Optional[List[Intervention]]:
        """Intervention log, or None when it could not be read"""
        try:
            raw = await self.store.get(INTERVENTION_LOG_KEY) or []
            return [Intervention.model_validate(item) for item in raw]
        except Exception as e:
            self._log_error("load_interventions", e)
            return None

    async def _save_log(self, interventions: List[Intervention]) -> bool:
        try:
            await self.store.set(
                INTERVENTION_LOG_KEY,
                [i.model_dump(mode="json") for i in interventions[-INTERVENTION_LOG_CAP:]],
            )
            return True
        except Exception as e:
            self._log_error("save_interventions", e)
            return False

    # ------------------------------------------------------------------
    # Decision rule
    # ------------------------------------------------------------------

    def should_intervene(self, state: AgentRateState, intervention_type: str) -> bool:
        """
        Apply the gate in order: weekly cap, cooldown, learned relevance.

        Args:
            state: Current rate state
            intervention_type: Candidate intervention type

        Returns:
            True if the intervention may fire now
        """
        if state.weekly_intervention_count >= self.thresholds["max_weekly_interventions"]:
            self._log("decision", {"action": "suppress", "type": intervention_type, "reason": "weekly_cap"})
            return False

        if state.last_intervention is not None:
            hours_since = (self.clock() - state.last_intervention).total_seconds() / 3600
            if hours_since < self.thresholds["min_intervention_gap_hours"]:
                self._log("decision", {"action": "suppress", "type": intervention_type, "reason": "cooldown"})
                return False

        if (state.user_response_rate < self.thresholds["low_response_rate"]
                and intervention_type not in state.effective_intervention_types):
            self._log("decision", {"action": "suppress", "type": intervention_type, "reason": "low_engagement"})
            return False

        return True

    # ------------------------------------------------------------------
    # Firing
    # ------------------------------------------------------------------

    async def fire(self, intervention_type: str, title: str, message: str,
                   state: AgentRateState) -> Intervention:
        """
        Dispatch an intervention, log it and update state in place.

        Dispatch errors propagate; persistence errors are logged and ignored.
        """
        intervention = Intervention(
            id=f"intervention_{uuid.uuid4().hex[:12]}",
            type=intervention_type,
            title=title,
            message=message,
            timestamp=self.clock(),
        )

        await self.dispatcher.schedule_immediate(
            title, message, {"intervention_id": intervention.id, "type": intervention_type}
        )

        log = await self._load_log()
        if log is None:
            self._log("warning", "Intervention log unreadable, entry not recorded")
        else:
            log.append(intervention)
            await self._save_log(log)

        await self.telemetry.create_trace(
            name="agent_intervention",
            input={
                "intervention_id": intervention.id,
                "type": intervention_type,
                "title": title,
                "message": message,
            },
            tags=["agent", "intervention", intervention_type],
        )

        state.last_intervention = intervention.timestamp
        state.weekly_intervention_count += 1
        await self.save_state(state)

        self._log("intervention_fired", {"id": intervention.id, "type": intervention_type, "title": title})
        return intervention

    async def _drift_message(self, drift_details: List[str]) -> str:
        limit = self.thresholds["max_message_length"]
        prompt = (
            "You are a friendly investment coach. The user's portfolio has drifted "
            "from their target allocation:\n"
            + "\n".join(drift_details)
            + f"\n\nWrite a short, encouraging push notification message (max {limit} chars) that:\n"
            "1. Acknowledges the drift without being alarming\n"
            "2. Suggests they review their portfolio\n"
            "3. Ends with an emoji\n\n"
            "Just respond with the message, nothing else."
        )
        try:
            message = await self.generator.generate(
                prompt, temperature=0.7, max_tokens=100, feature="agent_drift_notification"
            )
            message = message.strip()
        except GenerationError as e:
            self._log_error("drift_message", e)
            message = f"Your portfolio has drifted: {drift_details[0]}. Take a moment to review it."
        return message[:limit]

    async def run_tick(self, snapshot: PortfolioSnapshot) -> List[Intervention]:
        """
        One pass of the decision loop.

        Args:
            snapshot: Current holdings, target allocation and monthly target

        Returns:
            Interventions fired during this tick
        """
        now = self.clock()
        trace_id = await self.telemetry.create_trace(
            name="agent_loop_run",
            input={"timestamp": now.isoformat(), "holdings": len(snapshot.holdings)},
            tags=["agent", "background"],
        )
        run_id = self.logger.start_run("agent_tick", {"trace_id": trace_id}) if self.logger else None

        fired: List[Intervention] = []
        try:
            state = await self.load_state()

            if not snapshot.holdings:
                self._log("decision", {"action": "skip", "reason": "no_holdings"})
                await self.save_state(state)
                return fired

            drifted, details = calculate_allocation_drift(
                snapshot, self.thresholds["allocation_drift_threshold"]
            )
            if drifted and self.should_intervene(state, "drift_alert"):
                message = await self._drift_message(details)
                fired.append(await self.fire("drift_alert", "Portfolio Drift Detected", message, state))

            monthly_target = snapshot.monthly_investment_target
            if (now.weekday() == self.thresholds["contribution_reminder_weekday"]
                    and monthly_target > 0
                    and self.should_intervene(state, "contribution_reminder")):
                fired.append(await self.fire(
                    "contribution_reminder",
                    "Investment Day!",
                    f"Time for your ${monthly_target:,.0f} monthly contribution. Small steps lead to big gains!",
                    state,
                ))

            days_since_check = (now - state.last_check).total_seconds() / 86400
            if (days_since_check >= self.thresholds["goal_check_interval_days"]
                    and self.should_intervene(state, "goal_check")):
                fired.append(await self.fire(
                    "goal_check",
                    "Weekly Check-in",
                    f"Your portfolio is at ${snapshot.total_value:,.2f}. Take 2 min to review your progress!",
                    state,
                ))
                state.last_check = now

            # Persist every tick so a fresh state's last_check survives
            await self.save_state(state)

            await self.telemetry.log_score(
                trace_id, "agent_loop_success", 1.0,
                f"Agent loop completed, {len(fired)} intervention(s)", "heuristic",
            )
        except Exception as e:
            self._log_error("run_tick", e)
            await self.telemetry.log_score(trace_id, "agent_loop_error", 0.0, str(e), "heuristic")
        finally:
            if self.logger:
                self.logger.end_run({"fired": [i.id for i in fired]}, run_id=run_id)

        return fired

    # ------------------------------------------------------------------
    # Learning
    # ------------------------------------------------------------------

    async def mark_responded(self, intervention_id: str, action_taken: Optional[str] = None) -> bool:
        """
        Record a user response and relearn engagement.

        Returns:
            True if the response was recorded; False for unknown ids and
            interventions that were already marked
        """
        log = await self._load_log()
        if not log:
            return False

        entry = next((i for i in log if i.id == intervention_id), None)
        if entry is None or entry.responded:
            return False

        entry.responded = True
        entry.response_timestamp = self.clock()
        entry.action_taken = action_taken
        await self._save_log(log)

        state = await self.load_state()
        recent = log[-RESPONSE_WINDOW:]
        responded = [i for i in recent if i.responded]
        state.user_response_rate = len(responded) / len(recent)
        state.effective_intervention_types = {i.type for i in responded}
        await self.save_state(state)

        await self.telemetry.log_score(
            intervention_id, "intervention_response", 1.0,
            action_taken or "User responded", "human",
        )
        self._log("intervention_response", {
            "id": intervention_id,
            "response_rate": state.user_response_rate,
            "effective_types": sorted(state.effective_intervention_types),
        })
        return True

    async def get_history(self) -> List[Intervention]:
        """Get intervention log, oldest first"""
        return await self._load_log() or []

    async def get_analytics(self) -> Dict[str, Any]:
        """Summarize intervention volume and engagement by type"""
        history = await self.get_history()
        state = await self.load_state()

        by_type: Dict[str, Dict[str, int]] = {}
        for intervention in history:
            counts = by_type.setdefault(intervention.type, {"sent": 0, "responded": 0})
            counts["sent"] += 1
            if intervention.responded:
                counts["responded"] += 1

        responded = sum(1 for i in history if i.responded)
        return {
            "total_interventions": len(history),
            "total_responded": responded,
            "overall_response_rate": responded / len(history) if history else 0.0,
            "learned_response_rate": state.user_response_rate,
            "effective_intervention_types": sorted(state.effective_intervention_types),
            "weekly_intervention_count": state.weekly_intervention_count,
            "week_start_date": state.week_start_date,
            "preferred_hour": state.preferred_hour,
            "by_type": by_type,
        }
