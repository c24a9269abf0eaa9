"""
Penny CLI - wires the coaching-agent core together and exposes its operations
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any, List, Optional

from penny.agents.intervention_gate import InterventionGate
from penny.agents.scheduler import AgentScheduler
from penny.config import Settings, load_settings
from penny.core.errors import AgentNotInitializedError, InvalidPhaseError, RetriesExhaustedError
from penny.core.evaluation import EvaluationEngine
from penny.core.experiments import ExperimentManager
from penny.core.generator import LLMGenerator
from penny.core.metrics import EvaluationStore
from penny.core.models import EvaluationContext, FinancialContext, PortfolioSnapshot, ProgressUpdate
from penny.core.notifications import LocalNotificationDispatcher
from penny.core.observed_generator import ObservedGenerator
from penny.core.telemetry import TelemetrySink
from penny.db.kv_store import SQLiteKeyValueStore
from penny.planning.marathon_agent import MarathonAgent
from penny.utils.async_processor import AsyncProcessor
from penny.utils.logger import AgentLogger


class CoachingApp:
    """Composition root: every collaborator is built once here and injected."""

    def __init__(self, settings: Optional[Settings] = None, store=None, generator=None,
                 dispatcher=None, logger: Optional[AgentLogger] = None):
        self.settings = settings or load_settings()
        self.logger = logger or AgentLogger(self.settings.log_dir)
        self.store = store or SQLiteKeyValueStore(self.settings.db_path)
        self.dispatcher = dispatcher or LocalNotificationDispatcher(self.settings.db_path)

        self.telemetry = TelemetrySink(
            self.store,
            logger=self.logger,
            api_key=self.settings.opik_api_key,
            base_url=self.settings.opik_url,
            workspace=self.settings.opik_workspace,
            project_name=self.settings.opik_project,
        )
        self.generator = generator or LLMGenerator(
            api_key=self.settings.api_key,
            model=self.settings.model,
            base_url=self.settings.base_url,
            default_timeout=self.settings.llm_timeout,
            logger=self.logger,
        )

        self.history = EvaluationStore(self.store, self.logger)
        self.engine = EvaluationEngine(self.generator, self.telemetry, self.history, self.logger)
        self.processor = AsyncProcessor(logger=self.logger)
        self.experiments = ExperimentManager(self.store, self.history, logger=self.logger)
        self.observed = ObservedGenerator(
            self.generator, self.telemetry, self.engine, self.processor,
            experiments=self.experiments, logger=self.logger,
        )

        self.gate = InterventionGate(
            self.store, self.dispatcher, self.observed, self.telemetry, logger=self.logger
        )
        self.agent = MarathonAgent(
            self.observed, self.store, logger=self.logger, timeout=self.settings.llm_timeout
        )

    def scheduler(self, snapshot_path: str, interval_seconds: Optional[float] = None) -> AgentScheduler:
        """Scheduler that re-reads the snapshot file before every tick."""
        async def provider() -> PortfolioSnapshot:
            return _load_model(snapshot_path, PortfolioSnapshot)
        return AgentScheduler(self.gate, provider, interval_seconds, logger=self.logger)

    async def close(self):
        """Finish sampled evaluations before exiting."""
        await self.processor.shutdown(wait=True)


def _load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _load_model(path: str, model):
    return model.model_validate(_load_json(path))


def _load_context(path: Optional[str]) -> FinancialContext:
    return _load_model(path, FinancialContext) if path else FinancialContext()


def _load_progress(path: Optional[str]) -> List[ProgressUpdate]:
    if not path:
        return []
    return [ProgressUpdate.model_validate(item) for item in _load_json(path)]


def _print_json(data: Any):
    print(json.dumps(data, indent=2, default=str))


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------

async def cmd_tick(app: CoachingApp, args) -> int:
    if args.watch:
        scheduler = app.scheduler(args.snapshot, args.interval)
        await scheduler.start()
        print(f"⏱️  Agent loop running every {scheduler.interval_seconds:.0f}s. Ctrl+C to stop.")
        try:
            while True:
                await asyncio.sleep(3600)
        finally:
            await scheduler.stop()

    fired = await app.gate.run_tick(_load_model(args.snapshot, PortfolioSnapshot))
    if not fired:
        print("No interventions this tick.")
    for intervention in fired:
        print(f"🔔 [{intervention.type}] {intervention.title}: {intervention.message} ({intervention.id})")
    return 0


async def cmd_respond(app: CoachingApp, args) -> int:
    if await app.gate.mark_responded(args.intervention_id, args.action):
        print(f"✅ Response recorded for {args.intervention_id}")
        return 0
    print(f"Nothing recorded: {args.intervention_id} is unknown or already answered")
    return 1


async def cmd_interventions(app: CoachingApp, args) -> int:
    if args.analytics:
        _print_json(await app.gate.get_analytics())
    else:
        _print_json([i.model_dump(mode="json") for i in await app.gate.get_history()])
    return 0


async def cmd_agent(app: CoachingApp, args) -> int:
    agent = app.agent
    user_id = args.user
    action = args.action

    try:
        if action == "init":
            state = await agent.initialize(user_id, _load_context(args.context))
        elif action == "analyze":
            state = await agent.run_analysis_phase(user_id, _load_context(args.context))
        elif action == "plan":
            state = await agent.run_planning_phase(user_id, _load_context(args.context))
        elif action == "review":
            state = await agent.run_review_phase(
                user_id, _load_context(args.context), _load_progress(args.progress)
            )
        elif action == "adjust":
            state = await agent.run_adjustment_phase(user_id, _load_context(args.context))
        elif action == "check":
            _print_json(await agent.run_autonomous_check(user_id, _load_context(args.context)))
            return 0
        elif action == "status":
            status = await agent.get_status(user_id)
            if status is None:
                print(f"No agent for {user_id}. Run 'penny agent init' first.")
                return 1
            _print_json(status)
            return 0
        elif action == "export":
            exported = await agent.export_state(user_id)
            if exported is None:
                print(f"No agent for {user_id}.")
                return 1
            print(exported)
            return 0
        elif action == "import":
            if not args.file:
                print("import needs --file")
                return 2
            ok = await agent.import_state(user_id, Path(args.file).read_text(encoding="utf-8"))
            print("✅ State imported" if ok else "❌ Invalid agent state")
            return 0 if ok else 1
        else:
            print(f"Unknown agent action: {action}")
            return 2
    except (AgentNotInitializedError, InvalidPhaseError) as e:
        print(f"❌ {e}")
        return 1
    except RetriesExhaustedError as e:
        print(f"❌ Generator unavailable after {e.attempts} attempts, try again later")
        return 1

    print(f"🧭 Phase: {state.current_phase.value} | goals: {len(state.goals)} | insights: {len(state.insights)}")
    if state.thought_summary:
        print(f"💭 {state.thought_summary}")
    return 0


async def cmd_evaluate(app: CoachingApp, args) -> int:
    context = EvaluationContext(
        user_input=args.input,
        response=args.response,
        financial_context=_load_json(args.context) if args.context else None,
        feature=args.feature,
    )
    trace_id = await app.telemetry.create_trace(
        name="manual_evaluation", input={"feature": args.feature}, tags=["evaluation", "cli"]
    )
    result = await app.engine.run_full_evaluation(trace_id, context, use_llm=not args.no_llm)
    _print_json({"trace_id": trace_id, **result.model_dump()})
    return 0


async def cmd_metrics(app: CoachingApp, args) -> int:
    summary = await app.history.get_metrics_summary()
    if args.experiments:
        summary["experiments"] = {
            e.id: await app.experiments.get_summary(e.id) for e in app.experiments.get_active_experiments()
        }
    _print_json(summary)
    return 0


async def cmd_feedback(app: CoachingApp, args) -> int:
    await app.telemetry.log_feedback(args.trace_id, args.rating, args.comment)
    print(f"👍 Feedback saved for {args.trace_id}")
    return 0


COMMANDS = {
    "tick": cmd_tick,
    "respond": cmd_respond,
    "interventions": cmd_interventions,
    "agent": cmd_agent,
    "evaluate": cmd_evaluate,
    "metrics": cmd_metrics,
    "feedback": cmd_feedback,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="penny", description="Penny coaching-agent core")
    parser.add_argument("--env-file", help="Path to a .env file")
    sub = parser.add_subparsers(dest="command", required=True)

    tick = sub.add_parser("tick", help="Run the intervention loop once")
    tick.add_argument("--snapshot", required=True, help="Portfolio snapshot JSON file")
    tick.add_argument("--watch", action="store_true", help="Keep ticking on a schedule")
    tick.add_argument("--interval", type=float, help="Seconds between ticks with --watch")

    respond = sub.add_parser("respond", help="Record a response to an intervention")
    respond.add_argument("intervention_id")
    respond.add_argument("--action", help="What the user did")

    interventions = sub.add_parser("interventions", help="Show the intervention log")
    interventions.add_argument("--analytics", action="store_true", help="Show engagement analytics")

    agent = sub.add_parser("agent", help="Drive the marathon planning agent")
    agent.add_argument("action", choices=[
        "init", "analyze", "plan", "review", "adjust", "check", "status", "export", "import",
    ])
    agent.add_argument("--user", default="default", help="User id")
    agent.add_argument("--context", help="Financial context JSON file")
    agent.add_argument("--progress", help="JSON list of {goal_id, current_amount}")
    agent.add_argument("--file", help="State JSON file for import")

    evaluate = sub.add_parser("evaluate", help="Score a response")
    evaluate.add_argument("--input", required=True, help="User input")
    evaluate.add_argument("--response", required=True, help="Response to score")
    evaluate.add_argument("--context", help="Financial context JSON file (numbers only)")
    evaluate.add_argument("--feature", default="manual")
    evaluate.add_argument("--no-llm", action="store_true", help="Heuristics only")

    metrics = sub.add_parser("metrics", help="Show the evaluation dashboard")
    metrics.add_argument("--experiments", action="store_true", help="Include experiment summaries")

    feedback = sub.add_parser("feedback", help="Record user feedback on a trace")
    feedback.add_argument("trace_id")
    feedback.add_argument("rating", choices=["helpful", "not_helpful", "neutral"])
    feedback.add_argument("--comment")

    return parser


async def run(args) -> int:
    app = CoachingApp(load_settings(args.env_file))
    try:
        return await COMMANDS[args.command](app, args)
    finally:
        await app.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        print("\n👋 Stopped.")
        return 0
    except (OSError, ValueError) as e:
        print(f"❌ Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
