import json
from contextvars import ContextVar, Token
from datetime import datetime
from typing import Any, Dict, Optional
from pathlib import Path


class AgentLogger:
    def __init__(self, log_dir: str = "logs"):
        """Initialize the agent logger."""
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        # One trace file per process session
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        self.log_file = self.log_dir / f"trace_{timestamp}.json"

        # Each asyncio task sees its own run, so background jobs are not
        # stamped with the run of whatever task spawned them
        self._run_var: ContextVar[Optional[str]] = ContextVar(f"run_id_{timestamp}", default=None)
        self._run_tokens: Dict[str, Token] = {}
        self.session_id = timestamp

        self._write_entry({
            "event": "session_start",
            "session_id": self.session_id,
            "timestamp": datetime.now().isoformat()
        })

    @property
    def current_run_id(self) -> Optional[str]:
        return self._run_var.get()

    def start_run(self, name: str, content: Any = None) -> str:
        """Start a new run (a gate tick, a planning phase, an evaluation)."""
        run_id = f"{name}_{datetime.now().strftime('%H%M%S_%f')}"
        self._run_tokens[run_id] = self._run_var.set(run_id)
        self._write_entry({
            "event": "run_start",
            "run_id": run_id,
            "name": name,
            "content": content,
            "timestamp": datetime.now().isoformat()
        })
        return run_id

    def log_step(self, step_type: str, content: Any, metadata: Dict[str, Any] = None):
        """Log a specific step (decision, persistence, generator call, etc)."""
        entry = {
            "event": "step",
            "run_id": self.current_run_id,
            "step_type": step_type,
            "content": content,
            "timestamp": datetime.now().isoformat()
        }
        if metadata:
            entry["metadata"] = metadata
        self._write_entry(entry)

    def log_decision(self, decision: str, reason: str):
        """Log a gating or routing decision."""
        self.log_step("decision", {"action": decision, "reason": reason})

    def log_error(self, where: str, error: BaseException, metadata: Dict[str, Any] = None):
        """Log a caught exception with its type."""
        self.log_step(
            "error",
            {"where": where, "error_type": type(error).__name__, "error": str(error)},
            metadata,
        )

    def end_run(self, outcome: Any = None, run_id: Optional[str] = None):
        """End a run (the current task's run unless run_id is given)."""
        run_id = run_id or self.current_run_id
        self._write_entry({
            "event": "run_end",
            "run_id": run_id,
            "content": outcome,
            "timestamp": datetime.now().isoformat()
        })
        token = self._run_tokens.pop(run_id, None)
        if token is None:
            return
        try:
            self._run_var.reset(token)
        except ValueError:
            # Ended from another task: the starting task keeps its own context
            return

    def read_entries(self) -> list:
        """Return every entry written to this session's trace file."""
        if not self.log_file.exists():
            return []
        with open(self.log_file, "r", encoding="utf-8") as f:
            return [json.loads(line) for line in f if line.strip()]

    def _write_entry(self, entry: Dict[str, Any]):
        """Append a JSON entry to the log file."""
        with open(self.log_file, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")
