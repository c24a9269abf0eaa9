"""
Telemetry Sink - traces, scores and user feedback.

Everything is stored locally (capped) for dashboards. When an Opik API key
is configured the same records are also sent to the remote endpoint. The
sink is best-effort: no failure here ever reaches the caller.
"""

from __future__ import annotations

import asyncio
import uuid
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

import requests

from penny.config import TELEMETRY_FEEDBACK_CAP, TELEMETRY_SCORES_CAP
from penny.utils.logger import AgentLogger

EvaluatedBy = Literal["llm", "human", "heuristic"]
Rating = Literal["helpful", "not_helpful", "neutral"]

SCORES_KEY = "penny:telemetry:scores"
FEEDBACK_KEY = "penny:telemetry:feedback"
TRACES_KEY = "penny:telemetry:traces"


class TelemetrySink:
    """Best-effort trace/score/feedback recorder."""

    def __init__(
        self,
        store,
        logger: Optional[AgentLogger] = None,
        api_key: Optional[str] = None,
        base_url: str = "https://www.comet.com/opik/api",
        workspace: Optional[str] = None,
        project_name: str = "penny",
        request_timeout: float = 10.0,
    ) -> None:
        self.store = store
        self.logger = logger
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.workspace = workspace or "default"
        self.project_name = project_name
        self.request_timeout = request_timeout

    @property
    def is_remote_configured(self) -> bool:
        return bool(self.api_key)

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def create_trace(
        self,
        name: str,
        input: Optional[Dict[str, Any]] = None,
        tags: Optional[List[str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> str:
        """Open a trace and return its id."""
        trace_id = str(uuid.uuid4())
        trace = {
            "id": trace_id,
            "project_name": self.project_name,
            "name": name,
            "input": input or {},
            "metadata": metadata or {},
            "tags": tags or [],
            "start_time": datetime.now().isoformat(),
        }
        await self._send("/traces", trace)
        await self._append(TRACES_KEY, trace, TELEMETRY_SCORES_CAP)
        return trace_id

    async def end_trace(
        self,
        trace_id: str,
        output: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error: Optional[str] = None,
        tokens_used: int = 0,
    ) -> None:
        """Close a trace with its output."""
        update = {
            "id": trace_id,
            "output": output or {},
            "success": success,
            "error": error,
            "tokens_used": tokens_used,
            "end_time": datetime.now().isoformat(),
        }
        await self._send(f"/traces/{trace_id}", update, method="PATCH")

    async def log_score(
        self,
        trace_id: str,
        metric_name: str,
        score: float,
        reason: str = "",
        evaluated_by: EvaluatedBy = "heuristic",
    ) -> None:
        """Record one metric score against a trace."""
        score_data = {
            "trace_id": trace_id,
            "metric_name": metric_name,
            "score": float(score),
            "reason": reason,
            "evaluated_by": evaluated_by,
            "project_name": self.project_name,
            "timestamp": datetime.now().isoformat(),
        }
        await self._send("/scores", score_data)
        await self._append(SCORES_KEY, score_data, TELEMETRY_SCORES_CAP)

    async def log_feedback(self, trace_id: str, rating: Rating, comment: Optional[str] = None,
                           user_id: Optional[str] = None) -> None:
        """Record explicit user feedback on a trace."""
        feedback = {
            "trace_id": trace_id,
            "rating": rating,
            "comment": comment,
            "user_id": user_id,
            "project_name": self.project_name,
            "timestamp": datetime.now().isoformat(),
        }
        await self._send("/feedback", feedback)
        await self._append(FEEDBACK_KEY, feedback, TELEMETRY_FEEDBACK_CAP)

    async def get_scores(self, metric_name: Optional[str] = None) -> List[Dict[str, Any]]:
        scores = await self._read(SCORES_KEY)
        if metric_name:
            scores = [s for s in scores if s.get("metric_name") == metric_name]
        return scores

    async def get_feedback(self) -> List[Dict[str, Any]]:
        return await self._read(FEEDBACK_KEY)

    async def get_traces(self) -> List[Dict[str, Any]]:
        return await self._read(TRACES_KEY)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _post(self, endpoint: str, data: Dict[str, Any], method: str) -> None:
        response = requests.request(
            method,
            f"{self.base_url}{endpoint}",
            json=data,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Comet-Workspace": self.workspace,
            },
            timeout=self.request_timeout,
        )
        response.raise_for_status()

    async def _send(self, endpoint: str, data: Dict[str, Any], method: str = "POST") -> None:
        if not self.is_remote_configured:
            return
        try:
            await asyncio.to_thread(self._post, endpoint, data, method)
        except requests.RequestException as e:
            self._log_failure("send", e, {"endpoint": endpoint})

    async def _read(self, key: str) -> List[Dict[str, Any]]:
        try:
            return await self.store.get(key) or []
        except Exception as e:
            self._log_failure("read", e, {"key": key})
            return []

    async def _append(self, key: str, record: Dict[str, Any], cap: int) -> None:
        try:
            records = await self.store.get(key) or []
            records.append(record)
            await self.store.set(key, records[-cap:])
        except Exception as e:
            self._log_failure("store", e, {"key": key})

    def _log_failure(self, where: str, error: Exception, metadata: Dict[str, Any]) -> None:
        if self.logger:
            self.logger.log_error(f"telemetry_{where}", error, metadata)
