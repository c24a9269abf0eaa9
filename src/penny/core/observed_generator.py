"""
Observed Generator - wraps the generator client with tracing, prompt experiments
and sampled background evaluation
"""

from __future__ import annotations

import random
from typing import Optional, Type, TypeVar

from pydantic import BaseModel

from penny.config import EVALUATION_SAMPLE_RATE
from penny.core.errors import GenerationError
from penny.core.evaluation import EVALUATION_FEATURE, EvaluationEngine
from penny.core.experiments import ExperimentManager
from penny.core.generator import Completion, LLMGenerator
from penny.core.models import Experiment, ExperimentVariant
from penny.core.structured import build_structured_prompt
from penny.core.telemetry import TelemetrySink
from penny.utils.async_processor import AsyncProcessor
from penny.utils.logger import AgentLogger

T = TypeVar("T", bound=BaseModel)


class ObservedGenerator:
    """
    Drop-in replacement for LLMGenerator used by the agents.

    Judge scoring runs on the wrapped generator directly with the
    "evaluation" feature, so evaluation calls are never sampled themselves.
    """

    def __init__(
        self,
        generator: LLMGenerator,
        telemetry: TelemetrySink,
        engine: EvaluationEngine,
        processor: AsyncProcessor,
        experiments: Optional[ExperimentManager] = None,
        sample_rate: float = EVALUATION_SAMPLE_RATE,
        logger: Optional[AgentLogger] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.generator = generator
        self.telemetry = telemetry
        self.engine = engine
        self.processor = processor
        self.experiments = experiments
        self.sample_rate = sample_rate
        self.logger = logger
        self._rng = rng or random.Random()

    @property
    def model(self) -> str:
        return self.generator.model

    def should_evaluate(self, feature: str) -> bool:
        if feature == EVALUATION_FEATURE:
            return False
        return self._rng.random() < self.sample_rate

    async def _resolve_variant(self, feature: str):
        if self.experiments is None or feature == EVALUATION_FEATURE:
            return None, None
        experiment = self.experiments.get_experiment_for_feature(feature)
        if experiment is None:
            return None, None
        return experiment, await self.experiments.get_assigned_variant(experiment.id)

    async def complete(
        self,
        prompt: str,
        system_instruction: Optional[str] = None,
        feature: str = "general",
        **kwargs,
    ) -> Completion:
        experiment, variant = await self._resolve_variant(feature)
        if variant is not None and variant.system_prompt:
            system_instruction = variant.system_prompt
        if variant is not None and variant.prompt_template:
            # The caller's prompt becomes the template's {context}
            prompt = variant.prompt_template.replace("{context}", prompt)

        tags = ["llm", feature]
        if variant is not None:
            tags.append(f"variant:{variant.id}")
        trace_id = await self.telemetry.create_trace(
            name=f"llm_{feature}",
            input={"prompt": prompt[:500], "feature": feature},
            tags=tags,
        )

        try:
            completion = await self.generator.complete(
                prompt, system_instruction=system_instruction, feature=feature, **kwargs
            )
        except GenerationError as e:
            await self.telemetry.end_trace(trace_id, output={"error": str(e)}, success=False, error=str(e))
            raise

        await self.telemetry.end_trace(
            trace_id,
            output={"response": completion.text[:500]},
            tokens_used=completion.total_tokens,
        )

        if self.should_evaluate(feature):
            task_id = self.processor.submit(
                self._evaluate, trace_id, feature, prompt, completion, experiment, variant
            )
            if self.logger:
                self.logger.log_step("evaluation_sampled", {"trace_id": trace_id, "task_id": task_id})

        return completion

    async def _evaluate(
        self,
        trace_id: str,
        feature: str,
        prompt: str,
        completion: Completion,
        experiment: Optional[Experiment],
        variant: Optional[ExperimentVariant],
    ):
        evaluation = await self.engine.evaluate_response(
            trace_id, feature, prompt, completion.text, model=completion.model or self.model
        )
        if experiment is not None and variant is not None:
            await self.experiments.record_result(
                experiment.id,
                variant.id,
                trace_id,
                evaluation.criteria,
                evaluation.overall_score,
                latency_ms=completion.latency_ms,
                tokens_used=completion.total_tokens,
            )
        return evaluation

    async def generate(self, prompt: str, **kwargs) -> str:
        completion = await self.complete(prompt, **kwargs)
        return completion.text

    async def generate_structured(
        self,
        prompt: str,
        schema: Type[T],
        system_instruction: Optional[str] = None,
        temperature: float = 0.3,
        max_tokens: int = 2048,
        timeout: Optional[float] = None,
        feature: str = "structured",
    ) -> T:
        completion = await self.complete(
            build_structured_prompt(prompt, schema),
            system_instruction=system_instruction,
            temperature=temperature,
            max_tokens=max_tokens,
            timeout=timeout,
            feature=feature,
            schema=schema,
        )
        return completion.parsed
