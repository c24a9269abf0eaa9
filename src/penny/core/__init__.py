from .errors import (
    AgentNotInitializedError,
    GenerationError,
    GenerationTimeoutError,
    InvalidPhaseError,
    RetriesExhaustedError,
    StructuredOutputError,
)
from .evaluation import EvaluationEngine
from .experiments import ExperimentManager
from .generator import Completion, LLMGenerator
from .metrics import EvaluationStore
from .notifications import LocalNotificationDispatcher
from .observed_generator import ObservedGenerator
from .telemetry import TelemetrySink

__all__ = [
    'AgentNotInitializedError', 'GenerationError', 'GenerationTimeoutError', 'InvalidPhaseError',
    'RetriesExhaustedError', 'StructuredOutputError', 'EvaluationEngine', 'ExperimentManager',
    'Completion', 'LLMGenerator', 'EvaluationStore', 'LocalNotificationDispatcher',
    'ObservedGenerator', 'TelemetrySink',
]
