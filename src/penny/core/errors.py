"""
Exceptions raised by the generator client and the planning agent
"""


class GenerationError(Exception):
    """A generator call failed and will not be retried."""


class GenerationTimeoutError(GenerationError):
    """The generator call exceeded the caller-imposed timeout."""


class RetriesExhaustedError(GenerationError):
    """Every retry of a transient generator failure was used up."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


class StructuredOutputError(GenerationError):
    """The generator reply could not be parsed into the requested schema."""

    def __init__(self, message: str, raw_text: str = "") -> None:
        super().__init__(message)
        self.raw_text = raw_text


class AgentNotInitializedError(Exception):
    """A planning phase was requested for a user with no stored agent state."""


class InvalidPhaseError(Exception):
    """A phase was invoked while the agent sits in an incompatible phase."""
