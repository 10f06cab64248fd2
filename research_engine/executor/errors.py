"""Error taxonomy for the research executor.

Provider errors are raised by step executors (or produced by classifying
their messages). EmptySynthesisError and PlanParseError are business-rule
failures raised during step post-processing. RepositoryError comes from the
storage layer and is never handled by the orchestrator.
"""


class ResearchEngineError(Exception):
    """Base class for all research engine errors."""


class TransientProviderError(ResearchEngineError):
    """Network, timeout or rate-limit failure. The step is retried."""


class FatalProviderError(ResearchEngineError):
    """Quota or billing exhaustion. The run fails without retry."""


class EmptySynthesisError(ResearchEngineError):
    """The synthesis stage produced no usable text."""

    def __init__(self, message: str = "Empty synthesis output"):
        super().__init__(message)


class PlanParseError(ResearchEngineError):
    """Planning output could not be parsed into a ResearchPlan."""


class RepositoryError(ResearchEngineError):
    """Durable storage is unavailable or rejected a statement."""


class IntegrityConflict(RepositoryError):
    """A unique constraint rejected an insert."""


class InvalidTransitionError(ResearchEngineError):
    """A run or step state change that the transition table forbids."""


class RunNotFoundError(ResearchEngineError):
    """No research run exists with the requested id."""
