"""
Exceptions raised by the retrieval pipeline components.

Only ``TransientRetrievalError`` ever reaches callers of a search. The
other conditions are logged and degrade to a partial, flagged result.
"""


class SearchPipelineError(Exception):
    """Base class for retrieval pipeline errors."""


class TransientRetrievalError(SearchPipelineError):
    """An embedding or similarity-search call failed."""

    def __init__(self, message: str, stage: str = "retrieval"):
        super().__init__(message)
        self.stage = stage


class GradingFailure(SearchPipelineError):
    """A grading call failed or returned an unusable verdict."""


class GenerationParseError(SearchPipelineError, ValueError):
    """The LLM returned query-generation output that could not be parsed."""


class BudgetExceeded(SearchPipelineError):
    """The rewrite or wall-clock budget of an invocation was used up."""

    def __init__(self, reason: str):
        super().__init__(f"Search budget exceeded: {reason}")
        self.reason = reason


__all__ = [
    "SearchPipelineError",
    "TransientRetrievalError",
    "GradingFailure",
    "GenerationParseError",
    "BudgetExceeded",
]
