"""Exceptions raised across the roundtable."""


class RoundtableError(Exception):
    """Base class for every roundtable failure."""


class LLMError(RoundtableError):
    """The completion endpoint returned an error or an unusable response."""


class GenerationError(RoundtableError):
    """A step that expected usable LLM output could not produce it."""


class AnalysisError(RoundtableError):
    """Code generation or sandboxed execution failed inside the tabular pipeline."""


class SandboxError(RoundtableError):
    """The interpreter worker is unavailable or did not answer in time."""
