class CurveFitError(ValueError):
    """A smoothing curve could not be fit to the supplied points."""


class InsufficientControlGenesError(CurveFitError):
    """Fewer than two points were available to fit a trend."""


class DegenerateInputError(CurveFitError):
    """All points share the same x value, so no span can be computed."""


class EmptyJoinError(ValueError):
    """No gene has both a variance decomposition and a GC content value."""


class SkippedGeneWarning(UserWarning):
    """Genes were left out of a result because their statistics are undefined."""


__all__ = [
    "CurveFitError",
    "InsufficientControlGenesError",
    "DegenerateInputError",
    "EmptyJoinError",
    "SkippedGeneWarning",
]
