"""Configuration for gene variance modeling and GC-bias correction."""

import dataclasses
import json
from pathlib import Path
from typing import Any, Literal, Mapping, Optional, Union

SmoothingMethod = Literal["loess", "spline"]
FitFrom = Literal["controls", "all"]

SMOOTHING_METHODS = ("loess", "spline")
FIT_FROM_MODES = ("controls", "all")

# Variance thresholds used in practice for log2 expression
VARIANCE_THRESHOLD_PRESETS = {
    "umi": 1.0,
    "fpkm": 0.5,
}


@dataclasses.dataclass(frozen=True)
class VarianceModelConfig:
    """Parameters shared by the trend fits and HVG selection.

    Attributes:
        significance_threshold: Maximum FDR for a gene to count as highly
            variable. ``None`` disables the FDR filter.
        variance_threshold: Minimum (corrected) biological variance for a
            gene to count as highly variable.
        smoothing_method: ``"loess"`` or ``"spline"``.
        span: Span fraction of the loess smoother.
        basis_size: Number of B-spline coefficients of the spline smoother.
        degree: Local polynomial degree of the loess smoother (1 or 2).
        fit_from: Genes used to fit the technical trend, ``"controls"`` or
            ``"all"``.
        floor_negative: Floor negative variances at zero before thresholding.
        use_density_weights: Weight fit points by inverse density of x.
        n_jobs: Number of workers used to evaluate trends across genes.
    """

    significance_threshold: Optional[float] = 0.05
    variance_threshold: float = VARIANCE_THRESHOLD_PRESETS["umi"]
    smoothing_method: SmoothingMethod = "loess"
    span: float = 0.3
    basis_size: int = 5
    degree: int = 1
    fit_from: FitFrom = "controls"
    floor_negative: bool = False
    use_density_weights: bool = False
    n_jobs: int = 1

    def __post_init__(self):
        if self.significance_threshold is not None and not (
            0.0 <= self.significance_threshold <= 1.0
        ):
            raise ValueError(
                "'significance_threshold' must be between 0 and 1: "
                f"{self.significance_threshold}"
            )
        if self.smoothing_method not in SMOOTHING_METHODS:
            raise ValueError(
                f"invalid 'smoothing_method' provided: {self.smoothing_method}."
            )
        if not (0.0 < self.span <= 1.0):
            raise ValueError(f"'span' must be between 0 and 1: {self.span}")
        if self.basis_size < 4:
            raise ValueError(f"'basis_size' must be at least 4: {self.basis_size}")
        if self.degree not in (1, 2):
            raise ValueError(f"'degree' must be 1 or 2: {self.degree}")
        if self.fit_from not in FIT_FROM_MODES:
            raise ValueError(f"invalid 'fit_from' provided: {self.fit_from}.")
        if self.n_jobs == 0:
            raise ValueError("'n_jobs' cannot be 0.")

    @classmethod
    def preset(cls, name: str, **kwargs) -> "VarianceModelConfig":
        """Config with the variance threshold of a named data type."""
        if name not in VARIANCE_THRESHOLD_PRESETS:
            raise KeyError(
                f"unknown preset {name!r}, "
                f"choose from {sorted(VARIANCE_THRESHOLD_PRESETS)}."
            )
        return cls(variance_threshold=VARIANCE_THRESHOLD_PRESETS[name], **kwargs)

    @classmethod
    def from_dict(cls, params: Mapping[str, Any]) -> "VarianceModelConfig":
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(params) - known)
        if unknown:
            raise ValueError(f"unknown config keys: {', '.join(unknown)}")
        return cls(**params)

    def replace(self, **kwargs) -> "VarianceModelConfig":
        return dataclasses.replace(self, **kwargs)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


def load_config(path: Union[str, Path]) -> VarianceModelConfig:
    """Load a :class:`VarianceModelConfig` from a JSON file."""
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")
    if config_path.suffix.lower() != ".json":
        raise ValueError(
            f"Unsupported config format for '{config_path}'. Use a .json config file."
        )

    try:
        with open(config_path, "r", encoding="utf-8") as fh:
            data = json.load(fh)
    except json.JSONDecodeError as exc:
        raise ValueError(
            f"Invalid JSON in config '{config_path}' at line {exc.lineno}, "
            f"column {exc.colno}: {exc.msg}"
        ) from exc

    if not isinstance(data, dict):
        raise ValueError(
            f"Invalid config root in '{config_path}': "
            f"expected JSON object, got {type(data).__name__}."
        )
    return VarianceModelConfig.from_dict(data)


__all__ = [
    "VARIANCE_THRESHOLD_PRESETS",
    "VarianceModelConfig",
    "load_config",
]
