import sys

from . import get
from . import preprocessing as pp
from ._config import VARIANCE_THRESHOLD_PRESETS, VarianceModelConfig, load_config
from ._errors import (
    CurveFitError,
    DegenerateInputError,
    EmptyJoinError,
    InsufficientControlGenesError,
    SkippedGeneWarning,
)
from ._utilities import set_env, tqdm_joblib

sys.modules.update({f"{__name__}.{m}": globals()[m] for m in ["pp", "get"]})

__all__ = [
    "VARIANCE_THRESHOLD_PRESETS",
    "VarianceModelConfig",
    "load_config",
    "CurveFitError",
    "DegenerateInputError",
    "EmptyJoinError",
    "InsufficientControlGenesError",
    "SkippedGeneWarning",
    "set_env",
    "tqdm_joblib",
    "pp",
    "get",
]
