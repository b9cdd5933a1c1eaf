from ._decompose import (
    VarianceDecomposition,
    adjust_pvalues,
    decompose_variance,
    fit_technical_trend,
    summarize_expression,
)
from ._gc_correction import GcCorrectedVariance, correct_gc_bias, stable_rank
from ._highly_variable_genes import (
    GcVarianceResult,
    HvgSets,
    compare_hvg_sets,
    highly_variable_genes,
    model_gc_variance,
    select_highly_variable,
)
from ._loess_fit import TrendCurve, TrendFitter, fit_trend

__all__ = [
    "GcCorrectedVariance",
    "GcVarianceResult",
    "HvgSets",
    "TrendCurve",
    "TrendFitter",
    "VarianceDecomposition",
    "adjust_pvalues",
    "compare_hvg_sets",
    "correct_gc_bias",
    "decompose_variance",
    "fit_technical_trend",
    "fit_trend",
    "highly_variable_genes",
    "model_gc_variance",
    "select_highly_variable",
    "stable_rank",
    "summarize_expression",
]
