"""
Removal of GC-content bias from biological variance estimates.

A smooth trend of biological variance on GC content is fit across genes and
subtracted, leaving the part of the biological variance not explained by
base composition.
"""

import dataclasses
from typing import Mapping, Optional, Union

import numpy as np
import pandas as pd
from scanpy import logging as logg

from .._config import VarianceModelConfig
from .._errors import CurveFitError, EmptyJoinError
from .._validate import validate_gc_content
from ._decompose import VarianceDecomposition, evaluate_trend
from ._loess_fit import TrendCurve, TrendFitter

GC_CORRECTED_COLS = [
    "mean",
    "total",
    "tech",
    "bio",
    "p_value",
    "fdr",
    "gc_content",
    "gc_bias_fit",
    "bio_corrected",
    "rank_bio",
    "rank_bio_corrected",
]


@dataclasses.dataclass(frozen=True)
class GcCorrectedVariance:
    """GC-corrected biological variance for genes with known GC content.

    Attributes:
        table: DataFrame indexed by gene id, see ``GC_CORRECTED_COLS``.
        trend: Trend of biological variance on GC content.
        dropped: Gene ids without a GC content value.
    """

    table: pd.DataFrame
    trend: TrendCurve
    dropped: tuple[str, ...] = ()


def stable_rank(values: np.ndarray) -> np.ndarray:
    """1-based descending ranks, ties broken by position."""
    _values = np.asarray(values, dtype=np.float64)
    order = np.argsort(-_values, kind="stable")
    ranks = np.empty(_values.shape[0], dtype=np.int64)
    ranks[order] = np.arange(1, _values.shape[0] + 1)
    return ranks


def correct_gc_bias(
    decomposition: Union[VarianceDecomposition, pd.DataFrame],
    gc_content: Union[Mapping[str, float], pd.Series],
    config: Optional[VarianceModelConfig] = None,
) -> GcCorrectedVariance:
    """
    Fit and subtract the GC-content trend of biological variance.

    Genes are inner-joined on gene id; genes missing from ``gc_content`` (or
    with a NaN value) are reported in :attr:`GcCorrectedVariance.dropped` and
    keep their uncorrected values in the decomposition.

    Args:
        decomposition: Result of :func:`decompose_variance` or its table
        gc_content: GC fraction per gene id, between 0 and 1
        config: Smoothing parameters

    Returns:
        GcCorrectedVariance in decomposition order

    Raises:
        EmptyJoinError: No gene has both a decomposition and a GC value
        CurveFitError: Fewer than 2 distinct GC values among joined genes
    """
    _config = VarianceModelConfig() if config is None else config
    df = (
        decomposition.table
        if isinstance(decomposition, VarianceDecomposition)
        else decomposition
    )
    gc = validate_gc_content(gc_content)

    start = logg.info("correcting biological variance for GC content")
    gc_joined = gc.reindex(df.index.astype(str))
    has_gc = gc_joined.notna().to_numpy()
    dropped = tuple(str(g) for g in df.index[~has_gc])
    if dropped:
        logg.info(f"    {len(dropped)} genes without GC content left uncorrected")
    if not np.any(has_gc):
        raise EmptyJoinError(
            f"none of the {df.shape[0]} decomposed genes has a GC content value."
        )

    joined = df.loc[has_gc, ["mean", "total", "tech", "bio", "p_value", "fdr"]]
    gc_vals = gc_joined.to_numpy()[has_gc]
    n_unique = np.unique(gc_vals).shape[0]
    if n_unique < 2:
        raise CurveFitError(
            f"need at least 2 distinct GC content values to fit the GC trend, "
            f"got {n_unique}."
        )

    bio = joined["bio"].to_numpy(dtype=np.float64)
    trend = TrendFitter.from_config(_config).fit(gc_vals, bio)
    gc_fit = evaluate_trend(trend, gc_vals, n_jobs=_config.n_jobs)
    bio_corrected = bio - gc_fit

    table = joined.copy()
    table["gc_content"] = gc_vals
    table["gc_bias_fit"] = gc_fit
    table["bio_corrected"] = bio_corrected
    table["rank_bio"] = stable_rank(bio)
    table["rank_bio_corrected"] = stable_rank(bio_corrected)
    table.index.name = "gene_id"

    logg.info("    finished", time=start)
    return GcCorrectedVariance(
        table=table[GC_CORRECTED_COLS], trend=trend, dropped=dropped
    )
