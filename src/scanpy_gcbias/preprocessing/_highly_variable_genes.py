"""
Highly variable gene selection before and after GC-bias correction.

This module chains the variance decomposition and the GC correction into a
single pipeline, selects highly variable genes from either variance estimate,
and reports which genes change HVG status once GC bias is removed.
"""

import dataclasses
from typing import Literal, Mapping, Optional, Union

import numpy as np
import pandas as pd
import scanpy as sc
from scanpy import logging as logg

from .._config import VarianceModelConfig
from .._errors import CurveFitError, EmptyJoinError
from ..get import gene_summaries, var_gc_content
from ._decompose import VarianceDecomposition, decompose_variance
from ._gc_correction import GcCorrectedVariance, correct_gc_bias


@dataclasses.dataclass(frozen=True)
class HvgSets:
    """Highly variable genes before and after GC correction.

    All members are tuples of gene ids ordered by decreasing variance.
    ``lost`` holds genes whose HVG status is explained by GC bias.
    """

    raw: tuple[str, ...]
    corrected: tuple[str, ...]
    lost: tuple[str, ...]
    gained: tuple[str, ...]


@dataclasses.dataclass(frozen=True)
class GcVarianceResult:
    decomposition: VarianceDecomposition
    gc_correction: Optional[GcCorrectedVariance] = None
    hvg_sets: Optional[HvgSets] = None
    gc_error: Optional[Exception] = None


def select_highly_variable(
    table: pd.DataFrame,
    column: Literal["bio", "bio_corrected"] = "bio",
    config: Optional[VarianceModelConfig] = None,
) -> list[str]:
    """
    Select genes passing the FDR and variance thresholds.

    Args:
        table: Decomposition or GC-corrected table
        column: Variance column to threshold on
        config: Thresholds and flooring policy

    Returns:
        Gene ids ordered by decreasing ``column``, ties in table order
    """
    _config = VarianceModelConfig() if config is None else config
    if column not in table.columns:
        raise KeyError(f"Could not find column {column} in table.")

    vals = table[column].to_numpy(dtype=np.float64)
    if _config.floor_negative:
        vals = np.clip(vals, a_min=0.0, a_max=None)
    mask = vals >= _config.variance_threshold
    if _config.significance_threshold is not None:
        # NaN FDR never passes
        mask &= table["fdr"].to_numpy(dtype=np.float64) <= _config.significance_threshold

    idx = np.flatnonzero(mask)
    order = idx[np.argsort(-vals[idx], kind="stable")]
    return [str(g) for g in table.index[order]]


def hvg_difference(a: list[str], b: list[str]) -> tuple[str, ...]:
    """Genes of ``a`` not in ``b``, in the order of ``a``."""
    _b = set(b)
    return tuple(g for g in a if g not in _b)


def compare_hvg_sets(
    gc_table: pd.DataFrame,
    config: Optional[VarianceModelConfig] = None,
) -> HvgSets:
    """HVG sets from raw and GC-corrected biological variance of the same genes."""
    raw = select_highly_variable(gc_table, column="bio", config=config)
    corrected = select_highly_variable(gc_table, column="bio_corrected", config=config)
    return HvgSets(
        raw=tuple(raw),
        corrected=tuple(corrected),
        lost=hvg_difference(raw, corrected),
        gained=hvg_difference(corrected, raw),
    )


def model_gc_variance(
    summary: pd.DataFrame,
    gc_content: Union[Mapping[str, float], pd.Series],
    config: Optional[VarianceModelConfig] = None,
    raise_on_gc_error: bool = True,
) -> GcVarianceResult:
    """
    Decompose gene variance and remove its GC-content bias.

    Args:
        summary: Per-gene summary from :func:`summarize_expression`
        gc_content: GC fraction per gene id
        config: Model parameters
        raise_on_gc_error: If False, a failed GC stage is recorded in
            ``gc_error`` and the decomposition is still returned

    Returns:
        GcVarianceResult
    """
    _config = VarianceModelConfig() if config is None else config
    decomposition = decompose_variance(summary, config=_config)
    try:
        gc_res = correct_gc_bias(decomposition, gc_content, config=_config)
    except (EmptyJoinError, CurveFitError) as e:
        if raise_on_gc_error:
            raise
        logg.warning(f"GC correction failed, returning decomposition only: {e}")
        return GcVarianceResult(decomposition=decomposition, gc_error=e)

    hvg_sets = compare_hvg_sets(gc_res.table, config=_config)
    logg.info(
        f"    {len(hvg_sets.raw)} HVGs before and {len(hvg_sets.corrected)} after "
        f"GC correction, {len(hvg_sets.lost)} lost and {len(hvg_sets.gained)} gained"
    )
    return GcVarianceResult(
        decomposition=decomposition, gc_correction=gc_res, hvg_sets=hvg_sets
    )


def highly_variable_genes(
    adata: sc.AnnData,
    gc_key: str = "gc_content",
    control_key: Optional[str] = None,
    layer: Optional[str] = None,
    config: Optional[VarianceModelConfig] = None,
    inplace: bool = True,
    raise_on_gc_error: bool = True,
) -> Optional[GcVarianceResult]:
    """
    Call highly variable genes with and without GC-bias correction.

    Args:
        adata: Log-normalized data, cells x genes
        gc_key: Column of ``adata.var`` holding GC content
        control_key: Boolean column of ``adata.var`` flagging control genes,
            which are never flagged as highly variable
        layer: Layer to use instead of ``adata.X``
        config: Model parameters
        inplace: Write results to ``adata.var`` and ``adata.uns["hvg_gc"]``
        raise_on_gc_error: See :func:`model_gc_variance`

    Returns:
        GcVarianceResult if ``inplace`` is False
    """
    if not isinstance(adata, sc.AnnData):
        msg = (
            "`pp.highly_variable_genes` expects an `AnnData` argument, "
            "pass `inplace=False` if you want to return a result object."
        )
        raise ValueError(msg)
    _config = VarianceModelConfig() if config is None else config

    start = logg.info("extracting highly variable genes with GC-bias correction")
    summary = gene_summaries(adata, control_key=control_key, layer=layer)
    res = model_gc_variance(
        summary,
        var_gc_content(adata, gc_key),
        config=_config,
        raise_on_gc_error=raise_on_gc_error,
    )
    logg.info("    finished", time=start)

    if not inplace:
        return res

    dec = res.decomposition.table.reindex(adata.var_names)
    adata.var["means"] = summary["mean"].to_numpy()
    adata.var["variances"] = summary["total"].to_numpy()
    adata.var["variances_tech"] = dec["tech"].to_numpy()
    adata.var["variances_bio"] = dec["bio"].to_numpy()
    adata.var["fdr"] = dec["fdr"].to_numpy()
    # spike-ins are never reported as highly variable
    endogenous = res.decomposition.table.loc[~res.decomposition.table["is_control"]]
    adata.var["highly_variable"] = adata.var_names.isin(
        select_highly_variable(endogenous, "bio", config=_config)
    )
    uns = {
        "config": _config.to_dict(),
        "tech_trend": res.decomposition.trend.to_dict(),
        "skipped": list(res.decomposition.skipped),
    }
    added = [
        "'highly_variable', boolean vector (adata.var)",
        "'means', float vector (adata.var)",
        "'variances', float vector (adata.var)",
        "'variances_tech', float vector (adata.var)",
        "'variances_bio', float vector (adata.var)",
        "'fdr', float vector (adata.var)",
    ]
    if res.gc_correction is not None:
        gct = res.gc_correction.table.reindex(adata.var_names)
        adata.var["gc_bias_fit"] = gct["gc_bias_fit"].to_numpy()
        adata.var["variances_bio_gc"] = gct["bio_corrected"].to_numpy()
        adata.var["highly_variable_gc"] = adata.var_names.isin(res.hvg_sets.corrected)
        uns["gc_trend"] = res.gc_correction.trend.to_dict()
        uns["gc_dropped"] = list(res.gc_correction.dropped)
        uns["hvg_lost"] = list(res.hvg_sets.lost)
        uns["hvg_gained"] = list(res.hvg_sets.gained)
        added += [
            "'highly_variable_gc', boolean vector (adata.var)",
            "'gc_bias_fit', float vector (adata.var)",
            "'variances_bio_gc', float vector (adata.var)",
        ]
    adata.uns["hvg_gc"] = uns
    logg.hint("added\n    " + "\n    ".join(added))
