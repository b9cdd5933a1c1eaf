"""
Decomposition of per-gene variance into technical and biological components.

The technical component of each gene is the value of a mean-variance trend,
fit to control genes, at the gene's mean log-expression. The biological
component is whatever is left of the total variance.
"""

import dataclasses
import warnings
from typing import Iterable, Literal, Optional, Union

import numpy as np
import pandas as pd
from joblib import Parallel, delayed, effective_n_jobs
from scanpy import logging as logg
from scipy import sparse
from tqdm import tqdm

from .._config import VarianceModelConfig
from .._errors import InsufficientControlGenesError, SkippedGeneWarning
from .._utilities import tqdm_joblib
from .._validate import validate_summary
from ._loess_fit import TrendCurve, TrendFitter

SUMMARY_COLS = ["mean", "total", "is_control"]

# Minimum number of genes per worker when evaluating trends in parallel
_MIN_CHUNK_SIZE = 1000


@dataclasses.dataclass(frozen=True)
class VarianceDecomposition:
    """Per-gene variance decomposition.

    Attributes:
        table: DataFrame indexed by gene id with columns ``mean``, ``total``,
            ``tech``, ``bio``, ``p_value``, ``fdr`` and ``is_control``.
        trend: Technical mean-variance trend used for ``tech``.
        skipped: Gene ids left out because their mean or variance is undefined.
        fit_from: Which genes the trend was fit to.
    """

    table: pd.DataFrame
    trend: TrendCurve
    skipped: tuple[str, ...] = ()
    fit_from: Literal["controls", "all"] = "controls"


def _get_gene_mean_var(
    X: Union[np.ndarray, sparse.spmatrix],
) -> tuple[np.ndarray, np.ndarray]:
    from scanpy.preprocessing._utils import _get_mean_var

    # scanpy expects cells x genes
    if sparse.issparse(X):
        _X = sparse.csr_matrix(X.T, dtype=np.float64)
    else:
        _X = np.ascontiguousarray(np.asarray(X, dtype=np.float64).T)
    if _X.shape[0] < 2:
        means = np.asarray(_X.mean(axis=0), dtype=np.float64).ravel()
        return means, np.full_like(means, np.nan)
    means, vars = _get_mean_var(_X)
    means = np.asarray(means, dtype=np.float64).ravel()
    # E[x^2] - E[x]^2 on sparse input can dip just below zero
    vars = np.clip(np.asarray(vars, dtype=np.float64).ravel(), a_min=0.0, a_max=None)
    return means, vars


def _control_flags(is_control: Iterable[bool]) -> np.ndarray:
    flags = pd.Series(list(is_control), dtype=object)
    if flags.isna().any():
        raise ValueError(
            f"{int(flags.isna().sum())} control flags are missing, "
            "mark every gene as control (True) or not (False)."
        )
    if not all(isinstance(f, (bool, np.bool_)) or f in (0, 1) for f in flags):
        raise ValueError("control flags must be boolean.")
    return flags.to_numpy(dtype=bool)


def summarize_expression(
    X: Union[np.ndarray, sparse.spmatrix, pd.DataFrame],
    gene_ids: Optional[Iterable[str]] = None,
    is_control: Optional[Iterable[bool]] = None,
) -> pd.DataFrame:
    """
    Compute per-gene mean and variance of log-expression.

    Args:
        X: Log-normalized expression, genes x cells
        gene_ids: Gene identifiers, defaults to the index of ``X`` if it is a
            DataFrame
        is_control: Flags marking control (spike-in) genes

    Returns:
        DataFrame indexed by gene id with columns ``mean``, ``total`` and
        ``is_control``

    Raises:
        ValueError: A control flag is missing or not boolean
    """
    if isinstance(X, pd.DataFrame):
        if gene_ids is None:
            gene_ids = X.index
        X = X.to_numpy()
    n_genes = X.shape[0]
    _ids = (
        pd.Index([str(i) for i in range(n_genes)])
        if gene_ids is None
        else pd.Index(gene_ids).astype(str)
    )
    if len(_ids) != n_genes:
        raise ValueError(
            f"got {len(_ids)} gene ids for an expression matrix with {n_genes} rows."
        )
    _ctrl = (
        np.zeros(n_genes, dtype=bool)
        if is_control is None
        else _control_flags(is_control)
    )
    if _ctrl.shape[0] != n_genes:
        raise ValueError(
            f"got {_ctrl.shape[0]} control flags for {n_genes} genes."
        )

    means, vars = _get_gene_mean_var(X)
    df = pd.DataFrame(
        dict(mean=means, total=vars, is_control=_ctrl),
        index=_ids,
    )
    df.index.name = "gene_id"
    validate_summary(df)
    return df


def adjust_pvalues(p_values: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg adjusted p-values."""
    p_values = np.asarray(p_values, dtype=np.float64)
    n = p_values.shape[0]
    if n == 0:
        return p_values.copy()

    sorted_indices = np.argsort(p_values, kind="stable")
    sorted_p = p_values[sorted_indices]
    adjusted = sorted_p * n / np.arange(1, n + 1)
    # Enforce monotonicity from the largest p-value down
    adjusted = np.minimum.accumulate(adjusted[::-1])[::-1]

    result = np.empty_like(adjusted)
    result[sorted_indices] = adjusted
    return np.minimum(result, 1.0)


def _variance_pvalues(
    bio: np.ndarray, tech: np.ndarray, std_dev: float
) -> tuple[np.ndarray, np.ndarray]:
    from scipy import stats

    p_value = np.full_like(bio, np.nan)
    if np.isfinite(std_dev) and std_dev > 0.0:
        mask = tech > 0.0
        p_value[mask] = stats.norm.sf(bio[mask] / tech[mask], scale=std_dev)
    fdr = np.full_like(p_value, np.nan)
    mask = ~np.isnan(p_value)
    if np.any(mask):
        fdr[mask] = adjust_pvalues(p_value[mask])
    return p_value, fdr


def evaluate_trend(
    trend: TrendCurve, x: np.ndarray, n_jobs: int = 1
) -> np.ndarray:
    """Evaluate ``trend`` at ``x``, optionally split across workers.

    Chunks are reassembled in input order, so the result does not depend on
    ``n_jobs``.
    """
    _x = np.asarray(x, dtype=np.float64)
    n_chunks = min(effective_n_jobs(n_jobs), max(1, _x.shape[0] // _MIN_CHUNK_SIZE))
    if n_chunks <= 1:
        return np.asarray(trend(_x), dtype=np.float64)

    chunks = np.array_split(_x, n_chunks)
    with tqdm_joblib(tqdm(total=len(chunks), mininterval=0.5, miniters=1)) as _:
        res = Parallel(n_jobs=n_jobs)(delayed(trend)(c) for c in chunks)
    return np.concatenate([np.asarray(r, dtype=np.float64) for r in res])


def fit_technical_trend(
    summary: pd.DataFrame,
    fit_from: Literal["controls", "all"] = "controls",
    config: Optional[VarianceModelConfig] = None,
) -> TrendCurve:
    """
    Fit the technical mean-variance trend.

    Args:
        summary: Per-gene summary from :func:`summarize_expression`, restricted
            to genes with finite statistics
        fit_from: Fit to control genes only, or to all genes
        config: Smoothing parameters

    Returns:
        Trend of total variance on mean log-expression
    """
    _config = VarianceModelConfig() if config is None else config
    if fit_from == "controls":
        fit_df = summary.loc[summary["is_control"].to_numpy(dtype=bool)]
        if fit_df.shape[0] < 2:
            raise InsufficientControlGenesError(
                f"need at least 2 control genes to fit the technical trend, "
                f"got {fit_df.shape[0]}. Pass fit_from='all' to fit to all genes."
            )
        logg.info(f"fitting technical trend to {fit_df.shape[0]} control genes")
    elif fit_from == "all":
        fit_df = summary
        logg.warning(
            f"fitting technical trend to all {fit_df.shape[0]} genes, "
            "biological variance is then measured relative to the average gene"
        )
    else:
        raise ValueError(f"invalid 'fit_from' provided: {fit_from}.")

    tfit = TrendFitter.from_config(_config)
    return tfit.fit(fit_df["mean"].to_numpy(), fit_df["total"].to_numpy())


def decompose_variance(
    summary: pd.DataFrame,
    fit_from: Optional[Literal["controls", "all"]] = None,
    config: Optional[VarianceModelConfig] = None,
) -> VarianceDecomposition:
    """
    Split the total variance of every gene into technical and biological parts.

    Genes whose mean or variance is not finite are left out and reported in
    :attr:`VarianceDecomposition.skipped`. Negative biological variances are
    kept as is.

    Args:
        summary: Per-gene summary from :func:`summarize_expression`
        fit_from: Genes used to fit the technical trend, overrides
            ``config.fit_from``
        config: Model parameters

    Returns:
        VarianceDecomposition with one row per retained gene, in input order
    """
    _config = VarianceModelConfig() if config is None else config
    _fit_from = _config.fit_from if fit_from is None else fit_from
    validate_summary(summary)

    start = logg.info("decomposing gene variance")
    valid = np.isfinite(summary["mean"].to_numpy(dtype=np.float64)) & np.isfinite(
        summary["total"].to_numpy(dtype=np.float64)
    )
    skipped = tuple(str(g) for g in summary.index[~valid])
    if skipped:
        msg = f"skipping {len(skipped)} genes with undefined mean or variance"
        logg.warning(msg)
        warnings.warn(msg, SkippedGeneWarning, stacklevel=2)
    df = summary.loc[valid, SUMMARY_COLS]

    trend = fit_technical_trend(df, fit_from=_fit_from, config=_config)

    means = df["mean"].to_numpy(dtype=np.float64)
    total = df["total"].to_numpy(dtype=np.float64)
    tech = evaluate_trend(trend, means, n_jobs=_config.n_jobs)
    bio = total - tech
    p_value, fdr = _variance_pvalues(bio, tech, trend.std_dev)

    table = pd.DataFrame(
        dict(
            mean=means,
            total=total,
            tech=tech,
            bio=bio,
            p_value=p_value,
            fdr=fdr,
            is_control=df["is_control"].to_numpy(dtype=bool),
        ),
        index=df.index.copy(),
    )
    table.index.name = "gene_id"

    logg.info("    finished", time=start)
    return VarianceDecomposition(
        table=table, trend=trend, skipped=skipped, fit_from=_fit_from
    )
