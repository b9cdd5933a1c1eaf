from typing import Optional

import numpy as np
import pandas as pd
import scanpy as sc
from scanpy import logging as logg
from scanpy.get import _get_obs_rep

from ._validate import validate_layer, validate_var_key


def control_mask(
    adata: sc.AnnData,
    key: Optional[str] = None,
) -> np.ndarray:
    if key is None:
        return np.zeros(adata.n_vars, dtype=bool)
    validate_var_key(adata, key)
    mask = adata.var[key].fillna(False).to_numpy(dtype=bool)
    logg.debug(f"{int(mask.sum())} control genes flagged by .var['{key}']")
    return mask


def var_gc_content(
    adata: sc.AnnData,
    key: str = "gc_content",
) -> pd.Series:
    validate_var_key(adata, key)
    gc = adata.var[key].astype(np.float64)
    gc.index = adata.var_names.astype(str)
    return gc


def gene_summaries(
    adata: sc.AnnData,
    control_key: Optional[str] = None,
    layer: Optional[str] = None,
) -> pd.DataFrame:
    """Per-gene mean and variance of the log-normalized data in ``adata``."""
    from .preprocessing._decompose import summarize_expression

    _layer = validate_layer(adata, layer)
    X = _get_obs_rep(adata, layer=_layer)
    if X is None:
        raise ValueError("expression matrix is empty.")
    return summarize_expression(
        X.T,
        gene_ids=adata.var_names,
        is_control=control_mask(adata, control_key),
    )
