from collections.abc import Iterable
from typing import Mapping, Optional, Union

import numpy as np
import pandas as pd
import scanpy as sc
from pandas.api.types import is_bool_dtype, is_numeric_dtype


def isiterable(x) -> bool:
    return not isinstance(x, str) and isinstance(x, Iterable)


def ismapping(x) -> bool:
    return (
        isinstance(x, Mapping)
        or isinstance(x, pd.Series)
        or isinstance(x, pd.DataFrame)
    )


def validate_var_key(
    adata: sc.AnnData, key: str, check_numeric: bool = True
) -> None:
    if key not in adata.var.keys():
        raise KeyError(f"Could not find key {key} in .var.columns.")
    if check_numeric and not (
        is_numeric_dtype(adata.var[key]) or is_bool_dtype(adata.var[key])
    ):
        raise TypeError(f"Key {key} in .var.columns is not numeric or boolean dtype.")
    return


def validate_layer(adata: sc.AnnData, layer: Optional[str] = None) -> Optional[str]:
    if layer is not None and layer not in adata.layers.keys():
        raise KeyError(f"Could not find layer {layer} in .layers.")
    return layer


def validate_summary(summary: pd.DataFrame) -> None:
    missing = [c for c in ["mean", "total", "is_control"] if c not in summary.columns]
    if missing:
        raise KeyError(f"summary table is missing columns: {', '.join(missing)}.")
    if not summary.index.is_unique:
        dups = summary.index[summary.index.duplicated()].unique()
        raise ValueError(f"gene ids must be unique, found duplicates: {list(dups[:5])}")
    total = summary["total"].to_numpy(dtype=np.float64)
    if np.any(total[~np.isnan(total)] < 0.0):
        raise ValueError("total variance must be non-negative.")
    return


def validate_gc_content(gc_content: Union[Mapping[str, float], pd.Series]) -> pd.Series:
    """Return GC content as a float Series indexed by gene id, NaN for missing."""
    if isinstance(gc_content, pd.DataFrame):
        raise TypeError("'gc_content' must be a mapping or Series, not a DataFrame.")
    if not ismapping(gc_content):
        raise TypeError(
            f"'gc_content' must be a mapping or Series, got {type(gc_content).__name__}."
        )
    gc = (
        gc_content.copy()
        if isinstance(gc_content, pd.Series)
        else pd.Series(dict(gc_content), dtype=np.float64)
    )
    gc.index = gc.index.astype(str)
    if not gc.index.is_unique:
        raise ValueError("gene ids in 'gc_content' must be unique.")
    gc = pd.to_numeric(gc, errors="raise").astype(np.float64)
    vals = gc.to_numpy()
    finite = np.isfinite(vals)
    if np.any(np.isinf(vals)) or np.any((vals[finite] < 0.0) | (vals[finite] > 1.0)):
        raise ValueError("GC content must lie between 0 and 1.")
    return gc
