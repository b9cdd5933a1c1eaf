import numpy as np
import pandas as pd
import pytest
import scanpy as sc
from scipy import sparse

import scanpy_gcbias as scg
from scanpy_gcbias import VarianceModelConfig


@pytest.fixture
def adata():
    rng = np.random.default_rng(5)
    n_cells, n_ctrl, n_endo = 300, 15, 40
    ctrl_lam = np.geomspace(0.5, 50.0, n_ctrl)
    endo_lam = np.geomspace(0.5, 50.0, n_endo)
    ctrl = rng.poisson(ctrl_lam, size=(n_cells, n_ctrl))
    # endogenous genes are overdispersed
    endo = rng.negative_binomial(2, 2 / (2 + endo_lam), size=(n_cells, n_endo))
    X = np.log2(np.hstack([ctrl, endo]) + 1.0)

    var = pd.DataFrame(
        dict(
            is_control=[True] * n_ctrl + [False] * n_endo,
            gc_content=np.concatenate(
                [np.full(n_ctrl, np.nan), rng.uniform(0.35, 0.65, n_endo)]
            ),
        ),
        index=[f"ERCC-{i:05d}" for i in range(n_ctrl)]
        + [f"GENE{i}" for i in range(n_endo)],
    )
    obs = pd.DataFrame(index=[f"cell{i}" for i in range(n_cells)])
    return sc.AnnData(X=X, obs=obs, var=var)


def test_gene_summaries(adata):
    summary = scg.get.gene_summaries(adata, control_key="is_control")
    assert list(summary.index) == list(adata.var_names)
    np.testing.assert_allclose(summary["mean"], adata.X.mean(axis=0))
    np.testing.assert_allclose(summary["total"], adata.X.var(axis=0, ddof=1))
    assert summary["is_control"].sum() == 15


def test_gene_summaries_missing_layer(adata):
    with pytest.raises(KeyError, match="layer"):
        scg.get.gene_summaries(adata, layer="logcounts")


def test_var_gc_content_missing_key(adata):
    with pytest.raises(KeyError, match="gc"):
        scg.get.var_gc_content(adata, "gc")


def test_highly_variable_genes_inplace(adata):
    config = VarianceModelConfig(significance_threshold=None, variance_threshold=0.0)
    ret = scg.pp.highly_variable_genes(adata, control_key="is_control", config=config)
    assert ret is None
    for col in [
        "means",
        "variances",
        "variances_tech",
        "variances_bio",
        "variances_bio_gc",
        "gc_bias_fit",
        "fdr",
        "highly_variable",
        "highly_variable_gc",
    ]:
        assert col in adata.var.columns
    np.testing.assert_allclose(
        adata.var["variances_bio"] + adata.var["variances_tech"],
        adata.var["variances"],
    )
    # spike-ins have no GC content and stay uncorrected
    assert adata.var.loc[adata.var["is_control"], "variances_bio_gc"].isna().all()
    assert not adata.var.loc[adata.var["is_control"], "highly_variable_gc"].any()

    uns = adata.uns["hvg_gc"]
    assert set(uns["gc_dropped"]) == set(adata.var_names[adata.var["is_control"]])
    assert uns["config"]["variance_threshold"] == 0.0
    assert "fitted" in uns["tech_trend"]


def test_highly_variable_genes_not_inplace(adata):
    before = adata.var.copy()
    res = scg.pp.highly_variable_genes(adata, control_key="is_control", inplace=False)
    pd.testing.assert_frame_equal(adata.var, before)
    assert res.decomposition.table.shape[0] == adata.n_vars
    assert res.gc_correction.table.shape[0] == 40


def test_sparse_input_matches_dense(adata):
    sp = adata.copy()
    sp.X = sparse.csr_matrix(sp.X)
    a = scg.pp.highly_variable_genes(adata, control_key="is_control", inplace=False)
    b = scg.pp.highly_variable_genes(sp, control_key="is_control", inplace=False)
    np.testing.assert_allclose(
        a.gc_correction.table["bio_corrected"],
        b.gc_correction.table["bio_corrected"],
        atol=1e-8,
    )


def test_no_controls_requires_explicit_fit_from(adata):
    with pytest.raises(scg.InsufficientControlGenesError):
        scg.pp.highly_variable_genes(adata, inplace=False)
    res = scg.pp.highly_variable_genes(
        adata, config=VarianceModelConfig(fit_from="all"), inplace=False
    )
    assert res.decomposition.fit_from == "all"


def test_rejects_non_anndata():
    with pytest.raises(ValueError, match="AnnData"):
        scg.pp.highly_variable_genes(np.zeros((3, 3)))


def test_set_env():
    verbosity, n_jobs = sc.settings.verbosity, sc.settings.n_jobs
    try:
        scg.set_env(verbosity=1, n_jobs=2)
        assert sc.settings.n_jobs == 2
    finally:
        sc.settings.verbosity = verbosity
        sc.settings.n_jobs = n_jobs


def test_controls_are_never_highly_variable(adata):
    # every gene passes a threshold this low
    config = VarianceModelConfig(significance_threshold=None, variance_threshold=-100.0)
    scg.pp.highly_variable_genes(adata, control_key="is_control", config=config)
    assert not adata.var.loc[adata.var["is_control"], "highly_variable"].any()
    assert adata.var.loc[~adata.var["is_control"], "highly_variable"].all()


def test_gene_summaries_from_layer(adata):
    adata.layers["logcounts"] = adata.X * 2.0
    summary = scg.get.gene_summaries(adata, layer="logcounts")
    np.testing.assert_allclose(summary["mean"], 2.0 * adata.X.mean(axis=0))
