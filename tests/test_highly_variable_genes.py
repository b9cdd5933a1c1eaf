import numpy as np
import pandas as pd
import pytest

from scanpy_gcbias import EmptyJoinError, VarianceModelConfig
from scanpy_gcbias.preprocessing import (
    compare_hvg_sets,
    model_gc_variance,
    select_highly_variable,
)


def _table(bio, fdr):
    return pd.DataFrame(
        dict(bio=np.asarray(bio, dtype=float), fdr=np.asarray(fdr, dtype=float)),
        index=[f"g{i}" for i in range(len(bio))],
    )


def test_select_thresholds_and_order():
    table = _table([0.5, 2.0, 3.0, 2.0, 4.0], [0.01, 0.01, 0.2, 0.01, np.nan])
    config = VarianceModelConfig(significance_threshold=0.05, variance_threshold=1.0)
    # g2 fails the FDR cut, g4 has no FDR
    assert select_highly_variable(table, config=config) == ["g1", "g3"]


def test_select_without_fdr_filter():
    table = _table([0.5, 2.0, 3.0], [1.0, 1.0, 1.0])
    config = VarianceModelConfig(significance_threshold=None, variance_threshold=1.0)
    assert select_highly_variable(table, config=config) == ["g2", "g1"]


def test_floor_negative_only_affects_selection():
    table = _table([-1.0, 0.5, -0.2], [0.01, 0.01, 0.01])
    before = table.copy()
    unfloored = VarianceModelConfig(variance_threshold=0.0)
    floored = unfloored.replace(floor_negative=True)
    assert select_highly_variable(table, config=unfloored) == ["g1"]
    assert select_highly_variable(table, config=floored) == ["g1", "g0", "g2"]
    pd.testing.assert_frame_equal(table, before)


def test_select_unknown_column():
    with pytest.raises(KeyError):
        select_highly_variable(_table([1.0], [0.0]), column="bio_corrected")


def test_gc_biased_gene_loses_hvg_status(gc_bias_summary, gc_bias_gc):
    config = VarianceModelConfig(variance_threshold=1.0)
    res = model_gc_variance(gc_bias_summary, gc_bias_gc, config=config)
    table = res.gc_correction.table

    assert table.loc["D", "rank_bio"] == 1
    assert table.loc["D", "rank_bio_corrected"] > table.loc["D", "rank_bio"]
    assert table.loc["A", "rank_bio_corrected"] == 1

    sets = res.hvg_sets
    assert sets.raw == ("D", "E", "A", "C", "B")
    assert sets.corrected == ("A",)
    assert "D" in sets.lost
    assert sets.lost == ("D", "E", "C", "B")
    assert sets.gained == ()


def test_compare_hvg_sets_matches_pipeline(gc_bias_summary, gc_bias_gc):
    config = VarianceModelConfig(variance_threshold=1.0)
    res = model_gc_variance(gc_bias_summary, gc_bias_gc, config=config)
    assert compare_hvg_sets(res.gc_correction.table, config=config) == res.hvg_sets


def test_failed_gc_stage_keeps_decomposition(scenario_summary):
    res = model_gc_variance(scenario_summary, {"UNKNOWN": 0.5}, raise_on_gc_error=False)
    assert isinstance(res.gc_error, EmptyJoinError)
    assert res.gc_correction is None
    assert res.hvg_sets is None
    np.testing.assert_allclose(
        res.decomposition.table["bio"] + res.decomposition.table["tech"],
        res.decomposition.table["total"],
    )


def test_failed_gc_stage_raises_by_default(scenario_summary):
    with pytest.raises(EmptyJoinError):
        model_gc_variance(scenario_summary, {"UNKNOWN": 0.5})


def test_pipeline_is_deterministic(random_summary, no_fdr_config):
    summary, gc = random_summary
    a = model_gc_variance(summary, gc, config=no_fdr_config)
    b = model_gc_variance(summary, gc, config=no_fdr_config)
    pd.testing.assert_frame_equal(a.decomposition.table, b.decomposition.table)
    pd.testing.assert_frame_equal(a.gc_correction.table, b.gc_correction.table)
    assert a.hvg_sets == b.hvg_sets
