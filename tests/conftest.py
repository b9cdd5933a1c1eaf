import numpy as np
import pytest

from scanpy_gcbias import VarianceModelConfig

from ._helpers import CONTROL_MEANS, CONTROL_TOTALS, make_summary


@pytest.fixture
def scenario_summary():
    """Five spike-ins and three endogenous genes."""
    ctrl_ids = [f"ERCC-{i:05d}" for i in range(1, 6)]
    return make_summary(
        means=CONTROL_MEANS + [2.0, 3.0, 4.0],
        totals=CONTROL_TOTALS + [10.0, 10.0, 1.0],
        is_control=[True] * 5 + [False] * 3,
        gene_ids=ctrl_ids + ["GENE_LOW_GC", "GENE_MID_GC", "GENE_HIGH_GC"],
    )


@pytest.fixture
def scenario_gc():
    return {"GENE_LOW_GC": 0.3, "GENE_MID_GC": 0.5, "GENE_HIGH_GC": 0.9}


@pytest.fixture
def gc_bias_summary():
    """Endogenous genes at the same mean whose variance rises with GC content.

    Gene A is variable beyond its GC content; B, C, E and D sit close to a
    rising GC trend, D highest.
    """
    ctrl_ids = [f"ERCC-{i:05d}" for i in range(1, 6)]
    # tech(3.0) == 4.0 on the control trend, so total = bio + 4
    bio = {"A": 5.0, "B": 3.0, "C": 5.0, "E": 7.0, "D": 9.0}
    return make_summary(
        means=CONTROL_MEANS + [3.0] * len(bio),
        totals=CONTROL_TOTALS + [b + 4.0 for b in bio.values()],
        is_control=[True] * 5 + [False] * len(bio),
        gene_ids=ctrl_ids + list(bio),
    )


@pytest.fixture
def gc_bias_gc():
    return {"A": 0.2, "B": 0.3, "C": 0.5, "E": 0.7, "D": 0.9}


@pytest.fixture
def random_summary():
    rng = np.random.default_rng(0)
    n_ctrl, n_endo = 30, 120
    means = np.concatenate([rng.uniform(0.5, 6.0, n_ctrl), rng.uniform(0.5, 6.0, n_endo)])
    tech = 0.4 + 0.3 * means
    totals = tech * rng.lognormal(0.0, 0.1, means.shape[0])
    totals[n_ctrl:] += rng.gamma(1.0, 0.5, n_endo)
    ids = [f"ERCC-{i:05d}" for i in range(n_ctrl)] + [f"GENE{i}" for i in range(n_endo)]
    summary = make_summary(means, totals, [True] * n_ctrl + [False] * n_endo, ids)
    gc = dict(zip(ids[n_ctrl:], rng.uniform(0.3, 0.7, n_endo)))
    return summary, gc


@pytest.fixture
def no_fdr_config():
    return VarianceModelConfig(significance_threshold=None)
