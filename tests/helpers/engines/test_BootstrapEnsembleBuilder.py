import pytest
import pathlib

HABITAT_BRT_MODULE = pathlib.Path(__file__).parents[3] / 'src'

import sys
sys.path.append(str(HABITAT_BRT_MODULE))

import numpy as np
import pandas as pd

from habitat_brt.engines.BootstrapEnsembleBuilder import BootstrapEnsembleBuilder
from habitat_brt.engines.HyperparameterGrid import HyperparameterSet
from habitat_brt.engines.ModelTrainer import ModelTrainer


@pytest.fixture
def trainer():
    return ModelTrainer('presence', ['depth', 'slope'], min_trees=1, scheduler='synchronous')


@pytest.fixture
def victim(trainer):
    return BootstrapEnsembleBuilder(trainer, n_bootstraps=3, seed=11)


@pytest.fixture
def calibration():
    rng = np.random.default_rng(5)
    depth = rng.uniform(-40, 0, 200)
    presence = (depth + rng.normal(0, 5, 200) > -20).astype(int)
    return pd.DataFrame({'depth': depth, 'slope': rng.uniform(0, 30, 200), 'presence': presence})


def test_draw_samples(victim, trainer):
    first = victim.draw_samples(200)
    second = victim.draw_samples(200)
    assert len(first) == 3
    for sample, repeat in zip(first, second):
        assert len(sample) == 200
        assert np.array_equal(sample, repeat)
        assert sample.min() >= 0 and sample.max() < 200
        assert len(np.unique(sample)) / 200 < 1

    other = BootstrapEnsembleBuilder(trainer, n_bootstraps=3, seed=12).draw_samples(200)
    assert not np.array_equal(first[0], other[0])


def test_invalid_replicate_count(trainer):
    with pytest.raises(ValueError):
        BootstrapEnsembleBuilder(trainer, n_bootstraps=0)


def test_build(victim, trainer, calibration):
    best = trainer.fit(calibration, HyperparameterSet(0.1, 0.75, 2, 1, 25))
    members = victim.build(calibration, best)
    assert len(members) == 3
    assert [member.index for member in members] == [0, 1, 2]
    assert all(member.converged for member in members)
    assert all(member.n_trees_achieved == best.n_trees_achieved for member in members)
    assert all(member.booster.num_boosted_rounds() == best.n_trees_achieved for member in members)

    table = victim.importance_table(members)
    assert list(table.columns) == ['predictor', 'Rep_1', 'Rep_2', 'Rep_3', 'mean', 'sd']
    assert table['predictor'].iloc[0] == 'depth'
    assert table['mean'].is_monotonic_decreasing
    assert table[['Rep_1', 'Rep_2', 'Rep_3']].sum().tolist() == pytest.approx([100, 100, 100])
