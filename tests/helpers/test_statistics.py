import pytest
import pathlib

HABITAT_BRT_MODULE = pathlib.Path(__file__).parents[2] / 'src'

import sys
sys.path.append(str(HABITAT_BRT_MODULE))

import numpy as np

from habitat_brt.helpers import statistics


@pytest.fixture
def victim():
    return statistics


def test_calc_deviance(victim):
    observed = np.array([0, 1, 1, 0])
    assert victim.calc_deviance(observed, observed.astype(float), 'bernoulli') == pytest.approx(0, abs=1e-10)
    assert victim.calc_deviance(observed, np.full(4, 0.5), 'bernoulli') == pytest.approx(2 * np.log(2))

    probabilities = np.array([[0.5, 0.25, 0.25], [0.25, 0.5, 0.25]])
    result = victim.calc_deviance(np.array([0, 1]), probabilities, 'multinomial')
    assert result == pytest.approx(2 * np.log(2))

    with pytest.raises(ValueError):
        victim.calc_deviance(observed, observed, 'poisson')


def test_null_deviance(victim):
    observed = np.array([0, 0, 0, 1])
    assert victim.null_deviance(observed, 'bernoulli') == pytest.approx(
        victim.calc_deviance(observed, np.full(4, 0.25), 'bernoulli'))

    result = victim.null_deviance(np.array([0, 1, 2, 2]), 'multinomial', n_classes=3)
    expected = -2 * np.mean(np.log([0.25, 0.25, 0.5, 0.5]))
    assert result == pytest.approx(expected)


def test_percent_deviance_explained(victim):
    assert victim.percent_deviance_explained(10, 5) == pytest.approx(50)
    assert victim.percent_deviance_explained(10, 12) == pytest.approx(-20)
    assert np.isnan(victim.percent_deviance_explained(0, 0))


def test_inverse_distance_weights(victim):
    x = np.array([0.0, 0.0, 3.0])
    y = np.array([0.0, 0.0, 4.0])
    weights = victim.inverse_distance_weights(x, y)
    assert weights[0, 1] == 0
    assert weights[0, 2] == pytest.approx(1)
    assert weights[2].sum() == pytest.approx(1)


def test_morans_i_clustered(victim):
    rows, cols = np.indices((10, 10))
    x, y = cols.ravel().astype(float), rows.ravel().astype(float)
    result = victim.morans_i(x, x, y)
    assert result.observed > 0
    assert result.expected == pytest.approx(-1 / 99)
    assert result.p_value < 0.05


def test_morans_i_coincident_points(victim):
    rng = np.random.default_rng(3)
    x = np.array([0.0, 0.0, 10.0, 20.0, 20.0, 35.0])
    y = np.array([0.0, 0.0, 5.0, 15.0, 15.0, 2.0])
    result = victim.morans_i(rng.normal(size=6), x, y)
    assert np.isfinite(result.observed)
    assert 0 <= result.p_value <= 1


def test_morans_i_undefined(victim):
    assert np.isnan(victim.morans_i([1.0, 2.0], [0, 1], [0, 1]).observed)
    assert np.isnan(victim.morans_i([1.0, 1.0, 1.0], [0, 1, 2], [0, 1, 2]).observed)


def test_relative_influence(victim):
    result = victim.relative_influence({'depth': 3.0, 'slope': 1.0}, ['depth', 'slope', 'rugosity'])
    assert result == {'depth': 75.0, 'slope': 25.0, 'rugosity': 0.0}
    assert victim.relative_influence({}, ['depth']) == {'depth': 0.0}
