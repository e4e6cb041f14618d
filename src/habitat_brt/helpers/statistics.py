"""Deviance and spatial autocorrelation statistics shared by training and validation"""

import logging
from typing import NamedTuple

import numpy as np
from scipy import stats
from scipy.spatial.distance import pdist, squareform


logger = logging.getLogger(__name__)

EPSILON = 1e-15


class MoranResult(NamedTuple):
    observed: float
    expected: float
    sd: float
    p_value: float


def calc_deviance(observed: np.ndarray, predicted: np.ndarray, family: str) -> float:
    """
    Mean deviance of predictions

    :param np.ndarray observed: 0/1 presence, or encoded class index for multinomial
    :param np.ndarray predicted: presence probability, or (n, classes) probabilities
    :param str family: bernoulli or multinomial
    :returns float: -2 x mean log likelihood
    """

    observed = np.asarray(observed)
    predicted = np.clip(np.asarray(predicted, dtype=float), EPSILON, 1 - EPSILON)
    if family == 'bernoulli':
        observed = observed.astype(float)
        log_likelihood = observed * np.log(predicted) + (1 - observed) * np.log(1 - predicted)
    elif family == 'multinomial':
        log_likelihood = np.log(predicted[np.arange(len(observed)), observed.astype(int)])
    else:
        raise ValueError(f'Unknown response family: {family}')
    return float(-2 * np.mean(log_likelihood))


def null_deviance(observed: np.ndarray, family: str, n_classes: int = None) -> float:
    """Mean deviance of the intercept-only model"""

    observed = np.asarray(observed)
    if family == 'bernoulli':
        baseline = np.full(len(observed), observed.astype(float).mean())
    else:
        frequencies = np.bincount(observed.astype(int), minlength=n_classes) / len(observed)
        baseline = np.tile(frequencies, (len(observed), 1))
    return calc_deviance(observed, baseline, family)


def percent_deviance_explained(total_deviance: float, residual_deviance: float) -> float:
    """(total - residual) / total x 100, NaN when the response has no variance"""

    if not np.isfinite(total_deviance) or total_deviance <= 0:
        return float('nan')
    return float((total_deviance - residual_deviance) / total_deviance * 100)


def inverse_distance_weights(x: np.ndarray, y: np.ndarray) -> np.ndarray:
    """Row standardized 1/d weights; coincident points get zero weight"""

    distances = squareform(pdist(np.column_stack([x, y])))
    with np.errstate(divide='ignore'):
        weights = np.where(distances > 0, 1.0 / distances, 0.0)
    np.fill_diagonal(weights, 0)
    row_sums = weights.sum(axis=1)
    row_sums[row_sums == 0] = 1
    return weights / row_sums[:, None]


def morans_i(values: np.ndarray, x: np.ndarray, y: np.ndarray) -> MoranResult:
    """
    Moran's I with a normal approximation for the two-sided p-value

    :param np.ndarray values: Residuals or other values at each site
    :param np.ndarray x: Site easting
    :param np.ndarray y: Site northing
    :returns MoranResult: observed, expected, sd and p-value; NaN when undefined
    """

    values = np.asarray(values, dtype=float)
    n = len(values)
    undefined = MoranResult(float('nan'), float('nan'), float('nan'), float('nan'))
    if n < 3:
        return undefined

    weights = inverse_distance_weights(np.asarray(x, dtype=float), np.asarray(y, dtype=float))
    s0 = weights.sum()
    deviations = values - values.mean()
    sum_squares = np.sum(deviations ** 2)
    if s0 == 0 or sum_squares == 0:
        return undefined

    observed = (n / s0) * (deviations @ weights @ deviations) / sum_squares
    expected = -1.0 / (n - 1)
    s1 = 0.5 * np.sum((weights + weights.T) ** 2)
    s2 = np.sum((weights.sum(axis=1) + weights.sum(axis=0)) ** 2)
    variance = (n ** 2 * s1 - n * s2 + 3 * s0 ** 2) / (s0 ** 2 * (n ** 2 - 1)) - expected ** 2
    if variance <= 0:
        return MoranResult(float(observed), expected, float('nan'), float('nan'))

    sd = np.sqrt(variance)
    p_value = 2 * stats.norm.sf(abs(observed - expected) / sd)
    logger.info(f"Moran's I = {observed:.4f}, p-value = {p_value:.4f}")
    return MoranResult(float(observed), expected, float(sd), float(p_value))


def relative_influence(scores: dict, predictors: list[str]) -> dict:
    """Scale split gain per predictor so all predictors sum to 100"""

    raw = np.array([scores.get(name, 0.0) for name in predictors], dtype=float)
    total = raw.sum()
    if total <= 0:
        return {name: 0.0 for name in predictors}
    return {name: float(value) for name, value in zip(predictors, raw / total * 100)}
