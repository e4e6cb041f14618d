"""Class for validating fitted models against independent survey points"""

import logging
from dataclasses import dataclass, asdict

import geopandas as gpd
import numpy as np
import pandas as pd
from sklearn.metrics import (accuracy_score, cohen_kappa_score, confusion_matrix,
                             precision_recall_fscore_support, roc_auc_score)

from habitat_brt.engines.ModelTrainer import FittedModel
from habitat_brt.engines.SpatialPredictor import PredictionSurface, cell_centers
from habitat_brt.helpers.statistics import (calc_deviance, morans_i, null_deviance,
                                            percent_deviance_explained)


logger = logging.getLogger(__name__)

POLICIES = ('strict', 'any')


@dataclass
class ValidationMetrics:
    """Accuracy statistics for one model or ensemble against the validation set"""

    family: str
    n_sites: int
    auc: float = None
    bias: float = None
    mae: float = None
    rmse: float = None
    percent_deviance_explained: float = None
    morans_i: float = None
    morans_i_expected: float = None
    morans_i_sd: float = None
    morans_i_p_value: float = None
    autocorrelated: bool = None
    policy: str = None
    accuracy: float = None
    kappa: float = None
    n_unmatched: int = 0
    confusion_matrix: pd.DataFrame = None
    class_table: pd.DataFrame = None

    def to_dict(self) -> dict:
        """Scalar statistics only; tables are written separately"""

        record = asdict(self)
        record.pop('confusion_matrix')
        record.pop('class_table')
        return {key: value for key, value in record.items() if value is not None}


def _as_labels(values) -> np.ndarray:
    """Integer class labels when every value is integral"""

    values = np.asarray(values, dtype=float)
    if len(values) and np.all(np.mod(values, 1) == 0):
        return values.astype(int)
    return values


def modal_class(values: np.ndarray) -> float:
    """Most frequent class; the smallest label wins a tie"""

    return float(pd.Series(values).mode().iloc[0])


class ValidationEvaluator:
    """Accuracy, deviance and spatial autocorrelation checks on held-out points"""

    def class_metrics(self, observed, predicted, policy: str = None) -> ValidationMetrics:
        """
        Confusion matrix with per-class precision, recall and F1

        :param observed: Observed class per validation site
        :param predicted: Predicted class per validation site
        :param str policy: Match policy label recorded with the metrics
        :returns ValidationMetrics: overall accuracy, kappa and the class tables
        """

        observed, predicted = _as_labels(observed), _as_labels(predicted)
        labels = sorted(set(observed.tolist()) | set(predicted.tolist()))
        matrix = confusion_matrix(observed, predicted, labels=labels)
        confusion = pd.DataFrame(matrix,
                                 index=pd.Index(labels, name='observed'),
                                 columns=pd.Index(labels, name='predicted'))
        precision, recall, f1, support = precision_recall_fscore_support(
            observed, predicted, labels=labels, zero_division=0
        )
        class_table = pd.DataFrame({'class': labels, 'precision': precision, 'recall': recall,
                                    'f1': f1, 'support': support})
        if len(labels) > 1:
            kappa = float(cohen_kappa_score(observed, predicted, labels=labels))
        else:
            kappa = float('nan')
        return ValidationMetrics(family='multinomial', n_sites=len(observed), policy=policy,
                                 accuracy=float(accuracy_score(observed, predicted)), kappa=kappa,
                                 confusion_matrix=confusion, class_table=class_table)

    def buffer_classes(self, sites: gpd.GeoDataFrame, surface: PredictionSurface,
                       buffer_distance: float) -> dict[int, np.ndarray]:
        """Predicted classes of every cell center inside each site's buffer, keyed by site position"""

        xs, ys = cell_centers(surface.values.shape, surface.transform)
        values = surface.values.ravel()

        buffers = gpd.GeoDataFrame({'site_id': np.arange(len(sites))},
                                   geometry=sites.geometry.buffer(buffer_distance).values, crs=sites.crs)
        min_x, min_y, max_x, max_y = buffers.total_bounds
        nearby = ~np.isnan(values) & (xs >= min_x) & (xs <= max_x) & (ys >= min_y) & (ys <= max_y)
        cells = gpd.GeoDataFrame({'predicted': values[nearby]},
                                 geometry=gpd.points_from_xy(xs[nearby], ys[nearby]), crs=sites.crs)
        joined = gpd.sjoin(cells, buffers, how='inner', predicate='intersects')
        return {int(site_id): group['predicted'].to_numpy() for site_id, group in joined.groupby('site_id')}

    def evaluate_classes(self, sites: gpd.GeoDataFrame, observed_column: str, surface: PredictionSurface,
                         buffer_distance: float, policy: str) -> ValidationMetrics:
        """
        Compare observed habitat classes with the class map around each site

        strict: the modal class inside the buffer must equal the observed class.
        any: the observed class is correct if it occurs anywhere inside the
        buffer, otherwise the modal class is recorded as the prediction.
        Sites whose buffer holds no predicted cells are skipped and counted.

        :param gpd.GeoDataFrame sites: Validation sites with point geometry
        :param str observed_column: Column holding the observed class
        :param PredictionSurface surface: Predicted class map
        :param float buffer_distance: Radius around each site in CRS units
        :param str policy: strict or any
        :returns ValidationMetrics: Classification metrics for the chosen policy
        """

        if policy not in POLICIES:
            raise ValueError(f'Unknown match policy {policy}; expected one of {POLICIES}')

        found = self.buffer_classes(sites, surface, buffer_distance)
        observed, predicted = [], []
        unmatched = 0
        for site_id, observed_class in enumerate(sites[observed_column].to_numpy(dtype=float)):
            in_buffer = found.get(site_id)
            if in_buffer is None or len(in_buffer) == 0:
                unmatched += 1
                continue
            if policy == 'any' and observed_class in set(in_buffer.tolist()):
                predicted_class = observed_class
            else:
                predicted_class = modal_class(in_buffer)
            observed.append(observed_class)
            predicted.append(predicted_class)

        if unmatched:
            logger.warning(f'{unmatched} validation site(s) had no predicted cells within {buffer_distance}')
        if not observed:
            raise ValueError('No validation site overlaps the predicted class map')
        metrics = self.class_metrics(observed, predicted, policy=policy)
        metrics.n_unmatched = unmatched
        return metrics

    def evaluate_presence(self, observed, predicted, x, y) -> ValidationMetrics:
        """
        Presence/absence accuracy and residual spatial autocorrelation

        :param observed: 0/1 presence at each validation site
        :param predicted: Predicted presence probability at each site
        :param x: Site easting
        :param y: Site northing
        :returns ValidationMetrics: AUC, bias, MAE, RMSE, deviance explained and Moran's I
        """

        observed = np.asarray(observed, dtype=float)
        predicted = np.asarray(predicted, dtype=float)
        x, y = np.asarray(x, dtype=float), np.asarray(y, dtype=float)
        valid = ~np.isnan(predicted)
        if not valid.all():
            logger.warning(f'{int((~valid).sum())} validation site(s) have no prediction and are skipped')
        observed, predicted, x, y = observed[valid], predicted[valid], x[valid], y[valid]
        if len(observed) == 0:
            raise ValueError('No validation site has a prediction')

        residuals = observed - predicted
        if len(np.unique(observed)) == 2:
            auc = float(roc_auc_score(observed, predicted))
        else:
            auc = float('nan')
        total_deviance = null_deviance(observed, 'bernoulli')
        residual_deviance = calc_deviance(observed, predicted, 'bernoulli')
        moran = morans_i(residuals, x, y)

        return ValidationMetrics(
            family='bernoulli',
            n_sites=len(observed),
            auc=auc,
            bias=float(np.mean(residuals)),
            mae=float(np.mean(np.abs(residuals))),
            rmse=float(np.sqrt(np.mean(residuals ** 2))),
            percent_deviance_explained=percent_deviance_explained(total_deviance, residual_deviance),
            morans_i=moran.observed,
            morans_i_expected=moran.expected,
            morans_i_sd=moran.sd,
            morans_i_p_value=moran.p_value,
            autocorrelated=None if np.isnan(moran.p_value) else bool(moran.p_value <= 0.05),
        )

    def evaluate(self, model_or_ensemble, validation: pd.DataFrame, response: str, x_column: str = 'X',
                 y_column: str = 'Y', surface: PredictionSurface = None, buffer_distance: float = None,
                 policy: str = None) -> ValidationMetrics:
        """
        Validate a fitted model or bootstrap ensemble against held-out records

        Presence models are scored on the (ensemble mean) probability at each
        site. Classification models are scored against the class map around
        each site when a surface is given, otherwise on point predictions.

        :param model_or_ensemble: A FittedModel or a list of ensemble members
        :param pd.DataFrame validation: Validation records; point geometry is needed for class maps
        :param str response: Observed response column
        :param str x_column: Easting column
        :param str y_column: Northing column
        :param PredictionSurface surface: Predicted class map for buffer matching
        :param float buffer_distance: Buffer radius around each site
        :param str policy: strict or any, required with a class map
        :returns ValidationMetrics: Metrics for the model family
        """

        members = list(model_or_ensemble) if isinstance(model_or_ensemble, (list, tuple)) else [model_or_ensemble]
        if members[0].family == 'bernoulli':
            predicted = self.ensemble_probability(members, validation)
            return self.evaluate_presence(validation[response], predicted, validation[x_column], validation[y_column])
        if surface is not None:
            return self.evaluate_classes(validation, response, surface, buffer_distance, policy)
        if len(members) > 1:
            raise ValueError('Point validation of habitat classes takes a single model')
        predicted = members[0].predict_class(validation)
        has_prediction = ~np.isnan(predicted)
        return self.class_metrics(validation[response].to_numpy()[has_prediction], predicted[has_prediction],
                                  policy='point')

    def ensemble_probability(self, members: list[FittedModel], frame: pd.DataFrame) -> np.ndarray:
        """Mean presence probability across converged ensemble members"""

        predictions = [member.predict_proba(frame) for member in members if member.converged]
        if not predictions:
            raise ValueError('No converged ensemble member to predict with')
        return np.mean(np.vstack(predictions), axis=0)
