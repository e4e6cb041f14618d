"""Class for fitting boosted tree models over a hyperparameter grid"""

import logging
from dataclasses import dataclass, field

import dask
import numpy as np
import pandas as pd
import xgboost as xgb
from sklearn.metrics import cohen_kappa_score
from sklearn.model_selection import StratifiedKFold
from xgboost.core import XGBoostError

from habitat_brt.engines.HyperparameterGrid import HyperparameterGrid, HyperparameterSet
from habitat_brt.helpers.exceptions import ConvergenceFailure
from habitat_brt.helpers.statistics import (calc_deviance, null_deviance, percent_deviance_explained,
                                            relative_influence)
from habitat_brt.helpers.tools import compute_tasks


logger = logging.getLogger(__name__)

FAMILIES = {
    'bernoulli': {'objective': 'binary:logistic', 'eval_metric': 'logloss'},
    'multinomial': {'objective': 'multi:softprob', 'eval_metric': 'mlogloss'},
}


@dataclass
class FittedModel:
    """A boosted tree ensemble and its fit statistics, or a recorded failure"""

    hyperparameters: HyperparameterSet
    family: str
    predictors: list
    classes: list = None
    booster: xgb.Booster = None
    mean_total_deviance: float = None
    mean_residual_deviance: float = None
    cv_deviance_mean: float = None
    cv_deviance_se: float = None
    percent_deviance_explained: float = None
    n_trees_achieved: int = None
    cv_accuracy: float = None
    cv_kappa: float = None
    influence: dict = field(default_factory=dict)
    attempts: int = 1
    failure: str = None
    index: int = None

    @property
    def converged(self) -> bool:
        return self.booster is not None and self.failure is None

    def predict_proba(self, frame: pd.DataFrame) -> np.ndarray:
        """
        Presence probability, or one probability column per class

        Rows with any missing predictor get NaN instead of a prediction.
        """

        if not self.converged:
            raise ValueError(f'Cannot predict with a failed model: {self.failure}')
        values = frame[self.predictors]
        valid = values.notna().all(axis=1).to_numpy()
        width = len(self.classes) if self.family == 'multinomial' else None
        shape = (len(values), width) if width else (len(values),)
        result = np.full(shape, np.nan)
        if valid.any():
            result[valid] = self.booster.predict(xgb.DMatrix(values.loc[valid]))
        return result

    def predict_class(self, frame: pd.DataFrame) -> np.ndarray:
        """Most probable class label per row, NaN where predictors are missing"""

        probabilities = self.predict_proba(frame)
        if self.family == 'bernoulli':
            return np.where(np.isnan(probabilities), np.nan, (probabilities >= 0.5).astype(float))
        result = np.full(len(probabilities), np.nan)
        valid = ~np.isnan(probabilities).any(axis=1)
        labels = np.asarray(self.classes, dtype=float)
        result[valid] = labels[np.argmax(probabilities[valid], axis=1)]
        return result

    def to_record(self) -> dict:
        record = {'grid_index': self.index}
        record.update(self.hyperparameters.to_dict())
        record.update({
            'converged': self.converged,
            'attempts': self.attempts,
            'n_trees_achieved': self.n_trees_achieved,
            'mean_total_deviance': self.mean_total_deviance,
            'mean_residual_deviance': self.mean_residual_deviance,
            'cv_deviance_mean': self.cv_deviance_mean,
            'cv_deviance_se': self.cv_deviance_se,
            'percent_deviance_explained': self.percent_deviance_explained,
            'cv_accuracy': self.cv_accuracy,
            'cv_kappa': self.cv_kappa,
            'failure': self.failure,
        })
        return record


class ModelTrainer:
    """Fit one cross-validated boosted tree model per hyperparameter set"""

    def __init__(self, response: str, predictors: list[str], family: str = 'bernoulli', n_folds: int = 10,
                 min_trees: int = 50, max_retries: int = 1, seed: int = 1, scheduler: str = 'threads',
                 num_workers: int = None, nthread: int = 1):
        if family not in FAMILIES:
            raise ValueError(f'Unknown response family: {family}')
        self.response = response
        self.predictors = list(predictors)
        self.family = family
        self.n_folds = n_folds
        self.min_trees = min_trees
        self.max_retries = max_retries
        self.seed = seed
        self.scheduler = scheduler
        self.num_workers = num_workers
        self.nthread = nthread

    def attempt_seed(self, attempt: int) -> int:
        """Each retry draws new folds and bags"""

        return self.seed + (attempt - 1) * 1000

    def encode_response(self, records: pd.DataFrame) -> tuple[np.ndarray, list]:
        """Response as 0/1 presence or 0..k-1 class indices"""

        response = records[self.response]
        if self.family == 'bernoulli':
            unexpected = sorted(set(response.unique()) - {0, 1})
            if unexpected:
                raise ValueError(f'{self.response} must be 0/1 presence, found {unexpected}')
            return response.to_numpy(dtype=int), [0, 1]
        classes = sorted(response.unique().tolist())
        return np.searchsorted(classes, response.to_numpy()), classes

    def train_params(self, hp: HyperparameterSet, seed: int, n_classes: int = None) -> dict:
        """xgboost parameters for one grid cell"""

        params = {
            'eta': hp.learning_rate,
            'subsample': hp.bag_fraction,
            'max_depth': hp.tree_complexity,
            'min_child_weight': hp.min_obs,
            'seed': seed,
            'nthread': self.nthread,
        }
        params.update(FAMILIES[self.family])
        if self.family == 'multinomial':
            params['num_class'] = n_classes
        return params

    def fit(self, calibration: pd.DataFrame, hp: HyperparameterSet, attempt: int = 1) -> FittedModel:
        """
        Cross-validate and fit one model on the calibration set

        The tree count is chosen where the fold-averaged held-out deviance is
        lowest, and the final model is refit on every calibration record with
        that many trees.

        :param pd.DataFrame calibration: Records with response and predictor columns
        :param HyperparameterSet hp: Grid cell to fit
        :param int attempt: 1 for the first fit, 2+ for retries
        :returns FittedModel: Model with populated statistics
        :raises ConvergenceFailure: when no usable statistics are produced
        """

        seed = self.attempt_seed(attempt)
        labels, classes = self.encode_response(calibration)
        n_classes = len(classes)
        frame = calibration[self.predictors]
        params = self.train_params(hp, seed, n_classes)
        metric = FAMILIES[self.family]['eval_metric']

        folds = StratifiedKFold(n_splits=self.n_folds, shuffle=True, random_state=seed)
        curves, fold_outputs = [], []
        try:
            for train_idx, test_idx in folds.split(np.zeros(len(labels)), labels):
                dtrain_fold = xgb.DMatrix(frame.iloc[train_idx], label=labels[train_idx])
                dtest_fold = xgb.DMatrix(frame.iloc[test_idx], label=labels[test_idx])
                evals_result = {}
                fold_model = xgb.train(
                    params=params, dtrain=dtrain_fold, num_boost_round=hp.n_trees,
                    evals=[(dtest_fold, 'test')], evals_result=evals_result, verbose_eval=False
                )
                # xgboost log loss is half the mean deviance
                curves.append(2 * np.asarray(evals_result['test'][metric], dtype=float))
                fold_outputs.append((fold_model, dtest_fold, test_idx))
        except XGBoostError as e:
            raise ConvergenceFailure(f'xgboost could not fit {hp}: {e}') from e

        curves = np.vstack(curves)
        mean_curve = curves.mean(axis=0)
        if not np.all(np.isfinite(mean_curve)):
            raise ConvergenceFailure(f'Non-finite cross-validated deviance for {hp}')
        best_trees = int(np.argmin(mean_curve)) + 1
        if best_trees < self.min_trees:
            raise ConvergenceFailure(f'Optimal tree count {best_trees} is below the minimum of {self.min_trees} '
                                     f'for {hp}; lower the learning rate')

        fold_deviance = curves[:, best_trees - 1]
        cv_deviance_mean = float(fold_deviance.mean())
        cv_deviance_se = float(fold_deviance.std(ddof=1) / np.sqrt(len(fold_deviance)))

        cv_accuracy, cv_kappa = None, None
        if self.family == 'multinomial':
            held_out = np.zeros((len(labels), n_classes))
            for fold_model, dtest_fold, test_idx in fold_outputs:
                held_out[test_idx] = fold_model.predict(dtest_fold, iteration_range=(0, best_trees))
            predicted = np.argmax(held_out, axis=1)
            cv_accuracy = float(np.mean(predicted == labels))
            cv_kappa = float(cohen_kappa_score(labels, predicted))

        dtrain_full = xgb.DMatrix(frame, label=labels)
        try:
            booster = xgb.train(params=params, dtrain=dtrain_full, num_boost_round=best_trees)
        except XGBoostError as e:
            raise ConvergenceFailure(f'xgboost could not refit {hp}: {e}') from e

        fitted = booster.predict(dtrain_full)
        total_deviance = null_deviance(labels, self.family, n_classes)
        return FittedModel(
            hyperparameters=hp,
            family=self.family,
            predictors=self.predictors,
            classes=classes,
            booster=booster,
            mean_total_deviance=total_deviance,
            mean_residual_deviance=calc_deviance(labels, fitted, self.family),
            cv_deviance_mean=cv_deviance_mean,
            cv_deviance_se=cv_deviance_se,
            percent_deviance_explained=percent_deviance_explained(total_deviance, cv_deviance_mean),
            n_trees_achieved=best_trees,
            cv_accuracy=cv_accuracy,
            cv_kappa=cv_kappa,
            influence=relative_influence(booster.get_score(importance_type='total_gain'), self.predictors),
            attempts=attempt,
        )

    def fit_or_fail(self, calibration: pd.DataFrame, hp: HyperparameterSet, attempt: int, index: int) -> FittedModel:
        """Task wrapper that turns non-convergence into a recorded failure"""

        try:
            model = self.fit(calibration, hp, attempt)
        except ConvergenceFailure as e:
            logger.warning(f'Grid cell {index} attempt {attempt} did not converge: {e}')
            model = FittedModel(hyperparameters=hp, family=self.family, predictors=self.predictors,
                                attempts=attempt, failure=str(e))
        model.index = index
        return model

    def tune(self, calibration: pd.DataFrame, grid: HyperparameterGrid) -> list[FittedModel]:
        """
        Fit every grid cell in parallel, then retry the cells that failed

        :param pd.DataFrame calibration: Calibration records
        :param HyperparameterGrid grid: Candidate hyperparameters
        :returns list[FittedModel]: One entry per grid cell in grid order
        """

        hp_sets = grid.sets()
        logger.info(f'Tuning {len(hp_sets)} grid cell(s) with {self.n_folds}-fold cross-validation')
        tasks = [dask.delayed(self.fit_or_fail)(calibration, hp, 1, index) for index, hp in enumerate(hp_sets)]
        models = compute_tasks(tasks, self.scheduler, self.num_workers)

        for attempt in range(2, self.max_retries + 2):
            failed = [index for index, model in enumerate(models) if not model.converged]
            if not failed:
                break
            logger.info(f'Retrying {len(failed)} non-converged grid cell(s), attempt {attempt}')
            tasks = [dask.delayed(self.fit_or_fail)(calibration, hp_sets[index], attempt, index) for index in failed]
            for index, model in zip(failed, compute_tasks(tasks, self.scheduler, self.num_workers)):
                models[index] = model
        return models

    def tuning_table(self, models: list[FittedModel]) -> pd.DataFrame:
        """One row per attempted grid cell, failures included"""

        return pd.DataFrame([model.to_record() for model in models])
