"""Class for refitting the selected model on bootstrap resamples"""

import logging

import dask
import numpy as np
import pandas as pd
import xgboost as xgb
from xgboost.core import XGBoostError

from habitat_brt.engines.ModelTrainer import FittedModel, ModelTrainer
from habitat_brt.helpers.statistics import calc_deviance, null_deviance, relative_influence
from habitat_brt.helpers.tools import compute_tasks


logger = logging.getLogger(__name__)


class BootstrapEnsembleBuilder:
    """Bootstrap ensemble of fixed-hyperparameter models for uncertainty estimates"""

    def __init__(self, trainer: ModelTrainer, n_bootstraps: int, seed: int = 1):
        if n_bootstraps < 1:
            raise ValueError('n_bootstraps must be at least 1')
        self.trainer = trainer
        self.n_bootstraps = n_bootstraps
        self.seed = seed

    def draw_samples(self, n_records: int) -> list[np.ndarray]:
        """Row index multisets, one per replicate, drawn with replacement"""

        rng = np.random.default_rng(self.seed)
        return [rng.integers(0, n_records, size=n_records) for _ in range(self.n_bootstraps)]

    def fit_member(self, calibration: pd.DataFrame, best: FittedModel, sample: np.ndarray, member: int) -> FittedModel:
        """Fit one replicate with the selected hyperparameters and tree count"""

        resampled = calibration.iloc[sample]
        response = resampled[self.trainer.response].to_numpy()
        if best.family == 'multinomial':
            labels = np.searchsorted(best.classes, response)
        else:
            labels = response.astype(int)
        params = self.trainer.train_params(best.hyperparameters, self.seed + member, len(best.classes))
        dtrain = xgb.DMatrix(resampled[best.predictors], label=labels)
        member_model = FittedModel(hyperparameters=best.hyperparameters, family=best.family,
                                   predictors=best.predictors, classes=best.classes, index=member,
                                   n_trees_achieved=best.n_trees_achieved)
        try:
            booster = xgb.train(params=params, dtrain=dtrain, num_boost_round=best.n_trees_achieved)
        except XGBoostError as e:
            logger.warning(f'Bootstrap replicate {member + 1} failed: {e}')
            member_model.failure = str(e)
            return member_model

        member_model.booster = booster
        member_model.mean_total_deviance = null_deviance(labels, best.family, len(best.classes))
        member_model.mean_residual_deviance = calc_deviance(labels, booster.predict(dtrain), best.family)
        member_model.influence = relative_influence(booster.get_score(importance_type='total_gain'), best.predictors)
        return member_model

    def build(self, calibration: pd.DataFrame, best: FittedModel) -> list[FittedModel]:
        """
        Refit the selected model on every bootstrap sample

        :param pd.DataFrame calibration: Calibration records used for tuning
        :param FittedModel best: Selected model; its hyperparameters and tree count are fixed
        :returns list[FittedModel]: One member per replicate in draw order, failures included
        """

        samples = self.draw_samples(len(calibration))
        logger.info(f'Fitting {self.n_bootstraps} bootstrap replicate(s) with {best.n_trees_achieved} trees')
        tasks = [dask.delayed(self.fit_member)(calibration, best, sample, member)
                 for member, sample in enumerate(samples)]
        members = compute_tasks(tasks, self.trainer.scheduler, self.trainer.num_workers)
        failed = sum(1 for member in members if not member.converged)
        if failed:
            logger.warning(f'{failed} of {len(members)} bootstrap replicate(s) failed and are skipped')
        return members

    def importance_table(self, members: list[FittedModel]) -> pd.DataFrame:
        """Relative influence per predictor for each replicate, with mean and sd"""

        predictors = members[0].predictors
        influence = pd.DataFrame(
            {f'Rep_{member.index + 1}': [member.influence.get(name, np.nan) if member.converged else np.nan
                                         for name in predictors]
             for member in members},
            index=pd.Index(predictors, name='predictor')
        )
        replicates = list(influence.columns)
        influence['mean'] = influence[replicates].mean(axis=1)
        influence['sd'] = influence[replicates].std(axis=1, ddof=1)
        return influence.sort_values('mean', ascending=False).reset_index()
