import logging
import math

from habitat_brt.engines.ModelTrainer import FittedModel
from habitat_brt.helpers.exceptions import SelectionFailure


logger = logging.getLogger(__name__)


class ModelSelector:
    """Pick the best converged model from a tuning pass"""

    def __init__(self, family: str = 'bernoulli'):
        self.family = family

    def score(self, model: FittedModel) -> tuple:
        """Sort key where larger is better; first element decides, second breaks ties"""

        if self.family == 'multinomial':
            return (model.cv_accuracy, model.cv_kappa)
        return (model.percent_deviance_explained,)

    def select(self, models: list[FittedModel]) -> FittedModel:
        """
        Best model in grid order

        Bernoulli models are ranked by percent deviance explained from the
        cross-validated deviance, multinomial models by cross-validated accuracy
        with kappa breaking ties. The earliest grid cell wins any remaining tie.

        :param list[FittedModel] models: Tuning results in grid order
        :returns FittedModel: The selected model
        :raises SelectionFailure: when no model converged
        """

        best, best_score = None, None
        for model in models:
            if not model.converged:
                continue
            score = tuple(-math.inf if value is None or math.isnan(value) else value for value in self.score(model))
            if best is None or score > best_score:
                best, best_score = model, score

        if best is None:
            failures = sum(1 for model in models if not model.converged)
            raise SelectionFailure(f'None of {len(models)} grid cell(s) produced a viable model '
                                   f'({failures} failed to converge)')
        logger.info(f'Selected grid cell {best.index}: {best.hyperparameters}')
        return best
