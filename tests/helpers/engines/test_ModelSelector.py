import pytest
import pathlib

HABITAT_BRT_MODULE = pathlib.Path(__file__).parents[3] / 'src'

import sys
sys.path.append(str(HABITAT_BRT_MODULE))


from habitat_brt.engines.HyperparameterGrid import HyperparameterSet
from habitat_brt.engines.ModelSelector import ModelSelector
from habitat_brt.engines.ModelTrainer import FittedModel
from habitat_brt.helpers.exceptions import SelectionFailure


def make_model(index, pde=None, accuracy=None, kappa=None, converged=True):
    return FittedModel(hyperparameters=HyperparameterSet(0.01, 0.5, index + 1), family='bernoulli',
                       predictors=['depth'], booster=object() if converged else None,
                       percent_deviance_explained=pde, cv_accuracy=accuracy, cv_kappa=kappa,
                       failure=None if converged else 'did not converge', index=index)


@pytest.fixture
def victim():
    return ModelSelector('bernoulli')


def test_select_highest_deviance_explained(victim):
    models = [make_model(0, 20.0), make_model(1, 35.0), make_model(2, 30.0)]
    assert victim.select(models).index == 1


def test_select_first_on_tie(victim):
    models = [make_model(0, 10.0), make_model(1, 35.0), make_model(2, 35.0)]
    assert victim.select(models).index == 1


def test_select_skips_failures(victim):
    models = [make_model(0, converged=False), make_model(1, 12.0), make_model(2, converged=False)]
    assert victim.select(models).index == 1


def test_select_no_viable_model(victim):
    models = [make_model(index, converged=False) for index in range(3)]
    with pytest.raises(SelectionFailure) as error:
        victim.select(models)
    assert '3 failed' in str(error.value)


def test_select_multinomial():
    victim = ModelSelector('multinomial')
    models = [make_model(0, accuracy=0.8, kappa=0.6), make_model(1, accuracy=0.85, kappa=0.7),
              make_model(2, accuracy=0.85, kappa=0.75), make_model(3, accuracy=0.85, kappa=0.75)]
    assert victim.select(models).index == 2
