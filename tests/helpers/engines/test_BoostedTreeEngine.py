import pytest
import pathlib
import json

HABITAT_BRT_MODULE = pathlib.Path(__file__).parents[3] / 'src'

import sys
sys.path.append(str(HABITAT_BRT_MODULE))

import numpy as np
import pandas as pd
import rasterio
from rasterio.transform import from_origin

from habitat_brt.engines.BoostedTreeEngine import BoostedTreeEngine
from habitat_brt.helpers.exceptions import SelectionFailure, SpatialMisalignment


COVER_COLUMNS = ['coral', 'seagrass', 'sand']


def write_layer(path, values):
    with rasterio.open(path, 'w', driver='GTiff', height=20, width=20, count=1, dtype='float32',
                       crs='EPSG:32617', transform=from_origin(0, 200, 10, 10)) as dst:
        dst.write(values.astype('float32'), 1)


def write_predictors(folder):
    """20 x 20 grid of 10 m cells: depth deepens eastward, slope is noise"""

    folder.mkdir()
    rng = np.random.default_rng(1)
    cols = np.tile(np.arange(20), (20, 1))
    write_layer(folder / 'depth.tif', -2.0 - cols * 1.5)
    write_layer(folder / 'slope.tif', rng.uniform(0, 20, (20, 20)))
    return folder


def presence_points(n, seed):
    rng = np.random.default_rng(seed)
    x, y = rng.uniform(0, 200, n), rng.uniform(0, 200, n)
    presence = ((x + rng.normal(0, 20, n)) > 100).astype(int)
    return pd.DataFrame({'X': x, 'Y': y, 'presence': presence, 'validation': rng.uniform(size=n) < 0.25})


def habitat_sites(n, seed):
    rng = np.random.default_rng(seed)
    x, y = rng.uniform(0, 200, n), rng.uniform(0, 200, n)
    zone = np.minimum((x // (200 / 3)).astype(int), 2)
    cover = rng.uniform(0, 10, (n, 3))
    cover[np.arange(n), zone] = rng.uniform(70, 90, n)
    table = pd.DataFrame(cover, columns=COVER_COLUMNS)
    table.insert(0, 'Y', y)
    table.insert(0, 'X', x)
    return table


@pytest.fixture
def presence_config(tmp_path):
    points_path = tmp_path / 'presence_points.csv'
    presence_points(300, 3).to_csv(points_path, index=False)
    return {
        'region': 'ER_3',
        'output_name': 'presence_brt',
        'family': 'bernoulli',
        'response': 'presence',
        'crs': 'EPSG:32617',
        'predictors': ['depth', 'slope'],
        'points': str(points_path),
        'validation_column': 'validation',
        'predictor_directory': str(write_predictors(tmp_path / 'predictors')),
        'output_directory': str(tmp_path / 'outputs'),
        'hyperparameters': {'learning_rate': [0.1], 'bag_fraction': [0.75], 'tree_complexity': [1, 2],
                            'n_trees': [20]},
        'min_trees': 1,
        'n_bootstraps': 3,
        'seed': 1234,
        'scheduler': 'synchronous',
        'reserved_workers': 0,
    }


@pytest.fixture
def habitat_config(tmp_path):
    points_path = tmp_path / 'habitat_sites.csv'
    validation_path = tmp_path / 'habitat_validation_sites.csv'
    habitat_sites(240, 5).to_csv(points_path, index=False)
    habitat_sites(30, 6).to_csv(validation_path, index=False)
    return {
        'region': 'ER_3',
        'output_name': 'habitat_bct',
        'family': 'multinomial',
        'response': 'habitat_class',
        'crs': 'EPSG:32617',
        'predictors': ['depth', 'slope'],
        'points': str(points_path),
        'validation_points': str(validation_path),
        'predictor_directory': str(write_predictors(tmp_path / 'predictors')),
        'output_directory': str(tmp_path / 'outputs'),
        'cover_columns': COVER_COLUMNS,
        'n_clusters': 3,
        'hyperparameters': {'learning_rate': [0.3], 'bag_fraction': [0.75], 'tree_complexity': [2],
                            'n_trees': [15]},
        'min_trees': 1,
        'buffer_distance': 15,
        'validation_policies': ['strict', 'any'],
        'seed': 1234,
        'scheduler': 'synchronous',
        'reserved_workers': 0,
    }


def test_run_presence(presence_config, tmp_path):
    victim = BoostedTreeEngine(presence_config)
    state = victim.run()
    outputs = tmp_path / 'outputs'

    assert state.completed_stages == ['load', 'tune', 'select', 'bootstrap', 'predict', 'validate']
    assert {'depth', 'slope'} <= set(state.calibration.columns)
    assert len(state.calibration) + len(state.validation) == 300

    tuning = pd.read_csv(outputs / 'presence_brt_tuning.csv')
    assert len(tuning) == 2
    assert tuning['converged'].all()

    with open(outputs / 'presence_brt_best_hyperparameters.json') as reader:
        best = json.load(reader)
    assert best['learning_rate'] == 0.1
    assert best['grid_index'] in (0, 1)

    importance = pd.read_csv(outputs / 'presence_brt_importance.csv')
    assert list(importance.columns) == ['predictor', 'Rep_1', 'Rep_2', 'Rep_3', 'mean', 'sd']

    for name in ('mean', 'sd', 'cov'):
        with rasterio.open(outputs / f'presence_brt_{name}.tif') as src:
            assert src.shape == (20, 20)

    with open(outputs / 'presence_brt_validation.json') as reader:
        metrics = json.load(reader)
    assert metrics[0]['family'] == 'bernoulli'
    assert 0.5 < metrics[0]['auc'] <= 1
    assert (outputs / 'presence_brt_validation_points.csv').exists()
    assert (outputs / 'presence_brt_state.pkl').exists()
    assert (outputs / 'presence_brt_log.txt').exists()


def test_resume_skips_completed_stages(presence_config, monkeypatch):
    BoostedTreeEngine(presence_config).run()

    presence_config['resume'] = True
    victim = BoostedTreeEngine(presence_config)

    def fail_tune(*args, **kwargs):
        raise AssertionError('tuning should not rerun')

    monkeypatch.setattr(victim.trainer, 'tune', fail_tune)
    state = victim.run()
    assert state.is_complete('validate')
    assert len(state.ensemble) == 3


def test_run_without_viable_model(presence_config, tmp_path):
    presence_config['min_trees'] = 500
    with pytest.raises(SelectionFailure):
        BoostedTreeEngine(presence_config).run()
    tuning = pd.read_csv(tmp_path / 'outputs' / 'presence_brt_tuning.csv')
    assert not tuning['converged'].any()
    assert (tuning['attempts'] == 2).all()


def test_run_habitat(habitat_config, tmp_path):
    victim = BoostedTreeEngine(habitat_config)
    state = victim.run()
    outputs = tmp_path / 'outputs'

    clusters = pd.read_csv(outputs / 'habitat_bct_clusters.csv')
    assert clusters['habitat_class'].tolist() == [1, 2, 3]
    assert clusters['n_sites'].sum() == 270
    assert set(state.calibration['habitat_class']) == {1, 2, 3}

    with rasterio.open(outputs / 'habitat_bct_classes.tif') as src:
        classes = src.read(1)
    assert set(np.unique(classes)) <= {1.0, 2.0, 3.0}

    with open(outputs / 'habitat_bct_validation.json') as reader:
        metrics = json.load(reader)
    assert [record['policy'] for record in metrics] == ['strict', 'any']
    assert metrics[1]['accuracy'] >= metrics[0]['accuracy']
    assert (outputs / 'habitat_bct_confusion_strict.csv').exists()
    assert (outputs / 'habitat_bct_confusion_any.csv').exists()


def test_run_with_stray_predictor_layer(presence_config):
    predictor_directory = pathlib.Path(presence_config['predictor_directory'])
    write_layer(predictor_directory / 'stray.tif', np.zeros((20, 20)))

    with pytest.raises(SpatialMisalignment) as error:
        BoostedTreeEngine(presence_config).run()
    assert error.value.extra == ['stray']
    assert error.value.missing == []
    assert 'extra layers: stray' in str(error.value)


def test_run_without_points_file(presence_config, tmp_path):
    presence_config['points'] = str(tmp_path / 'missing_points.csv')
    with pytest.raises(FileNotFoundError, match='set points in the run config'):
        BoostedTreeEngine(presence_config).run()
