"""Class for running a full boosted tree presence or habitat workflow"""

import json
import pathlib
import time

import pandas as pd

from habitat_brt.engines.Engine import Engine
from habitat_brt.engines.BootstrapEnsembleBuilder import BootstrapEnsembleBuilder
from habitat_brt.engines.DataSplitter import DataSplitter
from habitat_brt.engines.HabitatClusterer import HabitatClusterer
from habitat_brt.engines.HyperparameterGrid import HyperparameterGrid
from habitat_brt.engines.ModelSelector import ModelSelector
from habitat_brt.engines.ModelTrainer import ModelTrainer
from habitat_brt.engines.PipelineState import PipelineState
from habitat_brt.engines.SpatialPredictor import PredictorStack, SpatialPredictor
from habitat_brt.engines.ValidationEvaluator import ValidationEvaluator
from habitat_brt.helpers.tools import get_config_item, resolve_path


class BoostedTreeEngine(Engine):
    """Class to hold the logic for one BRT presence or BCT habitat model run"""

    def __init__(self, config: dict):
        super().__init__(config)
        self.family = config.get('family', 'bernoulli')
        self.output_name = config['output_name']
        self.response = config['response']
        self.predictors = list(config['predictors'])
        self.seed = config.get('seed', 1)
        self.output_folder = self.get_output_folder()
        self.state_path = self.output_folder / f'{self.output_name}_state.pkl'
        self.stack = None

        self.splitter = DataSplitter(self.response, self.predictors,
                                     config.get('x_column', 'X'), config.get('y_column', 'Y'))
        self.trainer = ModelTrainer(
            self.response,
            self.predictors,
            family=self.family,
            n_folds=config.get('n_folds', 10),
            min_trees=config.get('min_trees', 50),
            max_retries=config.get('max_retries', 1),
            seed=self.seed,
            scheduler=self.scheduler,
            num_workers=self.num_workers,
        )
        self.selector = ModelSelector(self.family)
        self.predictor = SpatialPredictor()
        self.evaluator = ValidationEvaluator()

    def get_config_path(self, key: str, path_key: str) -> pathlib.Path:
        """Run config value, else the path config entry for this run's section"""

        value = self.config.get(key)
        if value is None and self.config.get('paths'):
            value = get_config_item(self.config['paths'], path_key)
        return resolve_path(value) if value else None

    def get_output_folder(self) -> pathlib.Path:
        output_directory = self.config.get('output_directory')
        if output_directory:
            return resolve_path(output_directory)
        subfolder = get_config_item(self.config['paths'], 'OUTPUT_SUBFOLDER') if self.config.get('paths') else ''
        return resolve_path(get_config_item('SHARED', 'OUTPUT_DIRECTORY')) / subfolder

    def get_stack(self) -> PredictorStack:
        """Every raster in the predictor folder, loaded once per run; layer names must equal the predictors"""

        if self.stack is None:
            predictor_directory = self.get_config_path('predictor_directory', 'PREDICTOR_DIRECTORY')
            if predictor_directory:
                stack = PredictorStack.from_directory(predictor_directory)
                stack.check_alignment(self.predictors)
                self.stack = stack
        return self.stack

    def output_path(self, suffix: str) -> pathlib.Path:
        return self.output_folder / f'{self.output_name}_{suffix}'

    def write_json(self, content, suffix: str) -> None:
        with open(self.output_path(suffix), 'w') as writer:
            writer.write(json.dumps(content, indent=4))

    def extract_predictors(self, records: pd.DataFrame) -> pd.DataFrame:
        """Sample predictor rasters at each point for predictors missing from the table"""

        missing = [name for name in self.predictors if name not in records.columns]
        if not missing or self.get_stack() is None:
            return records
        self.message(f' - Extracting {len(missing)} predictor(s) from rasters at {len(records)} points')
        sampled = self.stack.sample(records[self.splitter.x_column], records[self.splitter.y_column])
        records = records.copy()
        for name in missing:
            records[name] = sampled[name].to_numpy()
        return records

    def assign_habitat_classes(self, state: PipelineState, points: pd.DataFrame,
                               validation_points: pd.DataFrame) -> None:
        """Cluster cover percentages of all sites into habitat classes used as the response"""

        cover_columns = self.config['cover_columns']
        n_clusters = self.config['n_clusters']
        tables = [points] if validation_points is None else [points, validation_points]
        for table in tables:
            self.splitter.validate_schema(table, cover_columns)
        combined = pd.concat([table[cover_columns] for table in tables], ignore_index=True)

        clusterer = HabitatClusterer(cover_columns, method=self.config.get('cluster_method', 'ward'))
        labels = clusterer.cluster(combined, n_clusters)
        points[self.response] = labels.iloc[:len(points)].to_numpy()
        if validation_points is not None:
            validation_points[self.response] = labels.iloc[len(points):].to_numpy()

        state.clusters = clusterer.cluster_summary(combined, labels)
        state.clusters.to_csv(self.output_path('clusters.csv'), index=False)
        self.message(f' - Assigned {n_clusters} habitat classes to {len(combined)} sites')

    def load_data(self, state: PipelineState) -> None:
        """Read points, derive habitat classes, extract predictors and split"""

        crs = self.config.get('crs') or get_config_item('SHARED', 'CRS')
        points_path = self.get_config_path('points', 'POINTS')
        if points_path is None or not points_path.exists():
            raise FileNotFoundError(f'Survey points not found at {points_path}; set points in the run config '
                                    f'or POINTS under {self.config.get("paths")} in the path config')
        points = self.splitter.load_points(points_path, crs)
        validation_path = self.get_config_path('validation_points', 'VALIDATION_POINTS')
        validation_points = self.splitter.load_points(validation_path, crs) if validation_path else None

        if self.family == 'multinomial' and self.config.get('cover_columns'):
            self.assign_habitat_classes(state, points, validation_points)

        points = self.extract_predictors(points)
        if validation_points is not None:
            validation_points = self.extract_predictors(validation_points)
        state.calibration, state.validation = self.splitter.split(
            points,
            validation_column=self.config.get('validation_column'),
            validation_records=validation_points,
        )
        self.message(f' - {len(state.calibration)} calibration / {len(state.validation)} validation records')

    def tune_models(self, state: PipelineState) -> None:
        """Cross-validate every hyperparameter combination"""

        grid = HyperparameterGrid.from_config(self.config['hyperparameters'])
        self.message(f' - Fitting {len(grid)} hyperparameter combinations')
        state.tuning_models = self.trainer.tune(state.calibration, grid)

        tuning_table = self.trainer.tuning_table(state.tuning_models)
        tuning_table.to_csv(self.output_path('tuning.csv'), index=False)
        failures = tuning_table[~tuning_table['converged']]
        for _, row in failures.iterrows():
            self.log_error(f'Grid cell {row["grid_index"]} did not converge after {row["attempts"]} attempt(s): '
                           f'{row["failure"]}')
        self.message(f' - {len(tuning_table) - len(failures)} converged, {len(failures)} failed')

    def select_model(self, state: PipelineState) -> None:
        """Choose the best grid cell and record it"""

        best = self.selector.select(state.tuning_models)
        state.best_index = best.index
        record = best.to_record()
        record.update({'region': self.config.get('region'), 'response': self.response,
                       'family': self.family, 'predictors': self.predictors})
        self.write_json(record, 'best_hyperparameters.json')
        importance = pd.DataFrame({'predictor': self.predictors,
                                   'influence': [best.influence.get(name, 0.0) for name in self.predictors]})
        importance.sort_values('influence', ascending=False).to_csv(self.output_path('best_importance.csv'),
                                                                    index=False)
        self.message(f' - Selected {best.hyperparameters} with {best.n_trees_achieved} trees')

    def bootstrap_models(self, state: PipelineState) -> None:
        """Refit the selected model on bootstrap resamples"""

        n_bootstraps = self.config.get('n_bootstraps', 0)
        if not n_bootstraps:
            self.message(' - No bootstrap replicates requested')
            return
        builder = BootstrapEnsembleBuilder(self.trainer, n_bootstraps, seed=self.seed)
        state.ensemble = builder.build(state.calibration, state.best_model)
        builder.importance_table(state.ensemble).to_csv(self.output_path('importance.csv'), index=False)
        for member in state.ensemble:
            if not member.converged:
                self.log_error(f'Bootstrap replicate {member.index + 1} failed: {member.failure}')

    def predict_surfaces(self, state: PipelineState) -> None:
        """Prediction rasters over the predictor grid"""

        stack = self.get_stack()
        if stack is None:
            self.message(' - No predictor rasters configured, skipping prediction surfaces')
            return

        best = state.best_model
        if self.family == 'multinomial':
            surfaces = [self.predictor.predict(best, stack, name='classes')]
        elif state.ensemble:
            members = self.predictor.predict_ensemble(state.ensemble, stack)
            surfaces = list(self.predictor.aggregate(members))
        else:
            surfaces = [self.predictor.predict(best, stack, name='probability')]

        for surface in surfaces:
            self.predictor.write_surface(surface, self.output_path(f'{surface.name}.tif'))
            state.surfaces[surface.name] = surface
        self.message(f' - Wrote {len(surfaces)} prediction raster(s)')

    def validate_models(self, state: PipelineState) -> None:
        """Accuracy of the final model or ensemble on the validation records"""

        validation = state.validation
        if validation is None or validation.empty:
            self.message(' - No validation records, skipping validation')
            return

        model = state.ensemble if state.ensemble else state.best_model
        columns = {'response': self.response, 'x_column': self.splitter.x_column,
                   'y_column': self.splitter.y_column}
        if self.family == 'bernoulli':
            state.metrics = [self.evaluator.evaluate(model, validation, **columns)]
            predicted = self.evaluator.ensemble_probability(model if state.ensemble else [model], validation)
            residuals = pd.DataFrame({'X': validation[columns['x_column']], 'Y': validation[columns['y_column']],
                                      'observed': validation[self.response], 'predicted': predicted})
            residuals['residual'] = residuals['observed'] - residuals['predicted']
            residuals.to_csv(self.output_path('validation_points.csv'), index=False)
        elif 'classes' in state.surfaces:
            policies = self.config.get('validation_policies')
            if not policies:
                raise ValueError('validation_policies must list strict and/or any for class map validation')
            state.metrics = [
                self.evaluator.evaluate(state.best_model, validation, surface=state.surfaces['classes'],
                                        buffer_distance=self.config['buffer_distance'], policy=policy, **columns)
                for policy in policies
            ]
        else:
            state.metrics = [self.evaluator.evaluate(state.best_model, validation, **columns)]

        for metrics in state.metrics:
            if metrics.confusion_matrix is not None:
                metrics.confusion_matrix.to_csv(self.output_path(f'confusion_{metrics.policy}.csv'))
                metrics.class_table.to_csv(self.output_path(f'class_metrics_{metrics.policy}.csv'), index=False)
        self.write_json([metrics.to_dict() for metrics in state.metrics], 'validation.json')
        self.message(f' - Validation metrics written to {self.output_path("validation.json")}')

    def load_state(self) -> PipelineState:
        if self.config.get('resume') and self.state_path.exists():
            self.message(f'Resuming from checkpoint {self.state_path}')
            return PipelineState.load(self.state_path)
        return PipelineState(self.output_name)

    def run(self) -> PipelineState:
        """Entrypoint for a full model run; each finished stage is checkpointed"""

        start = time.time()
        self.setup_logging(self.output_folder, f'{self.output_name}_log.txt')
        self.message(f'Starting {self.family} boosted tree run: {self.output_name} ({self.config.get("region")})')
        state = self.load_state()
        stages = [
            ('load', self.load_data),
            ('tune', self.tune_models),
            ('select', self.select_model),
            ('bootstrap', self.bootstrap_models),
            ('predict', self.predict_surfaces),
            ('validate', self.validate_models),
        ]
        for stage, step in stages:
            if state.is_complete(stage):
                self.message(f'Skipping completed stage: {stage}')
                continue
            self.message(f'Running stage: {stage}')
            step(state)
            state.mark_complete(stage)
            state.save(self.state_path)

        self.check_logging()
        self.message(f'Run time: {(time.time() - start) / 60:.2f} minutes')
        return state
