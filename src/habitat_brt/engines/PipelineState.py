import pickle
import pathlib
import logging
from dataclasses import dataclass, field

import pandas as pd


logger = logging.getLogger(__name__)


@dataclass
class PipelineState:
    """Outputs of each finished stage, checkpointed between stages"""

    output_name: str
    completed_stages: list = field(default_factory=list)
    calibration: pd.DataFrame = None
    validation: pd.DataFrame = None
    clusters: pd.DataFrame = None
    tuning_models: list = None
    best_index: int = None
    ensemble: list = None
    surfaces: dict = field(default_factory=dict)
    metrics: list = field(default_factory=list)

    @property
    def best_model(self):
        if self.best_index is None:
            return None
        return self.tuning_models[self.best_index]

    def is_complete(self, stage: str) -> bool:
        return stage in self.completed_stages

    def mark_complete(self, stage: str) -> None:
        if stage not in self.completed_stages:
            self.completed_stages.append(stage)

    def save(self, path: pathlib.Path) -> None:
        """Pickle the state through a temp file so the previous checkpoint survives a failed write"""

        path = pathlib.Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        temp_path = path.with_suffix(path.suffix + '.tmp')
        with open(temp_path, 'wb') as writer:
            pickle.dump(self, writer)
        temp_path.replace(path)
        logger.info(f'Checkpoint after {self.completed_stages[-1] if self.completed_stages else "start"}: {path}')

    @classmethod
    def load(cls, path: pathlib.Path) -> 'PipelineState':
        with open(path, 'rb') as reader:
            state = pickle.load(reader)
        if not isinstance(state, cls):
            raise TypeError(f'{path} does not hold a pipeline checkpoint')
        return state
