"""Classes for predictor raster stacks and model prediction surfaces"""

import logging
import pathlib
from dataclasses import dataclass

import numpy as np
import pandas as pd
import rasterio
from rasterio.transform import Affine, rowcol

from habitat_brt.engines.ModelTrainer import FittedModel
from habitat_brt.helpers.exceptions import SpatialMisalignment


logger = logging.getLogger(__name__)


@dataclass
class PredictionSurface:
    """Grid of predicted values aligned to the predictor rasters; NaN is missing"""

    values: np.ndarray
    transform: Affine
    crs: object = None
    name: str = 'prediction'


def cell_centers(shape: tuple, transform: Affine) -> tuple[np.ndarray, np.ndarray]:
    """Flattened x and y of every cell center, row-major"""

    rows, cols = np.indices(shape)
    xs, ys = transform * (cols.ravel() + 0.5, rows.ravel() + 0.5)
    return np.asarray(xs), np.asarray(ys)


class PredictorStack:
    """Named predictor layers sharing one extent, resolution and CRS"""

    def __init__(self, layers: dict, transform: Affine, crs=None):
        if not layers:
            raise ValueError('A predictor stack needs at least one layer')
        shapes = {name: np.shape(values) for name, values in layers.items()}
        first_shape = next(iter(shapes.values()))
        mismatched = [name for name, shape in shapes.items() if shape != first_shape]
        if mismatched:
            raise SpatialMisalignment(f'Layer shapes differ from {first_shape}: {", ".join(mismatched)}')
        self.layers = {name: np.asarray(values, dtype=float) for name, values in layers.items()}
        self.transform = transform
        self.crs = crs

    @classmethod
    def from_directory(cls, folder: str, names: list[str] = None) -> 'PredictorStack':
        """
        Read one GeoTIFF per predictor; the layer name is the file stem

        :param str folder: Directory of .tif/.tiff predictor rasters
        :param list names: Optional subset of layers to load
        :returns PredictorStack: aligned layers with nodata as NaN
        """

        raster_files = sorted(path for path in pathlib.Path(folder).iterdir()
                              if path.is_file() and path.suffix.lower() in ('.tif', '.tiff'))
        available = {path.stem: path for path in raster_files}
        if names:
            missing = [name for name in names if name not in available]
            if missing:
                raise SpatialMisalignment(f'Predictor rasters not found in {folder}', missing=missing)
            available = {name: available[name] for name in names}

        layers, transform, crs, shape = {}, None, None, None
        for name, path in available.items():
            with rasterio.open(path) as src:
                data = src.read(1, masked=True).astype(float).filled(np.nan)
                if transform is None:
                    transform, crs, shape = src.transform, src.crs, data.shape
                elif data.shape != shape or not np.allclose(tuple(src.transform), tuple(transform)) or src.crs != crs:
                    raise SpatialMisalignment(f'{path.name} does not share the grid of the other predictor rasters')
            layers[name] = data
        logger.info(f'Loaded {len(layers)} predictor layer(s) from {folder}')
        return cls(layers, transform, crs)

    @property
    def names(self) -> list[str]:
        return list(self.layers)

    @property
    def shape(self) -> tuple:
        return next(iter(self.layers.values())).shape

    def check_alignment(self, predictors: list[str]) -> None:
        """Layer names must match the model's predictor set exactly"""

        missing = sorted(set(predictors) - set(self.layers))
        extra = sorted(set(self.layers) - set(predictors))
        if missing or extra:
            raise SpatialMisalignment('Predictor layers do not match the trained model', missing=missing, extra=extra)

    def sample(self, x: np.ndarray, y: np.ndarray) -> pd.DataFrame:
        """Predictor values at points; points off the grid get NaN"""

        rows, cols = rowcol(self.transform, np.asarray(x, dtype=float), np.asarray(y, dtype=float))
        rows, cols = np.atleast_1d(rows).astype(int), np.atleast_1d(cols).astype(int)
        n_rows, n_cols = self.shape
        inside = (rows >= 0) & (rows < n_rows) & (cols >= 0) & (cols < n_cols)
        sampled = {}
        for name, values in self.layers.items():
            column = np.full(len(rows), np.nan)
            column[inside] = values[rows[inside], cols[inside]]
            sampled[name] = column
        return pd.DataFrame(sampled)

    def to_frame(self) -> pd.DataFrame:
        """One row per cell, one column per layer"""

        return pd.DataFrame({name: values.ravel() for name, values in self.layers.items()})


class SpatialPredictor:
    """Apply fitted models over a predictor stack and summarise ensembles"""

    def predict(self, model: FittedModel, stack: PredictorStack, name: str = 'prediction') -> PredictionSurface:
        """
        Predict every cell of the stack

        Bernoulli models give presence probability, multinomial models give the
        most probable class label. Cells with any missing predictor are NaN.
        """

        stack.check_alignment(model.predictors)
        frame = stack.to_frame()[model.predictors]
        if model.family == 'multinomial':
            values = model.predict_class(frame)
        else:
            values = model.predict_proba(frame)
        return PredictionSurface(values.reshape(stack.shape), stack.transform, stack.crs, name)

    def predict_ensemble(self, members: list[FittedModel], stack: PredictorStack) -> list[PredictionSurface]:
        """One surface per converged ensemble member"""

        stack.check_alignment(members[0].predictors)
        return [self.predict(member, stack, name=f'Rep_{member.index + 1}')
                for member in members if member.converged]

    def aggregate(self, surfaces: list[PredictionSurface]) -> tuple[PredictionSurface, PredictionSurface, PredictionSurface]:
        """
        Cellwise mean, sample standard deviation and coefficient of variation

        A cell missing in any member is missing in all three outputs. The
        coefficient of variation is undefined (NaN) where the mean is zero.

        :param list[PredictionSurface] surfaces: Ensemble member predictions
        :returns tuple: mean, sd and cov surfaces
        """

        if not surfaces:
            raise ValueError('No prediction surfaces to aggregate')
        stacked = np.stack([surface.values for surface in surfaces]).astype(float)
        missing = np.isnan(stacked).any(axis=0)

        mean = stacked.mean(axis=0)
        if len(surfaces) == 1:
            sd = np.zeros_like(mean)
        else:
            sd = stacked.std(axis=0, ddof=1)
        with np.errstate(divide='ignore', invalid='ignore'):
            cov = sd / mean * 100
        cov[mean == 0] = np.nan

        for values in (mean, sd, cov):
            values[missing] = np.nan
        degenerate = int(np.sum((mean == 0) & ~missing))
        if degenerate:
            logger.info(f'{degenerate} cell(s) have a zero ensemble mean; coefficient of variation left undefined')

        template = surfaces[0]
        return (PredictionSurface(mean, template.transform, template.crs, 'mean'),
                PredictionSurface(sd, template.transform, template.crs, 'sd'),
                PredictionSurface(cov, template.transform, template.crs, 'cov'))

    def write_surface(self, surface: PredictionSurface, output_path: pathlib.Path) -> pathlib.Path:
        """Save a surface as a single band GeoTIFF with NaN nodata"""

        output_path = pathlib.Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        raster_data = surface.values.astype(np.float32)
        with rasterio.open(
            output_path,
            'w',
            driver='GTiff',
            height=raster_data.shape[0],
            width=raster_data.shape[1],
            count=1,
            dtype=raster_data.dtype,
            crs=surface.crs,
            transform=surface.transform,
            nodata=np.nan,
            compress='lzw',
        ) as dst:
            dst.write(raster_data, 1)
        logger.info(f'Saved {surface.name} raster to {output_path}')
        return output_path
