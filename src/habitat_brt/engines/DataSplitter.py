"""Class for loading survey points and splitting calibration and validation sets"""

import logging
import pathlib

import geopandas as gpd
import pandas as pd

from habitat_brt.helpers.exceptions import SchemaError


logger = logging.getLogger(__name__)


class DataSplitter:
    """Partition labeled point records into calibration and validation sets"""

    def __init__(self, response: str, predictors: list[str], x_column: str = 'X', y_column: str = 'Y'):
        if len(set(predictors)) != len(predictors):
            duplicates = sorted({name for name in predictors if predictors.count(name) > 1})
            raise ValueError(f'Duplicate predictor names: {", ".join(duplicates)}')
        self.response = response
        self.predictors = list(predictors)
        self.x_column = x_column
        self.y_column = y_column

    def drop_missing_response(self, records: pd.DataFrame) -> pd.DataFrame:
        """Remove rows lacking a response value"""

        kept = records.dropna(subset=[self.response])
        dropped = len(records) - len(kept)
        if dropped:
            logger.info(f'Removed {dropped} record(s) with no {self.response} value')
        return kept.copy()

    def load_points(self, path: str, crs: str = None) -> gpd.GeoDataFrame:
        """
        Read a point table and build point geometry from the coordinate columns

        :param str path: CSV file with one record per row
        :param str crs: Coordinate reference system of the X/Y columns
        :returns gpd.GeoDataFrame: Records with point geometry
        """

        records = pd.read_csv(pathlib.Path(path))
        self.validate_schema(records, [self.x_column, self.y_column], source=pathlib.Path(path).name)
        return gpd.GeoDataFrame(records,
                                geometry=gpd.points_from_xy(records[self.x_column], records[self.y_column]),
                                crs=crs)

    def split(self, records: pd.DataFrame, validation_column: str = None,
              validation_records: pd.DataFrame = None) -> tuple[pd.DataFrame, pd.DataFrame]:
        """
        Split records into calibration and validation sets

        Exactly one partition key is used: a boolean validation flag column on
        records, or a separate pre-split validation table.

        :param pd.DataFrame records: Calibration records, or all records when flagged
        :param str validation_column: Column marking validation rows
        :param pd.DataFrame validation_records: Pre-split validation table
        :returns tuple: calibration and validation frames with missing responses removed
        """

        if validation_column and validation_records is not None:
            raise ValueError('Use a validation column or a validation table, not both')

        required = [self.x_column, self.y_column, self.response] + self.predictors
        if validation_column:
            self.validate_schema(records, required + [validation_column])
            flags = records[validation_column].fillna(False).astype(bool)
            calibration = records.loc[~flags]
            validation = records.loc[flags]
        else:
            self.validate_schema(records, required)
            calibration = records
            if validation_records is None:
                validation = records.iloc[0:0]
            else:
                self.validate_schema(validation_records, required, source='validation records')
                validation = validation_records

        calibration = self.drop_missing_response(calibration).reset_index(drop=True)
        validation = self.drop_missing_response(validation).reset_index(drop=True)
        if validation_records is not None:
            self.warn_shared_sites(calibration, validation)
        logger.info(f'Split {len(calibration)} calibration and {len(validation)} validation records')
        return calibration, validation

    def warn_shared_sites(self, calibration: pd.DataFrame, validation: pd.DataFrame) -> int:
        """Count sites whose coordinates occur in both sets, warning when any do"""

        coordinates = [self.x_column, self.y_column]
        shared = pd.merge(calibration[coordinates].drop_duplicates(), validation[coordinates].drop_duplicates(),
                          on=coordinates)
        if len(shared):
            logger.warning(f'{len(shared)} site(s) appear in both the calibration and validation records')
        return len(shared)

    def validate_schema(self, records: pd.DataFrame, columns: list[str], source: str = 'records') -> None:
        """Fail fast when named columns are absent"""

        missing = [column for column in columns if column not in records.columns]
        if missing:
            raise SchemaError(missing, source)
