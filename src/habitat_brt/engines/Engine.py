import pathlib
import logging

import pandas as pd

from habitat_brt.helpers.tools import get_config_item, get_worker_count


class Engine:
    """Base class for all Engines"""

    def __init__(self, config: dict = None):
        self.config = config if config else {}
        self.logger = logging.getLogger(self.__class__.__name__)
        self.log_path = None
        self.logged = False

    @property
    def scheduler(self) -> str:
        """Dask scheduler used for fan-out stages"""

        return self.config.get('scheduler') or get_config_item('SHARED', 'SCHEDULER')

    @property
    def num_workers(self) -> int:
        reserved = self.config.get('reserved_workers')
        if reserved is None:
            reserved = get_config_item('SHARED', 'RESERVED_WORKERS')
        return get_worker_count(reserved)

    def check_logging(self) -> None:
        if self.logged:
            self.message(f'Check log: {self.log_path}')

    def log_error(self, content: str) -> None:
        self.logger.error(content)
        if not self.logged:
            self.logged = True

    def message(self, content: str) -> None:
        """Print progress and keep a copy in the run log"""

        print(content)
        self.logger.info(content)

    def setup_logging(self, output_folder: pathlib.Path, log_name: str) -> None:
        """Point the root logger at a fresh log file for this run"""

        output_folder.mkdir(parents=True, exist_ok=True)
        self.log_path = output_folder / log_name
        logging.basicConfig(level=logging.INFO,
                            format='%(asctime)s - %(levelname)s - %(message)s',
                            filename=str(self.log_path),
                            filemode='w',
                            force=True)
        self.logger.info(f'Log - {self.__class__.__name__} (run started at {pd.Timestamp.now()})')
