import os
import yaml
import pathlib
import dask

from dask.distributed import Client, LocalCluster
from socket import gethostname


INPUTS = pathlib.Path(__file__).parents[3] / 'inputs'


def compute_tasks(tasks: list, scheduler: str = 'threads', num_workers: int = None) -> list:
    """
    Run a list of dask.delayed tasks and collect the results

    :param list tasks: dask.delayed objects, one per independent fit
    :param str scheduler: threads, processes, synchronous or distributed (a LocalCluster)
    :param int num_workers: pool size, defaults to get_worker_count()
    :returns list: results in the same order as tasks
    """

    if not tasks:
        return []
    if scheduler == 'synchronous':
        return list(dask.compute(*tasks, scheduler='synchronous'))
    workers = num_workers if num_workers else get_worker_count()
    if scheduler == 'distributed':
        with LocalCluster(n_workers=workers, threads_per_worker=1) as cluster, Client(cluster):
            return list(dask.compute(*tasks))
    return list(dask.compute(*tasks, scheduler=scheduler, num_workers=workers))


def get_environment() -> str:
    """Determine current environment running code"""

    hostname = gethostname()
    if 'L' in hostname:
        return 'local'
    else:
        return 'remote'


def get_config_item(parent: str, child: str=False, env_string: str=False) -> str:
    """
    Load config and return speciific key
    :param str parent: Primary key in config
    :param str child: Secondary key in config
    :param str env_string: Optional explicit value of "local" or "remote"
    :returns str: Value from local or remote YAML config
    """

    env = env_string if env_string else None
    if env is None:
        env = get_environment()

    with open(str(INPUTS / 'lookups' / f'{env}_path_config.yaml'), 'r') as lookup:
        config = yaml.safe_load(lookup)
        parent_item = config[parent]
        if child:
            return parent_item[child]
        else:
            return parent_item


def get_worker_count(reserved: int = 2) -> int:
    """Pool size that leaves a few cores free for the host"""

    cpus = os.cpu_count() or 1
    return max(1, cpus - reserved)


def load_run_config(config_name: str) -> dict:
    """
    Load a model run config
    :param str config_name: File name under inputs/lookups/run_configs or a full path
    :returns dict: Parsed YAML run options
    """

    config_path = pathlib.Path(config_name)
    if not config_path.is_file():
        config_path = INPUTS / 'lookups' / 'run_configs' / config_name
    with open(config_path, 'r') as lookup:
        return yaml.safe_load(lookup)


def resolve_path(path_value: str) -> pathlib.Path:
    """Relative config paths are anchored at the repository root"""

    path = pathlib.Path(path_value)
    if path.is_absolute():
        return path
    return INPUTS.parents[0] / path
