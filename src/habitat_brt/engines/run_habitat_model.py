import pathlib
import time
import sys


HABITAT_BRT = pathlib.Path(__file__).parents[2]
sys.path.append(str(HABITAT_BRT))


from habitat_brt.engines.BoostedTreeEngine import BoostedTreeEngine
from habitat_brt.helpers.tools import load_run_config


def run_habitat_model(config_name: str) -> None:
    start = time.time()
    config = load_run_config(config_name)
    state = BoostedTreeEngine(config).run()
    for metrics in state.metrics:
        print(f'{metrics.policy}: accuracy {metrics.accuracy:.3f}, kappa {metrics.kappa:.3f}')

    end = time.time()
    print(f'Total Runtime: {end - start}')
    print('done')


if __name__ == '__main__':
    config_name = sys.argv[1] if len(sys.argv) > 1 else 'bct_habitat.yaml'
    run_habitat_model(config_name)
