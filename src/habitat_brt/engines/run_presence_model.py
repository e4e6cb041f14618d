import cProfile
import pstats
import pathlib
import sys


HABITAT_BRT = pathlib.Path(__file__).parents[2]
sys.path.append(str(HABITAT_BRT))


from habitat_brt.engines.BoostedTreeEngine import BoostedTreeEngine
from habitat_brt.helpers.tools import load_run_config


if __name__ == '__main__':
    config_name = sys.argv[1] if len(sys.argv) > 1 else 'brt_presence.yaml'

    profiler = cProfile.Profile()
    profiler.enable()

    engine = BoostedTreeEngine(load_run_config(config_name))
    engine.run()

    profiler.disable()
    stats = pstats.Stats(profiler)
    stats.strip_dirs().sort_stats('cumulative').print_stats(10)
