import itertools

from dataclasses import dataclass, asdict


@dataclass(frozen=True)
class HyperparameterSet:
    """One cell of the tuning grid"""

    learning_rate: float
    bag_fraction: float
    tree_complexity: int
    min_obs: int = 1
    n_trees: int = 1000

    def to_dict(self) -> dict:
        return asdict(self)


class HyperparameterGrid:
    """Cartesian product of candidate hyperparameter values"""

    parameter_order = ('learning_rate', 'bag_fraction', 'tree_complexity', 'min_obs', 'n_trees')

    def __init__(self, learning_rate: list[float], bag_fraction: list[float], tree_complexity: list[int],
                 min_obs: list[int] = (1,), n_trees: list[int] = (1000,)):
        self.candidates = {
            'learning_rate': list(learning_rate),
            'bag_fraction': list(bag_fraction),
            'tree_complexity': list(tree_complexity),
            'min_obs': list(min_obs),
            'n_trees': list(n_trees),
        }
        empty = [name for name, values in self.candidates.items() if not values]
        if empty:
            raise ValueError(f'No candidate values for: {", ".join(empty)}')

    @classmethod
    def from_config(cls, hyperparameters: dict) -> 'HyperparameterGrid':
        """Build a grid from the hyperparameters block of a run config"""

        unknown = set(hyperparameters) - set(cls.parameter_order)
        if unknown:
            raise ValueError(f'Unknown hyperparameter(s): {", ".join(sorted(unknown))}')
        options = {}
        for name, values in hyperparameters.items():
            options[name] = values if isinstance(values, (list, tuple)) else [values]
        return cls(**options)

    def __len__(self) -> int:
        size = 1
        for values in self.candidates.values():
            size *= len(values)
        return size

    def __iter__(self):
        return iter(self.sets())

    def sets(self) -> list[HyperparameterSet]:
        """All grid cells, lexicographic over parameter_order"""

        value_lists = [self.candidates[name] for name in self.parameter_order]
        return [HyperparameterSet(*values) for values in itertools.product(*value_lists)]
