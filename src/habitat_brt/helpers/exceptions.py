class HabitatModelError(Exception):
    """Base class for all habitat_brt errors"""


class SchemaError(HabitatModelError):
    """A point table is missing columns the run config names"""

    def __init__(self, missing: list[str], source: str = 'records'):
        self.missing = list(missing)
        super().__init__(f'{source} missing required column(s): {", ".join(self.missing)}')


class ConvergenceFailure(HabitatModelError):
    """A single boosted tree fit produced no usable statistics"""


class SelectionFailure(HabitatModelError):
    """No grid cell produced a viable model"""


class SpatialMisalignment(HabitatModelError):
    """Predictor layers do not line up with a model or with each other"""

    def __init__(self, message: str, missing: list[str] = None, extra: list[str] = None):
        self.missing = sorted(missing or [])
        self.extra = sorted(extra or [])
        details = []
        if self.missing:
            details.append(f'missing layers: {", ".join(self.missing)}')
        if self.extra:
            details.append(f'extra layers: {", ".join(self.extra)}')
        if details:
            message = f'{message} ({"; ".join(details)})'
        super().__init__(message)
