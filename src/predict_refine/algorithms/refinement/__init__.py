from __future__ import annotations


class PredictRefineConfigError(ValueError):
    pass


class PredictRefineRuntimeError(RuntimeError):
    pass


from predict_refine.algorithms.refinement.parameterisation.prediction_parameters_stills import (  # noqa: E402; import dependency
    fs_ss_gradient,
    r_gradient,
)
from predict_refine.algorithms.refinement.refiner import (  # noqa: E402; import dependency
    RefinementResult,
    refine_prediction,
    refine_radius,
)
from predict_refine.algorithms.refinement.target_stills import (  # noqa: E402; import dependency
    fs_dev,
    r_dev,
    ss_dev,
)

__all__ = [
    "PredictRefineConfigError",
    "PredictRefineRuntimeError",
    "RefinementResult",
    "fs_dev",
    "fs_ss_gradient",
    "r_dev",
    "r_gradient",
    "refine_prediction",
    "refine_radius",
    "ss_dev",
]
