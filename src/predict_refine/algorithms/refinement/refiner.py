"""Refine the prediction of the reflections of one crystal on one still
image, and estimate the profile radius of the crystal"""

from __future__ import annotations

import logging

from libtbx.phil import parse

from predict_refine.algorithms.refinement.engine import (
    RefinementStatus,
    PredictionRefinery,
    refinery_phil_str,
)
from predict_refine.algorithms.refinement.mille import export_alignment_records
from predict_refine.algorithms.refinement.parameterisation import (
    build_active_parameters,
    check_parameters,
)
from predict_refine.algorithms.refinement.parameterisation import (
    phil_str as parameterisation_phil_str,
)
from predict_refine.algorithms.refinement.reflection_manager import (
    StillsReflectionManager,
    excitation_error_percentile,
)
from predict_refine.algorithms.refinement.reflection_manager import (
    phil_str as reflections_phil_str,
)
from predict_refine.algorithms.refinement.target_stills import pred_residual
from predict_refine.util import tabulate
from predict_refine.util.log import LoggingContext

logger = logging.getLogger(__name__)

# The number of pairs below which no radius is estimated
MIN_PAIRS_FOR_RADIUS = 3

format_data = {
    "reflections_phil": reflections_phil_str,
    "parameterisation_phil": parameterisation_phil_str,
    "refinery_phil": refinery_phil_str,
}
phil_scope = parse(
    """
refinement
  .help = "Parameters to configure the refinement"
{
  quiet = False
    .help = "Only report warnings from refinement, as when many frames are"
            "processed in turn"
    .type = bool

  parameterisation
    .help = "Parameters to control the parameterisation of experimental models"
  {
    %(parameterisation_phil)s
  }

  %(refinery_phil)s

  reflections
    .help = "Parameters used by the reflection manager"
  {
    %(reflections_phil)s
  }
}
"""
    % format_data,
    process_includes=True,
)


class RefinementResult:
    """Outcome of refine_prediction. On failure the models are as they were
    before the call. When refinement stalled, partial_state holds a copy of the
    crystal and a snapshot of the detector frames as they stood at the last
    step, for a caller that wants to keep them anyway. The frames can be put
    back with Detector.restore."""

    def __init__(self, status, num_pairs, history=None, partial_state=None):
        self.status = status
        self.num_pairs = num_pairs
        self.history = history
        self.partial_state = partial_state
        self.final_residual = None

    @property
    def succeeded(self):
        return self.status == RefinementStatus.CONVERGED

    def __bool__(self):
        return self.succeeded

    def __repr__(self):
        return "RefinementResult(%s, num_pairs=%d)" % (
            self.status.name,
            self.num_pairs,
        )


def _refiner_kwargs(refinery_params):
    return {
        "max_iterations": refinery_params.max_iterations,
        "convergence_tolerance": refinery_params.convergence_tolerance,
        "objective_floor": refinery_params.objective_floor,
        "divergence_ratio": refinery_params.divergence_ratio,
        "max_condition_number": refinery_params.max_condition_number,
    }


def print_step_table(refinery):
    """Print useful output about refinement steps in the form of a simple table"""

    history = refinery.history
    logger.debug("\nRefinement steps:")

    header = ["Step", "Nref", "Objective", "RMSD_exerr\n(m^-1)", "RMSD_fs\n(px)"]
    header.append("RMSD_ss\n(px)")
    if "condition_number" in history:
        header.append("Condition\nnumber")
    rows = []
    for i in range(history.get_nrows()):
        rmsd_exerr, rmsd_fs, rmsd_ss = history["rmsd"][i]
        row = [
            str(i),
            str(history["num_reflections"][i]),
            "%.5g" % history["objective"][i],
            "%.5g" % rmsd_exerr,
            "%.5g" % rmsd_fs,
            "%.5g" % rmsd_ss,
        ]
        if "condition_number" in history:
            cond = history["condition_number"][i]
            row.append("%.3g" % cond if cond is not None else "")
        rows.append(row)

    logger.debug(tabulate(rows, header))
    logger.debug(history.reason_for_termination)


def _quiet_level(params):
    return logging.WARNING if params.quiet else None


def refine_prediction(
    image, crystal, accumulator=None, max_hierarchy_depth=0, params=None
):
    """Refine the crystal, and the detector groups if enabled in params, so that
    the predicted reflections match the peaks on the image.

    On success the models are updated in place, a note of the final residual is
    added to the crystal and, if an accumulator is given, the observation
    equations are appended to it with the global derivatives of the detector
    groups above max_hierarchy_depth. On failure the models are left as they
    were and nothing is appended."""

    if params is None:
        params = phil_scope.extract()
    params = params.refinement

    with LoggingContext(__package__, _quiet_level(params)):
        return _refine_prediction(
            image, crystal, accumulator, max_hierarchy_depth, params
        )


def _refine_prediction(image, crystal, accumulator, max_hierarchy_depth, params):
    parameters = build_active_parameters(params.parameterisation, image.detector)
    check_parameters(parameters, image.detector)

    refman = StillsReflectionManager.from_parameters(
        params.reflections, image, crystal
    )
    reflpeaks = refman.pair_peaks()
    if not refman.has_enough_pairs():
        logger.info(
            "Too few reflection/peak pairs to refine (%d, need %d)",
            len(reflpeaks),
            refman.minimum_number_of_pairs,
        )
        return RefinementResult(RefinementStatus.DIVERGED, len(reflpeaks))

    refinery = PredictionRefinery(
        reflpeaks,
        crystal,
        image,
        parameters,
        tracking=params.refinery.journal,
        **_refiner_kwargs(params.refinery),
    )
    status = refinery.run()
    print_step_table(refinery)
    if params.refinery.journal.filename:
        refinery.history.to_json_file(params.refinery.journal.filename)

    if status != RefinementStatus.CONVERGED:
        logger.info(
            "Prediction refinement failed: %s", refinery.history.reason_for_termination
        )
        return RefinementResult(
            status,
            len(reflpeaks),
            history=refinery.history,
            partial_state=refinery.partial_state,
        )

    # pair the peaks again, now that the geometry has changed
    reflpeaks = refman.pair_peaks()
    if not refman.has_enough_pairs():
        logger.info(
            "Too few reflection/peak pairs after refinement (%d, need %d)",
            len(reflpeaks),
            refman.minimum_number_of_pairs,
        )
        refinery.restore_state()
        return RefinementResult(
            RefinementStatus.DIVERGED, len(reflpeaks), history=refinery.history
        )

    result = RefinementResult(status, len(reflpeaks), history=refinery.history)
    result.final_residual = pred_residual(reflpeaks)
    crystal.add_note("predict_refine/final_residual = %e" % result.final_residual)
    logger.debug("Refined cell: %s", crystal.get_unit_cell())
    refman.print_stats_on_matches()

    if accumulator is not None:
        export_alignment_records(
            accumulator, reflpeaks, crystal, image, max_hierarchy_depth
        )

    return result


def refine_radius(crystal, image, params=None):
    """Estimate the profile radius of the crystal from the spread of the
    excitation errors of the reflections paired with peaks. Return False if
    there are too few pairs to do so."""

    if params is None:
        params = phil_scope.extract()
    params = params.refinement

    with LoggingContext(__package__, _quiet_level(params)):
        return _refine_radius(crystal, image, params)


def _refine_radius(crystal, image, params):
    refman = StillsReflectionManager.from_parameters(
        params.reflections, image, crystal
    )
    reflpeaks = refman.pair_peaks()
    if len(reflpeaks) < MIN_PAIRS_FOR_RADIUS:
        logger.info(
            "Too few reflection/peak pairs (%d) to estimate radius", len(reflpeaks)
        )
        return False

    crystal.profile_radius = excitation_error_percentile(reflpeaks)
    logger.debug(
        "Profile radius %g m^-1 from %d pairs", crystal.profile_radius, len(reflpeaks)
    )
    return True
