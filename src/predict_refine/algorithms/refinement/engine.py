"""Contains the refinement engine. PredictionRefinery refines an ordered set of
crystal and detector group parameters by Gauss-Newton iterations on the
weighted residuals of still shot reflection/peak pairs"""

from __future__ import annotations

import enum
import json
import logging
import math
from collections import namedtuple

import numpy as np

import libtbx
from libtbx.phil import parse

from predict_refine.algorithms.refinement import PredictRefineRuntimeError
from predict_refine.algorithms.refinement.parameterisation.crystal_parameters import (
    apply_crystal_shifts,
)
from predict_refine.algorithms.refinement.parameterisation.detector_parameters import (
    apply_group_shifts,
)
from predict_refine.algorithms.refinement.parameterisation.model_parameters import (
    CrystalParameter,
    GroupParameter,
)
from predict_refine.algorithms.refinement.parameterisation.prediction_parameters_stills import (
    design_row,
)
from predict_refine.algorithms.refinement.target_stills import (
    RESIDUAL_WEIGHTS,
    pred_residual,
    residuals,
    rmsds,
    update_predictions,
)

logger = logging.getLogger(__name__)


# termination reason strings
TARGET_ACHIEVED = "Residual below objective floor"
RMSD_CONVERGED = "RMSD no longer decreasing"
OBJECTIVE_INCREASE = "Refinement failure: objective increased"
MAX_ITERATIONS = "Reached maximum number of iterations"
DOF_TOO_LOW = "Not enough degrees of freedom to refine"
SINGULAR = "Refinement failure: normal matrix singular or ill-conditioned"
PREDICTION_FAILED = "Refinement failure: reflections could not be predicted"


class RefinementStatus(enum.Enum):
    INITIALIZED = "initialized"
    ITERATING = "iterating"
    CONVERGED = "converged"
    STALLED = "stalled"
    DIVERGED = "diverged"


# The models as they stood when refinement stalled. frames is a detector
# snapshot, as taken by Detector.snapshot
PartialState = namedtuple("PartialState", ["crystal", "frames"])


refinery_phil_str = """
refinery
  .help = "Parameters to configure the refinery"
  .expert_level = 1
{
  max_iterations = 20
    .help = "Maximum number of iterations in refinement before termination."
    .type = int(value_min=1)

  convergence_tolerance = 1e-4
    .help = "Refinement has converged when the relative change in the"
            "objective between consecutive iterations is smaller than this."
    .type = float(value_min=0)

  objective_floor = 1e-12
    .help = "Refinement has converged when the weighted squared residual per"
            "reflection/peak pair falls to this value."
    .type = float(value_min=0)

  divergence_ratio = 4.0
    .help = "Refinement has failed if the objective grows by more than this"
            "factor in a single iteration."
    .type = float(value_min=1)

  max_condition_number = 1e12
    .help = "Refinement has failed if the condition number of the normal"
            "matrix, after scaling the columns to unit diagonal, exceeds this."
    .type = float(value_min=1)

  journal
    .help = "Extra items to track in the refinement history"
  {
    track_step = False
      .help = "Record parameter shifts history in the refinement journal"
      .type = bool

    track_condition_number = False
      .help = "Record condition number of the scaled normal matrix for each"
              "step of refinement."
      .type = bool

    filename = None
      .help = "If set, write the refinement history to this file as JSON"
      .type = path
  }
}
"""
refinery_phil_scope = parse(refinery_phil_str)


class Journal(dict):
    """Container in which to store information about refinement history.

    This is simply a dict but provides some extra methods for access that
    maintain values as columns in a table. Refinery classes will use these methods
    while entering data to ensure the table remains consistent. Methods inherited
    from dict are not hidden for ease of use of this object when returned to the
    user."""

    reason_for_termination = None
    _nrows = 0

    def get_nrows(self):
        return self._nrows

    def add_column(self, key):
        """Add a new column named by key"""
        self[key] = [None] * self._nrows

    def add_row(self):
        """Add an element to the end of each of the columns. Fail if any columns
        are the wrong length"""

        for k in self:
            assert len(self[k]) == self._nrows
            self[k].append(None)
        self._nrows += 1

    def set_last_cell(self, key, value):
        """Set last cell in column given by key to value. Fail if the column is the
        wrong length"""

        assert len(self[key]) == self._nrows
        self[key][-1] = value

    def to_json_file(self, filename):
        """Write the columns and the reason for termination as JSON"""
        with open(filename, "w") as f:
            json.dump(
                {
                    "reason_for_termination": self.reason_for_termination,
                    "columns": dict(self),
                },
                f,
                indent=2,
            )


class PredictionRefinery:
    """Gauss-Newton refinement of the prediction of still shot reflections.

    The pairs and the ordered list of parameters are fixed for the lifetime of
    the object. Each step solves the weighted normal equations for a shift of
    every parameter and applies the shifts to the crystal and detector as
    increments to their current state. The state of both models is saved before
    the first step, and restored if refinement stalls or fails."""

    # defaults that may be overridden
    max_iterations = 20
    convergence_tolerance = 1e-4
    objective_floor = 1e-12
    divergence_ratio = 4.0
    max_condition_number = 1e12

    def __init__(self, reflpeaks, crystal, image, parameters, tracking=None, **kwds):

        # pairs without a positive weight carry no information
        reflpeaks = list(reflpeaks)
        self._reflpeaks = [
            rp for rp in reflpeaks if math.isfinite(rp.Ih) and rp.Ih > 0.0
        ]
        nexcluded = len(reflpeaks) - len(self._reflpeaks)
        if nexcluded:
            logger.debug("Excluded %d pairs with no positive weight", nexcluded)
        self._crystal = crystal
        self._image = image
        self._parameters = list(parameters)

        for p in self._parameters:
            if not isinstance(p, (CrystalParameter, GroupParameter)):
                raise PredictRefineRuntimeError("Unknown parameter type: %r" % (p,))

        # adopt any overrides of the defaults above
        libtbx.adopt_optional_init_args(self, kwds)

        self.status = RefinementStatus.INITIALIZED
        self.n_iterations = 0
        self.partial_state = None
        self._f = None
        self._saved_state = None

        if tracking is None:
            tracking = refinery_phil_scope.extract().refinery.journal
        self.history = Journal()
        self.history.add_column("num_reflections")
        self.history.add_column("objective")
        self.history.add_column("rmsd")
        if tracking.track_step:
            self.history.add_column("solution")
        self.history.add_column("solution_norm")
        if tracking.track_condition_number:
            self.history.add_column("condition_number")

        self._step = None
        self._condition_number = None

    def get_num_steps(self):
        return self.history.get_nrows() - 1

    def save_state(self):
        self._saved_state = (
            self._crystal.get_reciprocal(),
            self._image.detector.snapshot(),
        )

    def restore_state(self):
        """Set the crystal and detector back to their state before refinement"""
        if self._saved_state is None:
            return
        basis, frames = self._saved_state
        self._crystal.set_reciprocal(*basis)
        self._image.detector.restore(frames)
        update_predictions(self._reflpeaks, self._crystal, self._image)

    def objective(self):
        return pred_residual(self._reflpeaks)

    def mean_objective(self):
        return self._f / len(self._reflpeaks)

    def update_journal(self):
        """Append latest step information to the journal attributes"""

        self.history.add_row()
        self.history.set_last_cell("num_reflections", len(self._reflpeaks))
        self.history.set_last_cell("objective", self._f)
        self.history.set_last_cell("rmsd", rmsds(self._reflpeaks))
        if self._step is not None:
            self.history.set_last_cell(
                "solution_norm", float(np.linalg.norm(self._step))
            )
            if "solution" in self.history:
                self.history.set_last_cell("solution", self._step.tolist())
        if "condition_number" in self.history:
            self.history.set_last_cell("condition_number", self._condition_number)

    def build_up(self):
        """Return the design matrix, the residual vector and the weights. Rows
        come in blocks of three, one block per pair"""

        nrows = 3 * len(self._reflpeaks)
        jacobian = np.zeros((nrows, len(self._parameters)))
        resid = np.zeros(nrows)
        weights = np.zeros(nrows)

        minvs = {}
        centres = {}
        for i, rp in enumerate(self._reflpeaks):
            panel_number = rp.peak.panel_number
            if panel_number not in minvs:
                minvs[panel_number] = self._image.get_panel(rp.peak).get_minv()
            row = design_row(
                rp,
                self._crystal,
                self._image,
                self._parameters,
                panel_minv=minvs[panel_number],
                centres=centres,
            )
            for j, (gradients, r, w) in enumerate(
                zip(row, residuals(rp), RESIDUAL_WEIGHTS)
            ):
                jacobian[3 * i + j, :] = gradients
                resid[3 * i + j] = r
                weights[3 * i + j] = rp.Ih * w
        return jacobian, resid, weights

    def solve(self):
        """Solve the weighted normal equations for the parameter shifts. The
        columns are scaled to give the normal matrix a unit diagonal before
        testing its condition number. Return None if the equations cannot be
        solved reliably."""

        jacobian, resid, weights = self.build_up()
        wj = jacobian * weights[:, np.newaxis]
        normal_matrix = jacobian.T @ wj
        rhs = -(wj.T @ resid)

        if not np.all(np.isfinite(normal_matrix)) or not np.all(np.isfinite(rhs)):
            logger.debug("Normal equations contain non-finite values")
            return None
        diag = np.diag(normal_matrix)
        if np.any(diag <= 0.0):
            logger.debug(
                "No information on parameters: %s",
                ", ".join(
                    p.name for p, d in zip(self._parameters, diag) if not d > 0.0
                ),
            )
            return None

        scale = 1.0 / np.sqrt(diag)
        scaled = normal_matrix * np.outer(scale, scale)
        sigma = np.linalg.svd(scaled, compute_uv=False)
        if sigma[-1] <= 0.0:
            self._condition_number = float("inf")
        else:
            self._condition_number = float(sigma[0] / sigma[-1])
        logger.debug(
            "Condition number of scaled normal matrix: %g", self._condition_number
        )
        if self._condition_number > self.max_condition_number:
            return None

        step = np.linalg.solve(scaled, rhs * scale) * scale
        if not np.all(np.isfinite(step)):
            return None
        return step

    def apply_step(self, step):
        """Apply shifts to the models, as increments to their current state"""

        crystal_shifts = []
        group_shifts = []
        for param, delta in zip(self._parameters, step):
            if isinstance(param, GroupParameter):
                group_shifts.append((param, float(delta)))
            else:
                crystal_shifts.append((param, float(delta)))
        if crystal_shifts:
            apply_crystal_shifts(self._crystal, crystal_shifts)
        if group_shifts:
            apply_group_shifts(group_shifts)

    def _fail(self, status, reason):
        self.status = status
        self.history.reason_for_termination = reason
        if status == RefinementStatus.STALLED:
            self.partial_state = PartialState(
                self._crystal.copy(), self._image.detector.snapshot()
            )
        self.restore_state()

    def run(self):
        """Refine until converged, stalled or diverged, and return the final
        status"""

        self.n_iterations = 0
        npairs = len(self._reflpeaks)
        nparam = len(self._parameters)

        # return early if refinement is not possible
        if npairs == 0 or npairs < nparam:
            logger.debug(
                "%d reflection/peak pairs for %d parameters", npairs, nparam
            )
            self.status = RefinementStatus.DIVERGED
            self.history.reason_for_termination = DOF_TOO_LOW
            return self.status

        if not update_predictions(self._reflpeaks, self._crystal, self._image):
            self.status = RefinementStatus.DIVERGED
            self.history.reason_for_termination = PREDICTION_FAILED
            return self.status

        self._f = self.objective()
        self.update_journal()
        logger.debug("Initial objective %g", self._f)

        if self.mean_objective() <= self.objective_floor:
            self.status = RefinementStatus.CONVERGED
            self.history.reason_for_termination = TARGET_ACHIEVED
            return self.status

        self.save_state()
        self.status = RefinementStatus.ITERATING

        while True:
            f_prev = self._f

            self._step = self.solve()
            if self._step is None:
                self._fail(RefinementStatus.DIVERGED, SINGULAR)
                break

            self.apply_step(self._step)
            self.n_iterations += 1

            if not update_predictions(self._reflpeaks, self._crystal, self._image):
                self._fail(RefinementStatus.DIVERGED, PREDICTION_FAILED)
                break

            self._f = self.objective()

            # standard journalling
            self.update_journal()
            logger.debug("Step %d, objective %g", self.get_num_steps(), self._f)

            # test termination criteria
            if self.mean_objective() <= self.objective_floor:
                self.status = RefinementStatus.CONVERGED
                self.history.reason_for_termination = TARGET_ACHIEVED
                break

            if self._f > self.divergence_ratio * f_prev:
                self._fail(RefinementStatus.DIVERGED, OBJECTIVE_INCREASE)
                break

            if abs(f_prev - self._f) / f_prev < self.convergence_tolerance:
                self.status = RefinementStatus.CONVERGED
                self.history.reason_for_termination = RMSD_CONVERGED
                break

            if self.n_iterations >= self.max_iterations:
                self._fail(RefinementStatus.STALLED, MAX_ITERATIONS)
                break

        return self.status
