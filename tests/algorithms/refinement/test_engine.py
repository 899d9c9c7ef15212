from __future__ import annotations

import json

import pytest
from libtbx.phil import parse

from predict_refine.algorithms.refinement import PredictRefineRuntimeError
from predict_refine.algorithms.refinement.engine import (
    DOF_TOO_LOW,
    MAX_ITERATIONS,
    SINGULAR,
    TARGET_ACHIEVED,
    Journal,
    PredictionRefinery,
    RefinementStatus,
    refinery_phil_scope,
)
from predict_refine.algorithms.refinement.parameterisation.model_parameters import (
    CrystalParameter,
    GroupMotion,
    GroupParameter,
)
from predict_refine.algorithms.refinement.reflection_manager import (
    StillsReflectionManager,
)


def _basis(crystal):
    return [v.elems for v in crystal.get_reciprocal()]


def _assert_same_basis(crystal, other, tol=1e-6):
    for v, w in zip(crystal.get_reciprocal(), other.get_reciprocal()):
        assert (v - w).length() < tol * w.length()


def test_fixed_point(still):
    image, crystal = still
    reflpeaks = StillsReflectionManager(image, crystal).pair_peaks()
    before = _basis(crystal)

    refinery = PredictionRefinery(reflpeaks, crystal, image, list(CrystalParameter))
    status = refinery.run()

    assert status == RefinementStatus.CONVERGED
    assert refinery.n_iterations == 0
    assert refinery.history.reason_for_termination == TARGET_ACHIEVED
    assert _basis(crystal) == before


def test_recover_rotation(perturbed_still):
    image, crystal, truth = perturbed_still
    reflpeaks = StillsReflectionManager(image, crystal).pair_peaks()

    refinery = PredictionRefinery(reflpeaks, crystal, image, list(CrystalParameter))
    status = refinery.run()

    assert status == RefinementStatus.CONVERGED
    assert 0 < refinery.n_iterations < 10
    _assert_same_basis(crystal, truth)

    # the objective fell at every step
    objective = refinery.history["objective"]
    assert all(b < a for a, b in zip(objective, objective[1:]))
    assert refinery.history.reason_for_termination is not None


def test_recover_cell_and_orientation(perturbed_still):
    image, crystal, truth = perturbed_still
    astar, bstar, cstar = crystal.get_reciprocal()
    crystal.set_reciprocal(astar * 1.002, bstar, cstar * 0.999)
    reflpeaks = StillsReflectionManager(image, crystal).pair_peaks()
    assert len(reflpeaks) == 24

    refinery = PredictionRefinery(reflpeaks, crystal, image, list(CrystalParameter))
    assert refinery.run() == RefinementStatus.CONVERGED
    _assert_same_basis(crystal, truth)


def test_iteration_cap_gives_stalled_and_rollback(perturbed_still):
    image, crystal, truth = perturbed_still
    reflpeaks = StillsReflectionManager(image, crystal).pair_peaks()
    before = _basis(crystal)

    refinery = PredictionRefinery(
        reflpeaks, crystal, image, list(CrystalParameter), max_iterations=1
    )
    status = refinery.run()

    assert status == RefinementStatus.STALLED
    assert refinery.history.reason_for_termination == MAX_ITERATIONS
    assert _basis(crystal) == before

    # the partially refined crystal is closer to the truth than the start
    partial = refinery.partial_state.crystal
    start_error = (crystal.get_reciprocal()[0] - truth.get_reciprocal()[0]).length()
    partial_error = (partial.get_reciprocal()[0] - truth.get_reciprocal()[0]).length()
    assert partial_error < start_error


def test_too_few_pairs(perturbed_still):
    image, crystal, _ = perturbed_still
    reflpeaks = StillsReflectionManager(image, crystal).pair_peaks()[:5]
    before = _basis(crystal)

    refinery = PredictionRefinery(reflpeaks, crystal, image, list(CrystalParameter))
    assert refinery.run() == RefinementStatus.DIVERGED
    assert refinery.history.reason_for_termination == DOF_TOO_LOW
    assert _basis(crystal) == before


def test_singular_normal_matrix(still):
    image, crystal = still
    detector = image.detector
    root = detector.hierarchy()
    top, bottom = root.children()

    # move the detector so that there is something to refine
    root.translate((1e-4, 0.0, 0.0))
    frames = [[v.elems for v in frame] for frame in detector.snapshot()]
    reflpeaks = StillsReflectionManager(image, crystal).pair_peaks()
    before = _basis(crystal)

    # shifting the root is the same as shifting both of its children
    parameters = [
        CrystalParameter.CELL_RZ,
        GroupParameter(GroupMotion.TX, root),
        GroupParameter(GroupMotion.TX, top),
        GroupParameter(GroupMotion.TX, bottom),
    ]
    refinery = PredictionRefinery(reflpeaks, crystal, image, parameters)
    assert refinery.run() == RefinementStatus.DIVERGED
    assert refinery.history.reason_for_termination == SINGULAR
    assert _basis(crystal) == before
    assert [[v.elems for v in frame] for frame in detector.snapshot()] == frames


def test_recover_detector_translation(still):
    image, crystal = still
    detector = image.detector
    truth = [p.corner for p in detector]
    root = detector.hierarchy()
    root.translate((1e-4, -5e-5, 2e-4))

    reflpeaks = StillsReflectionManager(image, crystal).pair_peaks()
    assert len(reflpeaks) == 24
    parameters = [
        GroupParameter(m, root)
        for m in (GroupMotion.TX, GroupMotion.TY, GroupMotion.TZ)
    ]
    refinery = PredictionRefinery(reflpeaks, crystal, image, parameters)
    assert refinery.run() == RefinementStatus.CONVERGED
    for panel, corner in zip(detector, truth):
        assert (panel.corner - corner).length() == pytest.approx(0.0, abs=1e-4)


def test_unknown_parameter(still):
    image, crystal = still
    with pytest.raises(PredictRefineRuntimeError):
        PredictionRefinery([], crystal, image, ["distance"])


def test_journal_tracking(perturbed_still):
    image, crystal, _ = perturbed_still
    reflpeaks = StillsReflectionManager(image, crystal).pair_peaks()
    tracking = (
        refinery_phil_scope.fetch(
            source=parse(
                "refinery.journal.track_condition_number=True\n"
                "refinery.journal.track_step=True"
            )
        )
        .extract()
        .refinery.journal
    )
    refinery = PredictionRefinery(
        reflpeaks, crystal, image, list(CrystalParameter), tracking=tracking
    )
    refinery.run()
    history = refinery.history
    assert history.get_nrows() == refinery.n_iterations + 1
    assert history["condition_number"][0] is None
    assert all(c >= 1.0 for c in history["condition_number"][1:])
    assert all(len(s) == 9 for s in history["solution"][1:])
    assert all(len(r) == 3 for r in history["rmsd"])


def test_journal_to_json(tmp_path):
    journal = Journal()
    journal.add_column("objective")
    journal.add_row()
    journal.set_last_cell("objective", 1.5)
    journal.reason_for_termination = MAX_ITERATIONS
    filename = tmp_path / "journal.json"
    journal.to_json_file(str(filename))

    d = json.loads(filename.read_text())
    assert d["columns"] == {"objective": [1.5]}
    assert d["reason_for_termination"] == MAX_ITERATIONS


def test_pairs_without_positive_weight_are_excluded(perturbed_still):
    image, crystal, truth = perturbed_still
    reflpeaks = StillsReflectionManager(image, crystal).pair_peaks()
    for rp in reflpeaks[::2]:
        rp.Ih = -1.0

    refinery = PredictionRefinery(reflpeaks, crystal, image, list(CrystalParameter))
    status = refinery.run()

    # a negative weight must not make the objective look converged
    assert status == RefinementStatus.CONVERGED
    assert refinery.n_iterations > 0
    assert refinery.history["num_reflections"][0] == 12
    assert all(f >= 0.0 for f in refinery.history["objective"])
    _assert_same_basis(crystal, truth)


def test_zero_weights_leave_too_few_pairs(perturbed_still):
    image, crystal, _ = perturbed_still
    reflpeaks = StillsReflectionManager(image, crystal).pair_peaks()
    for rp in reflpeaks[3:]:
        rp.Ih = 0.0
    before = _basis(crystal)

    refinery = PredictionRefinery(reflpeaks, crystal, image, list(CrystalParameter))
    assert refinery.run() == RefinementStatus.DIVERGED
    assert refinery.history.reason_for_termination == DOF_TOO_LOW
    assert _basis(crystal) == before


def _root_translations(detector):
    root = detector.hierarchy()
    return [
        GroupParameter(m, root)
        for m in (GroupMotion.TX, GroupMotion.TY, GroupMotion.TZ)
    ]


def _frame_errors(detector, frames):
    return [(p.corner - frame[0]).length() for p, frame in zip(detector, frames)]


def test_recover_crystal_and_detector(perturbed_two_ring_still):
    image, crystal, truth, frames = perturbed_two_ring_still
    reflpeaks = StillsReflectionManager(image, crystal).pair_peaks()
    assert len(reflpeaks) == 32

    parameters = list(CrystalParameter) + _root_translations(image.detector)
    refinery = PredictionRefinery(reflpeaks, crystal, image, parameters)
    assert refinery.run() == RefinementStatus.CONVERGED
    _assert_same_basis(crystal, truth, tol=1e-5)
    assert max(_frame_errors(image.detector, frames)) < 1e-3


def test_stalled_keeps_partial_detector(perturbed_two_ring_still):
    image, crystal, truth, frames = perturbed_two_ring_still
    detector = image.detector
    start = detector.snapshot()
    start_errors = _frame_errors(detector, frames)
    reflpeaks = StillsReflectionManager(image, crystal).pair_peaks()

    parameters = list(CrystalParameter) + _root_translations(detector)
    refinery = PredictionRefinery(
        reflpeaks, crystal, image, parameters, max_iterations=1
    )
    assert refinery.run() == RefinementStatus.STALLED

    # the models are rolled back
    assert [[v.elems for v in f] for f in detector.snapshot()] == [
        [v.elems for v in f] for f in start
    ]

    # while the partial state holds the detector after the one step
    partial = refinery.partial_state
    detector.restore(partial.frames)
    partial_errors = _frame_errors(detector, frames)
    assert all(p < s for p, s in zip(partial_errors, start_errors))
    start_error = (crystal.get_reciprocal()[0] - truth.get_reciprocal()[0]).length()
    partial_error = (
        partial.crystal.get_reciprocal()[0] - truth.get_reciprocal()[0]
    ).length()
    assert partial_error < start_error
