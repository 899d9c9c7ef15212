from __future__ import annotations

import logging

from libtbx.phil import parse

from predict_refine.algorithms.refinement import PredictRefineConfigError
from predict_refine.algorithms.refinement.parameterisation.model_parameters import (
    CrystalParameter,
    GroupMotion,
    GroupParameter,
)
from predict_refine.algorithms.refinement.refinement_helpers import (
    get_panel_groups_at_depth,
)

logger = logging.getLogger(__name__)

phil_str = """
crystal
  .help = "crystal parameters"
{
  fix = cell orientation
    .help = "Fix crystal parameters"
    .type = choice(multi=True)
}

detector
  .help = "detector parameters"
{
  refine = False
    .help = "Refine the pose of the detector panel groups at hierarchy_level"
            "as well as the crystal"
    .type = bool

  hierarchy_level = 0
    .help = "Level of the detector hierarchy (starting from the root at 0) at"
            "which to determine panel groups to parameterise"
    .type = int(value_min=0)

  fix = position *orientation
    .help = "Fix detector group parameters. The translational parameters"
            "(position) may be set separately to the rotational parameters"
            "(orientation). The rotations are fixed by default, as on a still"
            "a rotation of the whole detector about the beam cannot be told"
            "apart from a rotation of the crystal about the beam."
    .type = choice(multi=True)
}
"""
phil_scope = parse(phil_str)


def build_active_parameters(params, detector):
    """Build the ordered list of parameters to refine from the
    refinement.parameterisation scope. Crystal parameters come first, followed
    by the parameters of each selected detector group in hierarchy order."""

    active = []
    if "cell" not in params.crystal.fix:
        active.extend(
            p for p in CrystalParameter if p.param_type in ("length", "angle")
        )
    if "orientation" not in params.crystal.fix:
        active.extend(p for p in CrystalParameter if p.param_type == "orientation")

    if params.detector.refine:
        level = params.detector.hierarchy_level
        if level > detector.max_hierarchy_level():
            raise PredictRefineConfigError(
                "Cannot parameterise detector at hierarchy level %d as the "
                "hierarchy only has %d levels"
                % (level, detector.max_hierarchy_level() + 1)
            )
        motions = [
            m
            for m in GroupMotion
            if (m.is_translation and "position" not in params.detector.fix)
            or (not m.is_translation and "orientation" not in params.detector.fix)
        ]
        for group in get_panel_groups_at_depth(detector.hierarchy(), level):
            active.extend(GroupParameter(m, group) for m in motions)
        if GroupMotion.RZ in motions and CrystalParameter.CELL_RZ in active:
            logger.warning(
                "Detector group rotations about z are refined together with the"
                " crystal orientation. A rotation of every group about the beam"
                " is degenerate with CELL_RZ, and refinement may fail as singular."
            )

    logger.debug(
        "Active parameters: %s",
        ", ".join(p.name for p in active),
    )
    return active


def check_parameters(parameters, detector):
    """Raise a PredictRefineConfigError if any parameter is of an unknown kind
    or moves a group that is not part of the detector"""

    groups = detector.groups()
    for param in parameters:
        if isinstance(param, CrystalParameter):
            continue
        if not isinstance(param, GroupParameter):
            raise PredictRefineConfigError("Unknown parameter type: %r" % (param,))
        if not any(param.group is g for g in groups):
            raise PredictRefineConfigError(
                "Panel group %s is not part of the detector" % param.group.name
            )
