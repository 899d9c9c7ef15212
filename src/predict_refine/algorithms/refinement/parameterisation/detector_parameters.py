from __future__ import annotations

from predict_refine.algorithms.refinement.parameterisation.model_parameters import (
    GroupParameter,
)


def apply_group_shifts(shifts):
    """Move detector groups by parameter shifts, composing each motion with the
    current pose of the group.

    shifts is a sequence of (GroupParameter, value) pairs. Translations are in
    metres, rotations in radians about the current centre of the group."""

    for param, delta in shifts:
        if not delta:
            continue
        if param.motion.is_translation:
            param.group.translate(param.motion.axis * delta)
        else:
            param.group.rotate(param.motion.axis, delta, centre=param.group.centre())


def point_displacement(param: GroupParameter, panel, point, centre):
    """Velocity, in the pixel units of panel, of a point on the panel (given
    in those same units) under a unit change of a group parameter. centre is
    the rotation centre of the group in metres."""

    axis = param.motion.axis
    if param.motion.is_translation:
        return axis / panel.pixel_size
    return axis.cross(point - centre / panel.pixel_size)
