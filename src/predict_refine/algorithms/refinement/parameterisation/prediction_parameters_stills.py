"""Analytical derivatives of the still shot residuals.

All derivatives are of the observed minus predicted residuals defined in
target_stills, taken at the current geometry. Crystal parameters act through
the reciprocal lattice point q. Group parameters act through the rigid motion
of the panel, which leaves the excitation error untouched, so their excitation
error derivative is exactly zero.
"""

from __future__ import annotations

from scitbx import matrix

from predict_refine.algorithms.refinement import PredictRefineConfigError
from predict_refine.algorithms.refinement.parameterisation.crystal_parameters import (
    reciprocal_lattice_point_derivative,
)
from predict_refine.algorithms.refinement.parameterisation.detector_parameters import (
    point_displacement,
)
from predict_refine.algorithms.refinement.parameterisation.model_parameters import (
    CrystalParameter,
    GroupParameter,
)
from predict_refine.algorithms.refinement.target_stills import scattered_ray


def _check_param(param):
    if not isinstance(param, (CrystalParameter, GroupParameter)):
        raise PredictRefineConfigError("Unknown parameter type: %r" % (param,))


def r_gradient(param, refl, crystal, wavelength):
    """Derivative of the excitation error residual with respect to param"""

    _check_param(param)
    if isinstance(param, GroupParameter):
        return 0.0

    # residual is |s| - 1/wavelength
    s = scattered_ray(refl.miller_index, crystal, wavelength)
    dq = reciprocal_lattice_point_derivative(param, refl.miller_index, crystal)
    return s.dot(dq) / s.length()


def fs_ss_gradient(param, refl, crystal, panel, panel_minv, cx, cy, cz, wavelength):
    """Derivatives of the fast and slow scan residuals with respect to param.

    (cx, cy, cz) is the rotation centre in metres of the group moved by param,
    which is only used for group rotations. A group parameter whose group does
    not include the panel gives (0.0, 0.0)."""

    _check_param(param)
    s = scattered_ray(refl.miller_index, crystal, wavelength)
    v = panel_minv * s

    if isinstance(param, CrystalParameter):
        dq = reciprocal_lattice_point_derivative(param, refl.miller_index, crystal)
        dv = panel_minv * dq
        dfs = (dv[1] * v[0] - v[1] * dv[0]) / (v[0] * v[0])
        dss = (dv[2] * v[0] - v[2] * dv[0]) / (v[0] * v[0])
        return -dfs, -dss

    if not param.group.contains(panel):
        return 0.0, 0.0

    fs = v[1] / v[0]
    ss = v[2] / v[0]
    point = panel.corner + panel.fast_axis * fs + panel.slow_axis * ss
    u = point_displacement(param, panel, point, matrix.col((cx, cy, cz)))
    w = panel_minv * u
    dtau = w[0] / v[0]
    dfs = v[1] * dtau - w[1]
    dss = v[2] * dtau - w[2]
    return -dfs, -dss


def design_row(rp, crystal, image, parameters, panel_minv=None, centres=None):
    """Derivatives of the excitation error, fast scan and slow scan residuals of
    one pair with respect to each parameter, as three lists in parameter order.

    centres may map PanelGroups to precomputed centres, as (x, y, z) tuples."""

    panel = image.get_panel(rp.peak)
    if panel_minv is None:
        panel_minv = panel.get_minv()
    if centres is None:
        centres = {}

    dr = []
    dfs = []
    dss = []
    for param in parameters:
        dr.append(r_gradient(param, rp.refl, crystal, image.wavelength))
        if isinstance(param, GroupParameter):
            if param.group not in centres:
                centres[param.group] = param.group.centre().elems
            centre = centres[param.group]
        else:
            centre = (0.0, 0.0, 0.0)
        gfs, gss = fs_ss_gradient(
            param, rp.refl, crystal, panel, panel_minv, *centre, image.wavelength
        )
        dfs.append(gfs)
        dss.append(gss)
    return dr, dfs, dss
