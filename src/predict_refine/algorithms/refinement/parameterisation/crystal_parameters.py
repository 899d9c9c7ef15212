"""How each crystal parameter acts on the reciprocal basis.

Shifts are applied as increments to the current basis: lengths by rescaling
a vector, inter-axial angles by opening the two vectors that define the angle
symmetrically about their common normal, and orientation by rotating all three
vectors about a laboratory axis.
"""

from __future__ import annotations

from scitbx import matrix

from predict_refine.algorithms.refinement.parameterisation.model_parameters import (
    CrystalParameter,
)
from predict_refine.algorithms.refinement.refinement_helpers import (
    cross_normalize,
    rescale,
    rotate_about_axis,
)

# For each angle parameter, the indices of the two basis vectors that the angle
# lies between. The first vector of the pair turns by -delta/2, the second by
# +delta/2, about the normal to both.
_angle_pairs = {
    CrystalParameter.AL_STAR: (1, 2),
    CrystalParameter.BE_STAR: (0, 2),
    CrystalParameter.GA_STAR: (0, 1),
}

_length_index = {
    CrystalParameter.A_STAR: 0,
    CrystalParameter.B_STAR: 1,
    CrystalParameter.C_STAR: 2,
}


def apply_crystal_shifts(crystal, shifts):
    """Apply parameter shifts to the crystal.

    shifts is a sequence of (CrystalParameter, value) pairs. Length shifts
    are applied first, then angle shifts, then rotations of the lattice."""

    shifts = dict(shifts)
    basis = list(crystal.get_reciprocal())

    for param, i in _length_index.items():
        delta = shifts.get(param, 0.0)
        if delta:
            basis[i] = rescale(basis[i], basis[i].length() + delta)

    for param, (i, j) in _angle_pairs.items():
        delta = shifts.get(param, 0.0)
        if delta:
            n = cross_normalize(basis[i], basis[j])
            basis[i] = rotate_about_axis(basis[i], n, -delta / 2.0)
            basis[j] = rotate_about_axis(basis[j], n, delta / 2.0)

    for param in (
        CrystalParameter.CELL_RX,
        CrystalParameter.CELL_RY,
        CrystalParameter.CELL_RZ,
    ):
        delta = shifts.get(param, 0.0)
        if delta:
            basis = [rotate_about_axis(v, param.axis, delta) for v in basis]

    crystal.set_reciprocal(*basis)


def basis_derivatives(param, astar, bstar, cstar):
    """Derivatives of (a*, b*, c*) with respect to one crystal parameter,
    evaluated at the given basis"""

    basis = [astar, bstar, cstar]
    zero = matrix.col((0.0, 0.0, 0.0))
    derivs = [zero, zero, zero]

    if param.param_type == "length":
        i = _length_index[param]
        derivs[i] = basis[i].normalize()
    elif param.param_type == "angle":
        i, j = _angle_pairs[param]
        n = cross_normalize(basis[i], basis[j])
        derivs[i] = n.cross(basis[i]) * -0.5
        derivs[j] = n.cross(basis[j]) * 0.5
    else:
        derivs = [param.axis.cross(v) for v in basis]

    return derivs


def reciprocal_lattice_point_derivative(param, hkl, crystal):
    """Derivative of q = h a* + k b* + l c* with respect to one crystal
    parameter"""

    h, k, l = hkl
    da, db, dc = basis_derivatives(param, *crystal.get_reciprocal())
    return da * h + db * k + dc * l
