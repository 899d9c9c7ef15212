from __future__ import annotations

import math

from cctbx import uctbx
from scitbx import matrix

from predict_refine.algorithms.refinement.refinement_helpers import rotate_about_axis


class Crystal:
    """A crystal model described by its reciprocal basis vectors a*, b* and c*,
    given in the laboratory frame in units of inverse metres.

    The model also carries the profile radius used to size integration
    windows, and a list of free-text notes recording what has been done to it.
    """

    def __init__(self, astar, bstar, cstar, profile_radius=2.0e6):
        self._astar = matrix.col(astar)
        self._bstar = matrix.col(bstar)
        self._cstar = matrix.col(cstar)
        self.profile_radius = profile_radius
        self.notes = []

    @classmethod
    def from_real_space_vectors(cls, a, b, c, profile_radius=2.0e6):
        """Construct the crystal from its real space basis vectors (in metres)"""
        a, b, c = matrix.col(a), matrix.col(b), matrix.col(c)
        volume = a.dot(b.cross(c))
        return cls(
            b.cross(c) / volume,
            c.cross(a) / volume,
            a.cross(b) / volume,
            profile_radius=profile_radius,
        )

    def get_reciprocal(self):
        return self._astar, self._bstar, self._cstar

    def set_reciprocal(self, astar, bstar, cstar):
        self._astar = matrix.col(astar)
        self._bstar = matrix.col(bstar)
        self._cstar = matrix.col(cstar)

    def get_real_space_vectors(self):
        """Return the real space basis vectors a, b and c (in metres)"""
        astar, bstar, cstar = self.get_reciprocal()
        volume = astar.dot(bstar.cross(cstar))
        return (
            bstar.cross(cstar) / volume,
            cstar.cross(astar) / volume,
            astar.cross(bstar) / volume,
        )

    def get_reciprocal_parameters(self):
        """Return the lengths (m^-1) and inter-axial angles (radians) of the
        reciprocal basis"""
        astar, bstar, cstar = self.get_reciprocal()
        return (
            astar.length(),
            bstar.length(),
            cstar.length(),
            bstar.angle(cstar),
            astar.angle(cstar),
            astar.angle(bstar),
        )

    def get_unit_cell(self):
        """Return the real space cell as a cctbx unit_cell, in Angstroms and
        degrees"""
        a, b, c = self.get_real_space_vectors()
        return uctbx.unit_cell(
            (
                a.length() * 1e10,
                b.length() * 1e10,
                c.length() * 1e10,
                math.degrees(b.angle(c)),
                math.degrees(a.angle(c)),
                math.degrees(a.angle(b)),
            )
        )

    def rotate(self, axis, angle):
        """Rotate the whole lattice by angle (radians) about a unit axis through
        the origin"""
        axis = matrix.col(axis)
        self.set_reciprocal(
            *(rotate_about_axis(v, axis, angle) for v in self.get_reciprocal())
        )

    def add_note(self, note):
        self.notes.append(note)

    def copy(self):
        other = Crystal(*self.get_reciprocal(), profile_radius=self.profile_radius)
        other.notes = list(self.notes)
        return other

    def __repr__(self):
        astar, bstar, cstar = self.get_reciprocal()
        return "Crystal(a*=%s, b*=%s, c*=%s)" % (
            astar.elems,
            bstar.elems,
            cstar.elems,
        )
