"""Identifiers for the parameters that refinement may adjust.

Crystal parameters and detector group parameters are kept as two different
types. A crystal parameter needs nothing else to be meaningful for the crystal
being refined, whereas a group parameter always carries the PanelGroup that it
moves, so the same motion applied to two different groups gives two different
unknowns.
"""

from __future__ import annotations

import enum
from collections import namedtuple

from scitbx import matrix

_lab_axes = {
    "x": matrix.col((1.0, 0.0, 0.0)),
    "y": matrix.col((0.0, 1.0, 0.0)),
    "z": matrix.col((0.0, 0.0, 1.0)),
}


class CrystalParameter(enum.IntEnum):
    """The parameters of the crystal model. The first three are the lengths of
    the reciprocal basis vectors (m^-1), the next three the reciprocal
    inter-axial angles (radians) and the last three small rotations of the whole
    lattice about the laboratory axes (radians)."""

    A_STAR = 1
    B_STAR = 2
    C_STAR = 3
    AL_STAR = 4
    BE_STAR = 5
    GA_STAR = 6
    CELL_RX = 7
    CELL_RY = 8
    CELL_RZ = 9

    @property
    def param_type(self):
        if self <= CrystalParameter.C_STAR:
            return "length"
        if self <= CrystalParameter.GA_STAR:
            return "angle"
        return "orientation"

    @property
    def axis(self):
        """The laboratory rotation axis of an orientation parameter, else None"""
        if self.param_type != "orientation":
            return None
        return _lab_axes[self.name[-1].lower()]


class GroupMotion(enum.Enum):
    """Rigid motions of a detector group: translations (metres) along and
    rotations (radians) about the laboratory axes. The values are the final
    digit of the global parameter labels. This is a plain Enum so that a motion
    never compares equal to a CrystalParameter."""

    TX = 1
    TY = 2
    TZ = 3
    RX = 4
    RY = 5
    RZ = 6

    @property
    def is_translation(self):
        return self.value <= GroupMotion.TZ.value

    @property
    def axis(self):
        return _lab_axes[self.name[-1].lower()]


class GroupParameter(namedtuple("GroupParameter", ["motion", "group"])):
    """One rigid motion of one detector panel group"""

    __slots__ = ()

    @property
    def label(self):
        """Global label, unique over the hierarchy, for alignment records"""
        return self.group.serial * 10 + self.motion.value

    @property
    def name(self):
        return "%s/%s" % (self.group.name, self.motion.name)
