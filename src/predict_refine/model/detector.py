from __future__ import annotations

import logging

from scitbx import matrix

from predict_refine.algorithms.refinement import PredictRefineConfigError
from predict_refine.algorithms.refinement.refinement_helpers import rotate_about_axis

logger = logging.getLogger(__name__)

# Group serial numbers give two decimal digits to each level of the hierarchy
MAX_PANEL_GROUP_CHILDREN = 99


class Panel:
    """A flat detector panel.

    The panel frame is expressed in the panel's own pixel units: corner is the
    laboratory position of pixel (0, 0) divided by the pixel size, and the fast
    and slow axes are unit vectors, so one step along either is one pixel. The
    laboratory position in metres of pixel (fs, ss) is therefore
    pixel_size * (corner + fs * fast_axis + ss * slow_axis).
    """

    def __init__(self, name, corner, fast_axis, slow_axis, pixel_size, image_size):
        self.name = name
        self.corner = matrix.col(corner)
        self.fast_axis = matrix.col(fast_axis)
        self.slow_axis = matrix.col(slow_axis)
        self.pixel_size = pixel_size
        self.image_size = tuple(image_size)

        # the leaf PanelGroup holding this panel, set by that group
        self.group = None

    def get_d_matrix(self):
        """Matrix with columns corner, fast axis and slow axis"""
        c, f, s = self.corner, self.fast_axis, self.slow_axis
        return matrix.sqr((c[0], f[0], s[0], c[1], f[1], s[1], c[2], f[2], s[2]))

    def get_minv(self):
        """The inverse of the panel d matrix. Multiplying a ray direction by this
        gives (v0, v1, v2), such that the ray meets the panel plane at
        fs = v1/v0 and ss = v2/v0, in front of the sample if v0 > 0"""
        return self.get_d_matrix().inverse()

    def pixel_to_lab(self, fs, ss):
        """Laboratory position (metres) of the panel coordinate (fs, ss)"""
        return (
            self.corner + self.fast_axis * fs + self.slow_axis * ss
        ) * self.pixel_size

    def get_centre(self):
        width, height = self.image_size
        return self.pixel_to_lab(width / 2, height / 2)

    def contains(self, fs, ss):
        width, height = self.image_size
        return 0 <= fs <= width and 0 <= ss <= height

    def get_frame(self):
        return self.corner, self.fast_axis, self.slow_axis

    def set_frame(self, corner, fast_axis, slow_axis):
        self.corner = matrix.col(corner)
        self.fast_axis = matrix.col(fast_axis)
        self.slow_axis = matrix.col(slow_axis)

    def __repr__(self):
        return "Panel(%s)" % self.name


class PanelGroup:
    """A node in the detector hierarchy. Every panel in the group moves
    rigidly with it.

    A group either has child groups or is a leaf holding exactly one panel. The
    parent is a lookup-only back reference, set when the group is adopted.
    """

    def __init__(self, name, children=None, panel=None):
        if children and panel is not None:
            raise PredictRefineConfigError(
                "Panel group %s cannot hold both a panel and child groups" % name
            )
        self.name = name
        self._children = list(children) if children else []
        self.panel = panel
        self.parent = None
        self.serial = None
        self.hierarchy_level = None
        for child in self._children:
            child.parent = self
        if panel is not None:
            panel.group = self

    def is_group(self):
        return self.panel is None

    def children(self):
        return list(self._children)

    def ancestors(self):
        """Iterate upward through the enclosing groups, nearest first"""
        group = self.parent
        while group is not None:
            yield group
            group = group.parent

    def descendants(self):
        """Iterate over this group and all groups below it, depth first"""
        yield self
        for child in self._children:
            yield from child.descendants()

    def panels(self):
        if not self.is_group():
            return [self.panel]
        return [p for child in self._children for p in child.panels()]

    def contains(self, panel):
        group = panel.group
        if group is None:
            return False
        return group is self or any(g is self for g in group.ancestors())

    def centre(self):
        """Mean of the centres of the panels in the group (metres)"""
        centres = [p.get_centre() for p in self.panels()]
        return sum(centres, matrix.col((0.0, 0.0, 0.0))) / len(centres)

    def translate(self, shift):
        """Move all panels in the group by shift (metres)"""
        shift = matrix.col(shift)
        for p in self.panels():
            p.corner = p.corner + shift / p.pixel_size

    def rotate(self, axis, angle, centre=None):
        """Rotate all panels in the group by angle (radians) about a unit axis
        passing through centre (metres), by default the group centre"""
        axis = matrix.col(axis)
        if centre is None:
            centre = self.centre()
        for p in self.panels():
            offset = p.corner * p.pixel_size - centre
            offset = rotate_about_axis(offset, axis, angle)
            p.set_frame(
                (centre + offset) / p.pixel_size,
                rotate_about_axis(p.fast_axis, axis, angle),
                rotate_about_axis(p.slow_axis, axis, angle),
            )

    def __repr__(self):
        return "PanelGroup(%s, serial=%s)" % (self.name, self.serial)


class Detector:
    """A set of panels together with the hierarchy that groups them.

    If no hierarchy is given, a root group is made with one leaf group per
    panel. Groups are numbered on construction: the root has serial 1 and the
    child at index i of a group with serial s has serial 100 * s + i + 1.
    """

    def __init__(self, panels, hierarchy=None):
        self._panels = list(panels)
        if hierarchy is None:
            hierarchy = PanelGroup(
                "all", children=[PanelGroup(p.name, panel=p) for p in self._panels]
            )
        self._hierarchy = hierarchy
        self._number_groups(hierarchy, serial=1, level=0)

        for p in self._panels:
            if not hierarchy.contains(p):
                raise PredictRefineConfigError(
                    "Panel %s is not part of the detector hierarchy" % p.name
                )

    @staticmethod
    def _number_groups(group, serial, level):
        group.serial = serial
        group.hierarchy_level = level
        children = group.children()
        if len(children) > MAX_PANEL_GROUP_CHILDREN:
            raise PredictRefineConfigError(
                "Panel group %s has %d children, but at most %d are allowed"
                % (group.name, len(children), MAX_PANEL_GROUP_CHILDREN)
            )
        for i, child in enumerate(children):
            Detector._number_groups(child, serial * 100 + i + 1, level + 1)

    def __len__(self):
        return len(self._panels)

    def __getitem__(self, index):
        return self._panels[index]

    def __iter__(self):
        return iter(self._panels)

    def hierarchy(self):
        return self._hierarchy

    def groups(self):
        return list(self._hierarchy.descendants())

    def max_hierarchy_level(self):
        return max(g.hierarchy_level for g in self._hierarchy.descendants())

    def snapshot(self):
        """Copy of the frames of all panels, for use with restore"""
        return [p.get_frame() for p in self._panels]

    def restore(self, frames):
        for p, frame in zip(self._panels, frames):
            p.set_frame(*frame)
