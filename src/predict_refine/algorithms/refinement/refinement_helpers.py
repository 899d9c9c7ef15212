"""Auxiliary functions for the refinement package"""

from __future__ import annotations

import math

from scitbx import matrix


def cross_normalize(u, v):
    """Return the unit vector normal to u and v. If u and v are parallel there
    is no such vector and the zero vector is returned instead, so the result
    must not be used as a rotation axis without checking it"""

    n = u.cross(v)
    length = n.length()
    if length == 0.0:
        return matrix.col((0.0, 0.0, 0.0))
    return n / length


def rotate_about_axis(vec, axis, angle):
    """Rotate vec by angle (radians) about axis using the Rodrigues formula.

    The axis is used as given. It must be a unit vector, otherwise the size of
    the rotation will be wrong. The rotated vector is returned."""

    c = math.cos(angle)
    s = math.sin(angle)
    return vec * c + axis.cross(vec) * s + axis * (axis.dot(vec) * (1.0 - c))


def rescale(vec, new_length):
    """Return vec scaled to new_length. vec must not be of zero length"""

    return vec * (new_length / vec.length())


def get_panel_groups_at_depth(group, depth=0):
    """Return a list of the panel groups at a certain depth below the node group"""
    assert depth >= 0
    if depth == 0:
        return [group]
    else:
        assert group.is_group()
        return [
            p
            for gp in group.children()
            for p in get_panel_groups_at_depth(gp, depth - 1)
        ]
