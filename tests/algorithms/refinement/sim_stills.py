"""Simulate a still shot for refinement testing.

The crystal is built so that all 24 reflections with l = -1 and h^2 + k^2 = 325
lie exactly on the Ewald sphere: a* and b* are orthogonal and of equal length
in a plane slightly tilted from the beam, and c* is chosen so that this ring of
reciprocal lattice points sits on the sphere. The detector is a 2x2 array of
256x256 pixel panels, 0.1 m downstream, grouped into a top and a bottom row
below a single root group.

All of those reflections share one scattering angle, which leaves the detector
distance and the cell scale inseparable. The two ring still adds a second ring
at a larger angle, with the detector moved closer to record both."""

from __future__ import annotations

import math

from scitbx import matrix

from predict_refine.algorithms.refinement.target_stills import scattered_ray
from predict_refine.model import Crystal, Detector, Image, Panel, PanelGroup, Peak

WAVELENGTH = 1.0e-10
RING_RADIUS = 2.0e9
RING_NORMAL = matrix.col((0.02, 0.01, 1.0)).normalize()
PIXEL_SIZE = 1.0e-4
DISTANCE = 0.1
PANEL_SIZE = 256

RING_INDICES = [
    (h, k, -1) for h in range(-18, 19) for k in range(-18, 19) if h * h + k * k == 325
]

# Two rings, l = -1 with h^2 + k^2 = 325 (24 reflections) and l = -2 with
# h^2 + k^2 = 641 (8 reflections), at different scattering angles
TWO_RING_INDICES = RING_INDICES + [
    (h, k, -2) for h in range(-25, 26) for k in range(-25, 26) if h * h + k * k == 641
]
TWO_RING_DISTANCE = 0.05


def ring_crystal(in_plane_angle=0.3):
    """A crystal whose ring of reflections lies exactly on the Ewald sphere"""

    wavenumber = 1.0 / WAVELENGTH
    u = RING_NORMAL.cross(matrix.col((0.0, 1.0, 0.0))).normalize()
    v = RING_NORMAL.cross(u)
    length = RING_RADIUS / math.sqrt(325)
    c, s = math.cos(in_plane_angle), math.sin(in_plane_angle)
    astar = (u * c + v * s) * length
    bstar = (u * -s + v * c) * length
    t = math.sqrt(wavenumber**2 - RING_RADIUS**2)
    cstar = matrix.col((0.0, 0.0, wavenumber)) - RING_NORMAL * t
    return Crystal(astar, bstar, cstar)


def two_ring_crystal(in_plane_angle=0.3):
    """A crystal with a* and b* perpendicular to the beam, for which both rings
    of TWO_RING_INDICES lie exactly on the Ewald sphere.

    With c* = (k - t) z and a* and b* of length L, the point (h, k, l) is on
    the sphere when (l (k - t) + k)^2 + L^2 (h^2 + k^2) = k^2. Solving this for
    both rings gives t / k = r / (4 - r) with r = 641 / 325."""

    wavenumber = 1.0 / WAVELENGTH
    ratio = 641.0 / 325.0
    t = wavenumber * ratio / (4.0 - ratio)
    length = math.sqrt((wavenumber**2 - t**2) / 325.0)
    c, s = math.cos(in_plane_angle), math.sin(in_plane_angle)
    astar = matrix.col((c, s, 0.0)) * length
    bstar = matrix.col((-s, c, 0.0)) * length
    cstar = matrix.col((0.0, 0.0, wavenumber - t))
    return Crystal(astar, bstar, cstar)


def make_detector(distance=DISTANCE):
    panels = []
    for j, row in enumerate(("top", "bottom")):
        for i in range(2):
            corner = (
                -PANEL_SIZE + PANEL_SIZE * i,
                -PANEL_SIZE + PANEL_SIZE * j,
                distance / PIXEL_SIZE,
            )
            panels.append(
                Panel(
                    "%s%d" % (row, i),
                    corner,
                    (1.0, 0.0, 0.0),
                    (0.0, 1.0, 0.0),
                    PIXEL_SIZE,
                    (PANEL_SIZE, PANEL_SIZE),
                )
            )
    top = PanelGroup("top", children=[PanelGroup(p.name, panel=p) for p in panels[:2]])
    bottom = PanelGroup(
        "bottom", children=[PanelGroup(p.name, panel=p) for p in panels[2:]]
    )
    return Detector(panels, hierarchy=PanelGroup("all", children=[top, bottom]))


def simulate_peaks(crystal, detector, indices=None):
    """Peaks at the exact predicted positions of the reflections"""

    if indices is None:
        indices = RING_INDICES
    peaks = []
    for n, hkl in enumerate(indices):
        s = scattered_ray(hkl, crystal, WAVELENGTH)
        for panel_number, panel in enumerate(detector):
            v = panel.get_minv() * s
            if v[0] <= 0:
                continue
            fs, ss = v[1] / v[0], v[2] / v[0]
            if panel.contains(fs, ss):
                peaks.append(Peak(fs, ss, panel_number, intensity=100.0 + 10.0 * n))
                break
    return peaks


def make_still(indices=None):
    """Return an image with peaks simulated from a ring crystal, and that
    crystal"""

    crystal = ring_crystal()
    detector = make_detector()
    peaks = simulate_peaks(crystal, detector, indices)
    return Image(detector, WAVELENGTH, peaks=peaks), crystal


def make_two_ring_still():
    """Return an image with peaks from both rings of a two ring crystal, on a
    detector close enough to record them all, and that crystal"""

    crystal = two_ring_crystal()
    detector = make_detector(distance=TWO_RING_DISTANCE)
    peaks = simulate_peaks(crystal, detector, TWO_RING_INDICES)
    return Image(detector, WAVELENGTH, peaks=peaks), crystal
