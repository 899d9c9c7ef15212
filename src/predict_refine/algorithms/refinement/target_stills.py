"""Residuals of matched reflection/peak pairs for still shots.

Each pair contributes three residuals, all observed minus predicted: the
excitation error, for which the observed value is zero because the spot was
seen, and the fast and slow scan positions of the spot on its panel. The
predictions are cached on the reflection by predict_reflection, so the
residual functions read the current geometry through that cache.
"""

from __future__ import annotations

import math

from scitbx import matrix

# Weights that make the excitation error (m^-1) and the panel positions
# (pixels) commensurate in one least squares target
EXC_WEIGHT = 1.0e-7
POSITION_WEIGHT = 1.0

RESIDUAL_KINDS = ("exerr", "fs", "ss")
RESIDUAL_WEIGHTS = (EXC_WEIGHT, POSITION_WEIGHT, POSITION_WEIGHT)

_beam = matrix.col((0.0, 0.0, 1.0))


def reciprocal_lattice_point(hkl, crystal):
    astar, bstar, cstar = crystal.get_reciprocal()
    h, k, l = hkl
    return astar * h + bstar * k + cstar * l


def scattered_ray(hkl, crystal, wavelength):
    """Ray direction q + k z for the reflection, of length close to 1/wavelength
    for a reflection near the Ewald sphere"""
    return reciprocal_lattice_point(hkl, crystal) + _beam / wavelength


def predict_reflection(refl, crystal, panel, wavelength, panel_minv=None):
    """Store the excitation error and the predicted panel position of the
    reflection for the current geometry. Return False if the scattered ray does
    not meet the plane of the panel in front of the sample."""

    s = scattered_ray(refl.miller_index, crystal, wavelength)
    refl.exerr = 1.0 / wavelength - s.length()

    if panel_minv is None:
        panel_minv = panel.get_minv()
    v = panel_minv * s
    if v[0] <= 0:
        return False
    refl.fs = v[1] / v[0]
    refl.ss = v[2] / v[0]
    return True


def update_predictions(reflpeaks, crystal, image):
    """Predict every pair for the current geometry. Return False if any
    prediction fails."""

    minvs = {}
    ok = True
    for rp in reflpeaks:
        panel = image.get_panel(rp.peak)
        if rp.peak.panel_number not in minvs:
            minvs[rp.peak.panel_number] = panel.get_minv()
        ok &= predict_reflection(
            rp.refl,
            crystal,
            panel,
            image.wavelength,
            panel_minv=minvs[rp.peak.panel_number],
        )
    return ok


def r_dev(rp):
    """Excitation error residual (m^-1)"""
    return -rp.refl.exerr


def fs_dev(rp):
    """Fast scan position residual (pixels)"""
    return rp.peak.fs - rp.refl.fs


def ss_dev(rp):
    """Slow scan position residual (pixels)"""
    return rp.peak.ss - rp.refl.ss


def residuals(rp):
    return r_dev(rp), fs_dev(rp), ss_dev(rp)


def pred_residual(reflpeaks):
    """Total weighted squared residual over the pairs"""

    total = 0.0
    for rp in reflpeaks:
        for r, w in zip(residuals(rp), RESIDUAL_WEIGHTS):
            total += rp.Ih * w * r * r
    return total


def rmsds(reflpeaks):
    """Unweighted RMSDs of the excitation error, fast scan and slow scan
    residuals"""

    n = len(reflpeaks)
    if n == 0:
        return (0.0, 0.0, 0.0)
    sums = [0.0, 0.0, 0.0]
    for rp in reflpeaks:
        for i, r in enumerate(residuals(rp)):
            sums[i] += r * r
    return tuple(math.sqrt(s / n) for s in sums)
