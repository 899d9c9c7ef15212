from __future__ import annotations

from scitbx import matrix


class Peak:
    """An observed spot: panel coordinates in pixels and an intensity"""

    def __init__(self, fs, ss, panel_number, intensity=1.0):
        self.fs = fs
        self.ss = ss
        self.panel_number = panel_number
        self.intensity = intensity

    def __repr__(self):
        return "Peak(fs=%g, ss=%g, panel=%d, intensity=%g)" % (
            self.fs,
            self.ss,
            self.panel_number,
            self.intensity,
        )


class Image:
    """A single diffraction snapshot: the detector it was recorded on, the
    wavelength (metres) and the peaks found on it. The incident beam travels
    along +z."""

    beam_direction = matrix.col((0.0, 0.0, 1.0))

    def __init__(self, detector, wavelength, peaks=None):
        self.detector = detector
        self.wavelength = wavelength
        self.peaks = list(peaks) if peaks else []

    def get_wavenumber(self):
        return 1.0 / self.wavelength

    def get_panel(self, peak):
        return self.detector[peak.panel_number]
