"""Contains classes used to manage the reflection/peak pairs used during
refinement, principally StillsReflectionManager."""

from __future__ import annotations

import logging
import math

from libtbx.phil import parse
from scitbx.array_family import flex
from scitbx.math import five_number_summary

from predict_refine.algorithms.refinement.target_stills import (
    fs_dev,
    predict_reflection,
    r_dev,
    ss_dev,
)
from predict_refine.util import tabulate

logger = logging.getLogger(__name__)

# PHIL
phil_str = """
    index_tolerance = 0.3
      .help = "Largest allowed difference between a fractional Miller index"
              "calculated for a peak and the nearest integer, for the peak to"
              "be paired with that reflection."
      .type = float(value_min=0., value_max=0.5)

    minimum_number_of_pairs = 10
      .help = "The minimum number of reflection/peak pairs needed to refine"
              "the prediction. Fewer than this will be reported as a failure,"
              "and the models left unchanged."
      .type = int(value_min=3)
"""
phil_scope = parse(phil_str)


class Reflection:
    """A predicted reflection. The excitation error (m^-1) and the predicted
    panel position (pixels) are filled in by prediction."""

    def __init__(self, miller_index, panel_number):
        self.miller_index = tuple(miller_index)
        self.panel_number = panel_number
        self.exerr = None
        self.fs = None
        self.ss = None

    def __repr__(self):
        return "Reflection(%s, panel=%d)" % (self.miller_index, self.panel_number)


class ReflPeak:
    """A predicted reflection matched with the peak it was observed as, and the
    normalised intensity used to weight the pair"""

    __slots__ = ("refl", "peak", "Ih")

    def __init__(self, refl, peak, Ih):
        self.refl = refl
        self.peak = peak
        self.Ih = Ih

    def __repr__(self):
        return "ReflPeak(%r, %r, Ih=%g)" % (self.refl, self.peak, self.Ih)


class StillsReflectionManager:
    """Pairs the peaks of a still image with the reflections of a crystal.

    Each peak is taken as a point on the Ewald sphere, giving an observed
    reciprocal lattice point whose fractional Miller indices follow from the real
    space basis of the crystal. A peak is paired with the nearest integer
    reflection when every index is within index_tolerance of an integer. The
    000 reflection is never paired, and reflections claimed by more than one
    peak are dropped altogether."""

    def __init__(
        self,
        image,
        crystal,
        index_tolerance=0.3,
        minimum_number_of_pairs=10,
    ):
        self._image = image
        self._crystal = crystal
        self._index_tolerance = index_tolerance
        self.minimum_number_of_pairs = minimum_number_of_pairs
        self._reflpeaks = []

    @classmethod
    def from_parameters(cls, params, image, crystal):
        """Construct from the refinement.reflections scope"""
        return cls(
            image,
            crystal,
            index_tolerance=params.index_tolerance,
            minimum_number_of_pairs=params.minimum_number_of_pairs,
        )

    def _index_peak(self, peak, a, b, c):
        panel = self._image.get_panel(peak)
        r = panel.pixel_to_lab(peak.fs, peak.ss)
        q = (r.normalize() - self._image.beam_direction) * self._image.get_wavenumber()
        frac = (q.dot(a), q.dot(b), q.dot(c))
        hkl = tuple(int(round(e)) for e in frac)
        if hkl == (0, 0, 0):
            return None
        if any(abs(f - i) > self._index_tolerance for f, i in zip(frac, hkl)):
            return None
        return hkl

    def pair_peaks(self):
        """Pair the peaks with reflections for the current geometry, predict the
        paired reflections and return the usable pairs"""

        a, b, c = self._crystal.get_real_space_vectors()
        peaks = self._image.peaks

        candidates = {}
        n_unindexed = 0
        for peak in peaks:
            hkl = self._index_peak(peak, a, b, c)
            if hkl is None:
                n_unindexed += 1
                continue
            candidates.setdefault(hkl, []).append(peak)

        n_duplicate = sum(len(v) for v in candidates.values() if len(v) > 1)
        pairs = [(hkl, v[0]) for hkl, v in candidates.items() if len(v) == 1]

        max_intensity = max((peak.intensity for _, peak in pairs), default=0.0)
        self._reflpeaks = []
        if max_intensity <= 0:
            logger.debug("No peaks with positive intensity could be paired")
            return self._reflpeaks

        n_weak = 0
        n_unpredictable = 0
        for hkl, peak in pairs:
            Ih = peak.intensity / max_intensity
            if Ih <= 0:
                n_weak += 1
                continue
            refl = Reflection(hkl, peak.panel_number)
            if not predict_reflection(
                refl, self._crystal, self._image.get_panel(peak), self._image.wavelength
            ):
                n_unpredictable += 1
                continue
            self._reflpeaks.append(ReflPeak(refl, peak, Ih))

        logger.debug(
            "Paired %d of %d peaks (%d not indexed, %d with duplicate indices, "
            "%d not positive, %d not predictable)",
            len(self._reflpeaks),
            len(peaks),
            n_unindexed,
            n_duplicate,
            n_weak,
            n_unpredictable,
        )
        return self._reflpeaks

    def get_matches(self):
        return self._reflpeaks

    def has_enough_pairs(self):
        return len(self._reflpeaks) >= self.minimum_number_of_pairs

    def print_stats_on_matches(self):
        """Print some basic statistics on the matches"""

        l = self.get_matches()
        nref = len(l)
        if nref == 0:
            logger.warning(
                "Unable to calculate summary statistics for zero observations"
            )
            return

        header = ["", "Min", "Q1", "Med", "Q3", "Max"]
        rows = []
        for label, func in (
            ("Exerr (m^-1)", r_dev),
            ("Fo - Fc (px)", fs_dev),
            ("So - Sc (px)", ss_dev),
        ):
            row_data = five_number_summary(flex.double([func(rp) for rp in l]))
            rows.append([label] + ["%.4g" % e for e in row_data])
        row_data = five_number_summary(flex.double([rp.Ih for rp in l]))
        rows.append(["Weights"] + ["%.4g" % e for e in row_data])

        logger.info("\nSummary statistics for %d observations matched to peaks:", nref)
        logger.info(tabulate(rows, header))


def excitation_error_percentile(reflpeaks):
    """Absolute excitation error of the pairs at roughly the 98th percentile,
    keeping at least the two largest values above it"""

    values = sorted(math.fabs(rp.refl.exerr) for rp in reflpeaks)
    n = max(len(values) // 50, 2)
    return values[(len(values) - 1) - n]
