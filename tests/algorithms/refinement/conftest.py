from __future__ import annotations

import pytest
from scitbx import matrix

from .sim_stills import make_still, make_two_ring_still

# A small rotation about a general axis, applied to the crystal to give a
# starting model away from the one the peaks were simulated from
PERTURBATION_AXIS = matrix.col((0.3, -0.5, 0.8)).normalize()
PERTURBATION_ANGLE = 0.002


@pytest.fixture
def still():
    """An image with peaks simulated exactly from the returned crystal"""
    return make_still()


@pytest.fixture
def perturbed_still():
    """An image, a crystal rotated away from the one used to simulate the
    peaks, and that true crystal"""
    image, truth = make_still()
    crystal = truth.copy()
    crystal.rotate(PERTURBATION_AXIS, PERTURBATION_ANGLE)
    return image, crystal, truth


@pytest.fixture
def perturbed_two_ring_still():
    """A two ring image whose whole detector has been shifted from where the
    peaks were simulated, a rotated crystal, the true crystal and the true
    detector frames"""
    image, truth = make_two_ring_still()
    frames = image.detector.snapshot()
    image.detector.hierarchy().translate((5e-5, -5e-5, 1e-4))
    crystal = truth.copy()
    crystal.rotate(PERTURBATION_AXIS, PERTURBATION_ANGLE)
    return image, crystal, truth, frames
