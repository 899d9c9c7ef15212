"""Refinement of crystal orientation, unit cell and detector geometry against
the spots observed on single diffraction snapshots."""

from __future__ import annotations

import logging

__version__ = "0.3.dev"

logging.getLogger("predict_refine").addHandler(logging.NullHandler())
