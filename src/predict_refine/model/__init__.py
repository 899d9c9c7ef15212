from __future__ import annotations

from predict_refine.model.crystal import Crystal
from predict_refine.model.detector import Detector, Panel, PanelGroup
from predict_refine.model.image import Image, Peak

__all__ = ["Crystal", "Detector", "Image", "Panel", "PanelGroup", "Peak"]
