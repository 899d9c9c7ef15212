"""Export of observation equations for a global alignment of the detector.

After a successful refinement each residual of each reflection/peak pair can
be passed to an accumulator as an AlignmentRecord. The derivatives with
respect to the crystal parameters are local to the frame. The derivatives with
respect to the rigid motions of the detector groups enclosing the panel are
global, shared by all frames, and labelled with integers that are unique over
the detector hierarchy. MilleBinaryWriter stores the records in the binary
format read by Millepede-II.
"""

from __future__ import annotations

import abc
import dataclasses
import logging
import math
from typing import List, Tuple

import numpy as np

from predict_refine.algorithms.refinement.parameterisation.model_parameters import (
    CrystalParameter,
    GroupMotion,
    GroupParameter,
)
from predict_refine.algorithms.refinement.parameterisation.prediction_parameters_stills import (
    design_row,
)
from predict_refine.algorithms.refinement.target_stills import (
    RESIDUAL_KINDS,
    RESIDUAL_WEIGHTS,
    residuals,
)

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class AlignmentRecord:
    """One residual of one reflection/peak pair with its derivatives"""

    residual: float
    weight: float
    kind: str
    local_derivatives: List[Tuple[CrystalParameter, float]]
    global_derivatives: List[Tuple[int, float]]

    @property
    def sigma(self):
        return 1.0 / math.sqrt(self.weight)

    @property
    def local_labels(self):
        return [p for p, _ in self.local_derivatives]

    @property
    def global_labels(self):
        return [label for label, _ in self.global_derivatives]


class AlignmentAccumulator(abc.ABC):
    """Sink for alignment records. Records are appended one at a time, and the
    records of one frame are closed off together by end_record."""

    @abc.abstractmethod
    def append(self, record):
        """Add one record to the frame being built"""

    def end_record(self):
        """Finish the frame being built"""

    def delete_last_record(self):
        """Discard the frame being built"""


class RecordList(AlignmentAccumulator):
    """Keeps alignment records in memory, as a list of frames each holding a
    list of records"""

    def __init__(self):
        self.records = []
        self._pending = []

    def append(self, record):
        self._pending.append(record)

    def end_record(self):
        if self._pending:
            self.records.append(self._pending)
        self._pending = []

    def delete_last_record(self):
        self._pending = []

    def measurements(self):
        return [m for frame in self.records for m in frame]


class MilleBinaryWriter(AlignmentAccumulator):
    """Writes alignment records as Millepede-II binary records.

    Each frame is written as a 32 bit word count n followed by n/2 float32
    values and n/2 int32 values. The first pair of each frame is (0.0, 0). Each
    measurement then adds (residual, 0), a (derivative, 1-based local index)
    pair for each non-zero local derivative, (sigma, 0), and a (derivative,
    label) pair for each non-zero global derivative."""

    def __init__(self, filename):
        self._fh = open(filename, "wb")
        self._floats = []
        self._ints = []
        self.n_records = 0

    def append(self, record):
        if record.weight <= 0:
            return
        if not self._floats:
            self._floats.append(0.0)
            self._ints.append(0)

        self._floats.append(record.residual)
        self._ints.append(0)
        for param, value in record.local_derivatives:
            if value != 0.0:
                self._floats.append(value)
                self._ints.append(int(param))
        self._floats.append(record.sigma)
        self._ints.append(0)
        for label, value in record.global_derivatives:
            if value != 0.0 and label > 0:
                self._floats.append(value)
                self._ints.append(label)

    def end_record(self):
        if not self._floats:
            return
        np.array([2 * len(self._floats)], dtype="<i4").tofile(self._fh)
        np.array(self._floats, dtype="<f4").tofile(self._fh)
        np.array(self._ints, dtype="<i4").tofile(self._fh)
        self.n_records += 1
        self.delete_last_record()

    def delete_last_record(self):
        self._floats = []
        self._ints = []

    def close(self):
        self._fh.close()

    def __enter__(self):
        return self

    def __exit__(self, et, ev, tb):
        self.close()


def alignment_groups(panel, max_hierarchy_depth):
    """The groups enclosing the panel, from its leaf group upwards, that lie
    above max_hierarchy_depth in the hierarchy"""

    chain = [panel.group] + list(panel.group.ancestors())
    return [g for g in chain if g.hierarchy_level < max_hierarchy_depth]


def export_alignment_records(
    accumulator, reflpeaks, crystal, image, max_hierarchy_depth=0
):
    """Append one record per pair per residual kind to the accumulator, then
    close off the frame. Return the number of records appended."""

    local_params = list(CrystalParameter)
    n_records = 0
    for rp in reflpeaks:
        panel = image.get_panel(rp.peak)
        global_params = [
            GroupParameter(m, g)
            for g in alignment_groups(panel, max_hierarchy_depth)
            for m in GroupMotion
        ]
        row = design_row(rp, crystal, image, local_params + global_params)
        nlocal = len(local_params)
        for gradients, r, w, kind in zip(
            row, residuals(rp), RESIDUAL_WEIGHTS, RESIDUAL_KINDS
        ):
            accumulator.append(
                AlignmentRecord(
                    residual=r,
                    weight=rp.Ih * w,
                    kind=kind,
                    local_derivatives=list(zip(local_params, gradients[:nlocal])),
                    global_derivatives=[
                        (p.label, g) for p, g in zip(global_params, gradients[nlocal:])
                    ],
                )
            )
            n_records += 1
    accumulator.end_record()
    logger.debug("Exported %d alignment records", n_records)
    return n_records
