# Copyright 2024 inuex35
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Design matrix rows and misclosures.

Every block built here has four columns: north, east, up and clock offset
for pseudoranges and carrier phases, or the three velocities and clock
drift for Dopplers. With a reference epoch the misclosures are single
differences rover minus reference and the clock column is the
between-receiver differential clock.

Misclosures are measured minus computed and are written back on the
observations; ADR misclosures do not contain the ambiguity term, which is
the filter's business.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from ..core.data_structures import Observation, ReceiverEpoch
from .weights import adr_variance, doppler_variance, psr_variance

logger = logging.getLogger(__name__)

PSR = "psr"
DOPPLER = "doppler"
ADR = "adr"
CONSTRAINT = "constraint"

# residual attribute per block kind
_RESIDUAL_ATTR = {PSR: "psr_residual", DOPPLER: "doppler_residual", ADR: "adr_residual_sd"}


@dataclass
class MeasurementBlock:
    """Rows of one measurement kind.

    Attributes
    ----------
    kind : str
        'psr', 'doppler', 'adr' or 'constraint'
    H : np.ndarray
        Design rows (n x 4)
    w : np.ndarray
        Misclosures (n,)
    var : np.ndarray
        Variances (n,)
    index : list[int]
        Index of each row's observation in ``epoch.obs`` (-1 for constraints)
    """
    kind: str
    H: np.ndarray = field(default_factory=lambda: np.zeros((0, 4)))
    w: np.ndarray = field(default_factory=lambda: np.zeros(0))
    var: np.ndarray = field(default_factory=lambda: np.zeros(0))
    index: list = field(default_factory=list)

    @property
    def n(self) -> int:
        return len(self.w)

    def subset(self, keep) -> "MeasurementBlock":
        """Rows selected by the boolean mask or index list ``keep``"""
        keep = np.asarray(keep)
        if keep.dtype == bool:
            keep = np.flatnonzero(keep)
        keep = keep.astype(int)
        return MeasurementBlock(self.kind, self.H[keep], self.w[keep], self.var[keep],
                                [self.index[i] for i in keep])


def psr_misclosure(obs: Observation, clock: float) -> float:
    """``psr - (range - satclk + clock + tropo + iono)`` (m)"""
    computed = (obs.range - obs.satellite.clock_offset + clock
                + obs.corrections.tropo + obs.corrections.iono)
    return obs.psr - computed


def doppler_misclosure(obs: Observation, drift: float) -> float:
    """``-lambda D - (range_rate - satclkdrift + drift)`` (m/s)"""
    return obs.measured_range_rate - (obs.range_rate - obs.satellite.clock_drift + drift)


def adr_misclosure(obs: Observation, clock: float) -> float:
    """``lambda phi - (range - satclk + clock + tropo - iono)`` (m)"""
    computed = (obs.range - obs.satellite.clock_offset + clock
                + obs.corrections.tropo - obs.corrections.iono)
    return obs.wavelength * obs.adr - computed


def design_row(obs: Observation) -> np.ndarray:
    """``[-e_n, -e_e, -e_u, 1]``"""
    return np.array([obs.h_p[0], obs.h_p[1], obs.h_p[2], 1.0])


def _reference(obs: Observation, base_epoch: Optional[ReceiverEpoch]):
    if base_epoch is None or obs.index_differential < 0:
        return None
    return base_epoch.obs[obs.index_differential]


def _build(kind, epoch, base_epoch, use, misclosure, variance, param, attr):
    rows, w, var, index = [], [], [], []
    for i, obs in enumerate(epoch.obs):
        if not use(obs):
            continue
        base = _reference(obs, base_epoch)
        if base_epoch is not None and base is None:
            continue
        value = misclosure(obs, param)
        if base is not None:
            value -= misclosure(base, 0.0)
        setattr(obs, attr, value)
        rows.append(design_row(obs))
        w.append(value)
        var.append(variance(obs, base))
        index.append(i)
    block = MeasurementBlock(kind)
    if rows:
        block.H = np.vstack(rows)
        block.w = np.array(w)
        block.var = np.array(var)
        block.index = index
    return block


def build_psr_block(epoch: ReceiverEpoch, base_epoch: Optional[ReceiverEpoch],
                    clock: float) -> MeasurementBlock:
    """Pseudorange rows of the used observations.

    Parameters
    ----------
    epoch : ReceiverEpoch
        Rover epoch with geometry computed and editing applied
    base_epoch : Optional[ReceiverEpoch]
        Reference epoch with geometry computed at the reference position;
        rows are single differenced when given
    clock : float
        Current clock offset estimate (m)
    """
    def use(obs):
        f = obs.flags
        return f.is_psr_used_in_solution and (base_epoch is None or f.is_differential_psr_available)
    return _build(PSR, epoch, base_epoch, use, psr_misclosure, psr_variance, clock,
                  "psr_misclosure")


def build_doppler_block(epoch: ReceiverEpoch, base_epoch: Optional[ReceiverEpoch],
                        drift: float) -> MeasurementBlock:
    """Doppler rows of the used observations, columns vN, vE, vU, drift"""
    def use(obs):
        f = obs.flags
        return f.is_doppler_used_in_solution and (base_epoch is None or f.is_differential_doppler_available)
    return _build(DOPPLER, epoch, base_epoch, use, doppler_misclosure, doppler_variance, drift,
                  "doppler_misclosure")


def build_adr_block(epoch: ReceiverEpoch, base_epoch: Optional[ReceiverEpoch],
                    clock: float) -> MeasurementBlock:
    """Carrier phase rows; single differenced when a reference epoch is given"""
    def use(obs):
        f = obs.flags
        return f.is_adr_used_in_solution and (base_epoch is None or f.is_differential_adr_available)
    return _build(ADR, epoch, base_epoch, use, adr_misclosure, adr_variance, clock,
                  "adr_misclosure")


def build_constraint_block(dneu_prior: np.ndarray, fix_position: bool, constrain_height: bool,
                           std_position: float, std_height: float) -> MeasurementBlock:
    """Pseudo-observations tying the position to a prior.

    Parameters
    ----------
    dneu_prior : np.ndarray
        Prior position minus current estimate in north/east/up (m)
    fix_position : bool
        Constrain all three position components
    constrain_height : bool
        Constrain the up component only (ignored when ``fix_position``)
    std_position, std_height : float
        Constraint standard deviations (m)
    """
    axes = [0, 1, 2] if fix_position else ([2] if constrain_height else [])
    block = MeasurementBlock(CONSTRAINT)
    if not axes:
        return block
    std = std_position if fix_position else std_height
    block.H = np.zeros((len(axes), 4))
    for row, axis in enumerate(axes):
        block.H[row, axis] = 1.0
    block.w = np.array([dneu_prior[a] for a in axes], dtype=np.float64)
    block.var = np.full(len(axes), std**2)
    block.index = [-1] * len(axes)
    return block


def stack_blocks(blocks, columns, width: Optional[int] = None) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Stack blocks into one problem.

    Parameters
    ----------
    blocks : list[MeasurementBlock]
        Blocks in row order
    columns : list[list[int]]
        State columns receiving each block's four design columns
    width : Optional[int]
        Number of state columns, ``max column + 1`` if omitted

    Returns
    -------
    H, w, var : np.ndarray
        Stacked design matrix, misclosures and variances
    """
    nx = width if width is not None else max(max(c) for c in columns) + 1
    n = sum(b.n for b in blocks)
    H = np.zeros((n, nx))
    w = np.zeros(n)
    var = np.zeros(n)
    row = 0
    for block, cols in zip(blocks, columns):
        if block.n == 0:
            continue
        H[row:row + block.n, cols] = block.H
        w[row:row + block.n] = block.w
        var[row:row + block.n] = block.var
        row += block.n
    return H, w, var


# flag cleared when fault detection rejects a row of the block kind
REJECTION_FLAG = {
    PSR: "is_not_psr_rejected",
    DOPPLER: "is_not_doppler_rejected",
    ADR: "is_not_adr_rejected",
}


def locate_row(blocks, row: int) -> tuple[MeasurementBlock, int]:
    """Block and observation index of row ``row`` of the stacked blocks"""
    for block in blocks:
        if row < block.n:
            return block, block.index[row]
        row -= block.n
    raise IndexError(f"Row {row} beyond the stacked blocks")


def reject_row(epoch: ReceiverEpoch, blocks, row: int) -> int:
    """Clear the rejection flag of the observation behind a stacked row.

    Returns
    -------
    int
        Index of the rejected observation in ``epoch.obs``, -1 if the row
        is a constraint pseudo-observation
    """
    block, obs_index = locate_row(blocks, row)
    flag = REJECTION_FLAG.get(block.kind)
    if flag is None or obs_index < 0:
        logger.info("Local test flagged a constraint pseudo-observation, nothing excluded")
        return -1
    obs = epoch.obs[obs_index]
    setattr(obs.flags, flag, False)
    logger.info(f"Excluding {block.kind} of satellite {obs.id} (channel {obs.channel}) "
                f"by local test")
    return obs_index


def store_residuals(epoch: ReceiverEpoch, block: MeasurementBlock, v: np.ndarray):
    """Write post-fit residuals ``v`` of ``block`` to its observations"""
    attr = _RESIDUAL_ATTR.get(block.kind)
    if attr is None:
        return
    for i, value in zip(block.index, v):
        setattr(epoch.obs[i], attr, float(value))
