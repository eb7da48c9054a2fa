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

"""Filter state representations.

The position is carried as geodetic latitude, longitude and height in
``llh``; the first three entries of ``x`` are a north/east/up offset (m) from
it that is folded back into ``llh`` after every predict and update. The
remaining entries are clock offset (m), then for the eight state model
north/east/up velocity (m/s) and clock drift (m/s), then carrier
ambiguities (cycles) for the RTK filters.
"""

import copy
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from ..coordinate.transforms import apply_neu_correction
from ..core.constants import NX_PV, STATE_CLOCK, STATE_CLOCK_DRIFT, STATE_VNORTH
from ..core.data_structures import PVT
from ..rtk.ambiguity import AmbiguityManager
from ..rtk.double_difference import DoubleDifferenceOperator


def _empty():
    return np.zeros((0, 0))


@dataclass
class FilterState:
    """Matrices common to every estimator

    Attributes
    ----------
    llh : np.ndarray
        Geodetic position (rad, rad, m)
    x : np.ndarray
        State vector
    P : np.ndarray
        State covariance
    H, w, R, W : np.ndarray
        Design matrix, misclosures, measurement covariance and weights of
        the last solve
    time : Optional[float]
        GPS time of the state (s), None before the first solution
    nx : int
        Number of kinematic states (4 or 8); ambiguities follow them
    """
    llh: np.ndarray = field(default_factory=lambda: np.zeros(3))
    x: np.ndarray = field(default_factory=lambda: np.zeros(NX_PV))
    P: np.ndarray = field(default_factory=lambda: np.zeros((NX_PV, NX_PV)))
    H: np.ndarray = field(default_factory=_empty)
    w: np.ndarray = field(default_factory=lambda: np.zeros(0))
    R: np.ndarray = field(default_factory=_empty)
    W: np.ndarray = field(default_factory=_empty)
    time: Optional[float] = None
    nx: int = NX_PV

    @property
    def initialized(self) -> bool:
        return self.time is not None

    @property
    def clock(self) -> float:
        return float(self.x[STATE_CLOCK])

    @property
    def velocity(self) -> np.ndarray:
        if self.nx < NX_PV:
            return np.zeros(3)
        return self.x[STATE_VNORTH:STATE_VNORTH + 3].copy()

    @property
    def drift(self) -> float:
        if self.nx < NX_PV:
            return 0.0
        return float(self.x[STATE_CLOCK_DRIFT])

    def fold_position(self):
        """Move the north/east/up offset of ``x`` into ``llh``"""
        if np.any(self.x[:3] != 0.0):
            self.llh = apply_neu_correction(self.llh, self.x[:3])
            self.x[:3] = 0.0

    def copy(self):
        return copy.deepcopy(self)

    def to_pvt(self, pvt: Optional[PVT] = None) -> PVT:
        """Write position, velocity, clock and their one-sigma values into a
        PVT record (a new one unless given)"""
        pvt = PVT() if pvt is None else pvt
        sig = np.sqrt(np.maximum(np.diag(self.P), 0.0))
        pvt.latitude, pvt.longitude, pvt.height = (float(v) for v in self.llh)
        pvt.clock_offset = self.clock
        pvt.std_lat, pvt.std_lon, pvt.std_hgt, pvt.std_clk = (float(v) for v in sig[:4])
        if self.nx >= NX_PV:
            pvt.vn, pvt.ve, pvt.vup = (float(v) for v in self.velocity)
            pvt.clock_drift = self.drift
            pvt.std_vn, pvt.std_ve, pvt.std_vup, pvt.std_clkdrift = (float(v) for v in sig[4:8])
        return pvt


@dataclass
class LsqState(FilterState):
    """Least squares solution; ``P`` holds ``N^-1`` of the position and the
    velocity problem in the eight state layout."""
    position_valid: bool = False
    velocity_valid: bool = False


@dataclass
class EkfState(FilterState):
    """Conventional Kalman filter state"""
    T: np.ndarray = field(default_factory=_empty)
    Q: np.ndarray = field(default_factory=_empty)
    K: np.ndarray = field(default_factory=_empty)


@dataclass
class RtkSdState(EkfState):
    """Single difference RTK filter; the covariance is held as
    ``P = U diag(D) U^T``; the ambiguity bookkeeping is part of the state."""
    U: np.ndarray = field(default_factory=_empty)
    D: np.ndarray = field(default_factory=lambda: np.zeros(0))
    ambiguities: Optional[AmbiguityManager] = None

    def covariance(self) -> np.ndarray:
        return (self.U * self.D) @ self.U.T


@dataclass
class RtkDdState(RtkSdState):
    """Double difference RTK filter with its differencing operators"""
    dd: DoubleDifferenceOperator = field(default_factory=DoubleDifferenceOperator)

    @property
    def B(self) -> Optional[np.ndarray]:
        return self.dd.B

    @property
    def prev_B(self) -> Optional[np.ndarray]:
        return self.dd.prev_B

    @property
    def sub_B(self) -> Optional[np.ndarray]:
        return self.dd.sub_B

    @property
    def prev_sub_B(self) -> Optional[np.ndarray]:
        return self.dd.prev_sub_B
