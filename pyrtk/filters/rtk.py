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
RTK Kalman filters in square-root (UDU) form.

Both filters estimate the kinematic states of the EKF plus one single
difference carrier ambiguity (cycles) per usable signal. The covariance is
propagated with the Thornton time update and corrected with Bierman scalar
updates after decorrelating the measurements.

- ``RtkFilter`` processes single differences (rover minus reference) with
  the between-receiver clock in the state.
- ``RtkDdFilter`` additionally differences against the base satellite with
  the block operator ``B``; the clock terms cancel.
"""

import logging
from typing import Optional

import numpy as np

from ..core.constants import MAX_CHANNELS
from ..core.data_structures import ReceiverEpoch
from ..core.options import EstimatorOptions
from ..gnss.design import (
    ADR,
    CONSTRAINT,
    DOPPLER,
    MeasurementBlock,
    build_adr_block,
    stack_blocks,
    store_residuals,
)
from ..gnss.geometry import select_base_satellite
from ..gnss.weights import dd_variance_matrix, variance_matrix
from ..linalg.udu import bierman_sequential, decorrelate, thornton_predict, udu
from ..rtk.ambiguity import DD, SD, AmbiguityManager, initial_ambiguity
from ..rtk.double_difference import block_diag, non_base_rows, store_dd_values
from .ekf import POSITION_COLUMNS, ExtendedKalmanFilter
from .lsq import InsufficientObservations
from .state import RtkDdState, RtkSdState

logger = logging.getLogger(__name__)


class RtkFilter(ExtendedKalmanFilter):
    """Single difference RTK filter

    Parameters
    ----------
    options : EstimatorOptions
        Estimator configuration
    logger : Optional[logging.Logger]
        Logger for filter messages
    """

    state_class = RtkSdState
    mode = SD

    def __init__(self, options: EstimatorOptions, logger: Optional[logging.Logger] = None):
        super().__init__(options, logger)
        self.capacity = options.max_ambiguities or MAX_CHANNELS

    def new_state(self) -> RtkSdState:
        state = super().new_state()
        state.ambiguities = AmbiguityManager(self.capacity, self.options.std_ambiguity_init,
                                             self.options.prune_policy, self.mode)
        return state

    def initialize(self, state: RtkSdState, llh: np.ndarray, x: np.ndarray,
                   P: np.ndarray, time: float):
        super().initialize(state, llh, x, P, time)
        if state.ambiguities is None:
            state.ambiguities = AmbiguityManager(self.capacity, self.options.std_ambiguity_init,
                                                 self.options.prune_policy, self.mode)
        state.ambiguities.reset()
        state.U, state.D = udu(state.P)

    def covariance(self, state: RtkSdState) -> np.ndarray:
        return state.covariance()

    def ambiguity_index(self, obs) -> int:
        return obs.index_ambiguity_state

    def full_model(self, state: RtkSdState, dt: float) -> tuple[np.ndarray, np.ndarray]:
        """T and Q over kinematic and ambiguity states"""
        Tk, Qk = self.transition(dt)
        u = len(state.x)
        T = np.eye(u)
        Q = np.zeros((u, u))
        T[:self.nx, :self.nx] = Tk
        Q[:self.nx, :self.nx] = Qk
        if u > self.nx:
            Q[self.nx:, self.nx:] = np.eye(u - self.nx) * self.options.ambiguity_process_noise**2 * dt
        return T, Q

    def predict(self, state: RtkSdState, dt: float):
        """Thornton time update of the UDU factors"""
        T, Q = self.full_model(state, dt)
        state.T, state.Q = T, Q
        state.U, state.D = thornton_predict(T, state.U, state.D, Q)
        state.x = T @ state.x
        state.P = state.covariance()
        state.fold_position()

    def build_blocks(self, epoch: ReceiverEpoch, base_epoch: Optional[ReceiverEpoch],
                     state: RtkSdState, prior_llh: np.ndarray):
        """Pseudorange, carrier phase, Doppler and constraint blocks.

        The ambiguity states are brought in line with the usable carrier
        phases here, before any differencing operator is formed.
        """
        if base_epoch is None:
            raise InsufficientObservations("RTK processing needs a reference epoch")
        blocks, columns = super().build_blocks(epoch, base_epoch, state, prior_llh)

        adr = build_adr_block(epoch, base_epoch, state.clock)
        usable = {}
        for i in adr.index:
            obs = epoch.obs[i]
            usable[obs.key] = initial_ambiguity(obs, base_epoch.obs[obs.index_differential])
        P, x, changed = state.ambiguities.update(usable, state.covariance(), state.x, self.nx)
        if changed:
            state.x, state.P = x, P
            state.U, state.D = udu(P)
        state.ambiguities.assign_indices(epoch)

        adr = adr.subset([k for k, i in enumerate(adr.index)
                          if self.ambiguity_index(epoch.obs[i]) >= 0])
        for k, i in enumerate(adr.index):
            obs = epoch.obs[i]
            obs.ambiguity = float(state.x[self.ambiguity_index(obs)])
            adr.w[k] -= obs.wavelength * obs.ambiguity
            obs.adr_misclosure = float(adr.w[k])
        blocks.insert(1, adr)
        columns.insert(1, POSITION_COLUMNS)
        return blocks, columns

    def stack(self, epoch: ReceiverEpoch, state: RtkSdState, blocks, columns):
        """Stacked single difference problem including the ambiguity columns"""
        H, w, var = stack_blocks(blocks, columns, width=len(state.x))
        row = 0
        for block in blocks:
            if block.kind == ADR:
                for k, i in enumerate(block.index):
                    obs = epoch.obs[i]
                    H[row + k, self.ambiguity_index(obs)] = obs.wavelength
            row += block.n
        return H, w, var

    def form_problem(self, epoch: ReceiverEpoch, state: RtkSdState, blocks, columns):
        H, w, var = self.stack(epoch, state, blocks, columns)
        return H, w, variance_matrix(var), blocks

    def measurement_update(self, state: RtkSdState, H: np.ndarray, w: np.ndarray,
                           R: np.ndarray) -> np.ndarray:
        """Decorrelate, then Bierman scalar updates; returns the correction"""
        Hd, wd, rd = decorrelate(H, w, R)
        dx, state.U, state.D = bierman_sequential(state.U, state.D, Hd, wd, rd)
        state.P = state.covariance()
        state.K = np.zeros((0, 0))
        return dx

    def store_residuals(self, epoch: ReceiverEpoch, state: RtkSdState, blocks, columns,
                        dx: np.ndarray) -> np.ndarray:
        H, w, _ = self.stack(epoch, state, blocks, columns)
        v = w - H @ dx
        row = 0
        for block in blocks:
            store_residuals(epoch, block, v[row:row + block.n])
            if block.kind == ADR:
                for i in block.index:
                    obs = epoch.obs[i]
                    obs.ambiguity = float(state.x[self.ambiguity_index(obs)])
            row += block.n
        return v


class RtkDdFilter(RtkFilter):
    """Double difference RTK filter

    Single difference ambiguities are kept in the state; the double
    difference ambiguities relative to the base satellite are reported
    through ``sub_B``.
    """

    state_class = RtkDdState
    mode = DD

    def __init__(self, options: EstimatorOptions, logger: Optional[logging.Logger] = None):
        super().__init__(options, logger)
        self._base_index = -1

    def initialize(self, state: RtkDdState, llh: np.ndarray, x: np.ndarray,
                   P: np.ndarray, time: float):
        super().initialize(state, llh, x, P, time)
        state.dd.reset()

    def ambiguity_index(self, obs) -> int:
        return obs.index_ambiguity_state_dd

    def build_blocks(self, epoch: ReceiverEpoch, base_epoch: Optional[ReceiverEpoch],
                     state: RtkDdState, prior_llh: np.ndarray):
        blocks, columns = super().build_blocks(epoch, base_epoch, state, prior_llh)
        adr = blocks[1]
        base = select_base_satellite(epoch, set(adr.index))
        if base < 0:
            raise InsufficientObservations("No base satellite for double differencing")

        kept_blocks, kept_columns = [], []
        for block, cols in zip(blocks, columns):
            if block.kind == DOPPLER and base not in block.index:
                self.logger.debug("Base satellite has no usable Doppler, Dopplers not used")
                continue
            kept_blocks.append(block)
            kept_columns.append(cols)
        if kept_blocks[0].n - 1 < 3:
            raise InsufficientObservations(
                f"{kept_blocks[0].n - 1} pseudorange double differences, 3 needed")
        self._base_index = base
        return kept_blocks, kept_columns

    def _dd_rows(self, blocks):
        """Row offset of each block in the double difference problem"""
        offsets, row = [], 0
        for block in blocks:
            offsets.append(row)
            row += block.n if block.kind == CONSTRAINT else block.n - 1
        return offsets

    def form_problem(self, epoch: ReceiverEpoch, state: RtkDdState, blocks, columns):
        """``H = B H_sd``, ``w = B w_sd``, ``R = B R_sd B^T``"""
        base = self._base_index
        H_sd, w_sd, var = self.stack(epoch, state, blocks, columns)
        R_sd = variance_matrix(var)

        differenced = [b for b in blocks if b.kind != CONSTRAINT]
        if state.dd.update(epoch, differenced, base):
            self.logger.debug(f"Double difference operator rebuilt, base satellite "
                              f"{epoch.obs[base].id}")
        n_con = sum(b.n for b in blocks if b.kind == CONSTRAINT)
        B = block_diag([state.dd.B, np.eye(n_con)])

        H = B @ H_sd
        w = B @ w_sd
        R = dd_variance_matrix(B, R_sd)

        test_blocks = []
        for block in blocks:
            if block.kind == CONSTRAINT:
                test_blocks.append(block)
                continue
            rows = non_base_rows(block, base)
            test_blocks.append(MeasurementBlock(block.kind, np.zeros((len(rows), 4)),
                                                np.zeros(len(rows)), np.zeros(len(rows)), rows))

        for block, offset in zip(blocks, self._dd_rows(blocks)):
            if block.kind == ADR:
                store_dd_values(epoch, block, base, w[offset:offset + block.n - 1],
                                "adr_misclosure_dd")
        return H, w, R, test_blocks

    def store_residuals(self, epoch: ReceiverEpoch, state: RtkDdState, blocks, columns,
                        dx: np.ndarray) -> np.ndarray:
        v_sd = super().store_residuals(epoch, state, blocks, columns, dx)
        base = self._base_index
        row = 0
        for block in blocks:
            if block.kind == ADR:
                D = state.sub_B
                v_dd = D @ v_sd[row:row + block.n]
                amb_sd = np.array([state.x[self.ambiguity_index(epoch.obs[i])]
                                   for i in block.index])
                store_dd_values(epoch, block, base, v_dd, "adr_residual_dd")
                store_dd_values(epoch, block, base, D @ amb_sd, "ambiguity_dd")
            row += block.n
        return v_sd


__all__ = ['RtkFilter', 'RtkDdFilter']
