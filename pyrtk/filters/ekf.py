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
Extended Kalman filter for position, velocity and clock.

The eight state model carries north, east, up and clock offset as the
integrals of first order Gauss-Markov velocities and clock drift; the four
state model is a random walk on position and clock. The filter is written
around a small set of hooks (``predict``, ``build_blocks``, ``form_problem``,
``measurement_update``) that the RTK filters override.
"""

import logging
from dataclasses import dataclass, field
from typing import Optional

import numpy as np

from ..coordinate.transforms import llh_difference_neu
from ..core.constants import NX_POSITION, NX_PV
from ..core.data_structures import ReceiverEpoch
from ..core.options import EstimatorOptions, MaskOptions
from ..gnss.design import (
    build_constraint_block,
    build_doppler_block,
    build_psr_block,
    reject_row,
    stack_blocks,
    store_residuals,
)
from ..gnss.editing import (
    determine_usable_adr,
    determine_usable_dopplers,
    determine_usable_pseudoranges,
)
from ..gnss.geometry import match_reference, update_epoch_geometry
from ..gnss.raim import detect_fault, global_test, innovation_covariance
from ..gnss.weights import variance_matrix
from ..logger import log_matrix
from .lsq import InsufficientObservations
from .state import EkfState, FilterState

logger = logging.getLogger(__name__)

POSITION_COLUMNS = [0, 1, 2, 3]
VELOCITY_COLUMNS = [4, 5, 6, 7]


def gauss_markov_model(dt: float, alphas, sigmas) -> tuple[np.ndarray, np.ndarray]:
    """
    Transition and process noise of the eight state Gauss-Markov model

    Each of the four axes (north, east, up, clock) pairs a position-like
    state with a first order Gauss-Markov rate with time constant ``alpha``
    and steady-state standard deviation ``sigma``.

    Parameters:
    -----------
    dt : float
        Propagation interval (s)
    alphas : sequence of float
        Time constants of vN, vE, vU and clock drift (s)
    sigmas : sequence of float
        Steady-state standard deviations (m/s)

    Returns:
    --------
    T : np.ndarray
        Transition matrix (8 x 8)
    Q : np.ndarray
        Process noise covariance (8 x 8)
    """
    T = np.eye(NX_PV)
    Q = np.zeros((NX_PV, NX_PV))
    for k, (alpha, sigma) in enumerate(zip(alphas, sigmas)):
        beta = 1.0 / alpha
        e1 = np.exp(-beta * dt)
        e2 = np.exp(-2.0 * beta * dt)
        q = 2.0 * sigma**2 * beta
        p, v = k, NX_POSITION + k
        T[p, v] = (1.0 - e1) / beta
        T[v, v] = e1
        Q[p, p] = q / beta**2 * (dt - 2.0 * (1.0 - e1) / beta + (1.0 - e2) / (2.0 * beta))
        Q[p, v] = Q[v, p] = q / beta**2 * ((1.0 - e1) - (1.0 - e2) / 2.0)
        Q[v, v] = sigma**2 * (1.0 - e2)
    return T, Q


def random_walk_model(dt: float, sigmas) -> tuple[np.ndarray, np.ndarray]:
    """Transition (identity) and process noise ``diag(sigma^2 dt)`` of the
    four state random walk model"""
    return np.eye(NX_POSITION), np.diag([s**2 * dt for s in sigmas])


def prepare_epoch(epoch: ReceiverEpoch, base_epoch: Optional[ReceiverEpoch],
                  state: FilterState, masks: MaskOptions):
    """Geometry at the predicted state, editing and reference matching"""
    update_epoch_geometry(epoch, state.llh, state.velocity)
    determine_usable_pseudoranges(epoch, masks)
    determine_usable_dopplers(epoch, masks)
    determine_usable_adr(epoch, masks)
    match_reference(epoch, base_epoch)


@dataclass
class UpdateOutcome:
    """Result of one measurement update

    Attributes
    ----------
    blocks : list[MeasurementBlock]
        Single difference (or undifferenced) blocks as built
    H, w, R : np.ndarray
        Problem actually processed (double differenced for the DD filter)
    dx : np.ndarray
        State correction
    apvf : float
        Variance factor of the innovations
    excluded : int
        Index in ``epoch.obs`` of the observation excluded by the local
        test, -1 for none
    """
    blocks: list = field(default_factory=list)
    H: np.ndarray = None
    w: np.ndarray = None
    R: np.ndarray = None
    dx: np.ndarray = None
    apvf: float = 0.0
    excluded: int = -1

    def count(self, kind: str) -> int:
        return sum(b.n for b in self.blocks if b.kind == kind)

    def block(self, kind: str):
        for b in self.blocks:
            if b.kind == kind:
                return b
        return None


class ExtendedKalmanFilter:
    """Conventional extended Kalman filter

    Parameters
    ----------
    options : EstimatorOptions
        Estimator configuration
    logger : Optional[logging.Logger]
        Logger for filter messages
    """

    state_class = EkfState

    def __init__(self, options: EstimatorOptions, logger: Optional[logging.Logger] = None):
        self.options = options
        self.logger = logger or logging.getLogger(__name__)

    @property
    def nx(self) -> int:
        """Number of kinematic states"""
        return NX_PV if self.options.eight_state else NX_POSITION

    def new_state(self) -> FilterState:
        return self.state_class(x=np.zeros(self.nx), P=np.zeros((self.nx, self.nx)), nx=self.nx)

    def initialize(self, state: FilterState, llh: np.ndarray, x: np.ndarray,
                   P: np.ndarray, time: float):
        """Start the filter from a kinematic state in the eight state layout
        (truncated to four states when needed)"""
        state.llh = np.array(llh, dtype=np.float64)
        state.x = np.array(x[:self.nx], dtype=np.float64)
        state.P = np.array(P[:self.nx, :self.nx], dtype=np.float64)
        state.time = time

    def transition(self, dt: float) -> tuple[np.ndarray, np.ndarray]:
        """Kinematic T(dt) and Q(dt)"""
        if self.options.eight_state:
            gm = self.options.gauss_markov
            return gauss_markov_model(dt, gm.alphas, gm.sigmas)
        return random_walk_model(dt, self.options.random_walk.sigmas)

    def predict(self, state: EkfState, dt: float):
        """Propagate ``x`` and ``P`` over ``dt`` seconds"""
        T, Q = self.transition(dt)
        state.T, state.Q = T, Q
        state.x = T @ state.x
        state.P = T @ state.P @ T.T + Q
        state.fold_position()

    def build_blocks(self, epoch: ReceiverEpoch, base_epoch: Optional[ReceiverEpoch],
                     state: FilterState, prior_llh: np.ndarray):
        """Measurement blocks and the state columns of their design rows"""
        opts = self.options
        blocks = [build_psr_block(epoch, base_epoch, state.clock)]
        columns = [POSITION_COLUMNS]
        if self.nx == NX_PV and opts.use_doppler:
            blocks.append(build_doppler_block(epoch, base_epoch, state.drift))
            columns.append(VELOCITY_COLUMNS)
        constraint = build_constraint_block(
            llh_difference_neu(prior_llh, state.llh), opts.is_position_fixed,
            opts.is_height_constrained, opts.std_position_constraint, opts.std_height_constraint)
        if constraint.n:
            blocks.append(constraint)
            columns.append(POSITION_COLUMNS)
        if blocks[0].n < NX_POSITION:
            raise InsufficientObservations(
                f"{blocks[0].n} usable pseudoranges, {NX_POSITION} needed")
        return blocks, columns

    def form_problem(self, epoch: ReceiverEpoch, state: FilterState, blocks, columns):
        """Stacked H, w and R plus the blocks whose rows they follow"""
        H, w, var = stack_blocks(blocks, columns, width=len(state.x))
        return H, w, variance_matrix(var), blocks

    def covariance(self, state: FilterState) -> np.ndarray:
        return state.P

    def measurement_update(self, state: EkfState, H: np.ndarray, w: np.ndarray,
                           R: np.ndarray) -> np.ndarray:
        """Conventional update in Joseph form; returns the correction"""
        P = state.P
        S = H @ P @ H.T + R
        K = np.linalg.solve(S, H @ P).T
        dx = K @ w
        I_KH = np.eye(len(state.x)) - K @ H
        state.P = I_KH @ P @ I_KH.T + K @ R @ K.T
        state.K = K
        return dx

    def store_residuals(self, epoch: ReceiverEpoch, state: FilterState, blocks, columns,
                        dx: np.ndarray):
        H, w, _ = stack_blocks(blocks, columns, width=len(state.x))
        v = w - H @ dx
        row = 0
        for block in blocks:
            store_residuals(epoch, block, v[row:row + block.n])
            row += block.n

    def update(self, epoch: ReceiverEpoch, base_epoch: Optional[ReceiverEpoch],
               state: FilterState, prior_llh: np.ndarray) -> UpdateOutcome:
        """
        Measurement update with fault detection

        The innovations are tested against ``H P- H^T + R`` with ``n``
        degrees of freedom; on failure at most one observation is excluded
        and the update is formed again from the same prior.

        Parameters:
        -----------
        epoch : ReceiverEpoch
            Rover epoch, annotated in place
        base_epoch : Optional[ReceiverEpoch]
            Reference epoch prepared at the reference position
        state : FilterState
            Predicted working state, updated in place
        prior_llh : np.ndarray
            Previous position used by the constraint pseudo-observations

        Returns:
        --------
        UpdateOutcome

        Raises:
        -------
        InsufficientObservations
            Too few usable observations
        np.linalg.LinAlgError
            Numerical failure of the update
        """
        fd = self.options.fault_detection
        excluded = -1
        for attempt in range(2):
            prepare_epoch(epoch, base_epoch, state, self.options.masks)
            blocks, columns = self.build_blocks(epoch, base_epoch, state, prior_llh)
            H, w, R, test_blocks = self.form_problem(epoch, state, blocks, columns)
            S = innovation_covariance(H, self.covariance(state), R)
            if fd.enabled and attempt == 0:
                result, row = detect_fault(w, S, len(w), fd.global_confidence,
                                           fd.local_confidence)
                if row >= 0:
                    excluded = reject_row(epoch, test_blocks, row)
                    if excluded >= 0:
                        continue
            else:
                result = global_test(w, np.linalg.pinv(S, hermitian=True), len(w),
                                     fd.global_confidence)
            break

        log_matrix(self.logger, "H", H)
        log_matrix(self.logger, "w", w)
        dx = self.measurement_update(state, H, w, R)
        state.H, state.w, state.R = H, w, R
        state.W = np.linalg.inv(R)
        state.x = state.x + dx
        self.store_residuals(epoch, state, blocks, columns, dx)
        state.fold_position()
        self.logger.debug(f"Update at {epoch.tow:.3f}: n={len(w)} apvf={result.apvf:.3f} "
                          f"|dx|={np.linalg.norm(dx):.4f}")
        return UpdateOutcome(blocks, H, w, R, dx, result.apvf, excluded)
