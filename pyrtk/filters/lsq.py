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
Iterative weighted least squares position and velocity.

Position (north, east, up, clock) and velocity (vN, vE, vU, drift) are
solved as two independent four state Gauss-Newton problems, the velocity
problem at the converged position. Each problem runs the global test on
its post-fit residuals and may exclude one observation and re-solve once.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Optional

import numpy as np

from ..coordinate.transforms import apply_neu_correction, llh_difference_neu
from ..core import stats
from ..core.constants import NX_POSITION
from ..core.data_structures import ReceiverEpoch
from ..core.options import EstimatorOptions, MaskOptions
from ..gnss.design import (
    MeasurementBlock,
    build_constraint_block,
    build_doppler_block,
    build_psr_block,
    reject_row,
    stack_blocks,
    store_residuals,
)
from ..gnss.editing import determine_usable_dopplers, determine_usable_pseudoranges
from ..gnss.geometry import match_reference, update_epoch_geometry
from ..gnss.raim import detect_fault, lsq_residual_covariance
from ..gnss.weights import variance_matrix, weight_matrix
from .state import LsqState

logger = logging.getLogger(__name__)

# condition number above which the normal matrix counts as singular
MAX_CONDITION = 1.0e12


class InsufficientObservations(Exception):
    """Fewer usable observations than unknowns"""


class NotConverged(Exception):
    """Gauss-Newton iteration cap reached"""


@dataclass
class LsqProblem:
    """Converged solution of one four state problem"""
    dx: np.ndarray                      # last Gauss-Newton step
    N_inv: np.ndarray
    blocks: list = field(default_factory=list)
    H: np.ndarray = None
    w: np.ndarray = None
    R: np.ndarray = None
    W: np.ndarray = None
    v: np.ndarray = None
    apvf: float = 0.0
    iterations: int = 0


def solve_normal_equations(H: np.ndarray, w: np.ndarray, var: np.ndarray):
    """
    Weighted least squares step

    Parameters:
    -----------
    H : np.ndarray
        Design matrix (n x u)
    w : np.ndarray
        Misclosures (n,)
    var : np.ndarray
        Observation variances (n,)

    Returns:
    --------
    dx : np.ndarray
        Correction ``N^-1 H^T W w``
    N_inv : np.ndarray
        Inverse normal matrix
    R, W : np.ndarray
        Observation covariance and weight matrices

    Raises:
    -------
    np.linalg.LinAlgError
        If the normal matrix is singular or ill-conditioned
    """
    R = variance_matrix(var)
    W = weight_matrix(R)
    N = H.T @ W @ H
    if np.linalg.cond(N) > MAX_CONDITION:
        raise np.linalg.LinAlgError("Normal matrix is ill-conditioned")
    N_inv = np.linalg.inv(N)
    dx = N_inv @ H.T @ W @ w
    return dx, N_inv, R, W


class LeastSquaresSolver:
    """Least squares PVT for one receiver epoch

    Parameters
    ----------
    options : EstimatorOptions
        Estimator configuration
    logger : Optional[logging.Logger]
        Logger for solver messages
    """

    def __init__(self, options: EstimatorOptions, logger: Optional[logging.Logger] = None):
        self.options = options
        self.logger = logger or logging.getLogger(__name__)

    def _masks(self, position_known: bool) -> MaskOptions:
        if position_known:
            return self.options.masks
        m = self.options.masks
        # look angles from an unknown position are meaningless
        return MaskOptions(-90.0, m.cno_mask, m.locktime_mask, m.excluded_satellites)

    def _iterate(self, build: Callable, apply: Callable, what: str) -> LsqProblem:
        tol = self.options.lsq_tolerance
        for it in range(1, self.options.max_lsq_iterations + 1):
            blocks = build()
            n = sum(b.n for b in blocks)
            if blocks[0].n < NX_POSITION:
                raise InsufficientObservations(
                    f"{what}: {blocks[0].n} usable observations, {NX_POSITION} needed")
            H, w, var = stack_blocks(blocks, [[0, 1, 2, 3]] * len(blocks))
            dx, N_inv, R, W = solve_normal_equations(H, w, var)
            apply(dx)
            self.logger.debug(f"{what} iteration {it}: n={n} |dx|={np.linalg.norm(dx):.4f}")
            if np.linalg.norm(dx) < tol:
                v = w - H @ dx
                return LsqProblem(dx, N_inv, blocks, H, w, R, W, v, iterations=it)
        raise NotConverged(f"{what} did not converge in {self.options.max_lsq_iterations} iterations")

    def _test(self, problem: LsqProblem, epoch: ReceiverEpoch) -> bool:
        """Global/local test of a converged problem; returns True if an
        observation was excluded"""
        fd = self.options.fault_detection
        if not fd.enabled:
            self._test_only(problem)
            return False
        n, u = problem.H.shape
        C_r = lsq_residual_covariance(problem.H, problem.R)
        result, row = detect_fault(problem.v, C_r, n - u, fd.global_confidence,
                                   fd.local_confidence)
        problem.apvf = result.apvf
        if row < 0:
            return False
        return reject_row(epoch, problem.blocks, row) >= 0

    def solve_position(self, epoch: ReceiverEpoch, base_epoch: Optional[ReceiverEpoch],
                       state: LsqState, prior_llh: np.ndarray, position_known: bool) -> LsqProblem:
        """Solve north, east, up and clock offset; updates ``state.llh`` and
        the clock in place."""
        opts = self.options
        masks = self._masks(position_known)

        def build():
            update_epoch_geometry(epoch, state.llh)
            determine_usable_pseudoranges(epoch, masks)
            match_reference(epoch, base_epoch)
            psr = build_psr_block(epoch, base_epoch, state.x[3])
            constraint = build_constraint_block(
                llh_difference_neu(prior_llh, state.llh), opts.is_position_fixed,
                opts.is_height_constrained, opts.std_position_constraint,
                opts.std_height_constraint)
            return [psr, constraint]

        def apply(dx):
            state.llh = apply_neu_correction(state.llh, dx[:3])
            state.x[3] += dx[3]

        start_llh, start_clock = state.llh.copy(), state.x[3]
        problem = self._iterate(build, apply, "Position")
        if self._test(problem, epoch):
            state.llh, state.x[3] = start_llh, start_clock
            problem = self._iterate(build, apply, "Position")
            self._test_only(problem)
        return problem

    def solve_velocity(self, epoch: ReceiverEpoch, base_epoch: Optional[ReceiverEpoch],
                       state: LsqState) -> LsqProblem:
        """Solve north, east, up velocity and clock drift at the current
        position; updates the velocity states in place."""
        masks = self.options.masks

        def build():
            update_epoch_geometry(epoch, state.llh, state.x[4:7])
            determine_usable_dopplers(epoch, masks)
            match_reference(epoch, base_epoch)
            return [build_doppler_block(epoch, base_epoch, state.x[7])]

        def apply(dx):
            state.x[4:8] += dx

        start = state.x[4:8].copy()
        problem = self._iterate(build, apply, "Velocity")
        if self._test(problem, epoch):
            state.x[4:8] = start
            problem = self._iterate(build, apply, "Velocity")
            self._test_only(problem)
        return problem

    def _test_only(self, problem: LsqProblem):
        """Variance factor of the re-solved problem; no further exclusion"""
        n, u = problem.H.shape
        problem.apvf = float(problem.v @ problem.W @ problem.v) / max(n - u, 1)

    def solve(self, epoch: ReceiverEpoch, base_epoch: Optional[ReceiverEpoch],
              state: LsqState, prior_llh: np.ndarray, position_known: bool):
        """
        Position then velocity

        Parameters:
        -----------
        epoch : ReceiverEpoch
            Rover epoch, edited and annotated in place
        base_epoch : Optional[ReceiverEpoch]
            Reference epoch prepared at the reference position
        state : LsqState
            Working copy of the least squares state, updated in place
        prior_llh : np.ndarray
            Previous position used by the constraint pseudo-observations
        position_known : bool
            False before the first fix; the elevation mask is not applied

        Returns:
        --------
        position : Optional[LsqProblem]
            None if the position could not be computed
        velocity : Optional[LsqProblem]
            None if the velocity could not be computed
        """
        try:
            position = self.solve_position(epoch, base_epoch, state, prior_llh, position_known)
        except (InsufficientObservations, NotConverged, np.linalg.LinAlgError, ValueError) as e:
            self.logger.warning(f"Least squares position failed at {epoch.tow:.3f}: {e}")
            return None, None

        state.P[:4, :4] = position.N_inv
        state.H, state.w, state.R, state.W = position.H, position.w, position.R, position.W
        row = 0
        for block in position.blocks:
            store_residuals(epoch, block, position.v[row:row + block.n])
            row += block.n
        state.position_valid = True

        if not self.options.use_doppler:
            return position, None
        try:
            velocity = self.solve_velocity(epoch, base_epoch, state)
        except (InsufficientObservations, NotConverged, np.linalg.LinAlgError, ValueError) as e:
            self.logger.warning(f"Least squares velocity failed at {epoch.tow:.3f}: {e}")
            state.x[4:8] = 0.0
            state.P[4:8, 4:8] = np.diag([stats.STD_VEL_INIT**2] * 3 + [stats.STD_DRIFT_INIT**2])
            state.velocity_valid = False
            return position, None

        state.P[4:8, 4:8] = velocity.N_inv
        store_residuals(epoch, velocity.blocks[0], velocity.v)
        state.velocity_valid = True
        return position, velocity


def mark_used(epoch: ReceiverEpoch, block: MeasurementBlock, flag: str):
    """Set ``flag`` on the observations of ``block`` and clear it elsewhere"""
    used = set(block.index)
    for i, obs in enumerate(epoch.obs):
        setattr(obs.flags, flag, i in used)
