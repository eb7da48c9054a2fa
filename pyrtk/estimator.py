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


"""Per-epoch GNSS estimator integrating least squares and the Kalman filters"""

import logging
from typing import Optional

import numpy as np

from .core import stats
from .core.constants import CLIGHT, MS_JUMP_METERS, NX_PV, STATE_CLOCK
from .core.data_structures import DOP, ReceiverEpoch, SolutionSource
from .core.options import EstimatorOptions, FilterType
from .filters.ekf import ExtendedKalmanFilter
from .filters.lsq import InsufficientObservations, LeastSquaresSolver, mark_used
from .filters.rtk import RtkDdFilter, RtkFilter
from .filters.state import FilterState, LsqState
from .gnss.design import ADR, DOPPLER, PSR, design_row
from .gnss.dop import compute_dop
from .gnss.editing import (
    determine_usable_adr,
    determine_usable_dopplers,
    determine_usable_pseudoranges,
)
from .gnss.geometry import update_epoch_geometry

_FILTERS = {
    FilterType.EKF: ExtendedKalmanFilter,
    FilterType.RTK_SD: RtkFilter,
    FilterType.RTK_DD: RtkDdFilter,
}

_USED_FLAG = {
    PSR: "is_psr_used_in_solution",
    DOPPLER: "is_doppler_used_in_solution",
    ADR: "is_adr_used_in_solution",
}


def _valid_std(*stds) -> bool:
    return all(np.isfinite(s) and s > 0.0 for s in stds)


class GNSSEstimator:
    """
    Position, velocity and time estimation for one receiver, optionally
    differenced against a reference receiver.

    The estimator keeps a least squares state and one recursive filter state
    (EKF, single or double difference RTK, chosen by
    ``options.filter_type``). Every operation works on a copy of the
    persistent state and commits it only on success; receiver epochs are
    borrowed for the duration of a call and annotated in place.

    Attributes:
        options: Estimator configuration
        logger: Logger receiving the estimator messages
        lsq_state: Committed least squares state
        filter_state: Committed filter state, None for ``FilterType.LSQ``
        reference_llh: Reference receiver position, None if not differential

    Methods:
        initialize: Set the a-priori position
        initialize_differential: Set the reference and a-priori positions
        perform_least_squares: Least squares position and velocity
        kalman_update: Predict and update the configured filter
        deal_with_clock_jumps: Compensate receiver clock jumps
        compute_dop: DOP of the used pseudoranges

    Examples:
        >>> est = GNSSEstimator(EstimatorOptions(filter_type=FilterType.RTK_DD))
        >>> est.initialize_differential(ref_lat, ref_lon, ref_hgt, lat, lon, hgt, 10, 10, 10)
        >>> pos_ok, vel_ok = est.perform_least_squares(rover, base)
        >>> if est.kalman_update(rover, base):
        ...     print(rover.pvt.latitude, rover.pvt.std_lat)
    """

    def __init__(self, options: Optional[EstimatorOptions] = None,
                 logger: Optional[logging.Logger] = None):
        """
        Initialize the estimator

        Parameters:
        -----------
        options : Optional[EstimatorOptions]
            Configuration, defaults if None
        logger : Optional[logging.Logger]
            Logger to use, ``logging.getLogger(__name__)`` if None
        """
        self.options = options if options is not None else EstimatorOptions()
        self.logger = logger or logging.getLogger(__name__)

        self._lsq = LeastSquaresSolver(self.options, self.logger)
        filter_class = _FILTERS.get(self.options.filter_type)
        self._filter = filter_class(self.options, self.logger) if filter_class else None

        self.lsq_state = LsqState()
        self.filter_state: Optional[FilterState] = self._filter.new_state() if self._filter else None
        self.reference_llh: Optional[np.ndarray] = None

        self._prior_llh: Optional[np.ndarray] = None
        self._prior_P: Optional[np.ndarray] = None
        self._position_known = False

    @property
    def filter(self):
        """The recursive filter, None for least squares only"""
        return self._filter

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    def initialize(self, lat: float, lon: float, hgt: float,
                   std_lat: float, std_lon: float, std_hgt: float) -> bool:
        """
        Set the a-priori position and its uncertainty

        Parameters:
        -----------
        lat, lon : float
            Geodetic latitude and longitude (rad)
        hgt : float
            Ellipsoidal height (m)
        std_lat, std_lon, std_hgt : float
            One-sigma north, east and up uncertainty (m)

        Returns:
        --------
        bool
            False for a non-finite position or a non-positive uncertainty
        """
        if not np.all(np.isfinite([lat, lon, hgt])) or not _valid_std(std_lat, std_lon, std_hgt):
            self.logger.error("Invalid initial position or uncertainty")
            return False
        if abs(lat) > np.pi / 2:
            self.logger.error(f"Latitude {lat} rad out of range")
            return False

        llh = np.array([lat, lon, hgt], dtype=np.float64)
        P = np.diag([std_lat**2, std_lon**2, std_hgt**2, stats.STD_CLK_INIT**2,
                     stats.STD_VEL_INIT**2, stats.STD_VEL_INIT**2, stats.STD_VEL_INIT**2,
                     stats.STD_DRIFT_INIT**2])
        self._prior_llh, self._prior_P = llh, P

        self.lsq_state = LsqState(llh=llh.copy(), x=np.zeros(NX_PV), P=P.copy())
        if self._filter is not None:
            self.filter_state = self._filter.new_state()
        self.logger.info(f"Initialized at lat={np.degrees(lat):.8f} lon={np.degrees(lon):.8f} "
                         f"hgt={hgt:.3f}")
        return True

    def initialize_differential(self, ref_lat: float, ref_lon: float, ref_hgt: float,
                                lat: float, lon: float, hgt: float,
                                std_lat: float, std_lon: float, std_hgt: float) -> bool:
        """Set the reference receiver position, then the rover a-priori
        position as in ``initialize``."""
        if not np.all(np.isfinite([ref_lat, ref_lon, ref_hgt])) or abs(ref_lat) > np.pi / 2:
            self.logger.error("Invalid reference position")
            return False
        if not self.initialize(lat, lon, hgt, std_lat, std_lon, std_hgt):
            return False
        self.reference_llh = np.array([ref_lat, ref_lon, ref_hgt], dtype=np.float64)
        return True

    # ------------------------------------------------------------------
    # Epoch processing
    # ------------------------------------------------------------------

    def _check_inputs(self, epoch: Optional[ReceiverEpoch],
                      base_epoch: Optional[ReceiverEpoch]) -> bool:
        if epoch is None:
            self.logger.error("No receiver epoch")
            return False
        if base_epoch is not None and self.reference_llh is None:
            self.logger.error("Reference epoch given but no reference position; "
                              "call initialize_differential first")
            return False
        if base_epoch is None and self.options.use_only_differential:
            self.logger.warning(f"No reference epoch at {epoch.tow:.3f}, "
                                f"differential solution required")
            return False
        return True

    def _prepare_reference(self, base_epoch: Optional[ReceiverEpoch]):
        """Geometry and editing of the reference epoch at the reference
        position"""
        if base_epoch is None:
            return
        masks = self.options.masks
        update_epoch_geometry(base_epoch, self.reference_llh)
        determine_usable_pseudoranges(base_epoch, masks)
        determine_usable_dopplers(base_epoch, masks)
        determine_usable_adr(base_epoch, masks)

    def perform_least_squares(self, epoch: ReceiverEpoch,
                              base_epoch: Optional[ReceiverEpoch] = None) -> tuple[bool, bool]:
        """
        Least squares position and velocity for one epoch

        Parameters:
        -----------
        epoch : ReceiverEpoch
            Rover epoch; flags, misclosures, residuals and ``pvt_lsq`` are
            written in place
        base_epoch : Optional[ReceiverEpoch]
            Reference epoch for a differential solution

        Returns:
        --------
        position_computed : bool
        velocity_computed : bool
        """
        if not self._check_inputs(epoch, base_epoch):
            return False, False
        try:
            self._prepare_reference(base_epoch)
        except ValueError as e:
            self.logger.error(f"Reference epoch rejected: {e}")
            return False, False

        work = self.lsq_state.copy()
        work.position_valid = work.velocity_valid = False
        prior_llh = self.lsq_state.llh.copy()
        position, velocity = self._lsq.solve(epoch, base_epoch, work, prior_llh,
                                             self._position_known)
        if position is None:
            return False, False

        work.time = epoch.time
        self.lsq_state = work
        self._position_known = True

        pvt = work.to_pvt(epoch.pvt_lsq)
        psr = position.blocks[0]
        mark_used(epoch, psr, _USED_FLAG[PSR])
        pvt.nr_psr_used = psr.n
        pvt.apvf = position.apvf
        pvt.is_position_valid = True
        pvt.is_velocity_valid = velocity is not None
        if velocity is not None:
            mark_used(epoch, velocity.blocks[0], _USED_FLAG[DOPPLER])
            pvt.nr_doppler_used = velocity.blocks[0].n
        else:
            for obs in epoch.obs:
                obs.flags.is_doppler_used_in_solution = False
            pvt.nr_doppler_used = 0
        pvt.nr_adr_used = 0
        try:
            pvt.dop = compute_dop(psr.H)
        except np.linalg.LinAlgError as e:
            self.logger.warning(f"DOP not computed: {e}")

        self.logger.debug(f"LSQ at {epoch.tow:.3f}: {psr.n} psr, apvf={position.apvf:.3f}, "
                          f"velocity {'ok' if velocity is not None else 'failed'}")
        return True, velocity is not None

    def deal_with_clock_jumps(self, epoch: ReceiverEpoch,
                              base_epoch: Optional[ReceiverEpoch] = None) -> bool:
        """
        Compensate receiver clock jumps by adjusting only the clock offset
        states.

        Millisecond jumps move the clock by ``c * 1 ms``; arbitrary jumps by
        ``c * clock_jump``. With a reference epoch the clock states are
        differential, so the reference receiver's jumps enter with the
        opposite sign. Call before ``kalman_update`` for the same epoch.

        Returns:
        --------
        bool
            False if ``epoch`` is None
        """
        if epoch is None:
            return False
        jump = self._clock_jump(epoch)
        if base_epoch is not None:
            jump -= self._clock_jump(base_epoch)
        if jump == 0.0:
            return True
        self.logger.info(f"Receiver clock jump of {jump:.3f} m at {epoch.tow:.3f}")
        self.lsq_state.x[STATE_CLOCK] += jump
        if self.filter_state is not None and self.filter_state.initialized:
            self.filter_state.x[STATE_CLOCK] += jump
        return True

    @staticmethod
    def _clock_jump(epoch: ReceiverEpoch) -> float:
        jump = 0.0
        if epoch.ms_jump_positive:
            jump += MS_JUMP_METERS
        if epoch.ms_jump_negative:
            jump -= MS_JUMP_METERS
        if epoch.clock_jump_detected:
            jump += epoch.clock_jump * CLIGHT
        return jump

    def _start_filter(self, time: float) -> Optional[FilterState]:
        """New filter state from the least squares solution if valid, else
        from the a-priori position"""
        state = self._filter.new_state()
        if self.lsq_state.position_valid:
            llh, x, P = self.lsq_state.llh, self.lsq_state.x, self.lsq_state.P.copy()
            if not self.lsq_state.velocity_valid:
                P[4:8, 4:8] = np.diag([stats.STD_VEL_INIT**2] * 3 + [stats.STD_DRIFT_INIT**2])
            source = "least squares"
        elif self._prior_llh is not None:
            llh, x, P = self._prior_llh, self.lsq_state.x, self._prior_P
            source = "a-priori position"
        else:
            self.logger.warning("Filter cannot start: no least squares solution or initial position")
            return None
        self._filter.initialize(state, llh, x, P, time)
        self.logger.info(f"Filter {self.options.filter_type.value} started from {source}")
        return state

    def kalman_update(self, epoch: ReceiverEpoch,
                      base_epoch: Optional[ReceiverEpoch] = None) -> bool:
        """
        Predict the filter to the epoch time and update it with the epoch's
        measurements

        Parameters:
        -----------
        epoch : ReceiverEpoch
            Rover epoch; flags, misclosures, residuals, ambiguities and
            ``pvt`` are written in place
        base_epoch : Optional[ReceiverEpoch]
            Reference epoch, required by the RTK filters

        Returns:
        --------
        bool
            True if the filter state was updated and committed
        """
        if self._filter is None:
            self.logger.error("No recursive filter configured")
            return False
        if not self._check_inputs(epoch, base_epoch):
            return False

        state = self.filter_state
        try:
            self._prepare_reference(base_epoch)
            if state is None or not state.initialized:
                work = self._start_filter(epoch.time)
                if work is None:
                    return False
            else:
                dt = epoch.time - state.time
                if dt < 0.0:
                    self.logger.warning(f"Epoch {epoch.tow:.3f} is {-dt:.3f} s older than the filter")
                    return False
                work = state.copy()
                if dt > 0.0:
                    self._filter.predict(work, dt)
            prior_llh = work.llh.copy()
            outcome = self._filter.update(epoch, base_epoch, work, prior_llh)
        except InsufficientObservations as e:
            self.logger.warning(f"Kalman update skipped at {epoch.tow:.3f}: {e}")
            return False
        except (np.linalg.LinAlgError, ValueError, RuntimeError) as e:
            self.logger.error(f"Kalman update failed at {epoch.tow:.3f}: {e}")
            return False

        work.time = epoch.time
        self.filter_state = work

        pvt = work.to_pvt(epoch.pvt)
        for kind, flag in _USED_FLAG.items():
            block = outcome.block(kind)
            if block is not None:
                mark_used(epoch, block, flag)
            else:
                for obs in epoch.obs:
                    setattr(obs.flags, flag, False)
        pvt.nr_psr_used = outcome.count(PSR)
        pvt.nr_doppler_used = outcome.count(DOPPLER)
        pvt.nr_adr_used = outcome.count(ADR)
        pvt.apvf = outcome.apvf
        pvt.is_position_valid = True
        pvt.is_velocity_valid = work.nx >= NX_PV
        try:
            pvt.dop = compute_dop(outcome.block(PSR).H)
        except np.linalg.LinAlgError as e:
            self.logger.warning(f"DOP not computed: {e}")
        return True

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def compute_dop(self, epoch: ReceiverEpoch, source: SolutionSource) -> bool:
        """
        DOP of the pseudoranges flagged as used, stored in the PVT record
        selected by ``source``

        Returns:
        --------
        bool
            False with fewer than four used pseudoranges or singular geometry
        """
        if epoch is None:
            return False
        rows = [design_row(obs) for obs in epoch.obs if obs.flags.is_psr_used_in_solution]
        if len(rows) < 4:
            self.logger.debug(f"DOP needs 4 used pseudoranges, have {len(rows)}")
            return False
        try:
            dop = compute_dop(np.vstack(rows))
        except np.linalg.LinAlgError as e:
            self.logger.warning(f"DOP not computed: {e}")
            return False
        epoch.pvt_for(source).dop = dop
        return True

    def get_dop(self, epoch: ReceiverEpoch, source: SolutionSource) -> DOP:
        return epoch.pvt_for(source).dop

    def get_residuals(self, epoch: ReceiverEpoch) -> dict:
        """Post-fit residuals of the last solve per signal key
        (system, channel, id, freq_type)"""
        out = {}
        for obs in epoch.obs:
            f = obs.flags
            if not (f.is_psr_used_in_solution or f.is_doppler_used_in_solution
                    or f.is_adr_used_in_solution):
                continue
            out[obs.key] = {
                'psr': obs.psr_residual,
                'doppler': obs.doppler_residual,
                'adr_sd': obs.adr_residual_sd,
                'adr_dd': obs.adr_residual_dd,
            }
        return out

    def get_misclosures(self, epoch: ReceiverEpoch) -> dict:
        """Misclosures of the last solve per signal key"""
        out = {}
        for obs in epoch.obs:
            f = obs.flags
            if not (f.is_psr_used_in_solution or f.is_doppler_used_in_solution
                    or f.is_adr_used_in_solution):
                continue
            out[obs.key] = {
                'psr': obs.psr_misclosure,
                'doppler': obs.doppler_misclosure,
                'adr_sd': obs.adr_misclosure,
                'adr_dd': obs.adr_misclosure_dd,
            }
        return out
