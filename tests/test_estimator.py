#!/usr/bin/env python3
"""Test suite for the GNSS estimator"""

import unittest

import numpy as np

from helpers import (
    BASE_CLOCK,
    PRNS,
    ROVER_CLOCK,
    ROVER_DRIFT,
    TOW,
    Scenario,
    find_obs,
    neu_error,
)
from pyrtk import GNSSEstimator
from pyrtk.coordinate.transforms import apply_neu_correction
from pyrtk.core.constants import CLIGHT, MS_JUMP_METERS
from pyrtk.core.data_structures import SolutionSource
from pyrtk.core.options import EstimatorOptions, FilterType, RandomWalkModel
from pyrtk.filters import ExtendedKalmanFilter, RtkDdFilter, RtkFilter


def estimator(filter_type=FilterType.EKF, **kwargs):
    return GNSSEstimator(EstimatorOptions(filter_type=filter_type, **kwargs))


class EstimatorTestCase(unittest.TestCase):

    def setUp(self):
        self.scenario = Scenario()
        self.start_llh = apply_neu_correction(self.scenario.rover_llh,
                                              np.array([300.0, -200.0, 50.0]))

    def initialize(self, est):
        lat, lon, hgt = self.start_llh
        self.assertTrue(est.initialize(lat, lon, hgt, 500.0, 500.0, 100.0))

    def initialize_differential(self, est):
        ref = self.scenario.base_llh
        lat, lon, hgt = self.start_llh
        self.assertTrue(est.initialize_differential(ref[0], ref[1], ref[2], lat, lon, hgt,
                                                    500.0, 500.0, 100.0))


class TestInitialization(EstimatorTestCase):

    def test_filter_selection(self):
        self.assertIsNone(estimator(FilterType.LSQ).filter)
        self.assertIsNone(estimator(FilterType.LSQ).filter_state)
        self.assertIsInstance(estimator(FilterType.EKF).filter, ExtendedKalmanFilter)
        self.assertIsInstance(estimator(FilterType.RTK_SD).filter, RtkFilter)
        self.assertIsInstance(estimator(FilterType.RTK_DD).filter, RtkDdFilter)
        self.assertIsInstance(GNSSEstimator().options, EstimatorOptions)

    def test_initialize(self):
        est = estimator()
        self.initialize(est)
        np.testing.assert_allclose(est.lsq_state.llh, self.start_llh)
        self.assertAlmostEqual(est.lsq_state.P[0, 0], 500.0**2)
        self.assertAlmostEqual(est.lsq_state.P[2, 2], 100.0**2)
        self.assertFalse(est.filter_state.initialized)

    def test_invalid_initialization(self):
        est = estimator()
        with self.assertLogs('pyrtk.estimator', level='ERROR'):
            self.assertFalse(est.initialize(np.nan, 0.0, 0.0, 1.0, 1.0, 1.0))
        with self.assertLogs('pyrtk.estimator', level='ERROR'):
            self.assertFalse(est.initialize(0.5, 0.5, 0.0, 1.0, 0.0, 1.0))
        with self.assertLogs('pyrtk.estimator', level='ERROR'):
            self.assertFalse(est.initialize(0.5, 0.5, 0.0, 1.0, -1.0, 1.0))
        with self.assertLogs('pyrtk.estimator', level='ERROR'):
            self.assertFalse(est.initialize(2.0, 0.5, 0.0, 1.0, 1.0, 1.0))

    def test_invalid_reference(self):
        est = estimator(FilterType.RTK_DD)
        lat, lon, hgt = self.start_llh
        with self.assertLogs('pyrtk.estimator', level='ERROR'):
            self.assertFalse(est.initialize_differential(np.inf, 0.0, 0.0, lat, lon, hgt,
                                                         1.0, 1.0, 1.0))
        self.assertIsNone(est.reference_llh)

    def test_initialize_differential(self):
        est = estimator(FilterType.RTK_DD)
        self.initialize_differential(est)
        np.testing.assert_allclose(est.reference_llh, self.scenario.base_llh)


class TestLeastSquares(EstimatorTestCase):

    def test_position_and_velocity(self):
        est = estimator()
        self.initialize(est)
        epoch = self.scenario.rover()
        self.assertEqual(est.perform_least_squares(epoch), (True, True))

        pvt = epoch.pvt_lsq
        self.assertTrue(pvt.is_position_valid)
        self.assertTrue(pvt.is_velocity_valid)
        self.assertLess(np.linalg.norm(neu_error(pvt.llh, self.scenario.rover_llh)), 1e-2)
        self.assertAlmostEqual(pvt.clock_offset, ROVER_CLOCK, delta=1e-2)
        self.assertAlmostEqual(pvt.clock_drift, ROVER_DRIFT, delta=1e-3)
        self.assertEqual(pvt.nr_psr_used, len(PRNS))
        self.assertEqual(pvt.nr_doppler_used, len(PRNS))
        self.assertEqual(pvt.nr_adr_used, 0)
        self.assertGreater(pvt.dop.pdop, 0.0)
        self.assertGreater(pvt.std_lat, 0.0)
        self.assertEqual(est.lsq_state.time, epoch.time)
        self.assertTrue(all(o.flags.is_psr_used_in_solution for o in epoch.obs))

    def test_failure_keeps_state(self):
        est = estimator()
        self.initialize(est)
        before = est.lsq_state
        epoch = self.scenario.rover(prns=PRNS[:3])
        self.assertEqual(est.perform_least_squares(epoch), (False, False))
        self.assertIs(est.lsq_state, before)
        self.assertFalse(epoch.pvt_lsq.is_position_valid)

    def test_failure_keeps_previous_solution_flags(self):
        est = estimator()
        self.initialize(est)
        epoch = self.scenario.rover()
        self.assertEqual(est.perform_least_squares(epoch), (True, True))
        llh = epoch.pvt_lsq.llh.copy()

        # same record reused for an epoch that cannot be solved
        epoch.tow = TOW + 1
        for obs in epoch.obs[3:]:
            obs.flags.is_psr_valid = False
        self.assertEqual(est.perform_least_squares(epoch), (False, False))
        self.assertTrue(epoch.pvt_lsq.is_position_valid)
        self.assertTrue(epoch.pvt_lsq.is_velocity_valid)
        np.testing.assert_array_equal(epoch.pvt_lsq.llh, llh)

    def test_velocity_failure(self):
        est = estimator()
        self.initialize(est)
        epoch = self.scenario.rover()
        for obs in epoch.obs[:5]:
            obs.flags.is_doppler_valid = False
        self.assertEqual(est.perform_least_squares(epoch), (True, False))
        self.assertFalse(epoch.pvt_lsq.is_velocity_valid)
        self.assertFalse(any(o.flags.is_doppler_used_in_solution for o in epoch.obs))
        self.assertEqual(epoch.pvt_lsq.nr_doppler_used, 0)

    def test_invalid_inputs(self):
        est = estimator()
        self.initialize(est)
        with self.assertLogs('pyrtk.estimator', level='ERROR'):
            self.assertEqual(est.perform_least_squares(None), (False, False))
        # reference epoch without a reference position
        with self.assertLogs('pyrtk.estimator', level='ERROR'):
            self.assertEqual(est.perform_least_squares(self.scenario.rover(), self.scenario.base()),
                             (False, False))

    def test_differential_only(self):
        est = estimator(use_only_differential=True)
        self.initialize_differential(est)
        self.assertEqual(est.perform_least_squares(self.scenario.rover()), (False, False))
        self.assertFalse(est.kalman_update(self.scenario.rover()))

        epoch = self.scenario.rover()
        self.assertEqual(est.perform_least_squares(epoch, self.scenario.base()), (True, True))
        self.assertAlmostEqual(epoch.pvt_lsq.clock_offset, ROVER_CLOCK - BASE_CLOCK, delta=1e-2)
        self.assertLess(np.linalg.norm(neu_error(epoch.pvt_lsq.llh, self.scenario.rover_llh)),
                        1e-2)

    def test_differential_skips_unmatched(self):
        est = estimator()
        self.initialize_differential(est)
        epoch = self.scenario.rover()
        self.assertEqual(est.perform_least_squares(epoch, self.scenario.base(prns=PRNS[1:])),
                         (True, True))
        self.assertEqual(epoch.pvt_lsq.nr_psr_used, len(PRNS) - 1)
        self.assertFalse(find_obs(epoch, PRNS[0]).flags.is_psr_used_in_solution)


class TestKalmanUpdate(EstimatorTestCase):

    def run_epochs(self, est, count, differential=False):
        epochs = []
        for k in range(count):
            rover = self.scenario.rover(tow=TOW + k)
            base = self.scenario.base(tow=TOW + k) if differential else None
            est.perform_least_squares(rover, base)
            self.assertTrue(est.kalman_update(rover, base))
            epochs.append(rover)
        return epochs

    def test_lsq_only(self):
        est = estimator(FilterType.LSQ)
        self.initialize(est)
        with self.assertLogs('pyrtk.estimator', level='ERROR'):
            self.assertFalse(est.kalman_update(self.scenario.rover()))

    def test_ekf(self):
        est = estimator()
        self.initialize(est)
        epoch = self.run_epochs(est, 3)[-1]
        pvt = epoch.pvt
        self.assertTrue(pvt.is_position_valid)
        self.assertTrue(pvt.is_velocity_valid)
        self.assertLess(np.linalg.norm(neu_error(pvt.llh, self.scenario.rover_llh)), 1e-2)
        self.assertAlmostEqual(pvt.clock_offset, ROVER_CLOCK, delta=0.1)
        self.assertEqual(pvt.nr_psr_used, len(PRNS))
        self.assertEqual(pvt.nr_doppler_used, len(PRNS))
        self.assertEqual(pvt.nr_adr_used, 0)
        self.assertGreater(pvt.dop.hdop, 0.0)
        self.assertEqual(est.filter_state.time, epoch.time)

    def test_noisy_static_convergence(self):
        """Ten clean noisy epochs: LSQ within 5 m, position variance never grows"""
        self.scenario = Scenario(seed=1)
        est = estimator()
        self.initialize(est)
        traces = []
        for k in range(10):
            rover = self.scenario.rover(tow=TOW + k)
            self.assertEqual(est.perform_least_squares(rover), (True, True))
            err = neu_error(rover.pvt_lsq.llh, self.scenario.rover_llh)
            self.assertLess(np.linalg.norm(err), 5.0)
            self.assertTrue(est.kalman_update(rover))
            P = est.filter.covariance(est.filter_state)
            traces.append(np.trace(P[:3, :3]))
        for before, after in zip(traces, traces[1:]):
            self.assertLessEqual(after, before + 1e-9)
        self.assertLess(traces[-1], traces[0])

    def test_four_state(self):
        est = estimator(eight_state=False)
        self.initialize(est)
        epoch = self.run_epochs(est, 2)[-1]
        self.assertFalse(epoch.pvt.is_velocity_valid)
        self.assertEqual(epoch.pvt.nr_doppler_used, 0)
        self.assertEqual(est.filter_state.x.shape, (4,))

    def test_start_from_initial_position(self):
        est = estimator()
        lat, lon, hgt = self.scenario.rover_llh
        est.initialize(lat, lon, hgt, 10.0, 10.0, 10.0)
        epoch = self.scenario.rover()
        self.assertTrue(est.kalman_update(epoch))
        self.assertLess(np.linalg.norm(neu_error(epoch.pvt.llh, self.scenario.rover_llh)), 1.0)

    def test_cannot_start(self):
        est = estimator()
        with self.assertLogs('pyrtk.estimator', level='WARNING'):
            self.assertFalse(est.kalman_update(self.scenario.rover()))
        self.assertFalse(est.filter_state.initialized)

    def test_old_epoch_rejected(self):
        est = estimator()
        self.initialize(est)
        self.run_epochs(est, 2)
        state = est.filter_state
        with self.assertLogs('pyrtk.estimator', level='WARNING'):
            self.assertFalse(est.kalman_update(self.scenario.rover(tow=TOW)))
        self.assertIs(est.filter_state, state)

    def test_failed_update_keeps_state(self):
        est = estimator()
        self.initialize(est)
        self.run_epochs(est, 1)
        state = est.filter_state
        x = state.x.copy()
        with self.assertLogs('pyrtk.estimator', level='WARNING'):
            self.assertFalse(est.kalman_update(self.scenario.rover(tow=TOW + 1, prns=PRNS[:3])))
        self.assertIs(est.filter_state, state)
        np.testing.assert_array_equal(est.filter_state.x, x)

    def test_rtk_needs_reference_epoch(self):
        est = estimator(FilterType.RTK_SD)
        self.initialize_differential(est)
        rover = self.scenario.rover()
        est.perform_least_squares(rover)
        with self.assertLogs('pyrtk.estimator', level='WARNING'):
            self.assertFalse(est.kalman_update(rover))

    def test_rtk_sd(self):
        est = estimator(FilterType.RTK_SD)
        self.initialize_differential(est)
        epoch = self.run_epochs(est, 3, differential=True)[-1]
        pvt = epoch.pvt
        self.assertLess(np.linalg.norm(neu_error(pvt.llh, self.scenario.rover_llh)), 1e-2)
        self.assertAlmostEqual(pvt.clock_offset, ROVER_CLOCK - BASE_CLOCK, delta=0.1)
        self.assertEqual(pvt.nr_adr_used, len(PRNS))
        for obs, n_r, n_b in zip(epoch.obs, self.scenario.rover_ambiguities,
                                 self.scenario.base_ambiguities):
            self.assertAlmostEqual(obs.ambiguity, n_r - n_b, delta=1e-2)
            self.assertTrue(obs.flags.is_adr_used_in_solution)

    def test_rtk_sd_without_process_noise(self):
        """A static rover with zero process noise keeps updating"""
        est = estimator(FilterType.RTK_SD, eight_state=False,
                        random_walk=RandomWalkModel(0.0, 0.0, 0.0, 0.0),
                        ambiguity_process_noise=0.0)
        self.initialize_differential(est)
        epoch = self.run_epochs(est, 3, differential=True)[-1]
        self.assertLess(np.linalg.norm(neu_error(epoch.pvt.llh, self.scenario.rover_llh)), 1e-2)
        self.assertEqual(est.filter_state.time, epoch.time)

    def test_rtk_dd(self):
        est = estimator(FilterType.RTK_DD)
        self.initialize_differential(est)
        epoch = self.run_epochs(est, 3, differential=True)[-1]
        pvt = epoch.pvt
        self.assertLess(np.linalg.norm(neu_error(pvt.llh, self.scenario.rover_llh)), 1e-2)
        self.assertEqual(pvt.nr_psr_used, len(PRNS))
        self.assertEqual(pvt.nr_adr_used, len(PRNS))
        self.assertTrue(find_obs(epoch, 2).flags.is_base_satellite)

        misclosures = est.get_misclosures(epoch)
        self.assertEqual(len(misclosures), len(PRNS))
        for values in misclosures.values():
            self.assertAlmostEqual(values['adr_dd'], 0.0, delta=1e-3)
        residuals = est.get_residuals(epoch)
        for values in residuals.values():
            self.assertAlmostEqual(values['adr_dd'], 0.0, delta=1e-3)
        self.assertEqual(est.filter_state.sub_B.shape, (len(PRNS) - 1, len(PRNS)))


class TestClockJumps(EstimatorTestCase):

    def test_none_epoch(self):
        self.assertFalse(estimator().deal_with_clock_jumps(None))

    def test_millisecond_jump(self):
        est = estimator()
        self.initialize(est)
        self.run_epoch(est)
        clock = est.filter_state.clock
        lsq_clock = est.lsq_state.x[3]

        epoch = self.scenario.epoch(self.scenario.rover_llh, ROVER_CLOCK + MS_JUMP_METERS,
                                    ROVER_DRIFT, tow=TOW + 1)
        epoch.ms_jump_positive = True
        self.assertTrue(est.deal_with_clock_jumps(epoch))
        self.assertAlmostEqual(est.filter_state.clock, clock + MS_JUMP_METERS)
        self.assertAlmostEqual(est.lsq_state.x[3], lsq_clock + MS_JUMP_METERS)

        self.assertTrue(est.kalman_update(epoch))
        self.assertAlmostEqual(epoch.pvt.clock_offset, ROVER_CLOCK + MS_JUMP_METERS, delta=0.1)
        self.assertLess(np.linalg.norm(neu_error(epoch.pvt.llh, self.scenario.rover_llh)), 1e-2)

    def test_arbitrary_jump(self):
        est = estimator()
        self.initialize(est)
        self.run_epoch(est)
        clock = est.filter_state.clock
        epoch = self.scenario.rover(tow=TOW + 1)
        epoch.clock_jump_detected = True
        epoch.clock_jump = -2.0e-6
        est.deal_with_clock_jumps(epoch)
        self.assertAlmostEqual(est.filter_state.clock, clock - 2.0e-6 * CLIGHT)

    def test_reference_jump_cancels(self):
        est = estimator(FilterType.RTK_SD)
        self.initialize_differential(est)
        rover, base = self.scenario.rover(), self.scenario.base()
        est.perform_least_squares(rover, base)
        est.kalman_update(rover, base)
        clock = est.filter_state.clock

        rover, base = self.scenario.rover(tow=TOW + 1), self.scenario.base(tow=TOW + 1)
        rover.ms_jump_negative = True
        base.ms_jump_negative = True
        est.deal_with_clock_jumps(rover, base)
        self.assertEqual(est.filter_state.clock, clock)

        base.ms_jump_negative = False
        est.deal_with_clock_jumps(rover, base)
        self.assertAlmostEqual(est.filter_state.clock, clock - MS_JUMP_METERS)

    def test_uninitialized_filter_untouched(self):
        est = estimator()
        self.initialize(est)
        epoch = self.scenario.rover()
        epoch.ms_jump_positive = True
        est.deal_with_clock_jumps(epoch)
        self.assertEqual(est.filter_state.x[3], 0.0)
        self.assertAlmostEqual(est.lsq_state.x[3], MS_JUMP_METERS)

    def run_epoch(self, est):
        epoch = self.scenario.rover()
        est.perform_least_squares(epoch)
        self.assertTrue(est.kalman_update(epoch))


class TestAccessors(EstimatorTestCase):

    def setUp(self):
        super().setUp()
        self.est = estimator()
        self.initialize(self.est)
        self.epoch = self.scenario.rover()
        self.est.perform_least_squares(self.epoch)

    def test_compute_dop(self):
        pdop = self.epoch.pvt_lsq.dop.pdop
        self.epoch.pvt_lsq.dop.pdop = 0.0
        self.assertTrue(self.est.compute_dop(self.epoch, SolutionSource.LSQ))
        self.assertAlmostEqual(self.est.get_dop(self.epoch, SolutionSource.LSQ).pdop, pdop)
        dop = self.est.get_dop(self.epoch, SolutionSource.LSQ)
        self.assertAlmostEqual(dop.pdop**2, dop.hdop**2 + dop.vdop**2)

    def test_compute_dop_filtered(self):
        self.assertTrue(self.est.compute_dop(self.epoch, SolutionSource.FILTERED))
        self.assertGreater(self.epoch.pvt.dop.gdop, 0.0)

    def test_compute_dop_too_few(self):
        for obs in self.epoch.obs[3:]:
            obs.flags.is_psr_used_in_solution = False
        self.assertFalse(self.est.compute_dop(self.epoch, SolutionSource.LSQ))
        self.assertFalse(self.est.compute_dop(None, SolutionSource.LSQ))

    def test_residuals_and_misclosures(self):
        residuals = self.est.get_residuals(self.epoch)
        misclosures = self.est.get_misclosures(self.epoch)
        self.assertEqual(len(residuals), len(PRNS))
        self.assertEqual(set(residuals), {o.key for o in self.epoch.obs})
        for key, values in residuals.items():
            self.assertEqual(set(values), {'psr', 'doppler', 'adr_sd', 'adr_dd'})
            self.assertAlmostEqual(values['psr'], 0.0, delta=1e-3)
            self.assertIn(key, misclosures)

        self.epoch.obs[0].flags.is_psr_used_in_solution = False
        self.epoch.obs[0].flags.is_doppler_used_in_solution = False
        self.assertNotIn(self.epoch.obs[0].key, self.est.get_residuals(self.epoch))


if __name__ == '__main__':
    unittest.main()
