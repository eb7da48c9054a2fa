#!/usr/bin/env python3
"""
Double Difference RTK Example
=============================

This example runs the GNSS estimator on a simulated static rover and base
receiver pair. Each epoch goes through clock jump compensation, a least
squares solution and the double difference RTK filter.

Key concepts:
- Single Difference (SD): rover minus base observation of the same satellite,
  removing the satellite clock and most atmospheric delay
- Double Difference (DD): difference of two single differences against the
  base satellite, removing the receiver clocks
- Float ambiguities: the single difference ambiguities are filter states; the
  double difference ambiguities are reported per satellite
"""

from dataclasses import replace

import numpy as np

from pyrtk import EstimatorOptions, GNSSEstimator, SolutionSource
from pyrtk.coordinate.transforms import (
    apply_neu_correction,
    ecef2neu_dcm,
    llh2ecef,
    llh_difference_neu,
)
from pyrtk.core.constants import WAVELENGTH_L1
from pyrtk.core.data_structures import Corrections, Observation, ReceiverEpoch, SatelliteState
from pyrtk.gnss.geometry import sagnac_correction, sagnac_rate
from pyrtk.logger import setup_logger

logger = setup_logger("pyrtk", level="INFO")

ROVER_LLH = np.array([np.radians(35.6762), np.radians(139.6503), 40.0])
BASE_LLH = apply_neu_correction(ROVER_LLH, np.array([-1200.0, 800.0, -3.0]))
SKY = [(10.0, 75.0), (60.0, 35.0), (120.0, 50.0), (170.0, 25.0),
       (220.0, 40.0), (270.0, 18.0), (310.0, 65.0)]
PRNS = [3, 6, 9, 14, 17, 22, 28]


def simulate_satellites():
    """Satellite states along fixed look angles from the rover"""
    rec = llh2ecef(ROVER_LLH)
    C = ecef2neu_dcm(ROVER_LLH)
    sats = []
    for k, (az, el) in enumerate(SKY):
        az, el = np.radians(az), np.radians(el)
        e = np.array([np.cos(el) * np.cos(az), np.cos(el) * np.sin(az), np.sin(el)])
        pos = rec + 20.3e6 * (C.T @ e)
        along = np.cross([0.0, 0.0, 1.0], pos)
        sats.append(SatelliteState(position=pos, velocity=2.6e3 * along / np.linalg.norm(along),
                                   clock_offset=30.0 * k, clock_drift=0.0))
    return sats


def simulate_epoch(rng, sats, llh, clock, drift, ambiguities, tow) -> ReceiverEpoch:
    """Noisy L1 observations of a static receiver"""
    rec = llh2ecef(llh)
    obs_list = []
    for k, (prn, sat) in enumerate(zip(PRNS, sats)):
        diff = sat.position - rec
        rho = np.linalg.norm(diff)
        rng_m = rho + sagnac_correction(sat.position, rec)
        rate = (diff / rho) @ sat.velocity + sagnac_rate(sat.position, sat.velocity, rec,
                                                         np.zeros(3))
        corr = Corrections(tropo_dry=2.3, tropo_wet=0.15, iono=2.0 + 0.1 * k)
        common = rng_m - sat.clock_offset + clock + corr.tropo
        obs_list.append(Observation(
            channel=k, id=prn,
            psr=common + corr.iono + rng.normal(0.0, 0.8),
            adr=(common - corr.iono) / WAVELENGTH_L1 + ambiguities[k] + rng.normal(0.0, 0.02),
            doppler=-(rate - sat.clock_drift + drift) / WAVELENGTH_L1 + rng.normal(0.0, 0.05),
            cno=45.0, locktime=60.0, satellite=replace(sat), corrections=corr))
    return ReceiverEpoch(week=2200, tow=tow, obs=obs_list)


def main():
    rng = np.random.default_rng(42)
    sats = simulate_satellites()
    rover_amb = rng.integers(-5000, 5000, len(PRNS)).astype(float)
    base_amb = rng.integers(-5000, 5000, len(PRNS)).astype(float)

    options = EstimatorOptions.from_dict({
        'filter_type': 'rtk_dd',
        'masks': {'elevation_mask': 10.0},
    })
    estimator = GNSSEstimator(options)
    start = apply_neu_correction(ROVER_LLH, np.array([25.0, -30.0, 10.0]))
    estimator.initialize_differential(BASE_LLH[0], BASE_LLH[1], BASE_LLH[2],
                                      start[0], start[1], start[2], 50.0, 50.0, 50.0)

    for k in range(30):
        tow = 345600.0 + k
        rover = simulate_epoch(rng, sats, ROVER_LLH, 2.0e4 + 5.0 * k, 5.0, rover_amb, tow)
        base = simulate_epoch(rng, sats, BASE_LLH, -1.0e3, 0.0, base_amb, tow)

        estimator.deal_with_clock_jumps(rover, base)
        estimator.perform_least_squares(rover, base)
        if not estimator.kalman_update(rover, base):
            logger.warning(f"Epoch {tow:.0f}: filter not updated")
            continue

        err = llh_difference_neu(rover.pvt.llh, ROVER_LLH)
        lsq_err = llh_difference_neu(rover.pvt_lsq.llh, ROVER_LLH)
        logger.info(f"Epoch {tow:.0f}: RTK error {np.linalg.norm(err):.3f} m, "
                    f"LSQ error {np.linalg.norm(lsq_err):.3f} m, "
                    f"PDOP {estimator.get_dop(rover, SolutionSource.FILTERED).pdop:.2f}")

    base_obs = next(o for o in rover.obs if o.flags.is_base_satellite)
    logger.info(f"Base satellite G{base_obs.id:02d}")
    for obs in rover.obs:
        if obs is base_obs:
            continue
        k = PRNS.index(obs.id)
        true_dd = (rover_amb[k] - base_amb[k]) - (rover_amb[PRNS.index(base_obs.id)]
                                                  - base_amb[PRNS.index(base_obs.id)])
        logger.info(f"G{obs.id:02d}: float DD ambiguity {obs.ambiguity_dd:12.3f}  "
                    f"true {true_dd:8.0f}")


if __name__ == '__main__':
    main()
