"""Synthetic GPS L1 constellation for estimator tests.

Observations are generated with the same range, range-rate and atmosphere
model the estimator uses, so noiseless epochs have zero misclosures at the
true position.
"""

from dataclasses import replace

import numpy as np

from pyrtk.coordinate.transforms import (
    apply_neu_correction,
    ecef2neu_dcm,
    llh2ecef,
    llh_difference_neu,
    neu2ecef_velocity,
)
from pyrtk.core.constants import WAVELENGTH_L1
from pyrtk.core.data_structures import Corrections, Observation, ReceiverEpoch, SatelliteState
from pyrtk.gnss.geometry import sagnac_correction, sagnac_rate

# Tokyo
ROVER_LLH = np.array([np.radians(35.6762), np.radians(139.6503), 40.0])
# about 940 m from the rover
BASE_LLH = apply_neu_correction(ROVER_LLH, np.array([-800.0, 500.0, -5.0]))

# (azimuth, elevation) in degrees as seen from the rover
SKY = [(0.0, 80.0), (45.0, 30.0), (100.0, 55.0), (160.0, 20.0),
       (210.0, 45.0), (260.0, 15.0), (300.0, 60.0), (340.0, 35.0)]
PRNS = [2, 5, 7, 12, 15, 19, 24, 30]

WEEK = 2200
TOW = 345600.0

ROVER_CLOCK = 1.5e4     # m
BASE_CLOCK = -3.2e3     # m
ROVER_DRIFT = 12.0      # m/s
BASE_DRIFT = -4.0       # m/s


def satellite_states(llh=ROVER_LLH, sky=SKY):
    """Satellite states placed along the given look angles"""
    rec = llh2ecef(llh)
    C = ecef2neu_dcm(llh)
    sats = []
    for k, (az, el) in enumerate(sky):
        az, el = np.radians(az), np.radians(el)
        e_neu = np.array([np.cos(el) * np.cos(az), np.cos(el) * np.sin(az), np.sin(el)])
        pos = rec + (20.2e6 + 1.0e5 * k) * (C.T @ e_neu)
        along = np.cross([0.0, 0.0, 1.0], pos)
        vel = 2.6e3 * along / np.linalg.norm(along)
        sats.append(SatelliteState(position=pos, velocity=vel,
                                   clock_offset=50.0 * (k + 1), clock_drift=0.01 * k))
    return sats


class Scenario:
    """Rover/base pair observing one static constellation

    Parameters
    ----------
    rover_llh, base_llh : np.ndarray
        True receiver positions
    seed : int, optional
        Seed of the measurement noise; noiseless if None
    """

    def __init__(self, rover_llh=ROVER_LLH, base_llh=BASE_LLH, seed=None):
        self.rover_llh = np.array(rover_llh, dtype=np.float64)
        self.base_llh = np.array(base_llh, dtype=np.float64)
        self.satellites = satellite_states(self.rover_llh)
        self.rng = np.random.default_rng(seed) if seed is not None else None
        self.rover_ambiguities = [1000.0 + 37.0 * k for k in range(len(PRNS))]
        self.base_ambiguities = [500.0 + 11.0 * k for k in range(len(PRNS))]

    def _noise(self, std):
        return 0.0 if self.rng is None else float(self.rng.normal(0.0, std))

    def epoch(self, llh, clock, drift=0.0, vel_neu=None, tow=TOW,
              ambiguities=None, prns=None) -> ReceiverEpoch:
        """Observations of a receiver at ``llh`` with clock offset ``clock``
        (m) and drift ``drift`` (m/s)"""
        rec = llh2ecef(llh)
        rec_vel = np.zeros(3) if vel_neu is None else neu2ecef_velocity(np.asarray(vel_neu), llh)
        lam = WAVELENGTH_L1
        obs_list = []
        for k, (prn, sat) in enumerate(zip(PRNS, self.satellites)):
            if prns is not None and prn not in prns:
                continue
            diff = sat.position - rec
            rho = np.linalg.norm(diff)
            rng = rho + sagnac_correction(sat.position, rec)
            rate = (diff / rho) @ (sat.velocity - rec_vel) + sagnac_rate(
                sat.position, sat.velocity, rec, rec_vel)
            corr = Corrections(tropo_dry=2.3, tropo_wet=0.1 + 0.01 * k, iono=1.5 + 0.2 * k)
            N = 0.0 if ambiguities is None else ambiguities[k]

            psr = rng - sat.clock_offset + clock + corr.tropo + corr.iono
            adr = (rng - sat.clock_offset + clock + corr.tropo - corr.iono) / lam + N
            doppler = -(rate - sat.clock_drift + drift) / lam

            obs = Observation(channel=k, id=prn,
                              psr=psr + self._noise(0.8),
                              doppler=doppler + self._noise(0.09),
                              adr=adr + self._noise(0.03),
                              cno=45.0, locktime=100.0,
                              satellite=replace(sat), corrections=corr)
            obs_list.append(obs)
        return ReceiverEpoch(week=WEEK, tow=tow, obs=obs_list)

    def rover(self, tow=TOW, llh=None, **kwargs) -> ReceiverEpoch:
        llh = self.rover_llh if llh is None else llh
        return self.epoch(llh, ROVER_CLOCK, ROVER_DRIFT, tow=tow,
                          ambiguities=self.rover_ambiguities, **kwargs)

    def base(self, tow=TOW, **kwargs) -> ReceiverEpoch:
        return self.epoch(self.base_llh, BASE_CLOCK, BASE_DRIFT, tow=tow,
                          ambiguities=self.base_ambiguities, **kwargs)


def find_obs(epoch: ReceiverEpoch, prn: int) -> Observation:
    return next(o for o in epoch.obs if o.id == prn)


def neu_error(llh, llh_true) -> np.ndarray:
    """North/east/up error of ``llh`` (m)"""
    return llh_difference_neu(llh, llh_true)
