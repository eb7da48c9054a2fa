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
Receiver-satellite geometry.

Ranges, range rates, line-of-sight vectors and look angles are computed at
the current receiver estimate and stored on each observation. This module
also pairs rover and reference observations of the same satellite and
selects the base satellite of the double differences.
"""

import logging
from typing import Optional

import numpy as np

from ..coordinate.transforms import ecef2neu_dcm, llh2ecef, neu2ecef_velocity
from ..core.constants import CLIGHT, OMGE
from ..core.data_structures import Observation, ReceiverEpoch
from .editing import is_adr_usable, is_doppler_usable, is_psr_usable

logger = logging.getLogger(__name__)


def sagnac_correction(sat_pos, rec_pos):
    """Earth rotation correction of the geometric range (m)"""
    return (OMGE / CLIGHT) * (sat_pos[0] * rec_pos[1] - sat_pos[1] * rec_pos[0])


def sagnac_rate(sat_pos, sat_vel, rec_pos, rec_vel):
    """Time derivative of the Sagnac correction (m/s)"""
    return (OMGE / CLIGHT) * (sat_vel[0] * rec_pos[1] + sat_pos[0] * rec_vel[1]
                              - sat_vel[1] * rec_pos[0] - sat_pos[1] * rec_vel[0])


def compute_geometry(obs: Observation, llh: np.ndarray,
                     vel_neu: Optional[np.ndarray] = None):
    """Compute range, range rate, look angles and the design row of one
    observation at the receiver position ``llh``.

    The line-of-sight unit vector ``e`` points from the receiver to the
    satellite; the stored design row is ``-e`` in north/east/up.
    """
    rec_pos = llh2ecef(llh)
    rec_vel = np.zeros(3) if vel_neu is None else neu2ecef_velocity(vel_neu, llh)
    sat_pos = np.asarray(obs.satellite.position, dtype=np.float64)
    sat_vel = np.asarray(obs.satellite.velocity, dtype=np.float64)

    diff = sat_pos - rec_pos
    rho = np.linalg.norm(diff)
    if rho <= 0.0:
        raise ValueError(f"Degenerate geometry for satellite {obs.id}")
    e_ecef = diff / rho
    e_neu = ecef2neu_dcm(llh) @ e_ecef

    obs.range = rho + sagnac_correction(sat_pos, rec_pos)
    obs.range_rate = e_ecef @ (sat_vel - rec_vel) + sagnac_rate(sat_pos, sat_vel, rec_pos, rec_vel)
    obs.h_p = -e_neu
    obs.satellite.elevation = np.arcsin(np.clip(e_neu[2], -1.0, 1.0))
    obs.satellite.azimuth = np.arctan2(e_neu[1], e_neu[0]) % (2.0 * np.pi)


def update_epoch_geometry(epoch: ReceiverEpoch, llh: np.ndarray,
                          vel_neu: Optional[np.ndarray] = None):
    """Compute the geometry of every observation with a valid ephemeris"""
    for obs in epoch.obs:
        if obs.flags.is_ephemeris_valid:
            compute_geometry(obs, llh, vel_neu)


def match_reference(epoch: ReceiverEpoch, base_epoch: Optional[ReceiverEpoch]) -> int:
    """Pair rover observations with the reference observations of the same
    signal and set the differential availability flags.

    Channels are receiver specific, so signals are matched on
    (system, id, freq_type). A measurement is differentially available when
    both receivers' measurements are usable.

    Returns
    -------
    int
        Number of rover observations with a reference counterpart
    """
    for obs in epoch.obs:
        f = obs.flags
        obs.index_differential = -1
        f.is_differential_psr_available = False
        f.is_differential_doppler_available = False
        f.is_differential_adr_available = False
    if base_epoch is None:
        return 0

    lookup = {(b.system, b.id, b.freq_type): i for i, b in enumerate(base_epoch.obs)}
    matched = 0
    for obs in epoch.obs:
        i = lookup.get((obs.system, obs.id, obs.freq_type))
        if i is None:
            continue
        base = base_epoch.obs[i]
        obs.index_differential = i
        matched += 1
        f = obs.flags
        f.is_differential_psr_available = is_psr_usable(base)
        f.is_differential_doppler_available = is_doppler_usable(base)
        f.is_differential_adr_available = is_adr_usable(base)
    logger.debug(f"Matched {matched}/{len(epoch.obs)} observations with the reference epoch")
    return matched


def is_dd_candidate(obs: Observation) -> bool:
    """Whether an observation can take part in the carrier phase double
    differences"""
    f = obs.flags
    return (f.is_psr_used_in_solution and f.is_differential_psr_available
            and f.is_adr_used_in_solution and f.is_differential_adr_available)


def select_base_satellite(epoch: ReceiverEpoch, allowed: Optional[set] = None) -> int:
    """Select the double difference base satellite.

    The highest-elevation candidate is chosen, ties going to the lowest
    channel. The ``is_base_satellite`` flag is set on the chosen observation
    and cleared on the others.

    Parameters
    ----------
    epoch : ReceiverEpoch
        Rover epoch after editing and reference matching
    allowed : Optional[set]
        Indices into ``epoch.obs`` eligible as base (all candidates if None)

    Returns
    -------
    int
        Index into ``epoch.obs``, -1 if no candidate exists
    """
    best = -1
    for i, obs in enumerate(epoch.obs):
        obs.flags.is_base_satellite = False
        if not is_dd_candidate(obs) or (allowed is not None and i not in allowed):
            continue
        if best < 0:
            best = i
            continue
        cur = epoch.obs[best]
        el, el_best = obs.satellite.elevation, cur.satellite.elevation
        if el > el_best or (el == el_best and obs.channel < cur.channel):
            best = i
    if best >= 0:
        epoch.obs[best].flags.is_base_satellite = True
    return best
