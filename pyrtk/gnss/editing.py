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

"""Measurement editing: decide which observations enter the solution"""

import logging
from dataclasses import dataclass

import numpy as np

from ..core.constants import D2R
from ..core.data_structures import Observation, ReceiverEpoch
from ..core.options import MaskOptions

logger = logging.getLogger(__name__)


@dataclass
class EditingCounts:
    """Outcome of one editing pass.

    Attributes
    ----------
    available : int
        Observations that carry a valid measurement of the kind edited
    used : int
        Observations flagged as used in the solution
    rejected : int
        Available observations that failed a mask or a rejection flag
    """
    available: int = 0
    used: int = 0
    rejected: int = 0


def apply_masks(obs: Observation, masks: MaskOptions):
    """Set the elevation, CNo, locktime and user rejection flags"""
    f = obs.flags
    f.is_above_elevation_mask = obs.satellite.elevation >= masks.elevation_mask * D2R
    f.is_above_cno_mask = obs.cno >= masks.cno_mask
    f.is_above_locktime_mask = obs.locktime >= masks.locktime_mask
    if obs.id in masks.excluded_satellites:
        f.is_not_user_rejected = False


def _above_masks(obs: Observation) -> bool:
    f = obs.flags
    return f.is_above_elevation_mask and f.is_above_cno_mask and f.is_above_locktime_mask


def is_psr_usable(obs: Observation) -> bool:
    """Pseudorange usability from the tracking state, rejection flags and masks"""
    f = obs.flags
    return (f.is_code_locked and f.is_psr_valid and f.is_ephemeris_valid
            and f.is_not_user_rejected and f.is_not_psr_rejected
            and np.isfinite(obs.psr) and _above_masks(obs))


def is_doppler_usable(obs: Observation) -> bool:
    f = obs.flags
    return (is_psr_usable(obs) and f.is_doppler_valid and f.is_not_doppler_rejected
            and np.isfinite(obs.doppler))


def is_adr_usable(obs: Observation) -> bool:
    f = obs.flags
    return (is_psr_usable(obs) and f.is_phase_locked and f.is_parity_valid
            and f.is_adr_valid and f.is_not_adr_rejected
            and np.isfinite(obs.adr) and obs.wavelength > 0.0)


def _edit(epoch: ReceiverEpoch, masks: MaskOptions, kind: str):
    counts = EditingCounts()
    if epoch is None or epoch.obs is None:
        logger.warning(f"Cannot edit {kind} measurements: no epoch")
        return False, counts

    for obs in epoch.obs:
        apply_masks(obs, masks)
        f = obs.flags
        if kind == "psr":
            available = f.is_code_locked and f.is_psr_valid
            usable = is_psr_usable(obs)
            f.is_psr_used_in_solution = usable
        elif kind == "doppler":
            available = f.is_code_locked and f.is_doppler_valid
            usable = is_doppler_usable(obs)
            f.is_doppler_used_in_solution = usable
        else:
            available = f.is_phase_locked and f.is_adr_valid
            usable = is_adr_usable(obs)
            f.is_adr_used_in_solution = usable

        if available:
            counts.available += 1
            if usable:
                counts.used += 1
            else:
                counts.rejected += 1

    logger.debug(f"{kind} editing at {epoch.tow:.3f}: available={counts.available} "
                 f"used={counts.used} rejected={counts.rejected}")
    return True, counts


def determine_usable_pseudoranges(epoch: ReceiverEpoch, masks: MaskOptions):
    """Flag the pseudoranges that enter the solution.

    A pseudorange is used when the code is locked, the measurement and the
    ephemeris are valid, it was neither rejected by the user nor by fault
    detection, and the satellite is above the elevation, CNo and locktime
    masks.

    Parameters
    ----------
    epoch : ReceiverEpoch
        Epoch to edit in place
    masks : MaskOptions
        Masks and excluded satellites

    Returns
    -------
    ok : bool
        False only when the epoch is missing
    counts : EditingCounts
        Available / used / rejected counts
    """
    return _edit(epoch, masks, "psr")


def determine_usable_dopplers(epoch: ReceiverEpoch, masks: MaskOptions):
    """Flag the Dopplers that enter the solution (pseudorange criteria plus
    a valid, non-rejected Doppler)."""
    return _edit(epoch, masks, "doppler")


def determine_usable_adr(epoch: ReceiverEpoch, masks: MaskOptions):
    """Flag the carrier phases that enter the solution (pseudorange criteria
    plus phase lock, known parity and a valid, non-rejected ADR)."""
    return _edit(epoch, masks, "adr")
