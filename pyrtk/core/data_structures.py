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

"""Core data structures for per-epoch GNSS estimation"""

from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from .constants import FREQ_TYPE_L1, SYS_GPS, wavelength
from .stats import STD_ADR, STD_DOPPLER, STD_PSR


class SolutionSource(Enum):
    """Which PVT record of a receiver epoch an operation reads and writes.

    Attributes
    ----------
    LSQ : str
        The least squares solution, ``ReceiverEpoch.pvt_lsq``
    FILTERED : str
        The recursive filter solution, ``ReceiverEpoch.pvt``
    """
    LSQ = "lsq"
    FILTERED = "filtered"


@dataclass
class DOP:
    """Dilution of precision values for one epoch."""
    gdop: float = 0.0
    pdop: float = 0.0
    hdop: float = 0.0
    vdop: float = 0.0
    tdop: float = 0.0
    ndop: float = 0.0
    edop: float = 0.0


@dataclass
class PVT:
    """Position, velocity and time solution.

    Attributes
    ----------
    latitude : float
        Geodetic latitude (rad)
    longitude : float
        Geodetic longitude (rad)
    height : float
        Height above the WGS84 ellipsoid (m)
    vn, ve, vup : float
        North, east and up velocity (m/s)
    clock_offset : float
        Receiver clock offset (m). Between-receiver differential clock
        offset when the solution was computed with a reference epoch.
    clock_drift : float
        Receiver clock drift (m/s)
    std_lat, std_lon, std_hgt : float
        One-sigma position uncertainty in north, east and up (m)
    std_vn, std_ve, std_vup : float
        One-sigma velocity uncertainty (m/s)
    std_clk, std_clkdrift : float
        One-sigma clock offset (m) and drift (m/s) uncertainty
    dop : DOP
        Dilution of precision for the solution
    nr_psr_used, nr_doppler_used, nr_adr_used : int
        Number of observations used
    apvf : float
        A-posteriori variance factor of the last solve
    is_position_valid, is_velocity_valid : bool
        Whether the last solve produced a position / velocity
    """
    latitude: float = 0.0
    longitude: float = 0.0
    height: float = 0.0
    vn: float = 0.0
    ve: float = 0.0
    vup: float = 0.0
    clock_offset: float = 0.0
    clock_drift: float = 0.0

    std_lat: float = 0.0
    std_lon: float = 0.0
    std_hgt: float = 0.0
    std_vn: float = 0.0
    std_ve: float = 0.0
    std_vup: float = 0.0
    std_clk: float = 0.0
    std_clkdrift: float = 0.0

    dop: DOP = field(default_factory=DOP)

    nr_psr_used: int = 0
    nr_doppler_used: int = 0
    nr_adr_used: int = 0
    apvf: float = 0.0

    is_position_valid: bool = False
    is_velocity_valid: bool = False

    @property
    def llh(self) -> np.ndarray:
        """Geodetic position [lat, lon, height]."""
        return np.array([self.latitude, self.longitude, self.height])

    @property
    def velocity_neu(self) -> np.ndarray:
        """Local-level velocity [vn, ve, vup]."""
        return np.array([self.vn, self.ve, self.vup])

    def copy(self) -> "PVT":
        """Return a copy that shares no mutable state with this record."""
        return PVT(**{**self.__dict__, "dop": DOP(**self.dop.__dict__)})


@dataclass
class ObservationFlags:
    """Usability flags of one observation.

    The receiver tracking state (lock, validity) is supplied with the
    observation; the masks and the ``*_used_in_solution`` flags are set by
    measurement editing, and the differential flags by the between-receiver
    differential index.
    """
    is_code_locked: bool = True
    is_phase_locked: bool = True
    is_parity_valid: bool = True
    is_psr_valid: bool = True
    is_doppler_valid: bool = True
    is_adr_valid: bool = True
    is_ephemeris_valid: bool = True

    is_not_user_rejected: bool = True
    is_not_psr_rejected: bool = True
    is_not_doppler_rejected: bool = True
    is_not_adr_rejected: bool = True

    is_above_elevation_mask: bool = False
    is_above_cno_mask: bool = False
    is_above_locktime_mask: bool = False

    is_psr_used_in_solution: bool = False
    is_doppler_used_in_solution: bool = False
    is_adr_used_in_solution: bool = False

    is_differential_psr_available: bool = False
    is_differential_doppler_available: bool = False
    is_differential_adr_available: bool = False

    is_base_satellite: bool = False


@dataclass
class SatelliteState:
    """Satellite quantities supplied by the ephemeris service.

    Attributes
    ----------
    position : np.ndarray
        Satellite ECEF position at transmit time (m), shape (3,)
    velocity : np.ndarray
        Satellite ECEF velocity (m/s), shape (3,)
    clock_offset : float
        Satellite clock offset times the speed of light (m)
    clock_drift : float
        Satellite clock drift times the speed of light (m/s)
    elevation : float
        Elevation angle seen from the receiver (rad), computed here
    azimuth : float
        Azimuth angle seen from the receiver (rad), computed here
    """
    position: np.ndarray = field(default_factory=lambda: np.zeros(3))
    velocity: np.ndarray = field(default_factory=lambda: np.zeros(3))
    clock_offset: float = 0.0
    clock_drift: float = 0.0
    elevation: float = 0.0
    azimuth: float = 0.0


@dataclass
class Corrections:
    """Atmospheric delays supplied by the correction models (m)."""
    tropo_dry: float = 0.0
    tropo_wet: float = 0.0
    iono: float = 0.0

    @property
    def tropo(self) -> float:
        return self.tropo_dry + self.tropo_wet


@dataclass
class Observation:
    """GNSS observation of a single satellite on a single channel.

    Attributes
    ----------
    channel : int
        Receiver channel number
    id : int
        Satellite id within its system (PRN for GPS)
    system : int
        Satellite system (SYS_GPS, ...)
    freq_type : int
        Frequency type (FREQ_TYPE_L1, ...)
    psr : float
        Pseudorange (m)
    doppler : float
        Doppler (Hz), positive when the satellite approaches
    adr : float
        Accumulated Doppler range (cycles), increasing with range
    stdev_psr, stdev_doppler, stdev_adr : float
        Measurement standard deviations (m, Hz, cycles)
    cno : float
        Carrier-to-noise density ratio (dB-Hz)
    locktime : float
        Time the carrier has been continuously tracked (s)

    Notes
    -----
    ``index_differential`` points into the reference epoch's observation
    list, ``index_ambiguity_state`` / ``index_ambiguity_state_dd`` into the
    RTK filter state vector. All are -1 when not applicable.
    """
    channel: int
    id: int
    system: int = SYS_GPS
    freq_type: int = FREQ_TYPE_L1

    psr: float = 0.0
    doppler: float = 0.0
    adr: float = 0.0
    stdev_psr: float = STD_PSR
    stdev_doppler: float = STD_DOPPLER
    stdev_adr: float = STD_ADR
    cno: float = 45.0
    locktime: float = 0.0

    flags: ObservationFlags = field(default_factory=ObservationFlags)
    satellite: SatelliteState = field(default_factory=SatelliteState)
    corrections: Corrections = field(default_factory=Corrections)

    # geometry at the current estimate
    range: float = 0.0
    range_rate: float = 0.0
    h_p: np.ndarray = field(default_factory=lambda: np.zeros(3))  # design row (north, east, up)

    # misclosures (measured minus computed)
    psr_misclosure: float = 0.0
    doppler_misclosure: float = 0.0
    adr_misclosure: float = 0.0
    adr_misclosure_dd: float = 0.0

    # post-fit residuals
    psr_residual: float = 0.0
    doppler_residual: float = 0.0
    adr_residual_sd: float = 0.0
    adr_residual_dd: float = 0.0

    # ambiguities (cycles)
    ambiguity: float = 0.0
    ambiguity_dd: float = 0.0

    index_differential: int = -1
    index_ambiguity_state: int = -1
    index_ambiguity_state_dd: int = -1

    @property
    def key(self) -> tuple:
        """Identity of the tracked signal: (system, channel, id, freq_type)."""
        return (self.system, self.channel, self.id, self.freq_type)

    @property
    def wavelength(self) -> float:
        """Carrier wavelength (m)."""
        return wavelength(self.system, self.freq_type)

    @property
    def measured_range_rate(self) -> float:
        """Range rate implied by the Doppler measurement (m/s)."""
        return -self.doppler * self.wavelength

    def reset_solution_flags(self):
        """Clear the flags set by editing and differencing."""
        f = self.flags
        f.is_psr_used_in_solution = False
        f.is_doppler_used_in_solution = False
        f.is_adr_used_in_solution = False
        f.is_differential_psr_available = False
        f.is_differential_doppler_available = False
        f.is_differential_adr_available = False
        f.is_base_satellite = False
        self.index_differential = -1


@dataclass
class ReceiverEpoch:
    """All receiver data of one measurement epoch.

    The caller owns the epoch; the estimator borrows it for the duration of
    one call and writes flags, misclosures, residuals and the PVT records in
    place.

    Attributes
    ----------
    week : int
        GPS week
    tow : float
        GPS time of week (s)
    obs : list[Observation]
        Observations in channel order
    max_age_ephemeris : float
        Maximum ephemeris age accepted by the ephemeris service (s)
    pvt_lsq : PVT
        Least squares solution
    pvt : PVT
        Filtered solution
    ms_jump_positive, ms_jump_negative : bool
        Receiver millisecond clock jump indicators
    clock_jump_detected : bool
        Arbitrary receiver clock jump indicator
    clock_jump : float
        Size of the arbitrary clock jump (s)
    """
    week: int = 0
    tow: float = 0.0
    obs: list[Observation] = field(default_factory=list)
    max_age_ephemeris: float = 7200.0
    pvt_lsq: PVT = field(default_factory=PVT)
    pvt: PVT = field(default_factory=PVT)

    ms_jump_positive: bool = False
    ms_jump_negative: bool = False
    clock_jump_detected: bool = False
    clock_jump: float = 0.0

    @property
    def time(self) -> float:
        """Continuous GPS time (s)."""
        return self.week * 604800.0 + self.tow

    def pvt_for(self, source: SolutionSource) -> PVT:
        """Return the PVT record selected by ``source``."""
        if source is SolutionSource.LSQ:
            return self.pvt_lsq
        return self.pvt

    def set_pvt(self, source: SolutionSource, pvt: PVT):
        """Replace the PVT record selected by ``source``."""
        if source is SolutionSource.LSQ:
            self.pvt_lsq = pvt
        else:
            self.pvt = pvt


@dataclass
class AmbiguityInfo:
    """Bookkeeping of one carrier ambiguity held in a filter state.

    Attributes
    ----------
    channel : int
        Receiver channel
    id : int
        Satellite id (PRN)
    system : int
        Satellite system
    freq_type : int
        Frequency type
    state_index : int
        Row/column of the single difference filter state, -1 if not estimated
    state_index_dd : int
        Row/column of the double difference filter state, -1 if not estimated
    sequence : int
        Insertion counter, smaller is older
    """
    channel: int = 0
    id: int = 0
    system: int = SYS_GPS
    freq_type: int = FREQ_TYPE_L1
    state_index: int = -1
    state_index_dd: int = -1
    sequence: int = 0

    @property
    def key(self) -> tuple:
        return (self.system, self.channel, self.id, self.freq_type)
