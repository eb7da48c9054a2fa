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

"""GNSS Constants and System Parameters"""

import numpy as np

# Physical Constants
CLIGHT = 299792458.0  # speed of light (m/s)

# GPS frequencies
FREQ_L1 = 1.57542E9   # L1 frequency (Hz)
FREQ_L2 = 1.22760E9   # L2 frequency (Hz)
FREQ_L5 = 1.17645E9   # L5 frequency (Hz)

# Wavelengths
WAVELENGTH_L1 = CLIGHT / FREQ_L1  # GPS L1 carrier wavelength (m)
WAVELENGTH_L2 = CLIGHT / FREQ_L2  # GPS L2 carrier wavelength (m)
WAVELENGTH_L5 = CLIGHT / FREQ_L5  # GPS L5 carrier wavelength (m)

# Earth Parameters (WGS84)
RE_WGS84 = 6378137.0           # earth semimajor axis (m)
FE_WGS84 = 1.0 / 298.257223563 # earth flattening
E2_WGS84 = FE_WGS84 * (2.0 - FE_WGS84)  # first eccentricity squared
OMGE = 7.2921151467E-5         # earth angular velocity (rad/s)

D2R = np.pi / 180.0            # degrees to radians

# GNSS System IDs
SYS_GPS = 0x01    # GPS
SYS_GLO = 0x02    # GLONASS
SYS_GAL = 0x04    # Galileo
SYS_BDS = 0x08    # BeiDou
SYS_QZS = 0x10    # QZSS
SYS_SBS = 0x20    # SBAS

# Frequency types
FREQ_TYPE_L1 = 0
FREQ_TYPE_L2 = 1
FREQ_TYPE_L5 = 2

# State vector layout (local-level north/east/up error states)
STATE_NORTH = 0
STATE_EAST = 1
STATE_UP = 2
STATE_CLOCK = 3
STATE_VNORTH = 4
STATE_VEAST = 5
STATE_VUP = 6
STATE_CLOCK_DRIFT = 7

NX_POSITION = 4   # north, east, up, clock offset
NX_PV = 8         # + vnorth, veast, vup, clock drift

# Receiver clock jump size for a millisecond jump (m)
MS_JUMP_METERS = 1.0E-3 * CLIGHT

# Maximum number of tracked channels (ambiguity arena capacity)
MAX_CHANNELS = 24


# carrier wavelength per (system, frequency type); GLONASS FDMA wavelengths
# depend on the frequency channel and are not tabulated
_WAVELENGTHS = {
    (sys, ft): lam
    for sys in (SYS_GPS, SYS_GAL, SYS_QZS, SYS_SBS)
    for ft, lam in ((FREQ_TYPE_L1, WAVELENGTH_L1), (FREQ_TYPE_L2, WAVELENGTH_L2),
                    (FREQ_TYPE_L5, WAVELENGTH_L5))
}

_SYSTEM_LETTERS = {SYS_GPS: "G", SYS_GLO: "R", SYS_GAL: "E", SYS_BDS: "C", SYS_QZS: "J", SYS_SBS: "S"}


def wavelength(system: int, freq_type: int) -> float:
    """Carrier wavelength (m) of a signal, 0.0 when it has no fixed wavelength"""
    return _WAVELENGTHS.get((system, freq_type), 0.0)


def sys2char(sys: int) -> str:
    """One-letter RINEX system identifier, blank if unknown"""
    return _SYSTEM_LETTERS.get(sys, " ")
