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

"""Coordinate transformation utilities"""


import numpy as np

from ..core.constants import E2_WGS84, RE_WGS84


ECEF2LLH_TOLERANCE = 1.0e-12    # rad
ECEF2LLH_MAX_ITER = 10


def ecef2llh(xyz: np.ndarray) -> np.ndarray:
    """Convert ECEF coordinates to geodetic coordinates

    Parameters
    ----------
    xyz : np.ndarray
        ECEF coordinates [x, y, z] in meters

    Returns
    -------
    np.ndarray
        Geodetic coordinates [lat, lon, height] (rad, rad, m)

    Notes
    -----
    Fixed-point iteration ``tan(lat) = (z + e2 N sin(lat)) / p`` on the
    WGS84 ellipsoid. The height uses ``p cos(lat) + z sin(lat) - a^2 / N``,
    which stays well conditioned at the poles.
    """
    x, y, z = (float(v) for v in xyz[:3])
    p = np.hypot(x, y)
    lon = np.arctan2(y, x) if p > 0.0 else 0.0

    lat = np.arctan2(z, p * (1.0 - E2_WGS84))
    for _ in range(ECEF2LLH_MAX_ITER):
        _, N = radius_of_curvature(lat)
        lat_next = np.arctan2(z + E2_WGS84 * N * np.sin(lat), p)
        done = abs(lat_next - lat) < ECEF2LLH_TOLERANCE
        lat = lat_next
        if done:
            break

    _, N = radius_of_curvature(lat)
    h = p * np.cos(lat) + z * np.sin(lat) - RE_WGS84**2 / N
    return np.array([lat, lon, h])


def llh2ecef(llh: np.ndarray) -> np.ndarray:
    """Geodetic [lat, lon, height] (rad, rad, m) to ECEF [x, y, z] (m)"""
    lat, lon, h = llh[0], llh[1], llh[2]
    _, N = radius_of_curvature(lat)
    horizontal = (N + h) * np.cos(lat)
    return np.array([horizontal * np.cos(lon),
                     horizontal * np.sin(lon),
                     (N * (1.0 - E2_WGS84) + h) * np.sin(lat)])


def radius_of_curvature(lat: float) -> tuple[float, float]:
    """
    Compute radii of curvature at given latitude

    Parameters:
    -----------
    lat : float
        Latitude (rad)

    Returns:
    --------
    M : float
        Meridional radius of curvature (m)
    N : float
        Prime vertical radius of curvature (m)
    """
    sin_lat = np.sin(lat)
    w2 = 1.0 - E2_WGS84 * sin_lat**2
    N = RE_WGS84 / np.sqrt(w2)
    M = RE_WGS84 * (1.0 - E2_WGS84) / w2**1.5
    return M, N


def ecef2neu_dcm(llh: np.ndarray) -> np.ndarray:
    """
    Earth-Centered-Earth-Fixed to North-East-Up direction cosine matrix

    Parameters:
    -----------
    llh : np.ndarray
        Geodetic coordinates [lat, lon, height] (rad, rad, m)

    Returns:
    --------
    C : np.ndarray
        ECEF->NEU direction cosine matrix (3x3); rows are the north, east
        and up unit vectors expressed in ECEF
    """
    sin_lat = np.sin(llh[0])
    cos_lat = np.cos(llh[0])
    sin_lon = np.sin(llh[1])
    cos_lon = np.cos(llh[1])

    return np.array([
        [-sin_lat * cos_lon, -sin_lat * sin_lon, cos_lat],
        [-sin_lon, cos_lon, 0.0],
        [cos_lat * cos_lon, cos_lat * sin_lon, sin_lat]
    ], dtype=np.float64)


def neu2ecef_velocity(vel_neu: np.ndarray, llh: np.ndarray) -> np.ndarray:
    """Rotate a local north/east/up vector into ECEF"""
    return ecef2neu_dcm(llh).T @ np.asarray(vel_neu, dtype=np.float64)


def apply_neu_correction(llh: np.ndarray, dneu: np.ndarray) -> np.ndarray:
    """Apply a small north/east/up displacement (m) to a geodetic position

    Parameters
    ----------
    llh : np.ndarray
        Geodetic position [lat, lon, height] (rad, rad, m)
    dneu : np.ndarray
        Displacement [north, east, up] (m)

    Returns
    -------
    np.ndarray
        Corrected geodetic position
    """
    M, N = radius_of_curvature(llh[0])
    lat = llh[0] + dneu[0] / (M + llh[2])
    lon = llh[1] + dneu[1] / ((N + llh[2]) * np.cos(llh[0]))
    return np.array([lat, lon, llh[2] + dneu[2]])


def llh_difference_neu(llh: np.ndarray, llh_ref: np.ndarray) -> np.ndarray:
    """North/east/up displacement (m) of ``llh`` relative to ``llh_ref``"""
    M, N = radius_of_curvature(llh_ref[0])
    dn = (llh[0] - llh_ref[0]) * (M + llh_ref[2])
    de = (llh[1] - llh_ref[1]) * (N + llh_ref[2]) * np.cos(llh_ref[0])
    return np.array([dn, de, llh[2] - llh_ref[2]])


__all__ = [
    'ecef2llh', 'llh2ecef', 'radius_of_curvature', 'ecef2neu_dcm',
    'neu2ecef_velocity', 'apply_neu_correction', 'llh_difference_neu',
]
