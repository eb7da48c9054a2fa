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

"""Measurement variance-covariance and weight matrices"""

from typing import Optional

import numpy as np

from ..core.data_structures import Observation


def _checked(stdev: float, what: str, obs: Observation) -> float:
    if not np.isfinite(stdev) or stdev <= 0.0:
        raise ValueError(f"Invalid {what} standard deviation {stdev} for satellite {obs.id}")
    return stdev


def psr_variance(obs: Observation, base: Optional[Observation] = None) -> float:
    """Pseudorange variance (m^2); single differences add the reference
    receiver variance."""
    var = _checked(obs.stdev_psr, "pseudorange", obs)**2
    if base is not None:
        var += _checked(base.stdev_psr, "pseudorange", base)**2
    return var


def doppler_variance(obs: Observation, base: Optional[Observation] = None) -> float:
    """Doppler variance converted to range rate ((m/s)^2)"""
    lam2 = obs.wavelength**2
    var = _checked(obs.stdev_doppler, "Doppler", obs)**2 * lam2
    if base is not None:
        var += _checked(base.stdev_doppler, "Doppler", base)**2 * lam2
    return var


def adr_variance(obs: Observation, base: Optional[Observation] = None) -> float:
    """Carrier phase variance converted to range (m^2)"""
    lam2 = obs.wavelength**2
    var = _checked(obs.stdev_adr, "ADR", obs)**2 * lam2
    if base is not None:
        var += _checked(base.stdev_adr, "ADR", base)**2 * lam2
    return var


def variance_matrix(var: np.ndarray) -> np.ndarray:
    """Diagonal variance-covariance matrix of uncorrelated observations"""
    var = np.asarray(var, dtype=np.float64)
    if np.any(~np.isfinite(var)) or np.any(var <= 0.0):
        raise ValueError("Variance-covariance matrix needs positive finite variances")
    return np.diag(var)


def weight_matrix(R: np.ndarray) -> np.ndarray:
    """Weight matrix ``W = R^-1``.

    Raises
    ------
    np.linalg.LinAlgError
        If R is singular
    """
    if np.count_nonzero(R - np.diag(np.diag(R))) == 0:
        return np.diag(1.0 / np.diag(R))
    return np.linalg.inv(R)


def dd_variance_matrix(B: np.ndarray, R_sd: np.ndarray) -> np.ndarray:
    """Double difference covariance ``B R_sd B^T``.

    With the base satellite variance ``s_b`` shared by every double
    difference, the off-diagonals equal ``s_b``.
    """
    return B @ R_sd @ B.T
