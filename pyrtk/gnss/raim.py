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
Statistical fault detection.

The global test compares the a-posteriori variance factor
``apvf = r^T C^-1 r / dof`` against two-sided chi-square bounds. Only a
variance factor above the upper bound indicates a fault; the local test
then picks the single observation with the largest normalized residual
above the normal critical value (Baarda data snooping).

Least squares solutions test post-fit residuals with covariance
``R - H N^-1 H^T`` and ``n - u`` degrees of freedom; Kalman filters test
the innovations with covariance ``H P- H^T + R`` and ``n`` degrees of
freedom.
"""

import logging
from dataclasses import dataclass

import numpy as np
from scipy.stats import chi2, norm

logger = logging.getLogger(__name__)


@dataclass
class GlobalTestResult:
    """Outcome of the global test"""
    apvf: float
    passed: bool
    lower: float
    upper: float
    dof: int


def chi2_bounds(dof: int, confidence: float) -> tuple[float, float]:
    """Two-sided bounds of the variance factor ``chi2(dof) / dof``"""
    alpha = 1.0 - confidence
    return (chi2.ppf(alpha / 2.0, dof) / dof,
            chi2.ppf(1.0 - alpha / 2.0, dof) / dof)


def global_test(r: np.ndarray, Cinv: np.ndarray, dof: int,
                confidence: float) -> GlobalTestResult:
    """
    Chi-square test of the a-posteriori variance factor

    Parameters:
    -----------
    r : np.ndarray
        Residuals or innovations (n,)
    Cinv : np.ndarray
        Inverse of their covariance (n x n)
    dof : int
        Degrees of freedom
    confidence : float
        Two-sided confidence level, e.g. 0.95

    Returns:
    --------
    GlobalTestResult
        A test without redundancy (dof <= 0) passes with apvf 0
    """
    if not 0.0 < confidence < 1.0:
        raise ValueError(f"Confidence level must lie in (0, 1), got {confidence}")
    if dof <= 0:
        return GlobalTestResult(0.0, True, 0.0, np.inf, dof)
    apvf = float(r @ Cinv @ r) / dof
    lower, upper = chi2_bounds(dof, confidence)
    if apvf < lower:
        logger.debug(f"Variance factor {apvf:.3f} below lower bound {lower:.3f}, accepted")
    return GlobalTestResult(apvf, apvf <= upper, lower, upper, dof)


def normalized_residuals(r: np.ndarray, C_diag: np.ndarray) -> np.ndarray:
    """``|r_i| / sqrt(C_ii)``; rows without redundancy are zero"""
    r = np.asarray(r, dtype=np.float64)
    C_diag = np.asarray(C_diag, dtype=np.float64)
    out = np.zeros_like(r)
    ok = C_diag > 0.0
    out[ok] = np.abs(r[ok]) / np.sqrt(C_diag[ok])
    return out


def local_test(r: np.ndarray, C_diag: np.ndarray, confidence: float) -> int:
    """
    Local test for the single largest outlier

    Parameters:
    -----------
    r : np.ndarray
        Residuals or innovations (n,)
    C_diag : np.ndarray
        Diagonal of their covariance (n,)
    confidence : float
        Two-sided confidence level, e.g. 0.999

    Returns:
    --------
    int
        Index of the rejected row, -1 if no normalized residual exceeds the
        critical value
    """
    if len(r) == 0:
        return -1
    critical = norm.ppf(1.0 - (1.0 - confidence) / 2.0)
    t = normalized_residuals(r, C_diag)
    i = int(np.argmax(t))
    if t[i] > critical:
        logger.debug(f"Local test rejects row {i}: {t[i]:.2f} > {critical:.2f}")
        return i
    return -1


def lsq_residual_covariance(H: np.ndarray, R: np.ndarray) -> np.ndarray:
    """Post-fit residual covariance ``R - H (H^T R^-1 H)^-1 H^T``"""
    W = np.linalg.inv(R)
    N = H.T @ W @ H
    return R - H @ np.linalg.inv(N) @ H.T


def innovation_covariance(H: np.ndarray, P: np.ndarray, R: np.ndarray) -> np.ndarray:
    """Innovation covariance ``H P H^T + R``"""
    return H @ P @ H.T + R


def detect_fault(r: np.ndarray, C: np.ndarray, dof: int, global_confidence: float,
                 local_confidence: float) -> tuple[GlobalTestResult, int]:
    """Run the global test and, on failure, the local test.

    ``C`` may be singular (post-fit residual covariance), in which case the
    pseudo-inverse is used for the variance factor.

    Returns
    -------
    result : GlobalTestResult
    reject : int
        Row to exclude, -1 for none
    """
    Cinv = np.linalg.pinv(C, hermitian=True)
    result = global_test(r, Cinv, dof, global_confidence)
    if result.passed:
        return result, -1
    logger.info(f"Global test failed: apvf {result.apvf:.3f} > {result.upper:.3f} (dof {dof})")
    return result, local_test(r, np.diag(C), local_confidence)
