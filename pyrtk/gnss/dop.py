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

"""Dilution of precision"""

import numpy as np

from ..core.data_structures import DOP

# condition number of H^T H above which the geometry counts as singular
MAX_CONDITION = 1.0e12


def compute_dop(H: np.ndarray) -> DOP:
    """
    Compute DOP values from a pseudorange design matrix

    Parameters:
    -----------
    H : np.ndarray
        Design matrix (n x 4) with columns north, east, up, clock

    Returns:
    --------
    DOP
        All DOP values from ``(H^T H)^-1``

    Raises:
    -------
    np.linalg.LinAlgError
        With fewer than four rows or singular geometry
    """
    H = np.atleast_2d(H)
    if H.shape[0] < 4:
        raise np.linalg.LinAlgError(f"DOP needs at least 4 observations, got {H.shape[0]}")
    N = H.T @ H
    if np.linalg.cond(N) > MAX_CONDITION:
        raise np.linalg.LinAlgError("DOP geometry is singular")
    Q = np.linalg.inv(N)
    q = np.diag(Q)
    if np.any(q < 0.0):
        raise np.linalg.LinAlgError("DOP cofactor matrix is not positive definite")
    return DOP(
        gdop=float(np.sqrt(q[0] + q[1] + q[2] + q[3])),
        pdop=float(np.sqrt(q[0] + q[1] + q[2])),
        hdop=float(np.sqrt(q[0] + q[1])),
        vdop=float(np.sqrt(q[2])),
        tdop=float(np.sqrt(q[3])),
        ndop=float(np.sqrt(q[0])),
        edop=float(np.sqrt(q[1])),
    )
