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
Square-root covariance primitives in UDU form.

A symmetric covariance is held as ``P = U diag(d) U^T`` with ``U`` unit upper
triangular and ``d`` the diagonal factor. The kernels below are the building
blocks of the RTK filters:

- ``udu`` factorises a symmetric (semi)definite matrix
- ``u_inverse`` solves ``U X = M`` by back substitution
- ``bierman_update`` applies one scalar measurement to (U, d)
- ``thornton_predict`` propagates (U, d) through ``T P T^T + Q``
- ``decorrelate`` whitens correlated measurements so that they can be
  processed one scalar at a time

The numerical loops are compiled with numba; the Python wrappers validate
inputs and pivots and raise ``numpy.linalg.LinAlgError`` on failure.

References:
    Factorization Methods for Discrete Sequential Estimation
    - (1977) Gerald J. Bierman
    Kalman Filtering: Theory and Practice Using MATLAB
    - (2015) Mohinder S. Grewal, Angus P. Andrews
"""

import numpy as np
from numba import njit

_OK = 0
_NEGATIVE_PIVOT = 1
_ZERO_PIVOT = 2

# pivots below this (relative to the largest diagonal) count as zero
_PIVOT_TOL = 1.0e-14


@njit(cache=True, fastmath=True)
def _udu_kernel(P, semidefinite):
    n = P.shape[0]
    A = P.copy()
    U = np.zeros((n, n))
    d = np.zeros(n)

    scale = 0.0
    for i in range(n):
        if abs(A[i, i]) > scale:
            scale = abs(A[i, i])
    tol = _PIVOT_TOL * scale

    for j in range(n - 1, -1, -1):
        dj = A[j, j]
        U[j, j] = 1.0
        if dj > tol:
            alpha = 1.0 / dj
        elif semidefinite and dj >= -tol:
            dj = 0.0
            alpha = 0.0
        elif dj < 0.0:
            return U, d, _NEGATIVE_PIVOT
        else:
            return U, d, _ZERO_PIVOT
        d[j] = dj
        for k in range(j):
            beta = A[k, j]
            U[k, j] = alpha * beta
            for i in range(k + 1):
                A[i, k] -= beta * U[i, j]
    return U, d, _OK


@njit(cache=True, fastmath=True)
def _back_substitution_kernel(U, M):
    n = U.shape[0]
    m = M.shape[1]
    X = np.zeros((n, m))
    for c in range(m):
        for i in range(n - 1, -1, -1):
            s = M[i, c]
            for k in range(i + 1, n):
                s -= U[i, k] * X[k, c]
            X[i, c] = s / U[i, i]
    return X


@njit(cache=True, fastmath=True)
def _bierman_kernel(U, d, h, r):
    n = U.shape[0]
    U = U.copy()
    d = d.copy()

    f = np.zeros(n)
    for j in range(n):
        s = 0.0
        for i in range(j + 1):
            s += U[i, j] * h[i]
        f[j] = s

    v = np.zeros(n)
    for j in range(n):
        v[j] = d[j] * f[j]

    b = np.zeros(n)
    alpha = r
    for j in range(n):
        alpha_prev = alpha
        alpha = alpha_prev + f[j] * v[j]
        if alpha_prev <= 0.0 or alpha <= 0.0:
            return U, d, b, alpha, _NEGATIVE_PIVOT
        d[j] = d[j] * alpha_prev / alpha
        b[j] = v[j]
        p = -f[j] / alpha_prev
        for i in range(j):
            u_ij = U[i, j]
            U[i, j] = u_ij + b[i] * p
            b[i] += u_ij * v[j]

    K = np.zeros(n)
    for i in range(n):
        K[i] = b[i] / alpha
    return U, d, K, alpha, _OK


@njit(cache=True, fastmath=True)
def _thornton_kernel(T, U, d, Uq, dq):
    n = U.shape[0]
    m = 2 * n

    # W = [T U, Uq], D~ = diag(d, dq)
    W = np.zeros((n, m))
    for i in range(n):
        for j in range(n):
            s = 0.0
            for k in range(j + 1):
                s += T[i, k] * U[k, j]
            W[i, j] = s
            W[i, n + j] = Uq[i, j]
    Dt = np.zeros(m)
    for j in range(n):
        Dt[j] = d[j]
        Dt[n + j] = dq[j]

    U_new = np.zeros((n, n))
    d_new = np.zeros(n)
    c = np.zeros(m)
    for j in range(n - 1, -1, -1):
        s = 0.0
        for k in range(m):
            c[k] = Dt[k] * W[j, k]
            s += W[j, k] * c[k]
        d_new[j] = s
        U_new[j, j] = 1.0
        if s <= 0.0:
            return U_new, d_new, _NEGATIVE_PIVOT
        dinv = 1.0 / s
        for i in range(j):
            t = 0.0
            for k in range(m):
                t += W[i, k] * c[k]
            u_ij = t * dinv
            U_new[i, j] = u_ij
            for k in range(m):
                W[i, k] -= u_ij * W[j, k]
    return U_new, d_new, _OK


def _as_matrix(M) -> np.ndarray:
    return np.ascontiguousarray(np.atleast_2d(M), dtype=np.float64)


def udu(P: np.ndarray, semidefinite: bool = False) -> tuple[np.ndarray, np.ndarray]:
    """Factorise a symmetric matrix as ``P = U diag(d) U^T``.

    Parameters
    ----------
    P : np.ndarray
        Symmetric matrix (n x n); only the upper triangle is read
    semidefinite : bool
        Accept zero pivots (singular process noise); the corresponding
        columns of U are left as unit columns with d = 0

    Returns
    -------
    U : np.ndarray
        Unit upper triangular factor (n x n)
    d : np.ndarray
        Diagonal factor (n,)

    Raises
    ------
    np.linalg.LinAlgError
        On a negative pivot, a zero pivot in definite mode, or non-finite
        input
    """
    P = _as_matrix(P)
    if P.shape[0] != P.shape[1]:
        raise np.linalg.LinAlgError(f"UDU of non-square matrix {P.shape}")
    if not np.all(np.isfinite(P)):
        raise np.linalg.LinAlgError("UDU of non-finite matrix")
    U, d, status = _udu_kernel(P, semidefinite)
    if status == _NEGATIVE_PIVOT:
        raise np.linalg.LinAlgError("UDU factorisation: negative pivot")
    if status == _ZERO_PIVOT:
        raise np.linalg.LinAlgError("UDU factorisation: zero pivot")
    return U, d


def udu_to_cov(U: np.ndarray, d: np.ndarray) -> np.ndarray:
    """Rebuild ``U diag(d) U^T``"""
    return (U * d) @ U.T


def u_inverse(U: np.ndarray, M: np.ndarray = None) -> np.ndarray:
    """Solve ``U X = M`` for upper triangular ``U`` by back substitution.

    With ``M`` omitted the inverse of ``U`` is returned. A vector ``M`` gives
    a vector result.
    """
    U = _as_matrix(U)
    n = U.shape[0]
    if M is None:
        M = np.eye(n)
    vector = np.ndim(M) == 1
    Mm = np.ascontiguousarray(np.reshape(M, (n, -1)), dtype=np.float64)
    if np.any(np.diag(U) == 0.0):
        raise np.linalg.LinAlgError("Back substitution with singular U")
    X = _back_substitution_kernel(U, Mm)
    return X[:, 0] if vector else X


def bierman_update(U: np.ndarray, d: np.ndarray, h: np.ndarray,
                   r: float) -> tuple[np.ndarray, np.ndarray, np.ndarray, float]:
    """Bierman scalar measurement update of the UDU factors.

    Parameters
    ----------
    U, d : np.ndarray
        A-priori UDU factors
    h : np.ndarray
        Design row (n,)
    r : float
        Measurement variance (must be positive)

    Returns
    -------
    U, d : np.ndarray
        A-posteriori factors
    K : np.ndarray
        Kalman gain (n,)
    alpha : float
        Innovation variance ``h P h^T + r``
    """
    if not (r > 0.0 and np.isfinite(r)):
        raise np.linalg.LinAlgError(f"Bierman update with measurement variance {r}")
    U_new, d_new, K, alpha, status = _bierman_kernel(
        _as_matrix(U), np.ascontiguousarray(d, dtype=np.float64),
        np.ascontiguousarray(h, dtype=np.float64), float(r))
    if status != _OK:
        raise np.linalg.LinAlgError("Bierman update: non-positive innovation variance")
    return U_new, d_new, K, alpha


def bierman_sequential(U: np.ndarray, d: np.ndarray, H: np.ndarray,
                       w: np.ndarray, r: np.ndarray):
    """Process uncorrelated measurements one at a time.

    Each innovation is taken relative to the correction accumulated so far,
    ``w_j - h_j dx``.

    Returns
    -------
    dx : np.ndarray
        State correction (n,)
    U, d : np.ndarray
        A-posteriori factors
    """
    H = np.atleast_2d(H)
    dx = np.zeros(U.shape[0])
    for j in range(H.shape[0]):
        innovation = w[j] - H[j] @ dx
        U, d, K, _ = bierman_update(U, d, H[j], r[j])
        dx = dx + K * innovation
    return dx, U, d


def thornton_predict(T: np.ndarray, U: np.ndarray, d: np.ndarray,
                     Q: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Thornton time update of the UDU factors.

    Computes the factors of ``T U D U^T T^T + Q`` by modified weighted
    Gram-Schmidt orthogonalisation of ``[T U, U_q]`` with weights
    ``diag(d, d_q)``. ``Q`` may be singular.
    """
    Uq, dq = udu(Q, semidefinite=True)
    U_new, d_new, status = _thornton_kernel(_as_matrix(T), _as_matrix(U),
                                            np.ascontiguousarray(d, dtype=np.float64),
                                            Uq, dq)
    if status != _OK:
        raise np.linalg.LinAlgError("Thornton time update: non-positive pivot")
    return U_new, d_new


def decorrelate(H: np.ndarray, w: np.ndarray, R: np.ndarray):
    """Whiten correlated measurements.

    Factorises ``R = U_r diag(d_r) U_r^T`` and returns ``U_r^-1 H``,
    ``U_r^-1 w`` and ``d_r``, whose rows are mutually uncorrelated.
    """
    R = _as_matrix(R)
    if np.count_nonzero(R - np.diag(np.diag(R))) == 0:
        return np.atleast_2d(H).copy(), np.asarray(w, dtype=np.float64).copy(), np.diag(R).copy()
    Ur, dr = udu(R)
    return u_inverse(Ur, H), u_inverse(Ur, np.asarray(w, dtype=np.float64)), dr
