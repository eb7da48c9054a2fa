#!/usr/bin/env python3
"""Test suite for the UDU factorisation, Bierman and Thornton updates"""

import unittest

import numpy as np

from pyrtk.linalg.udu import (
    bierman_sequential,
    bierman_update,
    decorrelate,
    thornton_predict,
    u_inverse,
    udu,
    udu_to_cov,
)


def random_spd(n, seed):
    rng = np.random.default_rng(seed)
    A = rng.normal(size=(n, n))
    return A @ A.T + n * np.eye(n)


class TestUDU(unittest.TestCase):
    """Test the factorisation"""

    def test_reconstruction(self):
        """U D U^T reproduces P"""
        for n in (1, 4, 8, 15, 20):
            P = random_spd(n, n)
            U, d = udu(P)
            np.testing.assert_allclose(udu_to_cov(U, d), P, atol=1e-10 * np.max(np.abs(P)))
            np.testing.assert_allclose(np.diag(U), np.ones(n))
            np.testing.assert_allclose(np.tril(U, -1), np.zeros((n, n)))
            self.assertTrue(np.all(d > 0.0))

    def test_semidefinite(self):
        """Zero pivots are accepted for singular process noise"""
        Q = np.diag([0.0, 2.0, 0.0, 1.0])
        U, d = udu(Q, semidefinite=True)
        np.testing.assert_allclose(udu_to_cov(U, d), Q, atol=1e-12)
        with self.assertRaises(np.linalg.LinAlgError):
            udu(Q)

    def test_zero_matrix_semidefinite(self):
        """An all-zero matrix factorises with unit U and zero d"""
        U, d = udu(np.zeros((5, 5)), semidefinite=True)
        np.testing.assert_array_equal(U, np.eye(5))
        np.testing.assert_array_equal(d, np.zeros(5))
        with self.assertRaises(np.linalg.LinAlgError):
            udu(np.zeros((5, 5)))

    def test_indefinite_rejected(self):
        with self.assertRaises(np.linalg.LinAlgError):
            udu(np.diag([1.0, -1.0]))
        with self.assertRaises(np.linalg.LinAlgError):
            udu(np.array([[1.0, np.nan], [np.nan, 1.0]]))

    def test_u_inverse(self):
        U, _ = udu(random_spd(6, 1))
        np.testing.assert_allclose(u_inverse(U) @ U, np.eye(6), atol=1e-10)
        b = np.arange(6.0)
        np.testing.assert_allclose(U @ u_inverse(U, b), b, atol=1e-10)


class TestBierman(unittest.TestCase):
    """Bierman updates against the conventional Kalman update"""

    def setUp(self):
        rng = np.random.default_rng(7)
        self.n = 6
        self.P = random_spd(self.n, 3)
        self.H = rng.normal(size=(4, self.n))
        self.r = np.array([0.5, 1.0, 2.0, 0.1])
        self.w = rng.normal(size=4)

    def conventional(self, P, H, R, w):
        S = H @ P @ H.T + R
        K = P @ H.T @ np.linalg.inv(S)
        return K @ w, (np.eye(len(P)) - K @ H) @ P

    def test_scalar_update(self):
        U, d = udu(self.P)
        h = self.H[0]
        U1, d1, K, alpha = bierman_update(U, d, h, self.r[0])
        dx_ref, P_ref = self.conventional(self.P, h[None, :], np.array([[self.r[0]]]),
                                          self.w[:1])
        self.assertAlmostEqual(alpha, h @ self.P @ h + self.r[0], places=8)
        np.testing.assert_allclose(K * self.w[0], dx_ref, atol=1e-8)
        np.testing.assert_allclose(udu_to_cov(U1, d1), P_ref, atol=1e-8)

    def test_sequential_matches_batch(self):
        """Sequential scalar updates equal the batch update with diagonal R"""
        U, d = udu(self.P)
        dx, U1, d1 = bierman_sequential(U, d, self.H, self.w, self.r)
        dx_ref, P_ref = self.conventional(self.P, self.H, np.diag(self.r), self.w)
        np.testing.assert_allclose(dx, dx_ref, atol=1e-8)
        np.testing.assert_allclose(udu_to_cov(U1, d1), P_ref, atol=1e-8)

    def test_decorrelated_update(self):
        """Whitening a correlated R gives the same update"""
        R = np.diag(self.r) + 0.05
        Hd, wd, rd = decorrelate(self.H, self.w, R)
        U, d = udu(self.P)
        dx, U1, d1 = bierman_sequential(U, d, Hd, wd, rd)
        dx_ref, P_ref = self.conventional(self.P, self.H, R, self.w)
        np.testing.assert_allclose(dx, dx_ref, atol=1e-8)
        np.testing.assert_allclose(udu_to_cov(U1, d1), P_ref, atol=1e-8)

    def test_diagonal_r_passes_through(self):
        Hd, wd, rd = decorrelate(self.H, self.w, np.diag(self.r))
        np.testing.assert_array_equal(Hd, self.H)
        np.testing.assert_array_equal(wd, self.w)
        np.testing.assert_array_equal(rd, self.r)

    def test_invalid_variance(self):
        U, d = udu(self.P)
        with self.assertRaises(np.linalg.LinAlgError):
            bierman_update(U, d, self.H[0], 0.0)


class TestThornton(unittest.TestCase):
    """Thornton time update against T P T^T + Q"""

    def test_predict(self):
        n = 8
        P = random_spd(n, 11)
        rng = np.random.default_rng(5)
        T = np.eye(n) + 0.1 * rng.normal(size=(n, n))
        Q = np.diag([0.0, 0.0, 0.0, 0.0, 0.1, 0.1, 0.1, 2.0])
        U, d = udu(P)
        U1, d1 = thornton_predict(T, U, d, Q)
        np.testing.assert_allclose(udu_to_cov(U1, d1), T @ P @ T.T + Q,
                                   atol=1e-8 * np.max(np.abs(P)))
        np.testing.assert_allclose(np.diag(U1), np.ones(n))

    def test_identity_without_noise(self):
        P = random_spd(4, 2)
        U, d = udu(P)
        U1, d1 = thornton_predict(np.eye(4), U, d, np.zeros((4, 4)))
        np.testing.assert_allclose(udu_to_cov(U1, d1), P, atol=1e-10)


if __name__ == '__main__':
    unittest.main()
