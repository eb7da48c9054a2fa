#!/usr/bin/env python3
"""Test suite for measurement variances and weights"""

import unittest

import numpy as np

from pyrtk.core.constants import WAVELENGTH_L1
from pyrtk.core.data_structures import Observation
from pyrtk.gnss.weights import (
    adr_variance,
    dd_variance_matrix,
    doppler_variance,
    psr_variance,
    variance_matrix,
    weight_matrix,
)
from pyrtk.rtk.double_difference import difference_operator


class TestWeights(unittest.TestCase):

    def setUp(self):
        self.rover = Observation(channel=0, id=1, stdev_psr=0.5, stdev_doppler=0.1, stdev_adr=0.02)
        self.base = Observation(channel=4, id=1, stdev_psr=1.0, stdev_doppler=0.2, stdev_adr=0.01)

    def test_undifferenced(self):
        self.assertAlmostEqual(psr_variance(self.rover), 0.25)
        self.assertAlmostEqual(doppler_variance(self.rover), (0.1 * WAVELENGTH_L1)**2)
        self.assertAlmostEqual(adr_variance(self.rover), (0.02 * WAVELENGTH_L1)**2)

    def test_single_difference_adds_variances(self):
        self.assertAlmostEqual(psr_variance(self.rover, self.base), 1.25)
        self.assertAlmostEqual(adr_variance(self.rover, self.base),
                               (0.02**2 + 0.01**2) * WAVELENGTH_L1**2)

    def test_invalid_stdev(self):
        for bad in (0.0, -1.0, np.nan, np.inf):
            obs = Observation(channel=0, id=1, stdev_psr=bad)
            with self.assertRaises(ValueError):
                psr_variance(obs)
        with self.assertRaises(ValueError):
            psr_variance(self.rover, Observation(channel=0, id=1, stdev_psr=0.0))
        with self.assertRaises(ValueError):
            variance_matrix(np.array([1.0, 0.0]))

    def test_weight_matrix(self):
        R = variance_matrix(np.array([4.0, 0.25]))
        np.testing.assert_allclose(weight_matrix(R), np.diag([0.25, 4.0]))
        R = np.array([[2.0, 1.0], [1.0, 2.0]])
        np.testing.assert_allclose(weight_matrix(R) @ R, np.eye(2), atol=1e-12)

    def test_double_difference_covariance(self):
        """Off-diagonals equal the base satellite variance"""
        var = np.array([1.0, 2.0, 3.0, 4.0])
        B = difference_operator(4, 1)
        R_dd = dd_variance_matrix(B, np.diag(var))
        expected = np.full((3, 3), 2.0) + np.diag([1.0, 3.0, 4.0])
        np.testing.assert_allclose(R_dd, expected)


if __name__ == '__main__':
    unittest.main()
