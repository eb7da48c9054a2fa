#!/usr/bin/env python3
"""Test suite for the ambiguity state manager"""

import unittest

import numpy as np

from pyrtk.core.constants import SYS_GPS, WAVELENGTH_L1
from pyrtk.core.data_structures import Observation, ReceiverEpoch
from pyrtk.core.options import AmbiguityPrunePolicy
from pyrtk.rtk.ambiguity import DD, SD, AmbiguityManager, initial_ambiguity

BASE = 8


def key(prn, channel=None):
    return (SYS_GPS, prn if channel is None else channel, prn, 0)


def kinematic_state():
    P = np.diag(np.arange(1.0, BASE + 1.0))
    x = np.arange(BASE, dtype=np.float64)
    return P, x


class TestAmbiguityManager(unittest.TestCase):

    def setUp(self):
        self.manager = AmbiguityManager(capacity=5, std_init=10.0)
        self.P, self.x = kinematic_state()

    def test_append(self):
        usable = {key(3): 1.5, key(7): -2.0}
        P, x, changed = self.manager.update(usable, self.P, self.x, BASE)
        self.assertTrue(changed)
        self.assertEqual(len(x), BASE + 2)
        self.assertEqual(P.shape, (BASE + 2, BASE + 2))
        np.testing.assert_array_equal(x[BASE:], [1.5, -2.0])
        np.testing.assert_array_equal(np.diag(P)[BASE:], [100.0, 100.0])
        np.testing.assert_array_equal(P[:BASE, :BASE], self.P)
        self.assertEqual(self.manager.index_of(key(3)), BASE)
        self.assertEqual(self.manager.index_of(key(7)), BASE + 1)
        self.assertEqual(self.manager.index_of(key(9)), -1)

    def test_no_change(self):
        usable = {key(3): 1.5, key(7): -2.0}
        P, x, _ = self.manager.update(usable, self.P, self.x, BASE)
        P2, x2, changed = self.manager.update(usable, P, x, BASE)
        self.assertFalse(changed)
        np.testing.assert_array_equal(x2, x)

    def test_remove_compacts_indices(self):
        """Leaving ambiguities free their rows and later states move up in
        order"""
        usable = {key(1): 1.0, key(2): 2.0, key(3): 3.0}
        P, x, _ = self.manager.update(usable, self.P, self.x, BASE)
        P[BASE + 2, BASE] = P[BASE, BASE + 2] = 0.5
        P, x, changed = self.manager.update({key(1): 1.0, key(3): 3.0}, P, x, BASE)
        self.assertTrue(changed)
        np.testing.assert_array_equal(x[BASE:], [1.0, 3.0])
        self.assertEqual(self.manager.index_of(key(3)), BASE + 1)
        self.assertEqual(P[BASE, BASE + 1], 0.5)
        self.assertEqual([a.id for a in self.manager.active], [1, 3])

    def test_unique_contiguous_indices(self):
        P, x = self.P, self.x
        for usable in ({key(1): 0.0, key(2): 0.0, key(4): 0.0},
                       {key(2): 0.0, key(5): 0.0},
                       {key(5): 0.0, key(6): 0.0, key(1): 0.0, key(2): 0.0}):
            P, x, _ = self.manager.update(usable, P, x, BASE)
            indices = sorted(a.state_index for a in self.manager.active)
            self.assertEqual(indices, list(range(BASE, BASE + len(usable))))
            self.assertEqual(len(x), BASE + len(usable))

    def test_oldest_first_eviction(self):
        manager = AmbiguityManager(capacity=3, std_init=1.0)
        P, x, _ = manager.update({key(1): 1.0, key(2): 2.0, key(3): 3.0}, self.P, self.x, BASE)
        with self.assertLogs('pyrtk.rtk.ambiguity', level='WARNING'):
            P, x, _ = manager.update({key(1): 1.0, key(2): 2.0, key(3): 3.0, key(4): 4.0},
                                     P, x, BASE)
        self.assertEqual(manager.size, 3)
        self.assertEqual(manager.index_of(key(1)), -1)
        self.assertEqual(manager.index_of(key(4)), BASE + 2)
        np.testing.assert_array_equal(x[BASE:], [2.0, 3.0, 4.0])

    def test_eviction_policies_differ(self):
        """A reused low slot holds the newest ambiguity"""
        expected = {
            AmbiguityPrunePolicy.OLDEST_FIRST: [3.0, 4.0, 5.0],
            AmbiguityPrunePolicy.LOWEST_INDEX_FIRST: [2.0, 3.0, 5.0],
        }
        for policy, values in expected.items():
            manager = AmbiguityManager(capacity=3, std_init=1.0, prune_policy=policy)
            P, x = self.P, self.x
            for usable in ({key(1): 1.0, key(2): 2.0, key(3): 3.0},
                           {key(2): 2.0, key(3): 3.0},
                           {key(2): 2.0, key(3): 3.0, key(4): 4.0},
                           {key(2): 2.0, key(3): 3.0, key(4): 4.0, key(5): 5.0}):
                P, x, _ = manager.update(usable, P, x, BASE)
            np.testing.assert_array_equal(x[BASE:], values, err_msg=policy.value)

    def test_double_difference_mode(self):
        manager = AmbiguityManager(capacity=4, std_init=1.0, mode=DD)
        manager.update({key(3): 0.0}, self.P, self.x, BASE)
        info = manager.active[0]
        self.assertEqual(info.state_index_dd, BASE)
        self.assertEqual(info.state_index, -1)

        epoch = ReceiverEpoch(obs=[Observation(channel=3, id=3), Observation(channel=4, id=4)])
        manager.assign_indices(epoch)
        self.assertEqual(epoch.obs[0].index_ambiguity_state_dd, BASE)
        self.assertEqual(epoch.obs[1].index_ambiguity_state_dd, -1)
        self.assertEqual(epoch.obs[0].index_ambiguity_state, -1)

    def test_reset(self):
        self.manager.update({key(3): 0.0}, self.P, self.x, BASE)
        self.manager.reset()
        self.assertEqual(self.manager.size, 0)

    def test_invalid_construction(self):
        with self.assertRaises(ValueError):
            AmbiguityManager(capacity=0, std_init=1.0)
        with self.assertRaises(ValueError):
            AmbiguityManager(capacity=2, std_init=1.0, mode="triple")
        self.assertEqual(AmbiguityManager(capacity=2, std_init=1.0).mode, SD)


class TestInitialAmbiguity(unittest.TestCase):

    def test_phase_minus_code(self):
        rover = Observation(channel=0, id=1, psr=2.0e7, adr=2.0e7 / WAVELENGTH_L1 + 12.0)
        self.assertAlmostEqual(initial_ambiguity(rover), 12.0, places=6)

        base = Observation(channel=2, id=1, psr=2.1e7, adr=2.1e7 / WAVELENGTH_L1 + 5.0)
        self.assertAlmostEqual(initial_ambiguity(rover, base), 7.0, places=6)


if __name__ == '__main__':
    unittest.main()
