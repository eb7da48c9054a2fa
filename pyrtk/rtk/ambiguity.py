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
Carrier ambiguity state management for the RTK filters.

Ambiguities (single differenced, cycles) live after the kinematic states in
the filter state vector. The manager keeps a fixed-capacity arena of slots,
one per tracked signal, and resizes the state vector and covariance as
signals come and go.
"""

import logging
from typing import Optional

import numpy as np

from ..core.constants import sys2char
from ..core.data_structures import AmbiguityInfo, Observation, ReceiverEpoch
from ..core.options import AmbiguityPrunePolicy

logger = logging.getLogger(__name__)

SD = "sd"
DD = "dd"


def initial_ambiguity(obs: Observation, base: Optional[Observation] = None) -> float:
    """Phase-minus-code ambiguity estimate (cycles); single differenced when
    a reference observation is given."""
    lam = obs.wavelength
    phase = obs.adr
    code = obs.psr
    if base is not None:
        phase -= base.adr
        code -= base.psr
    return phase - code / lam


class AmbiguityManager:
    """Arena of ambiguity slots keyed by (system, channel, id, freq_type).

    Parameters
    ----------
    capacity : int
        Maximum number of simultaneously estimated ambiguities
    std_init : float
        A-priori ambiguity standard deviation (cycles)
    prune_policy : AmbiguityPrunePolicy
        Which ambiguity is evicted when more signals are usable than the
        arena can hold
    mode : str
        'sd' maintains ``AmbiguityInfo.state_index``, 'dd'
        ``AmbiguityInfo.state_index_dd``
    """

    def __init__(self, capacity: int, std_init: float,
                 prune_policy: AmbiguityPrunePolicy = AmbiguityPrunePolicy.OLDEST_FIRST,
                 mode: str = SD):
        if capacity <= 0:
            raise ValueError(f"Ambiguity capacity must be positive, got {capacity}")
        if mode not in (SD, DD):
            raise ValueError(f"Unknown ambiguity mode: {mode}")
        self.capacity = capacity
        self.var_init = std_init**2
        self.prune_policy = prune_policy
        self.mode = mode
        self.slots: list[Optional[AmbiguityInfo]] = [None] * capacity
        self._sequence = 0

    def _index(self, info: AmbiguityInfo) -> int:
        return info.state_index if self.mode == SD else info.state_index_dd

    def _set_index(self, info: AmbiguityInfo, index: int):
        if self.mode == SD:
            info.state_index = index
        else:
            info.state_index_dd = index

    @property
    def active(self) -> list[AmbiguityInfo]:
        """Active ambiguities in state order"""
        return sorted((s for s in self.slots if s is not None), key=self._index)

    @property
    def size(self) -> int:
        return sum(1 for s in self.slots if s is not None)

    def index_of(self, key) -> int:
        """State index of the ambiguity of ``key``, -1 if not estimated"""
        for s in self.slots:
            if s is not None and s.key == key:
                return self._index(s)
        return -1

    def reset(self):
        self.slots = [None] * self.capacity

    def _remove(self, infos, P, x, base_size):
        if not infos:
            return P, x
        rows = [self._index(i) for i in infos]
        P = np.delete(np.delete(P, rows, axis=0), rows, axis=1)
        x = np.delete(x, rows)
        for info in infos:
            logger.debug(f"Removing ambiguity {sys2char(info.system)}{info.id:02d} "
                         f"ch{info.channel} from state {self._index(info)}")
            self._set_index(info, -1)
            slot = next(i for i, s in enumerate(self.slots) if s is info)
            self.slots[slot] = None
        for k, info in enumerate(self.active):
            self._set_index(info, base_size + k)
        return P, x

    def _evict(self, count: int) -> list[AmbiguityInfo]:
        if self.prune_policy is AmbiguityPrunePolicy.OLDEST_FIRST:
            order = sorted(self.active, key=lambda s: s.sequence)
        else:
            order = [s for s in self.slots if s is not None]
        return order[:count]

    def update(self, usable: dict, P: np.ndarray, x: np.ndarray,
               base_size: int) -> tuple[np.ndarray, np.ndarray, bool]:
        """Resize the state to the usable carrier phase signals.

        Ambiguities whose signal is no longer usable are removed (their rows
        and columns deleted, remaining indices compacted in order); new
        signals are appended with the a-priori variance.

        Parameters
        ----------
        usable : dict
            Usable signal key -> initial ambiguity estimate (cycles), in the
            order new states should be appended
        P : np.ndarray
            Covariance (u x u)
        x : np.ndarray
            State vector (u,)
        base_size : int
            Number of kinematic states preceding the ambiguities

        Returns
        -------
        P, x : np.ndarray
            Resized covariance and state
        changed : bool
            Whether any ambiguity was added or removed
        """
        leaving = [s for s in self.slots if s is not None and s.key not in usable]
        P, x = self._remove(leaving, P, x, base_size)

        active_keys = {s.key for s in self.slots if s is not None}
        entering = [k for k in usable if k not in active_keys]
        overflow = self.size + len(entering) - self.capacity
        evicted = []
        if overflow > 0:
            n_evict = min(overflow, self.size)
            evicted = self._evict(n_evict)
            logger.warning(f"Ambiguity arena full ({self.capacity}), evicting {len(evicted)} "
                           f"by {self.prune_policy.value}")
            P, x = self._remove(evicted, P, x, base_size)
            entering = entering[:self.capacity - self.size]

        if entering:
            u0 = len(x)
            m = len(entering)
            P_new = np.zeros((u0 + m, u0 + m))
            P_new[:u0, :u0] = P
            P_new[u0:, u0:] = np.eye(m) * self.var_init
            P = P_new
            x = np.concatenate([x, [usable[k] for k in entering]])
            free = [i for i, s in enumerate(self.slots) if s is None]
            for k, (slot, key) in enumerate(zip(free, entering)):
                system, channel, sat_id, freq_type = key
                info = AmbiguityInfo(channel=channel, id=sat_id, system=system,
                                     freq_type=freq_type, sequence=self._sequence)
                self._sequence += 1
                self._set_index(info, u0 + k)
                self.slots[slot] = info
                logger.debug(f"Adding ambiguity {sys2char(system)}{sat_id:02d} ch{channel} "
                             f"at state {u0 + k}")

        self._check(P, x, base_size)
        return P, x, bool(leaving or evicted or entering)

    def _check(self, P, x, base_size):
        indices = sorted(self._index(s) for s in self.slots if s is not None)
        expected = list(range(base_size, base_size + len(indices)))
        if indices != expected or P.shape != (len(x), len(x)) or len(x) != base_size + len(indices):
            raise RuntimeError(f"Ambiguity state bookkeeping broken: indices {indices}, "
                               f"state size {len(x)}, base {base_size}")

    def assign_indices(self, epoch: ReceiverEpoch):
        """Write the state index of every observation's ambiguity"""
        for obs in epoch.obs:
            index = self.index_of(obs.key)
            if self.mode == SD:
                obs.index_ambiguity_state = index
            else:
                obs.index_ambiguity_state_dd = index
