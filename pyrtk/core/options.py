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

"""Estimator configuration"""

from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Any

from . import stats


class FilterType(Enum):
    """Estimation method selected once at configuration time"""
    LSQ = "lsq"
    EKF = "ekf"
    RTK_SD = "rtk_sd"
    RTK_DD = "rtk_dd"


class AmbiguityPrunePolicy(Enum):
    """Which ambiguity is evicted when the arena is full: the one inserted
    first, or the one in the lowest arena slot (slots are reused)"""
    OLDEST_FIRST = "oldest_first"
    LOWEST_INDEX_FIRST = "lowest_index_first"


@dataclass
class MaskOptions:
    """Measurement masks"""
    elevation_mask: float = stats.ELMASK      # degrees
    cno_mask: float = stats.CNOMASK           # dB-Hz
    locktime_mask: float = stats.LOCKTIMEMASK  # s
    excluded_satellites: list[int] = field(default_factory=list)


@dataclass
class GaussMarkovModel:
    """First order Gauss-Markov velocity/drift model (8 state PV model).

    ``alpha_*`` are time constants (s), ``sigma_*`` steady-state standard
    deviations (m/s).
    """
    alpha_vn: float = stats.ALPHA_VN
    alpha_ve: float = stats.ALPHA_VE
    alpha_vup: float = stats.ALPHA_VUP
    alpha_clkdrift: float = stats.ALPHA_CLKDRIFT
    sigma_vn: float = stats.SIGMA_VN
    sigma_ve: float = stats.SIGMA_VE
    sigma_vup: float = stats.SIGMA_VUP
    sigma_clkdrift: float = stats.SIGMA_CLKDRIFT

    @property
    def alphas(self) -> tuple[float, float, float, float]:
        return (self.alpha_vn, self.alpha_ve, self.alpha_vup, self.alpha_clkdrift)

    @property
    def sigmas(self) -> tuple[float, float, float, float]:
        return (self.sigma_vn, self.sigma_ve, self.sigma_vup, self.sigma_clkdrift)


@dataclass
class RandomWalkModel:
    """Random walk position/clock model (4 state model), m/sqrt(s)"""
    sigma_north: float = stats.SIGMA_NORTH
    sigma_east: float = stats.SIGMA_EAST
    sigma_up: float = stats.SIGMA_UP
    sigma_clock: float = stats.SIGMA_CLOCK

    @property
    def sigmas(self) -> tuple[float, float, float, float]:
        return (self.sigma_north, self.sigma_east, self.sigma_up, self.sigma_clock)


@dataclass
class FaultDetectionOptions:
    """Global (chi-square) and local (normal) test parameters"""
    enabled: bool = True
    global_confidence: float = stats.GLOBAL_TEST_CONFIDENCE
    local_confidence: float = stats.LOCAL_TEST_CONFIDENCE


@dataclass
class EstimatorOptions:
    """Complete estimator configuration.

    Examples
    --------
    >>> opts = EstimatorOptions.from_dict({
    ...     'filter_type': 'rtk_dd',
    ...     'eight_state': True,
    ...     'masks': {'elevation_mask': 10.0},
    ... })
    """
    filter_type: FilterType = FilterType.EKF
    eight_state: bool = True
    use_doppler: bool = True
    use_only_differential: bool = False

    masks: MaskOptions = field(default_factory=MaskOptions)
    gauss_markov: GaussMarkovModel = field(default_factory=GaussMarkovModel)
    random_walk: RandomWalkModel = field(default_factory=RandomWalkModel)
    fault_detection: FaultDetectionOptions = field(default_factory=FaultDetectionOptions)

    max_lsq_iterations: int = stats.MAX_LSQ_ITERATIONS
    lsq_tolerance: float = stats.LSQ_TOLERANCE

    std_ambiguity_init: float = stats.STD_AMB_INIT    # cycles
    ambiguity_process_noise: float = stats.PRN_AMB    # cycles/sqrt(s)
    max_ambiguities: int = 0                          # 0: MAX_CHANNELS
    prune_policy: AmbiguityPrunePolicy = AmbiguityPrunePolicy.OLDEST_FIRST

    is_position_fixed: bool = False
    is_height_constrained: bool = False
    std_position_constraint: float = stats.STD_POSITION_CONSTRAINT
    std_height_constraint: float = stats.STD_HEIGHT_CONSTRAINT

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "EstimatorOptions":
        """Build options from a (possibly partial) dictionary.

        Raises
        ------
        ValueError
            On unknown keys or invalid enum values
        """
        nested = {
            'masks': MaskOptions,
            'gauss_markov': GaussMarkovModel,
            'random_walk': RandomWalkModel,
            'fault_detection': FaultDetectionOptions,
        }
        enums = {
            'filter_type': FilterType,
            'prune_policy': AmbiguityPrunePolicy,
        }
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in config.items():
            if key not in known:
                raise ValueError(f"Unknown estimator option: {key}")
            if key in nested:
                sub_known = {f.name for f in fields(nested[key])}
                unknown = set(value) - sub_known
                if unknown:
                    raise ValueError(f"Unknown {key} option(s): {sorted(unknown)}")
                kwargs[key] = nested[key](**value)
            elif key in enums:
                kwargs[key] = value if isinstance(value, enums[key]) else enums[key](value)
            else:
                kwargs[key] = value
        return cls(**kwargs)
