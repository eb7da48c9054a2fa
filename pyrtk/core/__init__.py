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

"""Core Estimation Module.

This module provides the fundamental components shared by all estimators:

- **Constants and Parameters**: physical constants, WGS84 parameters, the
  state vector layout and carrier wavelengths
- **Statistical Defaults**: masks, measurement errors, process noise and
  fault detection confidence levels
- **Data Structures**: receiver epochs, observations, PVT and DOP records
  and ambiguity bookkeeping
- **Options**: dataclass configuration of the estimator

Example Usage:
    >>> from pyrtk.core import *
    >>>
    >>> obs = Observation(channel=0, id=5)
    >>> obs.psr = 21456789.1
    >>> epoch = ReceiverEpoch(week=2200, tow=432000.0, obs=[obs])
"""

from .constants import *
from .data_structures import *
from .options import *
