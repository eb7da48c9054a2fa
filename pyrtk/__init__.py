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
PyRTK - GNSS Position, Velocity and Time Estimation

Per-epoch estimation of position, velocity and receiver clock from
pseudorange, Doppler and carrier phase measurements by least squares, an
extended Kalman filter and single/double difference RTK filters kept in
square-root (UDU) form.
"""

__version__ = "1.0.0"
__author__ = "PyRTK Development Team"
__title__ = "pyrtk"
__description__ = "GNSS least squares, EKF and RTK estimation library"

from .core import *
from .coordinate import *
from .estimator import GNSSEstimator
