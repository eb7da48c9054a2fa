#!/usr/bin/env python
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
Estimator Statistical Parameters and Defaults
=============================================

Default masks, measurement error levels, process noise and test
parameters used by the estimator options.
"""

# ============================================================================
# MEASUREMENT MASKS
# ============================================================================
ELMASK = 5.0             # Elevation mask angle (degrees)
CNOMASK = 28.0           # Carrier-to-noise density mask (dB-Hz)
LOCKTIMEMASK = 0.0       # Lock time mask (s)

# ============================================================================
# DEFAULT MEASUREMENT STANDARD DEVIATIONS (GPS L1)
# ============================================================================
STD_PSR = 0.8            # Pseudorange (m)
STD_DOPPLER = 0.09       # Doppler (Hz)
STD_ADR = 0.03           # Accumulated Doppler range (cycles)

# ============================================================================
# INITIAL STATE STANDARD DEVIATIONS
# ============================================================================
STD_CLK_INIT = 1.0E5     # Initial clock offset uncertainty (m)
STD_VEL_INIT = 10.0      # Initial velocity uncertainty (m/s)
STD_DRIFT_INIT = 1.0E3   # Initial clock drift uncertainty (m/s)
STD_AMB_INIT = 10.0      # A-priori ambiguity uncertainty (cycles)

# ============================================================================
# FIRST ORDER GAUSS-MARKOV MODEL (8 state PV model)
# ============================================================================
ALPHA_VN = 20.0          # North velocity time constant (s)
ALPHA_VE = 20.0          # East velocity time constant (s)
ALPHA_VUP = 20.0         # Up velocity time constant (s)
ALPHA_CLKDRIFT = 10.0    # Clock drift time constant (s)
SIGMA_VN = 0.01          # North velocity steady-state std (m/s)
SIGMA_VE = 0.01          # East velocity steady-state std (m/s)
SIGMA_VUP = 0.01         # Up velocity steady-state std (m/s)
SIGMA_CLKDRIFT = 1000.0  # Clock drift steady-state std (m/s)

# ============================================================================
# RANDOM WALK MODEL (4 state position/clock model)
# ============================================================================
SIGMA_NORTH = 0.5        # North position random walk (m/sqrt(s))
SIGMA_EAST = 0.5         # East position random walk (m/sqrt(s))
SIGMA_UP = 0.5           # Up position random walk (m/sqrt(s))
SIGMA_CLOCK = 100.0      # Clock offset random walk (m/sqrt(s))

# ============================================================================
# AMBIGUITY PROCESS NOISE
# ============================================================================
PRN_AMB = 0.0            # Ambiguity process noise (cycles/sqrt(s))

# ============================================================================
# LEAST SQUARES
# ============================================================================
MAX_LSQ_ITERATIONS = 6   # Gauss-Newton iteration cap
LSQ_TOLERANCE = 1.0E-3   # Convergence tolerance on |dx| (m)

# ============================================================================
# FAULT DETECTION
# ============================================================================
GLOBAL_TEST_CONFIDENCE = 0.95    # Two-sided chi-square confidence level
LOCAL_TEST_CONFIDENCE = 0.999    # Two-sided normal confidence level

# ============================================================================
# CONSTRAINTS
# ============================================================================
STD_POSITION_CONSTRAINT = 1.0E-3  # Fixed position constraint std (m)
STD_HEIGHT_CONSTRAINT = 1.0E-3    # Height constraint std (m)
