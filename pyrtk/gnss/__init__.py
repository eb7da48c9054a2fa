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


"""GNSS measurement processing: editing, geometry, design, weights, DOP and
fault detection"""

from .design import (
    MeasurementBlock,
    build_adr_block,
    build_constraint_block,
    build_doppler_block,
    build_psr_block,
    stack_blocks,
    store_residuals,
)
from .dop import compute_dop
from .editing import (
    EditingCounts,
    determine_usable_adr,
    determine_usable_dopplers,
    determine_usable_pseudoranges,
)
from .geometry import match_reference, select_base_satellite, update_epoch_geometry
from .raim import detect_fault, global_test, local_test
