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
Between-satellite differencing of single difference measurement blocks.

The double difference filter keeps single difference ambiguities in its
state and forms double differences with a block operator ``B``:
``H_dd = B H_sd``, ``w_dd = B w_sd`` and ``R_dd = B R_sd B^T``. Each block of
``B`` subtracts the base satellite row from every other row of one
measurement kind.
"""

import logging
from typing import Optional

import numpy as np

from ..core.data_structures import ReceiverEpoch
from ..gnss.design import ADR, MeasurementBlock

logger = logging.getLogger(__name__)


def difference_operator(n: int, base_row: int) -> np.ndarray:
    """
    Single to double difference operator

    Parameters:
    -----------
    n : int
        Number of single differences
    base_row : int
        Row of the base satellite

    Returns:
    --------
    np.ndarray
        (n-1 x n) matrix with +1 on each non-base row and -1 in the base
        column
    """
    if not 0 <= base_row < n:
        raise ValueError(f"Base row {base_row} outside 0..{n - 1}")
    D = np.zeros((n - 1, n))
    r = 0
    for i in range(n):
        if i == base_row:
            continue
        D[r, i] = 1.0
        D[r, base_row] = -1.0
        r += 1
    return D


def block_diag(blocks) -> np.ndarray:
    """Block diagonal matrix of 2-D blocks (empty blocks allowed)"""
    rows = sum(b.shape[0] for b in blocks)
    cols = sum(b.shape[1] for b in blocks)
    out = np.zeros((rows, cols))
    r = c = 0
    for b in blocks:
        out[r:r + b.shape[0], c:c + b.shape[1]] = b
        r += b.shape[0]
        c += b.shape[1]
    return out


class DoubleDifferenceOperator:
    """Holds ``B`` and its ambiguity block ``sub_B`` across epochs.

    ``B`` is rebuilt only when the signals entering the blocks or the base
    satellite change; the previous operators are kept in ``prev_B`` and
    ``prev_sub_B``.
    """

    def __init__(self):
        self.B: Optional[np.ndarray] = None
        self.sub_B: Optional[np.ndarray] = None
        self.prev_B: Optional[np.ndarray] = None
        self.prev_sub_B: Optional[np.ndarray] = None
        self.signature = None

    def reset(self):
        self.__init__()

    def update(self, epoch: ReceiverEpoch, blocks: list, base_index: int) -> bool:
        """Rebuild the operator for ``blocks`` if the signal set changed.

        Parameters
        ----------
        epoch : ReceiverEpoch
            Rover epoch the blocks were built from
        blocks : list[MeasurementBlock]
            Single difference blocks in row order, each containing the base
            satellite
        base_index : int
            Index of the base satellite in ``epoch.obs``

        Returns
        -------
        bool
            True if ``B`` was rebuilt
        """
        signature = (epoch.obs[base_index].key,
                     tuple((b.kind, tuple(epoch.obs[i].key for i in b.index)) for b in blocks))
        if signature == self.signature:
            return False

        parts = []
        sub_B = np.zeros((0, 0))
        for block in blocks:
            D = difference_operator(block.n, block.index.index(base_index))
            parts.append(D)
            if block.kind == ADR:
                sub_B = D
        self.prev_B, self.prev_sub_B = self.B, self.sub_B
        self.B = block_diag(parts)
        self.sub_B = sub_B
        if self.signature is not None:
            old_base = self.signature[0]
            if old_base != signature[0]:
                logger.info(f"Base satellite changed from {old_base[2]} to {signature[0][2]}")
        self.signature = signature
        logger.debug(f"Rebuilt double difference operator {self.B.shape}")
        return True


def non_base_rows(block: MeasurementBlock, base_index: int) -> list:
    """Observation indices of the double differences formed from ``block``"""
    return [i for i in block.index if i != base_index]


def store_dd_values(epoch: ReceiverEpoch, block: MeasurementBlock, base_index: int,
                    values: np.ndarray, attr: str):
    """Write per-satellite double difference values (base satellite gets 0)"""
    setattr(epoch.obs[base_index], attr, 0.0)
    for i, value in zip(non_base_rows(block, base_index), values):
        setattr(epoch.obs[i], attr, float(value))
