"""Uniform element access for tensors in memory or on disk.

Sampled ALS only ever needs whole fibers of the tensor along the mode that is
being updated, selected by sampled indices of all other modes. The storage
classes below provide exactly that through ``fetch_fibers``, either by
gathering from a flat array in one pass, or by reading the tensor from disk in
contiguous slabs and gathering from each slab in turn.
"""
from __future__ import annotations

import os
from abc import ABC, abstractmethod
from typing import Tuple, Union

import numpy as np
import numpy.typing as npt

from tr_sketch.tensor import DenseTensor
from tr_sketch.utils import fiber_linear_indices


class TensorStorage(ABC):
    """Abstract base class for read-only tensor storage."""

    #: The shape of the stored tensor
    shape: Tuple[int, ...]

    @property
    def ndim(self) -> int:
        return len(self.shape)

    @abstractmethod
    def fetch_fibers(
        self, mode: int, samples: npt.NDArray, num_increments: int = 0
    ) -> npt.NDArray[np.float64]:
        """Fetch the mode-``mode`` fibers through the sampled indices.

        ``samples`` has shape ``(J, ndim)``, column ``mode`` is ignored.
        Returns array of shape ``(J, shape[mode])``."""

    @abstractmethod
    def read_full(self) -> npt.NDArray[np.float64]:
        """Load the entire tensor into memory.

        Raises ``MemoryError`` if the tensor does not fit in memory."""

    def _check_samples(self, mode: int, samples: npt.NDArray) -> npt.NDArray:
        if not 0 <= mode < self.ndim:
            raise ValueError(f"Mode {mode} out of range for {self.ndim} modes")
        samples = np.asarray(samples, dtype=np.int64)
        if samples.ndim != 2 or samples.shape[1] != self.ndim:
            raise ValueError(
                f"Samples of shape {samples.shape} don't match a tensor with"
                f" {self.ndim} modes"
            )
        return samples


class InMemoryStorage(TensorStorage):
    """Storage for a tensor that is fully resident in memory."""

    data: npt.NDArray

    def __init__(self, data: Union[npt.NDArray, DenseTensor]) -> None:
        if isinstance(data, DenseTensor):
            data = data.data
        self.data = np.ascontiguousarray(data)
        self.shape = self.data.shape

    def fetch_fibers(
        self, mode: int, samples: npt.NDArray, num_increments: int = 0
    ) -> npt.NDArray[np.float64]:
        samples = self._check_samples(mode, samples)
        lin_idx = fiber_linear_indices(samples, mode, self.shape)
        return self.data.reshape(-1)[lin_idx]

    def read_full(self) -> npt.NDArray[np.float64]:
        return self.data

    def __repr__(self) -> str:
        return (
            f"<In-memory storage of shape {self.shape} at {hex(id(self))}>"
        )


class NpyFileStorage(TensorStorage):
    """Storage for a tensor saved as ``.npy`` file on disk.

    The file is memory mapped read-only, so only the header is read on
    construction. Fibers are fetched by reading contiguous slabs along the
    target mode, trading memory for the number of reads."""

    path: str
    data: np.memmap

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self.path = os.fspath(path)
        self.data = np.load(self.path, mmap_mode="r")
        self.shape = self.data.shape

    @staticmethod
    def increment_points(size: int, num_increments: int) -> npt.NDArray:
        """Slab boundaries for reading ``size`` elements in
        ``num_increments`` contiguous pieces. Zero means a single read, and
        there are never more pieces than elements."""
        num_increments = min(max(num_increments, 1), size)
        points = np.linspace(0, size, num_increments + 1)
        return np.round(points).astype(np.int64)

    def fetch_fibers(
        self, mode: int, samples: npt.NDArray, num_increments: int = 0
    ) -> npt.NDArray[np.float64]:
        samples = self._check_samples(mode, samples)
        points = self.increment_points(self.shape[mode], num_increments)

        result = np.zeros((samples.shape[0], self.shape[mode]), self.data.dtype)
        for start, stop in zip(points[:-1], points[1:]):
            slab_index = (slice(None),) * mode + (slice(start, stop),)
            slab = np.array(self.data[slab_index])
            lin_idx = fiber_linear_indices(samples, mode, slab.shape)
            result[:, start:stop] = slab.reshape(-1)[lin_idx]
        return result

    def read_full(self) -> npt.NDArray[np.float64]:
        return np.array(self.data)

    def __repr__(self) -> str:
        return (
            f"<Storage of shape {self.shape} in file '{self.path}'"
            f" at {hex(id(self))}>"
        )


def as_storage(
    tensor: Union[TensorStorage, DenseTensor, npt.NDArray, str, os.PathLike]
) -> TensorStorage:
    """Wrap ``tensor`` in the appropriate ``TensorStorage``.

    Strings and paths are interpreted as ``.npy`` files."""
    if isinstance(tensor, TensorStorage):
        return tensor
    if isinstance(tensor, (str, os.PathLike)):
        return NpyFileStorage(tensor)
    if isinstance(tensor, (DenseTensor, np.ndarray)):
        return InMemoryStorage(tensor)
    raise TypeError(
        f"Can't use object of type {type(tensor).__name__} as tensor storage"
    )
