"""Implements dense tensors and tensors in the tensor ring format"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional, Tuple, Union

import numpy as np
import numpy.typing as npt
from numpy.random import SeedSequence

from tr_sketch.utils import ArrayList, TRRank, process_tr_rank, random_normal


class Tensor(ABC):
    """Abstract base class for tensors."""

    #: The shape of the tensor
    shape: Tuple[int, ...]

    @abstractmethod
    def to_numpy(self) -> npt.NDArray[np.float64]:
        """Converts the tensor to a (dense) numpy array of same shape."""

    def error(
        self, other: Union[Tensor, npt.NDArray], relative: bool = False
    ) -> float:
        """L2 error of the tensor.

        ``other`` can be another ``Tensor`` or a numpy array of the same
        shape. Relative error is measured with respect to ``other``, and is
        infinite if ``other`` is zero."""
        if isinstance(other, np.ndarray):
            other = DenseTensor(other)
        if other.shape != self.shape:
            raise ValueError(
                f"Shape {self.shape} doesn't match shape {other.shape}"
            )
        other_numpy = other.to_numpy()
        error = np.linalg.norm(self.to_numpy() - other_numpy)
        if relative:
            other_norm = np.linalg.norm(other_numpy)
            if other_norm == 0:
                return np.inf
            error /= other_norm
        return float(error)

    @property
    def ndim(self) -> int:
        """Number of modes of the tensor."""
        return len(self.shape)


class DenseTensor(Tensor):
    shape: Tuple[int, ...]
    data: npt.NDArray[np.float64]

    def __init__(self, data: npt.NDArray) -> None:
        self.shape = data.shape
        self.data = data

    def to_numpy(self) -> npt.NDArray[np.float64]:
        return self.data

    def __repr__(self) -> str:
        return f"<Dense tensor of shape {self.shape} at {hex(id(self))}>"


class TensorRing(Tensor):
    """Tensor in the tensor ring format.

    Core ``mu`` has shape ``(rank[mu-1], shape[mu], rank[mu])``, where the
    rank index wraps around, so ``rank[-1]`` is the bond closing the ring.
    Entry ``X[i_0, ..., i_{d-1}]`` is the trace of the product of the slices
    ``core[mu][:, i_mu, :]``."""

    #: The shape of the tensor
    shape: Tuple[int, ...]

    #: Tuple encoding the tensor ring rank
    rank: Tuple[int, ...]

    #: A list containing the cores of the tensor ring
    cores: ArrayList

    def __init__(self, cores: ArrayList) -> None:
        d = len(cores)
        for mu, C in enumerate(cores):
            if C.ndim != 3:
                raise ValueError(
                    f"Core {mu} has shape {C.shape}, but cores must be order 3"
                )
            if C.shape[2] != cores[(mu + 1) % d].shape[0]:
                raise ValueError(
                    f"Rank mismatch between core {mu} of shape {C.shape} and"
                    f" core {(mu + 1) % d} of shape {cores[(mu + 1) % d].shape}"
                )
        self.cores = list(cores)
        self.shape = tuple(C.shape[1] for C in self.cores)
        self.rank = tuple(C.shape[2] for C in self.cores)

    def to_numpy(self) -> npt.NDArray:
        """Contract all cores to a dense array and close the ring."""
        dense_tensor = self.cores[0]
        for C in self.cores[1:]:
            dense_tensor = np.einsum("i...j,jkl->i...kl", dense_tensor, C)
        return np.trace(dense_tensor, axis1=0, axis2=-1)

    @classmethod
    def random(
        cls,
        shape: Tuple[int, ...],
        rank: TRRank,
        seed: Optional[int] = None,
    ) -> TensorRing:
        """
        Generate random tensor ring cores.

        A core of shape ``(r1, n, r2)`` has Gaussian entries with zero mean and
        variance ``1 / (r1 * n)``.
        """
        d = len(shape)
        rank = process_tr_rank(rank, shape)

        cores = []
        seq = SeedSequence(seed)
        seeds = seq.generate_state(d)
        for mu in range(d):
            r1 = rank[mu - 1]
            r2 = rank[mu]
            n = shape[mu]
            core = random_normal(shape=(r1, n, r2), seed=seeds[mu])
            core /= np.sqrt(r1 * n)
            cores.append(core)

        return cls(cores)

    def __getitem__(self, index: int) -> npt.NDArray:
        return self.cores[index]

    def __setitem__(self, index: int, data: npt.NDArray) -> None:
        if data.shape != self.cores[index].shape:
            raise ValueError(
                f"Core of shape {data.shape} can't replace core {index} of"
                f" shape {self.cores[index].shape}"
            )
        self.cores[index] = data

    def __repr__(self) -> str:
        return (
            f"<Tensor ring of shape {self.shape} with rank {self.rank}"
            f" at {hex(id(self))}>"
        )


def low_rank_tr_tensor(
    shape: Tuple[int, ...],
    rank: TRRank,
    noise: float = 0.0,
    seed: Optional[int] = None,
) -> npt.NDArray:
    """Create dense tensor with exact TR-rank ``rank`` plus Gaussian noise.

    The noise is scaled relative to the norm of the low-rank tensor, so that
    ``noise`` is roughly the relative distance to the noiseless tensor."""
    seq = SeedSequence(seed)
    tr_seed, noise_seed = seq.generate_state(2)
    X = TensorRing.random(shape, rank, seed=tr_seed).to_numpy()
    if noise > 0:
        N = random_normal(shape=X.shape, seed=noise_seed)
        X = X + noise * np.linalg.norm(X) / np.linalg.norm(N) * N
    return X
