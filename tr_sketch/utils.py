import concurrent.futures
import multiprocessing
from typing import List, Sequence, Tuple, Union

import numpy as np
import numpy.typing as npt
import scipy.linalg

ArrayList = List[npt.NDArray[np.float64]]
TRRank = Union[int, Sequence[int]]
ModeValues = Union[int, Sequence[int]]


def matricize(
    A: npt.NDArray, mode: Union[int, Sequence[int]], mat_shape: bool = False
):
    """Matricize tensor ``A`` with respect to ``mode``.

    If mode is an int, return matrix. If mode is a tuple, return tensor of order
    ``len(mode)+1``, unless  ``mat_shape=True``"""
    if isinstance(mode, (int, np.integer)):
        mode = (int(mode),)
    else:  # Try casting to tuple
        mode = tuple(mode)
    perm = mode + tuple(i for i in range(len(A.shape)) if i not in mode)
    A = np.transpose(A, perm)
    right_shape = (np.prod(A.shape[len(mode) :], dtype=int),)
    if mat_shape:
        left_shape = (np.prod(A.shape[: len(mode)], dtype=int),)
    else:
        left_shape = A.shape[: len(mode)]  # type: ignore
    A = A.reshape(left_shape + right_shape)

    return A


def dematricize(A, mode, shape):
    """Undo matricization of ``A`` with respect to ``mode``. Needs ``shape`` of
    original tensor."""
    current_shape = [A.shape[0]] + [s for i, s in enumerate(shape) if i != mode]
    current_shape = tuple(current_shape)
    A = A.reshape(current_shape)
    perm = list(range(1, len(shape)))
    perm = perm[:mode] + [0] + perm[mode:]
    A = np.transpose(A, perm)
    return A


def left_mul_pinv(A, B, cond=None):
    """Compute numerically stable product ``np.linalg.pinv(A)@B``

    For a rank-deficient or underdetermined ``A`` this is the minimum-norm
    least-squares solution of ``A @ X = B``."""
    lstsq = scipy.linalg.lstsq(A, B, cond=cond)

    return lstsq[0]


def index_strides(shape: Sequence[int]) -> npt.NDArray[np.int64]:
    """Element strides of a C-ordered array of given shape."""
    strides = np.ones(len(shape), dtype=np.int64)
    for mu in range(len(shape) - 2, -1, -1):
        strides[mu] = strides[mu + 1] * shape[mu + 1]
    return strides


def ravel_index(
    multi_index: npt.ArrayLike, shape: Sequence[int]
) -> npt.NDArray[np.int64]:
    """Convert multi-indices to linear indices (C order, 0-based).

    ``multi_index`` has shape ``(..., len(shape))``; the last axis enumerates
    the modes."""
    multi_index = np.asarray(multi_index, dtype=np.int64)
    if multi_index.shape[-1] != len(shape):
        raise ValueError(
            f"Multi-index with {multi_index.shape[-1]} modes doesn't match "
            f"shape {tuple(shape)}"
        )
    return multi_index @ index_strides(shape)


def fiber_linear_indices(
    samples: npt.NDArray, mode: int, shape: Sequence[int]
) -> npt.NDArray[np.int64]:
    """Linear indices of the mode-``mode`` fibers selected by ``samples``.

    ``samples`` has shape ``(J, len(shape))``; its column ``mode`` is ignored.
    Returns an array of shape ``(J, shape[mode])`` whose row ``j`` holds the
    linear indices of all entries of the fiber through ``samples[j]``."""
    fiber_starts = np.array(samples, dtype=np.int64)
    fiber_starts[:, mode] = 0
    offsets = ravel_index(fiber_starts, shape)
    fiber = np.arange(shape[mode], dtype=np.int64) * index_strides(shape)[mode]
    return offsets[:, None] + fiber[None, :]


def as_integer(value, name: str) -> int:
    """Cast ``value`` to int, raising if that would change its value."""
    if int(value) != value:
        raise ValueError(f"{name} must be integer, not {value}")
    return int(value)


def process_mode_values(
    values: ModeValues, n_dims: int, name: str, allow_zero: bool = False
) -> Tuple[int, ...]:
    """Make sure a per-mode parameter is a tuple of length ``n_dims``.

    An integer is broadcast to all modes."""
    if np.ndim(values) == 0:
        values_tuple = (as_integer(values, name),) * n_dims
    else:
        values_tuple = tuple(as_integer(v, name) for v in values)
    if len(values_tuple) != n_dims:
        raise ValueError(
            f"{name} {values_tuple} doesn't have right number of elements,"
            f" expected {n_dims}"
        )
    lower = 0 if allow_zero else 1
    if any(v < lower for v in values_tuple):
        bound = "non-negative" if allow_zero else "positive"
        raise ValueError(f"{name} {values_tuple} must be {bound}")
    return values_tuple


def process_tr_rank(rank: TRRank, shape: Tuple[int, ...]) -> Tuple[int, ...]:
    """
    Process TR rank, and check validity. Makes sure rank is a tuple.

    A tensor ring of order ``d`` has ``d`` ranks, ``rank[mu]`` being the bond
    between core ``mu`` and core ``mu+1`` (cyclically).
    """
    return process_mode_values(rank, len(shape), "TR-rank")


class MultithreadedRNG:
    """
    Multithreaded standard normal random number generator.

    Used for initializing cores; adapted from the numpy docs.
    """

    def __init__(self, shape, seed=None, threads=None):
        if threads is None:
            threads = multiprocessing.cpu_count()
        self.threads = threads

        seq = np.random.SeedSequence(seed)
        self._random_generators = [
            np.random.default_rng(s) for s in seq.spawn(threads)
        ]

        self.shape = shape
        n = np.prod(shape, dtype=int)
        self.values = np.empty(n)
        self.step = np.ceil(n / threads).astype(np.int_)
        self.fill()

    def fill(self):
        def _fill(random_state, out, first, last):
            random_state.standard_normal(out=out[first:last])

        with concurrent.futures.ThreadPoolExecutor(self.threads) as executor:
            futures = {}
            for i in range(self.threads):
                args = (
                    _fill,
                    self._random_generators[i],
                    self.values,
                    i * self.step,
                    (i + 1) * self.step,
                )
                futures[executor.submit(*args)] = i
            concurrent.futures.wait(futures)
        self.values = self.values.reshape(self.shape)


def random_normal(shape, seed=None):
    """
    Generate multi-threaded random numbers
    """
    return MultithreadedRNG(shape, seed).values
