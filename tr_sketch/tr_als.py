"""Tensor ring decomposition by alternating least squares with sampled
sketches of the least-squares problems, following the leverage score sampling
approach of Malik & Becker, "A sampling-based method for tensor ring
decomposition" (ICML 2021)."""
from __future__ import annotations

import enum
import logging
import warnings
from collections import defaultdict
from time import perf_counter
from typing import Any, Dict, Optional, Sequence, Tuple, Union

import numpy as np
import numpy.typing as npt
from numpy.random import SeedSequence

from tr_sketch.sampled_sketch import build_sketch
from tr_sketch.sampling import SamplingDistributions
from tr_sketch.storage import TensorStorage, as_storage
from tr_sketch.tensor import TensorRing
from tr_sketch.utils import (
    ArrayList,
    ModeValues,
    TRRank,
    as_integer,
    dematricize,
    left_mul_pinv,
    process_mode_values,
    process_tr_rank,
)


class ALSState(enum.Enum):
    RUNNING = "running"
    CONVERGED = "converged"
    MAX_ITERS_REACHED = "max_iters_reached"


class SampledTRALS:
    """State of a single sampled TR-ALS run.

    Owns the cores, the sampling distributions and the sample buffer. The
    tensor itself is only accessed through a ``TensorStorage``, so it can live
    on disk. Use ``run`` to iterate until convergence, or ``sweep`` and
    ``step`` for finer control.

    If ``resample=False``, all steps use the same sample size
    ``embedding_dims[0]`` and only the samples of the mode updated in the
    previous step are redrawn.

    The convergence check needs the full tensor in memory; set ``tol <= 0`` to
    skip it when the tensor is too large. In that case exactly ``maxiters``
    sweeps are done."""

    storage: TensorStorage
    shape: Tuple[int, ...]
    ranks: Tuple[int, ...]
    embedding_dims: Tuple[int, ...]
    num_storage_increments: Tuple[int, ...]
    cores: TensorRing
    distributions: SamplingDistributions
    samples: npt.NDArray[np.int64]
    state: ALSState
    error: float
    iteration: int
    history: Dict[str, Any]

    def __init__(
        self,
        tensor: Union[TensorStorage, npt.NDArray, str],
        ranks: TRRank,
        embedding_dims: ModeValues,
        tol: float = 1e-3,
        maxiters: int = 50,
        resample: bool = True,
        verbose: bool = False,
        num_storage_increments: ModeValues = 0,
        seed: Optional[int] = None,
        init_cores: Optional[ArrayList] = None,
    ) -> None:
        self.storage = as_storage(tensor)
        self.shape = tuple(self.storage.shape)
        n_dims = len(self.shape)
        if n_dims < 2:
            raise ValueError(
                f"Tensor of shape {self.shape} needs at least two modes"
            )
        self.ranks = process_tr_rank(ranks, self.shape)
        self.embedding_dims = process_mode_values(
            embedding_dims, n_dims, "Embedding dimensions"
        )
        self.num_storage_increments = process_mode_values(
            num_storage_increments,
            n_dims,
            "Number of storage increments",
            allow_zero=True,
        )
        self.maxiters = as_integer(maxiters, "maxiters")
        if self.maxiters < 1:
            raise ValueError(f"maxiters must be positive, not {maxiters}")
        self.tol = float(tol)
        self.resample = bool(resample)
        self.verbose = verbose

        for mu in range(n_dims):
            J = self.embedding_dims[mu if self.resample else 0]
            R = self.ranks[mu - 1] * self.ranks[mu]
            if J < R:
                warnings.warn(
                    f"Embedding dimension {J} for mode {mu} is smaller than"
                    f" the number of unknowns {R} per fiber; the sketched"
                    f" problems are underdetermined"
                )

        core_seed, sample_seed = SeedSequence(seed).generate_state(2)
        if init_cores is None:
            self.cores = TensorRing.random(self.shape, self.ranks, core_seed)
        else:
            self.cores = self._process_init_cores(init_cores)
        self.distributions = SamplingDistributions(
            self.shape, np.random.default_rng(sample_seed)
        )
        # Mode 0 is updated first, so its distribution isn't needed yet
        for mu in range(1, n_dims):
            self.distributions.update(mu, self.cores[mu])

        J = self.embedding_dims[0]
        self.samples = np.zeros((J, n_dims), dtype=np.int64)
        if not self.resample:
            # Last mode is drawn in the very first step
            for mu in range(1, n_dims - 1):
                self.samples[:, mu] = self.distributions.sample(mu, J)

        self.state = ALSState.RUNNING
        self.error = np.inf
        self.iteration = 0
        self.error_check = self.tol > 0
        self.history = defaultdict(list)

    def _process_init_cores(self, init_cores: ArrayList) -> TensorRing:
        if len(init_cores) != len(self.shape):
            raise ValueError(
                f"Got {len(init_cores)} initial cores for a tensor with"
                f" {len(self.shape)} modes"
            )
        cores = [np.array(C, dtype=np.float64) for C in init_cores]
        for mu, C in enumerate(cores):
            expected = (self.ranks[mu - 1], self.shape[mu], self.ranks[mu])
            if C.shape != expected:
                raise ValueError(
                    f"Initial core {mu} has shape {C.shape}, expected"
                    f" {expected}"
                )
        return TensorRing(cores)

    @property
    def ndim(self) -> int:
        return len(self.shape)

    def draw_samples(self, mode: int) -> None:
        """Update the sample buffer before updating core ``mode``."""
        if self.resample:
            J = self.embedding_dims[mode]
            self.samples = np.zeros((J, self.ndim), dtype=np.int64)
            for mu in range(self.ndim):
                if mu != mode:
                    self.samples[:, mu] = self.distributions.sample(mu, J)
        else:
            mu = (mode - 1) % self.ndim
            J = self.samples.shape[0]
            self.samples[:, mu] = self.distributions.sample(mu, J)

    def step(self, mode: int) -> None:
        """Update core ``mode`` by solving its sketched least-squares
        problem."""
        current_time = perf_counter()
        self.draw_samples(mode)
        G, B = build_sketch(
            self.cores.cores,
            self.storage,
            self.distributions,
            self.samples,
            mode,
            self.num_storage_increments[mode],
        )
        Z = left_mul_pinv(G, B)
        if not np.all(np.isfinite(Z)):
            warnings.warn(
                f"Solution of sketched problem for core {mode} is not finite",
                RuntimeWarning,
            )
        core_shape = self.cores[mode].shape
        new_core = np.ascontiguousarray(dematricize(Z.T, 1, core_shape))
        self.cores[mode] = new_core
        self.distributions.update(mode, new_core)
        self.history["step_time"].append(perf_counter() - current_time)

    def sweep(self) -> None:
        """Update all the cores once, in order."""
        for mode in range(self.ndim):
            self.step(mode)

    def relative_error(self) -> float:
        """Relative error of the current cores. Loads the full tensor."""
        return self.cores.error(self.storage.read_full(), relative=True)

    def check_convergence(self) -> bool:
        """Compute the error and compare it to that of the previous sweep.

        If the tensor doesn't fit in memory or is zero, error checking is
        switched off for the remainder of the run."""
        try:
            error = self.relative_error()
        except MemoryError:
            warnings.warn(
                "Not enough memory to compute the relative error, disabling"
                " the convergence check",
                RuntimeWarning,
            )
            self.error_check = False
            return False
        if not np.isfinite(error):
            warnings.warn(
                "Tensor has zero norm, so the relative error is undefined;"
                " disabling the convergence check",
                RuntimeWarning,
            )
            self.error_check = False
            return False
        self.history["relative_error"].append(error)
        if self.verbose:
            logging.info(
                f"Relative error after iteration {self.iteration}: {error:.8f}"
            )
        converged = abs(error - self.error) < self.tol
        self.error = error
        return converged

    def run(self) -> TensorRing:
        """Iterate until convergence or until ``maxiters`` sweeps are done."""
        if self.state is not ALSState.RUNNING:
            return self.cores
        initial_time = perf_counter()
        while self.iteration < self.maxiters:
            current_time = perf_counter()
            self.sweep()
            self.iteration += 1
            self.history["sweep_time"].append(perf_counter() - current_time)

            if self.error_check:
                if self.check_convergence():
                    if self.verbose:
                        logging.info(
                            "Relative error change below tol; terminating..."
                        )
                    self.state = ALSState.CONVERGED
                    break
            elif self.verbose:
                logging.info(f"Iteration {self.iteration} complete")
        else:
            self.state = ALSState.MAX_ITERS_REACHED

        self.history["total_time"] = perf_counter() - initial_time
        self.history["iterations"] = self.iteration
        self.history["state"] = self.state
        return self.cores


def tr_als_sampled(
    tensor: Union[TensorStorage, npt.NDArray, str],
    ranks: TRRank,
    embedding_dims: ModeValues,
    tol: float = 1e-3,
    maxiters: int = 50,
    resample: bool = True,
    verbose: bool = False,
    num_storage_increments: ModeValues = 0,
    seed: Optional[int] = None,
    init_cores: Optional[Sequence[npt.NDArray]] = None,
    return_history: bool = False,
):
    """Compute a tensor ring decomposition via sampled ALS.

    ``tensor`` is a numpy array, a ``DenseTensor``, a ``TensorStorage``, or
    the path to a ``.npy`` file. In the latter case the tensor is read from
    disk in ``num_storage_increments`` slabs per fiber fetch (0 means a
    single read; can be given per mode).

    ``ranks`` are the target TR-ranks, where core ``mu`` has shape
    ``(ranks[mu-1], shape[mu], ranks[mu])``. ``embedding_dims`` are the number
    of sampled rows per least-squares problem; roughly
    ``ranks[mu-1]*ranks[mu]`` or more is required for a good approximation.

    Iteration stops once the change in relative error between two sweeps is
    below ``tol``, or after ``maxiters`` sweeps. Computing the error requires
    loading the full tensor into memory; ``tol <= 0`` disables it.

    Returns the list of cores, and a dictionary with timings and errors if
    ``return_history=True``.
    """
    als = SampledTRALS(
        tensor,
        ranks,
        embedding_dims,
        tol=tol,
        maxiters=maxiters,
        resample=resample,
        verbose=verbose,
        num_storage_increments=num_storage_increments,
        seed=seed,
        init_cores=init_cores,
    )
    tr = als.run()
    if return_history:
        return tr.cores, als.history
    else:
        return tr.cores
