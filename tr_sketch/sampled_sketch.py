r"""Builds sampled sketches of the least-squares problems of TR-ALS.

Updating core :math:`\mu` of a tensor ring amounts to solving
:math:`G_{\neq\mu} Z = X_{(\mu)}^\top`, where the design matrix
:math:`G_{\neq\mu}` is the unfolding of the contraction of all other cores
and has as many rows as the tensor has entries in all modes except
:math:`\mu`. Instead of forming it, we sample ``J`` of its rows with
probabilities given by the product of the per-mode sampling distributions,
and rescale them so that the sketched normal equations agree with the exact
ones in expectation. Each sampled row of :math:`G_{\neq\mu}` is obtained by
multiplying the sampled slices of the other cores, and the matching rows of
the right hand side are whole mode-:math:`\mu` fibers of the tensor.
"""
from typing import List, Sequence, Tuple

import numpy as np
import numpy.typing as npt

from tr_sketch.sampling import SamplingDistributions
from tr_sketch.storage import TensorStorage
from tr_sketch.utils import ArrayList


def ring_order(mode: int, n_dims: int) -> List[int]:
    """Modes in the order the ring is traversed when skipping ``mode``."""
    return [(mode + k) % n_dims for k in range(1, n_dims)]


def rescaling_factors(
    distributions: SamplingDistributions,
    samples: npt.NDArray[np.int64],
    mode: int,
) -> npt.NDArray[np.float64]:
    r"""Importance weights :math:`1/\sqrt{J\prod_{m\neq\mu} p_m(i_m)}`.

    Computed in log-space to avoid underflow of the product for tensors with
    many modes."""
    J, n_dims = samples.shape
    log_probs = np.zeros(J)
    for m in range(n_dims):
        if m == mode:
            continue
        probs = distributions.probabilities(m, samples[:, m])
        if np.any(probs <= 0):
            raise ValueError(
                f"Sampled index of mode {m} has zero probability, can't"
                f" rescale sketch"
            )
        log_probs += np.log(probs)
    return np.exp(-0.5 * (np.log(J) + log_probs))


def sample_cores(
    cores: Sequence[npt.NDArray], samples: npt.NDArray[np.int64], mode: int
) -> ArrayList:
    """Slices of all cores except ``mode`` at the sampled indices, in ring
    order. Slice of core ``m`` has shape ``(r[m-1], J, r[m])``."""
    return [cores[m][:, samples[:, m], :] for m in ring_order(mode, len(cores))]


def contract_sampled_cores(core_samples: ArrayList) -> npt.NDArray[np.float64]:
    """Multiply the sampled core slices for each sample.

    ``core_samples`` are the output of ``sample_cores``. Result has shape
    ``(J, r[mu-1] * r[mu])``, with column ``a * r[mu] + b`` holding entry
    ``(b, a)`` of the product for each sample; this matches the column order
    of ``matricize(core[mu], 1)``."""
    G = np.transpose(core_samples[0], (1, 0, 2))
    for core_slice in core_samples[1:]:
        G = np.matmul(G, np.transpose(core_slice, (1, 0, 2)))
    J = G.shape[0]
    return np.transpose(G, (0, 2, 1)).reshape(J, -1)


def sketch_design_matrix(
    cores: Sequence[npt.NDArray],
    samples: npt.NDArray[np.int64],
    mode: int,
    rescaling: npt.NDArray[np.float64],
) -> npt.NDArray[np.float64]:
    """Rescaled sampled rows of the design matrix for core ``mode``."""
    G = contract_sampled_cores(sample_cores(cores, samples, mode))
    return rescaling[:, None] * G


def sketch_rhs(
    storage: TensorStorage,
    samples: npt.NDArray[np.int64],
    mode: int,
    rescaling: npt.NDArray[np.float64],
    num_increments: int = 0,
) -> npt.NDArray[np.float64]:
    """Rescaled mode-``mode`` fibers of the tensor through the samples."""
    fibers = storage.fetch_fibers(mode, samples, num_increments)
    return rescaling[:, None] * fibers


def build_sketch(
    cores: Sequence[npt.NDArray],
    storage: TensorStorage,
    distributions: SamplingDistributions,
    samples: npt.NDArray[np.int64],
    mode: int,
    num_increments: int = 0,
) -> Tuple[npt.NDArray[np.float64], npt.NDArray[np.float64]]:
    """Sketched design matrix of shape ``(J, r[mu-1]*r[mu])`` and right hand
    side of shape ``(J, shape[mu])`` for updating core ``mode``."""
    rescaling = rescaling_factors(distributions, samples, mode)
    G = sketch_design_matrix(cores, samples, mode, rescaling)
    B = sketch_rhs(storage, samples, mode, rescaling, num_increments)
    return G, B
