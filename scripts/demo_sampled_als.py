"""Time sampled TR-ALS on a synthetic low-rank tensor, both with the tensor in
memory and with the tensor read from a ``.npy`` file."""
import argparse
import logging
import os
import tempfile
from time import perf_counter

import numpy as np

from tr_sketch.tensor import TensorRing, low_rank_tr_tensor
from tr_sketch.tr_als import tr_als_sampled


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--size", type=int, default=100)
    parser.add_argument("--ndim", type=int, default=3)
    parser.add_argument("--rank", type=int, default=10)
    parser.add_argument("--noise", type=float, default=1e-1)
    parser.add_argument("--maxiters", type=int, default=30)
    parser.add_argument("--increments", type=int, default=10)
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()
    if args.verbose:
        logging.basicConfig(level=logging.INFO)

    shape = (args.size,) * args.ndim
    ranks = (args.rank,) * args.ndim
    embedding_dim = 2 * args.rank**2
    X = low_rank_tr_tensor(shape, ranks, noise=args.noise, seed=179)
    print(f"{shape=}, {ranks=}, {embedding_dim=}")

    current_time = perf_counter()
    cores = tr_als_sampled(
        X,
        ranks,
        embedding_dim,
        tol=0,
        maxiters=args.maxiters,
        verbose=args.verbose,
    )
    elapsed = perf_counter() - current_time
    error = TensorRing(cores).error(X, relative=True)
    print(f"In memory: relative error {error:.2e}, time {elapsed:.2f}s")

    with tempfile.TemporaryDirectory() as tmp_dir:
        path = os.path.join(tmp_dir, "tensor.npy")
        np.save(path, X)
        current_time = perf_counter()
        cores = tr_als_sampled(
            path,
            ranks,
            embedding_dim,
            tol=0,
            maxiters=args.maxiters,
            verbose=args.verbose,
            num_storage_increments=args.increments,
        )
        elapsed = perf_counter() - current_time
    error = TensorRing(cores).error(X, relative=True)
    print(f"From disk: relative error {error:.2e}, time {elapsed:.2f}s")
