import logging

import numpy as np
import pytest

from tr_sketch.storage import InMemoryStorage
from tr_sketch.tensor import TensorRing, low_rank_tr_tensor
from tr_sketch.tr_als import ALSState, SampledTRALS, tr_als_sampled


@pytest.mark.parametrize("resample", [True, False])
@pytest.mark.parametrize(
    "shape,ranks",
    [((6, 7), (2, 3)), ((6, 7, 8), (2, 3, 4)), ((4, 5, 6, 3), (2, 3, 2, 4))],
)
def test_output_shapes(shape, ranks, resample):
    X = np.random.normal(size=shape)
    als = SampledTRALS(
        X, ranks, 40, tol=0, maxiters=2, resample=resample, seed=0
    )
    cores = als.run().cores
    assert len(cores) == len(shape)
    for mu, C in enumerate(cores):
        assert C.shape == (ranks[mu - 1], shape[mu], ranks[mu])
        probs = als.distributions[mu]
        assert np.all(probs >= 0)
        assert np.sum(probs) == pytest.approx(1.0)
    assert als.state is ALSState.MAX_ITERS_REACHED
    assert als.iteration == 2


def test_partial_resampling_buffer():
    shape = (5, 6, 7, 4)
    X = low_rank_tr_tensor(shape, 2, seed=1)
    als = SampledTRALS(X, 2, (30, 10, 10, 10), tol=0, resample=False, seed=101)
    assert als.samples.shape == (30, 4)

    before = als.samples.copy()
    als.step(0)
    changed = np.any(als.samples != before, axis=0)
    assert changed[3]
    assert not np.any(changed[:3])

    before = als.samples.copy()
    als.step(1)
    changed = np.any(als.samples != before, axis=0)
    assert changed[0]
    assert not np.any(changed[1:])


def test_full_resampling_sample_size():
    shape = (5, 6, 7)
    X = low_rank_tr_tensor(shape, 2, seed=2)
    als = SampledTRALS(X, 2, (20, 30, 40), tol=0, seed=102)
    for mode, J in enumerate((20, 30, 40)):
        als.step(mode)
        assert als.samples.shape == (J, 3)


def test_recovery_with_many_sweeps():
    """Sketched problems of an exact low-rank tensor are consistent, so the
    error keeps decreasing with more sweeps."""
    shape = (20, 20, 20)
    ranks = (3, 3, 3)
    X = low_rank_tr_tensor(shape, ranks, seed=3)
    cores = tr_als_sampled(
        X,
        ranks,
        (200, 200, 200),
        tol=0,
        maxiters=100,
        resample=True,
        seed=103,
    )
    error = TensorRing(cores).error(X, relative=True)
    assert error < 1e-6


def test_low_rank_example():
    shape = (20, 20, 20)
    ranks = (3, 3, 3)
    X = low_rank_tr_tensor(shape, ranks, seed=3)
    errors = []
    for seed in range(100, 110):
        cores = tr_als_sampled(X, ranks, 200, tol=0, maxiters=30, seed=seed)
        errors.append(TensorRing(cores).error(X, relative=True))
    # ALS from a random start can stall in a swamp, so not every run converges
    assert min(errors) < 1e-8


def test_init_with_true_cores():
    shape = (8, 9, 10)
    ranks = (2, 3, 2)
    tr = TensorRing.random(shape, ranks, seed=4)
    X = tr.to_numpy()
    cores = tr_als_sampled(
        X, ranks, 60, tol=0, maxiters=1, init_cores=tr.cores, seed=4
    )
    assert TensorRing(cores).error(X, relative=True) < 1e-8


def test_error_does_not_diverge():
    shape = (10, 10, 10)
    ranks = 3
    X = low_rank_tr_tensor(shape, ranks, noise=0.01, seed=5)
    als = SampledTRALS(X, ranks, 90, tol=0, seed=105)
    errors = []
    for _ in range(12):
        als.sweep()
        errors.append(als.relative_error())
    assert np.mean(errors[-4:]) <= 1.1 * np.mean(errors[:4])


@pytest.mark.parametrize("tol", [1e-1, 1e-2, 1e-3])
def test_convergence_termination(tol):
    shape = (10, 10, 10)
    X = low_rank_tr_tensor(shape, 2, noise=0.1, seed=6)
    maxiters = 15
    _, history = tr_als_sampled(
        X, 2, 40, tol=tol, maxiters=maxiters, seed=106, return_history=True
    )
    errors = history["relative_error"]
    assert len(errors) == history["iterations"] <= maxiters
    changes = np.abs(np.diff([np.inf] + errors))
    # Termination happens exactly at the first small change
    assert np.all(changes[:-1] >= tol)
    if history["state"] is ALSState.CONVERGED:
        assert changes[-1] < tol
    else:
        assert len(errors) == maxiters
        assert changes[-1] >= tol


def test_no_error_check_when_tol_zero():
    X = low_rank_tr_tensor((6, 6, 6), 2, seed=7)
    _, history = tr_als_sampled(
        X, 2, 20, tol=0, maxiters=4, seed=107, return_history=True
    )
    assert history["iterations"] == 4
    assert len(history["relative_error"]) == 0
    assert len(history["sweep_time"]) == 4
    assert len(history["step_time"]) == 12
    assert history["state"] is ALSState.MAX_ITERS_REACHED


@pytest.mark.parametrize("resample", [True, False])
def test_file_backed_matches_memory(tmp_path, resample):
    shape = (6, 7, 8)
    ranks = (2, 3, 2)
    X = low_rank_tr_tensor(shape, ranks, noise=0.05, seed=8)
    path = tmp_path / "tensor.npy"
    np.save(path, X)

    kwargs = dict(tol=1e-4, maxiters=5, resample=resample, seed=108)
    cores_memory = tr_als_sampled(X, ranks, 30, **kwargs)
    cores_disk = tr_als_sampled(
        str(path), ranks, 30, num_storage_increments=(1, 2, 5), **kwargs
    )
    for C1, C2 in zip(cores_memory, cores_disk):
        assert np.allclose(C1, C2)


def test_out_of_memory_disables_error_check(monkeypatch):
    X = low_rank_tr_tensor((6, 6, 6), 2, seed=9)
    storage = InMemoryStorage(X)

    def read_full():
        raise MemoryError

    monkeypatch.setattr(storage, "read_full", read_full)
    als = SampledTRALS(storage, 2, 20, tol=1e-3, maxiters=3, seed=109)
    with pytest.warns(RuntimeWarning):
        als.run()
    assert als.state is ALSState.MAX_ITERS_REACHED
    assert als.iteration == 3
    assert not als.error_check


def test_zero_tensor():
    X = np.zeros((5, 6, 7))
    als = SampledTRALS(X, 2, 20, tol=0, maxiters=2, seed=10)
    with pytest.warns(RuntimeWarning):
        cores = als.run().cores
    for mu, C in enumerate(cores):
        assert np.all(np.isfinite(C))
        assert np.allclose(als.distributions[mu], 1 / X.shape[mu])


def test_zero_tensor_disables_error_check():
    X = np.zeros((5, 6, 7))
    als = SampledTRALS(X, 2, 20, tol=1e-3, maxiters=3, seed=110)
    with pytest.warns(RuntimeWarning, match="zero norm"):
        als.run()
    assert not als.error_check
    assert als.state is ALSState.MAX_ITERS_REACHED
    assert als.iteration == 3
    assert len(als.history["relative_error"]) == 0


def test_small_embedding_warns():
    X = np.random.normal(size=(5, 6, 7))
    with pytest.warns(UserWarning):
        SampledTRALS(X, 3, 4, maxiters=1)


def test_verbose_logging(caplog):
    caplog.set_level(logging.INFO)
    X = low_rank_tr_tensor((6, 6, 6), 2, seed=11)
    tr_als_sampled(X, 2, 20, tol=0, maxiters=2, verbose=True, seed=1011)
    assert "Iteration 2 complete" in caplog.text

    caplog.clear()
    tr_als_sampled(X, 2, 20, tol=1e-1, maxiters=5, verbose=True, seed=1011)
    assert "Relative error after iteration 1" in caplog.text


@pytest.mark.parametrize(
    "kwargs",
    [
        dict(ranks=(2, 2), embedding_dims=20),
        dict(ranks=(2, 0, 2), embedding_dims=20),
        dict(ranks=2, embedding_dims=(20, 20)),
        dict(ranks=2, embedding_dims=0),
        dict(ranks=2, embedding_dims=20, maxiters=0),
        dict(ranks=2, embedding_dims=20, maxiters=2.5),
        dict(ranks=2.5, embedding_dims=20),
        dict(ranks=(2, 3.5, 2), embedding_dims=20),
        dict(ranks=2, embedding_dims=20.5),
        dict(ranks=2, embedding_dims=20, num_storage_increments=-1),
        dict(ranks=2, embedding_dims=20, num_storage_increments=(1, 2)),
        dict(
            ranks=2,
            embedding_dims=20,
            init_cores=[np.zeros((2, 5, 2)), np.zeros((2, 6, 2))],
        ),
        dict(
            ranks=2,
            embedding_dims=20,
            init_cores=[
                np.zeros((2, 5, 2)),
                np.zeros((2, 6, 3)),
                np.zeros((3, 7, 2)),
            ],
        ),
    ],
)
def test_configuration_errors(kwargs):
    X = np.random.normal(size=(5, 6, 7))
    with pytest.raises(ValueError):
        tr_als_sampled(X, **kwargs)


def test_bad_tensor_input(tmp_path):
    with pytest.raises(ValueError):
        tr_als_sampled(np.ones(5), 2, 20)
    with pytest.raises(FileNotFoundError):
        tr_als_sampled(str(tmp_path / "missing.npy"), 2, 20)
    with pytest.raises(TypeError):
        tr_als_sampled([[1.0, 2.0]], 2, 20)
