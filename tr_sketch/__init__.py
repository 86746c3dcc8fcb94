from tr_sketch.storage import InMemoryStorage, NpyFileStorage, TensorStorage
from tr_sketch.tensor import DenseTensor, TensorRing, low_rank_tr_tensor
from tr_sketch.tr_als import ALSState, SampledTRALS, tr_als_sampled
