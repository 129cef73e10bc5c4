import itertools
import logging
import random
from typing import Dict, Mapping, Tuple

import numpy as np
import torch
from torch.utils.data import DataLoader, Dataset, Subset, TensorDataset
from torchvision import datasets, transforms

from .errors import PartitionOverlap

logger = logging.getLogger(__name__)

TARGET_TRAIN = "target-training"
TARGET_TEST = "target-testing"
ATTACKER_TRAIN = "attacker-training"
ATTACKER_TEST = "attacker-testing"


def set_random_seeds(seed: int) -> None:
    random.seed(seed)
    torch.manual_seed(seed)
    np.random.seed(seed)


def synthetic_records(
    num_records: int,
    num_classes: int,
    shape: Tuple[int, int, int] = (1, 8, 8),
    seed: int = 0,
    noise: float = 0.05,
) -> TensorDataset:
    """Class-prototype records in ``[0, 1]`` with integer labels.

    Every class gets a fixed random binary pattern; records are their class
    pattern plus small Gaussian noise. Labels cycle through the classes so
    each class is represented.
    """
    gen = torch.Generator().manual_seed(seed)
    prototypes = (torch.rand((num_classes, *shape), generator=gen) > 0.5).float()
    labels = torch.arange(num_records) % num_classes
    labels = labels[torch.randperm(num_records, generator=gen)]
    records = prototypes[labels] + noise * torch.randn((num_records, *shape), generator=gen)
    return TensorDataset(records.clamp(0.0, 1.0), labels)


def uniform_records(num_records: int, shape: Tuple[int, int, int] = (1, 8, 8), seed: int = 0) -> TensorDataset:
    gen = torch.Generator().manual_seed(seed)
    records = torch.rand((num_records, *shape), generator=gen)
    return TensorDataset(records, torch.zeros(num_records, dtype=torch.long))


def load_mnist(root: str = "./data", train: bool = True) -> Dataset:
    """MNIST digits as ``(1, 28, 28)`` tensors scaled to ``[0, 1]``."""
    return datasets.MNIST(root=root, train=train, download=True, transform=transforms.ToTensor())


def _identities(dataset: Dataset) -> set:
    """``(base dataset, index)`` pairs for every record, resolving nested subsets."""
    indices = range(len(dataset))
    while isinstance(dataset, Subset):
        indices = [dataset.indices[i] for i in indices]
        dataset = dataset.dataset
    return {(id(dataset), int(i)) for i in indices}


def check_disjoint(partitions: Mapping[str, Dataset]) -> None:
    """Raises :class:`PartitionOverlap` if any two partitions share a record."""
    ids = {name: _identities(part) for name, part in partitions.items()}
    for (name_a, ids_a), (name_b, ids_b) in itertools.combinations(ids.items(), 2):
        shared = ids_a & ids_b
        if shared:
            raise PartitionOverlap(
                "partitions share records", first=name_a, second=name_b, shared=len(shared)
            )


def make_partitions(dataset: Dataset, sizes: Mapping[str, int], seed: int = 0) -> Dict[str, Subset]:
    """Splits ``dataset`` into disjoint named subsets of the requested sizes.

    Indices are shuffled once with a seeded generator and consecutive slices
    are taken in the order of ``sizes``.
    """
    total = sum(sizes.values())
    if any(n < 0 for n in sizes.values()):
        raise ValueError(f"partition sizes must be non-negative, got {dict(sizes)}")
    if total > len(dataset):
        raise ValueError(f"requested {total} records but dataset holds {len(dataset)}")

    gen = torch.Generator().manual_seed(seed)
    order = torch.randperm(len(dataset), generator=gen).tolist()
    partitions: Dict[str, Subset] = {}
    start = 0
    for name, n in sizes.items():
        partitions[name] = Subset(dataset, order[start : start + n])
        start += n
    check_disjoint(partitions)
    logger.debug("Built partitions %s", {k: len(v) for k, v in partitions.items()})
    return partitions


def make_loader(
    dataset: Dataset,
    batch_size: int,
    shuffle: bool,
    seed: int = 0,
    drop_last: bool = False,
) -> DataLoader:
    """Training partitions are reshuffled every epoch from a seeded generator;
    evaluation partitions keep their order."""
    gen = torch.Generator().manual_seed(seed) if shuffle else None
    return DataLoader(
        dataset,
        batch_size=batch_size,
        shuffle=shuffle,
        drop_last=drop_last,
        generator=gen,
        num_workers=0,
    )
