"""ArrayDataset — thin wrapper over torch Dataset for in-memory arrays.

Has a built-in train/validation split: the last `validation_split`
fraction of rows is held out, before any shuffling.
Also home to to_categorical() for one-hot targets.
"""

from typing import Optional

import numpy as np
import torch
from torch.utils.data import DataLoader, Dataset, Subset


def to_categorical(labels, num_classes: Optional[int] = None) -> torch.Tensor:
    """One-hot encode integer class labels.

    Args:
        labels: Integer labels, shape [N] or [N, 1]. Floats holding whole
            numbers (e.g. rounded uniforms) are accepted.
        num_classes: Number of classes. Defaults to max(label) + 1.

    Returns:
        Float tensor of shape [N, num_classes].
    """
    if isinstance(labels, np.ndarray):
        labels = torch.from_numpy(labels)
    labels = torch.as_tensor(labels)
    if labels.ndim == 2 and labels.shape[1] == 1:
        labels = labels.reshape(-1)
    labels = labels.long()
    if num_classes is None:
        num_classes = int(labels.max().item()) + 1
    if labels.numel() and (labels.min() < 0 or labels.max() >= num_classes):
        raise ValueError(
            f"Labels must be in [0, {num_classes}), got range "
            f"[{int(labels.min())}, {int(labels.max())}]"
        )
    return torch.nn.functional.one_hot(labels, num_classes).float()


class ArrayDataset(Dataset):
    """Features plus optional targets with a tail validation split.

    Args:
        x: Array/tensor of shape [N, ...].
        y: Optional array/tensor of shape [N, ...].
        validation_split: Fraction of rows (taken from the end) held out.
    """

    def __init__(self, x, y=None, validation_split: float = 0.0):
        if not 0.0 <= validation_split < 1.0:
            raise ValueError(
                f"validation_split must be in [0, 1), got {validation_split}"
            )
        self.x = torch.as_tensor(x)
        self.y = torch.as_tensor(y) if y is not None else None
        if self.y is not None and len(self.y) != len(self.x):
            raise ValueError(
                f"x and y have different lengths: {len(self.x)} vs {len(self.y)}"
            )

        n = len(self.x)
        n_train = n - int(n * validation_split)
        self._train_indices = list(range(n_train))
        self._val_indices = list(range(n_train, n))

    def __len__(self) -> int:
        return len(self.x)

    def __getitem__(self, idx: int) -> tuple:
        if self.y is not None:
            return self.x[idx], self.y[idx]
        return (self.x[idx],)

    @property
    def has_validation(self) -> bool:
        return len(self._val_indices) > 0

    def describe(self) -> dict:
        return {
            "size": len(self),
            "feature_shape": list(self.x.shape[1:]),
            "train_size": len(self._train_indices),
            "validation_size": len(self._val_indices),
        }

    def train_loader(
        self,
        batch_size: int,
        shuffle: bool = True,
        generator: Optional[torch.Generator] = None,
    ) -> DataLoader:
        """DataLoader over the training split. Keeps the last partial batch."""
        subset = Subset(self, self._train_indices)
        return DataLoader(
            subset, batch_size=batch_size, shuffle=shuffle, generator=generator
        )

    def validation_loader(self, batch_size: int) -> DataLoader:
        subset = Subset(self, self._val_indices)
        return DataLoader(subset, batch_size=batch_size, shuffle=False)

    def loader(self, batch_size: int) -> DataLoader:
        """Ordered DataLoader over every row (for evaluate/predict)."""
        return DataLoader(self, batch_size=batch_size, shuffle=False)
