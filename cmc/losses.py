"""Loss functions by name.

All losses take (y_pred, y_true) and return a scalar tensor averaged over
the batch. Cross-entropy losses expect probabilities (softmax/sigmoid
outputs), not logits, and clip them to [EPSILON, 1 - EPSILON] before the log.
"""

from typing import Callable

import torch
import torch.nn.functional as F


LossFn = Callable[[torch.Tensor, torch.Tensor], torch.Tensor]

EPSILON = 1e-7


def categorical_crossentropy(y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
    """Cross-entropy against one-hot (or soft) target rows."""
    # Renormalize so rows that don't quite sum to 1 still form a distribution
    probs = y_pred / y_pred.sum(dim=-1, keepdim=True)
    probs = probs.clamp(EPSILON, 1.0 - EPSILON)
    return -(y_true.to(probs.dtype) * probs.log()).sum(dim=-1).mean()


def sparse_categorical_crossentropy(
    y_pred: torch.Tensor, y_true: torch.Tensor
) -> torch.Tensor:
    """Cross-entropy against integer class indices."""
    probs = y_pred.clamp(EPSILON, 1.0 - EPSILON)
    targets = y_true.reshape(-1).long()
    return F.nll_loss(probs.log().reshape(-1, probs.shape[-1]), targets)


def binary_crossentropy(y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
    probs = y_pred.clamp(EPSILON, 1.0 - EPSILON)
    return F.binary_cross_entropy(probs, y_true.to(probs.dtype))


def mse(y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
    return F.mse_loss(y_pred, y_true.to(y_pred.dtype))


def mae(y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
    return F.l1_loss(y_pred, y_true.to(y_pred.dtype))


LOSSES: dict[str, LossFn] = {
    "categorical_crossentropy": categorical_crossentropy,
    "sparse_categorical_crossentropy": sparse_categorical_crossentropy,
    "binary_crossentropy": binary_crossentropy,
    "mse": mse,
    "mean_squared_error": mse,
    "mae": mae,
    "mean_absolute_error": mae,
}


def resolve_loss(loss) -> LossFn:
    """Return a loss callable for a name, or the callable itself."""
    if callable(loss):
        return loss
    if loss not in LOSSES:
        raise ValueError(f"Unknown loss '{loss}'. Known: {sorted(LOSSES)}")
    return LOSSES[loss]
