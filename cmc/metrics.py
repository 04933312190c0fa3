"""EvalMetric — well-known metric names and their computations.

An enum that serves as the canonical source of truth for metric keys in
history records and evaluate() results. No magic strings.

Each metric knows its own direction (higher_is_better), display name, and
how to compute itself from (y_pred, y_true).
"""

from enum import Enum

import torch


class EvalMetric(str, Enum):
    """Well-known metric names.

    Inherits from str so it can be used as a dict key and compared with
    plain strings ("accuracy" == EvalMetric.ACCURACY).
    """

    ACCURACY = "accuracy"
    MSE = "mse"
    MAE = "mae"

    @property
    def higher_is_better(self) -> bool:
        return self in _HIGHER_IS_BETTER

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES.get(self, self.value)

    def compute(self, y_pred: torch.Tensor, y_true: torch.Tensor) -> float:
        """Metric value for one batch."""
        return float(_COMPUTE[self](y_pred, y_true))


def accuracy(y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
    """Fraction of rows whose argmax matches the target.

    Targets may be one-hot / probability rows (same shape as y_pred) or
    integer class indices.
    """
    preds = y_pred.argmax(dim=-1)
    if y_true.shape == y_pred.shape:
        targets = y_true.argmax(dim=-1)
    else:
        targets = y_true.reshape(preds.shape).long()
    return (preds == targets).float().mean()


def _mse(y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
    return (y_pred - y_true.to(y_pred.dtype)).pow(2).mean()


def _mae(y_pred: torch.Tensor, y_true: torch.Tensor) -> torch.Tensor:
    return (y_pred - y_true.to(y_pred.dtype)).abs().mean()


_COMPUTE = {
    EvalMetric.ACCURACY: accuracy,
    EvalMetric.MSE: _mse,
    EvalMetric.MAE: _mae,
}

_HIGHER_IS_BETTER = {EvalMetric.ACCURACY}

_DISPLAY_NAMES = {
    EvalMetric.ACCURACY: "Accuracy",
    EvalMetric.MSE: "MSE",
    EvalMetric.MAE: "MAE",
}


def resolve_metric(name) -> EvalMetric:
    """Look up a metric by name. Raises ValueError for unknown names."""
    try:
        return EvalMetric(name)
    except ValueError:
        known = [m.value for m in EvalMetric]
        raise ValueError(f"Unknown metric '{name}'. Known: {known}") from None
