"""Trainer — compile/fit/evaluate/predict driver for any nn.Module.

The model is a dumb function from input batch to output batch. The Trainer
owns the optimizer, the loss and the metrics. If the model exposes
auxiliary losses (CustomModel.losses, filled by ctx.add_loss during the
forward pass), they are added to the main loss on every step.

The optimizer is built over model.parameters(). Layers that were never
registered on the model's context are not in that list and never update.
"""

from dataclasses import dataclass, field
from typing import Callable, Optional, Sequence, Union

import torch
import torch.nn as nn
import torch.optim as optim

from cmc.config import ExecutionContext
from cmc.data import ArrayDataset
from cmc.losses import LossFn, resolve_loss
from cmc.metrics import EvalMetric, resolve_metric


class CompileError(Exception):
    """Raised for unknown optimizer/loss/metric names or use before compile().

    Message must say what's wrong and what's available, e.g.:
    "Unknown optimizer 'adagrad'. Known: ['adam', 'rmsprop', 'sgd']"
    """

    pass


OptimizerFactory = Callable[..., optim.Optimizer]

# name -> (optimizer class, default learning rate)
_OPTIMIZERS: dict[str, tuple[type, float]] = {
    "rmsprop": (optim.RMSprop, 1e-3),
    "adam": (optim.Adam, 1e-3),
    "sgd": (optim.SGD, 1e-2),
}


@dataclass
class History:
    """Per-epoch and per-step records from one fit() call."""

    epochs: list[dict] = field(default_factory=list)
    steps: list[dict] = field(default_factory=list)

    def metric(self, key: str) -> list[float]:
        """One epoch-level series, e.g. history.metric("val_loss")."""
        return [record[key] for record in self.epochs if key in record]

    def to_dict(self) -> dict:
        return {"epochs": self.epochs, "n_steps": len(self.steps)}


class _RunningMeans:
    """Sample-weighted running means of named scalars."""

    def __init__(self):
        self._sums: dict[str, float] = {}
        self._count = 0

    def add(self, values: dict[str, float], n: int) -> None:
        for key, value in values.items():
            self._sums[key] = self._sums.get(key, 0.0) + value * n
        self._count += n

    def means(self) -> dict[str, float]:
        if self._count == 0:
            return {}
        return {key: total / self._count for key, total in self._sums.items()}


class Trainer:
    """Trains a model with one loss, optional metrics, and auxiliary losses.

    Args:
        model: The model to train (any nn.Module mapping inputs -> outputs).
        execution: Device/dtype for targets and the shuffling seed. Defaults
            to the model's own ExecutionContext when it has one.
    """

    def __init__(self, model: nn.Module, execution: Optional[ExecutionContext] = None):
        self.model = model
        if execution is None:
            execution = getattr(model, "execution", None) or ExecutionContext()
        self.execution = execution
        self.model.to(execution.torch_device)

        self.optimizer: Optional[optim.Optimizer] = None
        self._loss_fn: Optional[LossFn] = None
        self._metrics: list[EvalMetric] = []
        self._stop_requested = False

    # ── Compile ──

    def compile(
        self,
        optimizer: Union[str, OptimizerFactory] = "rmsprop",
        loss: Union[str, LossFn] = "categorical_crossentropy",
        metrics: Sequence[str] = ("accuracy",),
        lr: Optional[float] = None,
    ) -> "Trainer":
        """Bind optimizer, loss and metrics.

        Args:
            optimizer: "rmsprop", "adam", "sgd", or a factory called as
                factory(params) (or factory(params, lr=lr) when lr is given).
            loss: Loss name (see cmc.losses.LOSSES) or callable(y_pred, y_true).
            metrics: Metric names (see EvalMetric). A single name is accepted.
            lr: Learning rate. Defaults to the optimizer's usual default.

        Returns:
            self, so calls can chain.
        """
        if isinstance(metrics, str):
            metrics = (metrics,)
        try:
            self._loss_fn = resolve_loss(loss)
            self._metrics = [resolve_metric(m) for m in metrics]
        except ValueError as e:
            raise CompileError(str(e)) from None
        self.optimizer = self._build_optimizer(optimizer, lr)
        return self

    def _build_optimizer(
        self, optimizer: Union[str, OptimizerFactory], lr: Optional[float]
    ) -> optim.Optimizer:
        params = list(self.model.parameters())
        if not params:
            raise CompileError(
                "Model has no tracked parameters. Register layers on the "
                "context during setup so the optimizer can see them."
            )
        if callable(optimizer):
            if lr is None:
                return optimizer(params)
            return optimizer(params, lr=lr)
        key = optimizer.lower()
        if key not in _OPTIMIZERS:
            raise CompileError(
                f"Unknown optimizer '{optimizer}'. Known: {sorted(_OPTIMIZERS)}"
            )
        cls, default_lr = _OPTIMIZERS[key]
        return cls(params, lr=lr if lr is not None else default_lr)

    @property
    def compiled(self) -> bool:
        return self.optimizer is not None and self._loss_fn is not None

    def _require_compiled(self, op: str) -> None:
        if not self.compiled:
            raise CompileError(f"Call compile() before {op}()")

    # ── Loss ──

    def _aux_losses(self) -> list[torch.Tensor]:
        return list(getattr(self.model, "losses", []))

    def _total_loss(self, y_pred: torch.Tensor, y_true: torch.Tensor):
        """Main loss plus auxiliary losses. Returns (total, aux_sum_or_None)."""
        assert self._loss_fn is not None
        loss = self._loss_fn(y_pred, y_true)
        aux = self._aux_losses()
        if not aux:
            return loss, None
        aux_sum = torch.stack([a.to(loss.dtype) for a in aux]).sum()
        return loss + aux_sum, aux_sum

    def _batch_metrics(self, y_pred: torch.Tensor, y_true: torch.Tensor) -> dict:
        return {m.value: m.compute(y_pred, y_true) for m in self._metrics}

    # ── Fit ──

    def fit(
        self,
        x,
        y,
        epochs: int = 1,
        batch_size: int = 32,
        shuffle: bool = True,
        validation_split: float = 0.0,
        on_step: Optional[Callable[[dict], None]] = None,
    ) -> History:
        """Train for the given number of epochs.

        Args:
            x: Inputs [N, ...] (tensor or numpy array).
            y: Targets [N, ...].
            epochs: Passes over the training split.
            batch_size: Rows per step. The last partial batch is kept.
            shuffle: Shuffle the training split each epoch.
            validation_split: Fraction of rows, from the end, held out and
                evaluated after every epoch as val_* entries.
            on_step: Optional callback called after each step with step info dict.

        Returns:
            History with one record per completed epoch and one per step.
        """
        self._require_compiled("fit")
        assert self.optimizer is not None
        self._stop_requested = False

        dataset = ArrayDataset(x, y, validation_split=validation_split)
        generator = None
        if self.execution.seed is not None:
            generator = torch.Generator().manual_seed(self.execution.seed)

        history = History()
        step = 0
        for epoch in range(1, epochs + 1):
            if self._stop_requested:
                break
            self.model.train()
            running = _RunningMeans()

            for batch_x, batch_y in dataset.train_loader(batch_size, shuffle, generator):
                if self._stop_requested:
                    break
                batch_y = self.execution.to(batch_y)

                y_pred = self.model(batch_x)
                loss, aux_sum = self._total_loss(y_pred, batch_y)

                self.optimizer.zero_grad()
                loss.backward()
                self.optimizer.step()

                step += 1
                values = {"loss": loss.item()}
                with torch.no_grad():
                    values.update(self._batch_metrics(y_pred, batch_y))
                running.add(values, len(batch_x))

                step_info = {"step": step, "epoch": epoch, **values}
                if aux_sum is not None:
                    step_info["aux_loss"] = aux_sum.item()
                history.steps.append(step_info)
                if on_step is not None:
                    on_step(step_info)

            means = running.means()
            if not means:
                # Stopped before the epoch's first step
                break
            record = {"epoch": epoch, **means}
            if dataset.has_validation:
                val = self._evaluate_loader(dataset.validation_loader(batch_size))
                record.update({f"val_{key}": value for key, value in val.items()})
            history.epochs.append(record)

        return history

    def stop(self):
        """Request training to stop after current step."""
        self._stop_requested = True

    # ── Evaluate / predict ──

    @torch.no_grad()
    def _evaluate_loader(self, loader) -> dict[str, float]:
        was_training = self.model.training
        self.model.eval()
        running = _RunningMeans()
        try:
            for batch_x, batch_y in loader:
                batch_y = self.execution.to(batch_y)
                y_pred = self.model(batch_x)
                loss, _ = self._total_loss(y_pred, batch_y)
                values = {"loss": loss.item(), **self._batch_metrics(y_pred, batch_y)}
                running.add(values, len(batch_x))
        finally:
            self.model.train(was_training)
        return running.means()

    def evaluate(self, x, y, batch_size: int = 32) -> dict[str, float]:
        """Loss and metrics over (x, y) in eval mode.

        Returns:
            Dict with "loss" and one entry per compiled metric.
        """
        self._require_compiled("evaluate")
        return self._evaluate_loader(ArrayDataset(x, y).loader(batch_size))

    @torch.no_grad()
    def predict(self, x, batch_size: int = 32) -> torch.Tensor:
        """Model outputs for every row of x, in eval mode.

        Empty x gives an empty [0, ...] output from one forward on the empty batch.
        """
        dataset = ArrayDataset(x)
        was_training = self.model.training
        self.model.eval()
        try:
            outputs = [self.model(batch[0]) for batch in dataset.loader(batch_size)]
            if not outputs:
                return self.model(dataset.x[:0])
        finally:
            self.model.train(was_training)
        return torch.cat(outputs, dim=0)

