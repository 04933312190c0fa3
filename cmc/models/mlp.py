"""Simple MLP — two dense layers with optional dropout and batch normalization.

dense1 (Linear -> ReLU) -> [dropout] -> [batch norm] -> dense2 (Linear -> Softmax).
Returns class probabilities; rows sum to 1.

The walkthrough model: it shows that optional layers are registered only
when their flag is set, and that the forward pass reads the same flags
from ctx.config.
"""

from dataclasses import dataclass
from typing import Optional

import torch
import torch.nn as nn

from cmc.config import ExecutionContext
from cmc.context import ModelContext
from cmc.model import CustomModel, custom_model


@dataclass
class MLPConfig:
    """Build-time settings for the simple MLP.

    Args:
        num_classes: Output units (softmax over these).
        in_features: Input feature dimension.
        hidden_units: Width of dense1.
        use_dp: Register and apply a Dropout layer after dense1.
        use_bn: Register and apply BatchNorm over the last axis after dense1.
        dropout_rate: Dropout probability when use_dp.
        activity_l2: If > 0, adds activity_l2 * mean(hidden**2) as an auxiliary loss.
    """

    num_classes: int
    in_features: int = 100
    hidden_units: int = 32
    use_dp: bool = False
    use_bn: bool = False
    dropout_rate: float = 0.5
    activity_l2: float = 0.0


def _batch_norm_last_axis(bn: nn.Module, x: torch.Tensor) -> torch.Tensor:
    # BatchNorm1d normalizes dim 1; fold leading dims so the last axis is the feature axis
    if x.ndim <= 2:
        return bn(x)
    shape = x.shape
    return bn(x.reshape(-1, shape[-1])).reshape(shape)


def mlp_forward(ctx: ModelContext, inputs: torch.Tensor, mask=None) -> torch.Tensor:
    """Forward pass. mask is accepted and ignored."""
    cfg: MLPConfig = ctx.config
    x = ctx.dense1(inputs)
    if cfg.activity_l2 > 0:
        ctx.add_loss(cfg.activity_l2 * x.pow(2).mean(), name="activity_l2")
    if cfg.use_dp:
        x = ctx.dp(x)
    if cfg.use_bn:
        x = _batch_norm_last_axis(ctx.bn, x)
    return ctx.dense2(x)


def build_mlp(ctx: ModelContext):
    """Register the MLP's layers on ctx and return its forward procedure."""
    cfg: MLPConfig = ctx.config
    ctx.register(
        "dense1",
        nn.Sequential(nn.Linear(cfg.in_features, cfg.hidden_units), nn.ReLU()),
    )
    ctx.register(
        "dense2",
        nn.Sequential(nn.Linear(cfg.hidden_units, cfg.num_classes), nn.Softmax(dim=-1)),
    )
    if cfg.use_dp:
        ctx.register("dp", nn.Dropout(cfg.dropout_rate))
    if cfg.use_bn:
        ctx.register("bn", nn.BatchNorm1d(cfg.hidden_units))
    return mlp_forward


def simple_mlp(
    num_classes: int,
    use_bn: bool = False,
    use_dp: bool = False,
    name: Optional[str] = None,
    execution: Optional[ExecutionContext] = None,
    **kwargs,
) -> CustomModel:
    """Build the simple MLP.

    Extra keyword arguments go to MLPConfig (in_features, hidden_units,
    dropout_rate, activity_l2).
    """
    config = MLPConfig(num_classes=num_classes, use_dp=use_dp, use_bn=use_bn, **kwargs)
    return custom_model(build_mlp, name=name, config=config, execution=execution)
