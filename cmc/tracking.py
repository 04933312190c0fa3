"""Tracking diagnostics — which parameters does torch actually see?

Pure library module. Works on any nn.Module, CustomModel or not.

tracked_modules() / tracked_parameters() enumerate what an optimizer built
from model.parameters() will update. find_untracked() runs one forward pass
and reports modules with weights that executed but are not part of the
model's module tree: layers built inside a forward procedure instead of
being registered during setup. Those run fine and never train.
"""

from dataclasses import dataclass

import torch
import torch.nn as nn
from torch.nn.modules.module import register_module_forward_pre_hook


@dataclass
class UntrackedModule:
    """A module with parameters that ran during forward but isn't tracked."""

    type_name: str
    num_params: int

    def to_dict(self) -> dict:
        return {"type": self.type_name, "params": self.num_params}


def tracked_modules(model: nn.Module) -> list[str]:
    """Names of the model's registered sub-components.

    For a CustomModel these are the names passed to ctx.register(); for any
    other module, its direct children.
    """
    if hasattr(model, "context"):
        return model.context.names()
    return [name for name, _ in model.named_children()]


def tracked_parameters(model: nn.Module) -> dict[str, nn.Parameter]:
    return dict(model.named_parameters())


def count_parameters(model: nn.Module, trainable_only: bool = False) -> int:
    return sum(
        p.numel()
        for p in model.parameters()
        if p.requires_grad or not trainable_only
    )


def find_untracked(model: nn.Module, inputs, mask=None) -> list[UntrackedModule]:
    """Run one forward pass and report executed-but-untracked modules.

    Runs in eval mode under no_grad so batch-norm statistics are untouched,
    then restores the previous training mode.

    Args:
        model: The model to audit.
        inputs: One input batch.
        mask: Optional mask, passed through when not None.

    Returns:
        Untracked modules in the order they first executed. Empty if every
        weight-bearing module belongs to the model.
    """
    tracked = {id(m) for m in model.modules()}
    seen: set[int] = set()
    found: list[UntrackedModule] = []

    def hook(module: nn.Module, args):
        if id(module) in tracked or id(module) in seen:
            return None
        own_params = list(module.parameters(recurse=False))
        if own_params:
            seen.add(id(module))
            found.append(
                UntrackedModule(
                    type_name=type(module).__name__,
                    num_params=sum(p.numel() for p in own_params),
                )
            )
        return None

    was_training = model.training
    handle = register_module_forward_pre_hook(hook)
    try:
        model.eval()
        with torch.no_grad():
            if mask is None:
                model(inputs)
            else:
                model(inputs, mask=mask)
    finally:
        handle.remove()
        model.train(was_training)
    return found
