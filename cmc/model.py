"""custom_model() — build a trainable nn.Module from a specification procedure.

The builder runs exactly once:

    def build(ctx):
        ctx.register("dense1", nn.Sequential(nn.Linear(100, 32), nn.ReLU()))
        ctx.register("dense2", nn.Sequential(nn.Linear(32, 10), nn.Softmax(dim=-1)))

        def forward(ctx, inputs, mask=None):
            return ctx.dense2(ctx.dense1(inputs))

        return forward

    model = custom_model(build, name="mlp")
    probs = model(x)   # re-runs forward only, never build

Everything registered on ctx is a submodule of the returned CustomModel, so
model.parameters() and any optimizer built from it see those weights.
A layer created inside forward() and never registered still runs, but it
is NOT tracked and never trains. find_untracked() in cmc.tracking detects
that case.
"""

import inspect
import itertools
from typing import Any, Callable, Optional

import torch
import torch.nn as nn

from cmc.config import ExecutionContext
from cmc.context import AuxLoss, ModelContext


ForwardFn = Callable[..., torch.Tensor]
BuildFn = Callable[[ModelContext], ForwardFn]

_name_counter = itertools.count(1)


def _accepts_mask(fn: Callable) -> bool:
    """True if fn can take a `mask` keyword argument."""
    try:
        params = inspect.signature(fn).parameters.values()
    except (TypeError, ValueError):
        return False
    return any(
        p.name == "mask" or p.kind == inspect.Parameter.VAR_KEYWORD for p in params
    )


class CustomModel(nn.Module):
    """A model whose forward pass is a user procedure over a ModelContext.

    Don't construct directly; use custom_model().

    Args:
        name: Human-readable model name.
        context: The sealed ModelContext holding registered components.
        forward_fn: forward(ctx, inputs, mask=None) -> Tensor.
        execution: Device/dtype this model's inputs are moved to.
    """

    def __init__(
        self,
        name: str,
        context: ModelContext,
        forward_fn: ForwardFn,
        execution: ExecutionContext,
    ):
        super().__init__()
        self._name = name
        self._context = context
        self._forward_fn = forward_fn
        self._forward_takes_mask = _accepts_mask(forward_fn)
        self._execution = execution
        # Registering the ModuleDict is what makes components visible to torch
        self.components = context.module_dict

    @property
    def name(self) -> str:
        return self._name

    @property
    def context(self) -> ModelContext:
        return self._context

    @property
    def config(self) -> Any:
        return self._context.config

    @property
    def execution(self) -> ExecutionContext:
        return self._execution

    @property
    def layers(self) -> list[tuple[str, nn.Module]]:
        """Registered sub-components in registration order."""
        return self._context.items()

    @property
    def aux_losses(self) -> list[AuxLoss]:
        """Auxiliary losses registered by the most recent forward pass."""
        return self._context.losses

    @property
    def losses(self) -> list[torch.Tensor]:
        return [aux.value for aux in self._context.losses]

    def forward(self, inputs, mask=None) -> torch.Tensor:
        """Run the forward procedure on one batch.

        Clears the previous call's auxiliary losses first. The mask is passed
        through only if the forward procedure declares a `mask` parameter.
        """
        self._context.clear_losses()
        inputs = self._execution.to(inputs)
        if self._forward_takes_mask:
            return self._forward_fn(self._context, inputs, mask=mask)
        return self._forward_fn(self._context, inputs)

    def describe(self) -> dict:
        """Per-layer types and parameter counts."""
        layers = []
        for layer_name, module in self.layers:
            layers.append(
                {
                    "name": layer_name,
                    "type": _layer_type(module),
                    "params": sum(p.numel() for p in module.parameters()),
                }
            )
        return {
            "name": self._name,
            "layers": layers,
            "total_params": sum(p.numel() for p in self.parameters()),
            "trainable_params": sum(
                p.numel() for p in self.parameters() if p.requires_grad
            ),
            "execution": self._execution.describe(),
        }

    def summary(self) -> str:
        """Printable table of layers and parameter counts."""
        info = self.describe()
        rows = [(layer["name"], layer["type"], f"{layer['params']:,}") for layer in info["layers"]]
        header = ("Layer", "Type", "Params")
        widths = [
            max(len(header[i]), *(len(r[i]) for r in rows)) if rows else len(header[i])
            for i in range(3)
        ]
        rule = "-" * (sum(widths) + 4)

        def fmt(row):
            return f"{row[0]:<{widths[0]}}  {row[1]:<{widths[1]}}  {row[2]:>{widths[2]}}"

        lines = [f'Model: "{info["name"]}"', rule, fmt(header), rule]
        lines.extend(fmt(r) for r in rows)
        lines.append(rule)
        lines.append(f"Total params: {info['total_params']:,}")
        lines.append(f"Trainable params: {info['trainable_params']:,}")
        return "\n".join(lines)

    def extra_repr(self) -> str:
        return f"name={self._name!r}"


def _layer_type(module: nn.Module) -> str:
    if isinstance(module, nn.Sequential):
        inner = ", ".join(type(m).__name__ for m in module)
        return f"Sequential({inner})"
    return type(module).__name__


def custom_model(
    build: BuildFn,
    name: Optional[str] = None,
    config: Any = None,
    execution: Optional[ExecutionContext] = None,
) -> CustomModel:
    """Run build(ctx) once and wrap the forward procedure it returns.

    Args:
        build: Specification procedure. Registers components on ctx and
            returns forward(ctx, inputs, mask=None).
        name: Model name. None or "" picks a generated one.
        config: Build-time configuration, stored on ctx.config.
        execution: Device/dtype/seed. Defaults to ExecutionContext() (env vars).

    Returns:
        A CustomModel on execution's device and dtype.
    """
    if not callable(build):
        raise TypeError(
            f"custom_model() needs a callable builder, got {type(build).__name__}"
        )
    if not name:
        name = f"custom_model_{next(_name_counter)}"
    if execution is None:
        execution = ExecutionContext()

    execution.apply_seed()
    context = ModelContext(name, config)
    forward_fn = build(context)
    if not callable(forward_fn):
        raise TypeError(
            f"Builder for '{name}' must return a forward procedure, "
            f"got {type(forward_fn).__name__}"
        )
    context.seal()

    model = CustomModel(name, context, forward_fn, execution)
    model.to(device=execution.torch_device, dtype=execution.torch_dtype)
    return model
