"""ModelContext — the per-model record of named sub-components and configuration.

A context is created once per model instance. The builder registers
sub-components on it during setup; after setup the context is sealed and
registration is refused. The forward procedure reads components and
configuration from the context explicitly, and may push auxiliary losses
through add_loss().

Registration is explicit: register(name, module) returns True or False.
Assigning a module as an attribute (ctx.dense = nn.Linear(...)) is refused
loudly, because an unregistered module is invisible to torch's parameter
tracking and would silently never train.

Components live in an nn.ModuleDict so the owning CustomModel exposes their
parameters through model.parameters().
"""

import keyword
import weakref
from dataclasses import dataclass
from typing import Any, Iterator, Optional

import torch
import torch.nn as nn


class MissingComponentError(KeyError):
    """Raised when the forward pass looks up a name that was never registered.

    Message names the missing component and lists what is available, e.g.:
    "No component 'dp' in context 'mlp'. Registered: ['dense1', 'dense2']"
    """

    def __str__(self) -> str:
        # KeyError.__str__ wraps the message in quotes
        return str(self.args[0]) if self.args else ""


@dataclass
class AuxLoss:
    """One auxiliary loss term registered during a forward pass."""

    name: str
    value: torch.Tensor


# Module -> weakref to the context that owns it. A dead ref means unowned,
# so layers of discarded contexts can be registered again.
_OWNERS: "weakref.WeakKeyDictionary[nn.Module, weakref.ref]" = weakref.WeakKeyDictionary()

_INTERNAL_ATTRS = frozenset(
    {"name", "config", "_components", "_sealed", "_losses"}
)


class ModelContext:
    """Explicit name -> sub-component registry with build-time configuration.

    Args:
        name: Model name, used in error messages.
        config: Build-time configuration value (typically a dataclass). Stored
            as-is and read explicitly by the forward procedure.
    """

    def __init__(self, name: str, config: Any = None):
        self.name = name
        self.config = config
        self._components = nn.ModuleDict()
        self._sealed = False
        self._losses: list[AuxLoss] = []

    def __setattr__(self, key: str, value: Any) -> None:
        if key in _INTERNAL_ATTRS:
            object.__setattr__(self, key, value)
            return
        if isinstance(value, nn.Module):
            raise AttributeError(
                f"Cannot attach '{key}' by assignment. "
                f"Use ctx.register('{key}', module) so its parameters are tracked."
            )
        raise AttributeError(
            f"ModelContext has no settable attribute '{key}'. "
            f"Store build-time settings in the config passed to custom_model()."
        )

    def __getattr__(self, key: str) -> nn.Module:
        # Only reached when normal attribute lookup fails
        components = self.__dict__.get("_components")
        if components is not None and key in components:
            return components[key]
        raise AttributeError(
            f"No component '{key}' in context '{self.__dict__.get('name')}'"
        )

    # ── Registration ──

    def _can_register(self, name: str, module: nn.Module) -> bool:
        if self._sealed:
            return False
        if not isinstance(name, str) or not name.isidentifier():
            return False
        if keyword.iskeyword(name) or name.startswith("_"):
            return False
        # Would be shadowed by a ModelContext method or attribute
        if hasattr(ModelContext, name) or name in _INTERNAL_ATTRS:
            return False
        if name in self._components:
            return False
        # Would clash with an nn.ModuleDict / nn.Module attribute (keys, train, to, ...)
        if hasattr(self._components, name):
            return False
        if not isinstance(module, nn.Module):
            return False
        ref = _OWNERS.get(module)
        owner = ref() if ref is not None else None
        if owner is not None and owner is not self:
            return False
        # The same module under two names in one context is sharing too
        return all(m is not module for m in self._components.values())

    def register(self, name: str, module: nn.Module) -> bool:
        """Attach a sub-component under name.

        Returns False (and attaches nothing) when the context is sealed, the
        name is not a plain identifier, is already taken or clashes with an
        nn.Module attribute, the value is not an nn.Module, or the module
        already belongs to a live context.
        """
        if not self._can_register(name, module):
            return False
        self._components[name] = module
        _OWNERS[module] = weakref.ref(self)
        return True

    def unregister(self, name: str) -> bool:
        """Detach a sub-component. Only allowed while building."""
        if self._sealed or name not in self._components:
            return False
        module = self._components[name]
        del self._components[name]
        _OWNERS.pop(module, None)
        return True

    def seal(self) -> None:
        self._sealed = True

    @property
    def sealed(self) -> bool:
        return self._sealed

    @property
    def module_dict(self) -> nn.ModuleDict:
        """The ModuleDict holding every registered component."""
        return self._components

    # ── Lookup ──

    def get(self, name: str) -> nn.Module:
        if name not in self._components:
            raise MissingComponentError(
                f"No component '{name}' in context '{self.name}'. "
                f"Registered: {self.names()}"
            )
        return self._components[name]

    def __getitem__(self, name: str) -> nn.Module:
        return self.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._components

    def __len__(self) -> int:
        return len(self._components)

    def __iter__(self) -> Iterator[str]:
        return iter(self._components)

    def names(self) -> list[str]:
        return list(self._components.keys())

    def items(self) -> list[tuple[str, nn.Module]]:
        return list(self._components.items())

    # ── Auxiliary losses ──

    def add_loss(self, value, name: Optional[str] = None) -> None:
        """Register an auxiliary loss for the current forward pass.

        Losses accumulate in call order. Duplicates are kept. Non-scalar
        tensors are reduced with mean().
        """
        if not torch.is_tensor(value):
            value = torch.as_tensor(value, dtype=torch.float32)
        if value.ndim > 0:
            value = value.mean()
        if name is None:
            name = f"loss_{len(self._losses)}"
        self._losses.append(AuxLoss(name, value))

    def clear_losses(self) -> None:
        self._losses = []

    @property
    def losses(self) -> list[AuxLoss]:
        return list(self._losses)

    def __repr__(self) -> str:
        state = "sealed" if self._sealed else "building"
        return f"ModelContext(name={self.name!r}, {state}, components={self.names()})"
