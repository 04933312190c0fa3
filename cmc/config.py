"""ExecutionContext — explicit device/dtype/seed for model construction and training.

Reads from env vars with sane defaults. CLI args override env vars.
Passed explicitly to custom_model() and Trainer(); nothing in cmc reads
torch's default device or dtype behind the caller's back.
"""

import os
from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import torch


_DTYPES = {
    "float32": torch.float32,
    "float64": torch.float64,
    "float16": torch.float16,
    "bfloat16": torch.bfloat16,
}


def _default_device() -> str:
    return os.environ.get(
        "CMC_DEVICE", "cuda" if torch.cuda.is_available() else "cpu"
    )


def _default_seed() -> Optional[int]:
    raw = os.environ.get("CMC_SEED", "")
    return int(raw) if raw else None


@dataclass
class ExecutionContext:
    """Where and how tensors live for one model.

    Env vars:
        CMC_DEVICE: Torch device string (default: cuda if available, else cpu)
        CMC_DTYPE: Floating dtype name (default: float32)
        CMC_SEED: Integer seed applied before building layers (default: unset)
    """

    device: str = field(default_factory=_default_device)
    dtype: str = field(default_factory=lambda: os.environ.get("CMC_DTYPE", "float32"))
    seed: Optional[int] = field(default_factory=_default_seed)

    def __post_init__(self):
        if self.dtype not in _DTYPES:
            raise ValueError(
                f"Unknown dtype '{self.dtype}'. Known: {sorted(_DTYPES)}"
            )

    @property
    def torch_device(self) -> torch.device:
        return torch.device(self.device)

    @property
    def torch_dtype(self) -> torch.dtype:
        return _DTYPES[self.dtype]

    def apply_seed(self) -> None:
        """Seed torch's RNG if a seed is configured. No-op otherwise."""
        if self.seed is not None:
            torch.manual_seed(self.seed)

    def to(self, value) -> torch.Tensor:
        """Convert arrays/tensors to a tensor on this device.

        Floating inputs are cast to the configured dtype; integer inputs
        (class labels) keep their dtype.
        """
        if isinstance(value, np.ndarray):
            value = torch.from_numpy(value)
        tensor = torch.as_tensor(value)
        if tensor.is_floating_point():
            return tensor.to(device=self.torch_device, dtype=self.torch_dtype)
        return tensor.to(device=self.torch_device)

    def describe(self) -> dict:
        return {"device": self.device, "dtype": self.dtype, "seed": self.seed}

    def print_info(self) -> None:
        """Print execution info at startup."""
        print(f"Device:    {self.device}")
        print(f"Dtype:     {self.dtype}")
        print(f"Seed:      {self.seed if self.seed is not None else 'unset'}")
