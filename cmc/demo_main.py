"""Walkthrough entry point — build, compile and fit the simple MLP.

Usage:
    python -m cmc.demo_main
    python -m cmc.demo_main --epochs 10 --use-bn --seed 0
    python -m cmc.demo_main --no-use-dp

Steps:
1. Build simple_mlp(num_classes=10) via custom_model()
2. Compile with RMSprop + categorical cross-entropy + accuracy
3. Fit on 1000 x 100 uniform random inputs with random one-hot labels
4. Print history, the layer summary, and check softmax rows sum to 1
"""

import argparse
from typing import Optional

import torch

from cmc.config import ExecutionContext
from cmc.data import to_categorical
from cmc.models.mlp import simple_mlp
from cmc.trainer import History, Trainer


def run(
    epochs: int = 10,
    batch_size: int = 32,
    num_samples: int = 1000,
    num_features: int = 100,
    num_classes: int = 10,
    use_dp: bool = True,
    use_bn: bool = False,
    execution: Optional[ExecutionContext] = None,
    verbose: bool = True,
) -> tuple[torch.Tensor, History]:
    """Run the walkthrough. Returns (predictions, history)."""
    if execution is None:
        execution = ExecutionContext()

    model = simple_mlp(
        num_classes=num_classes,
        use_dp=use_dp,
        use_bn=use_bn,
        in_features=num_features,
        name="simple_mlp",
        execution=execution,
    )
    trainer = Trainer(model).compile(
        optimizer="rmsprop", loss="categorical_crossentropy", metrics=["accuracy"]
    )

    x_train = torch.rand(num_samples, num_features)
    y_train = to_categorical(
        torch.round(torch.rand(num_samples, 1) * (num_classes - 1)), num_classes
    )

    def on_step(info: dict) -> None:
        if verbose and info["step"] % 50 == 0:
            print(f"  step {info['step']:>5}  loss={info['loss']:.4f}")

    history = trainer.fit(
        x_train, y_train, epochs=epochs, batch_size=batch_size, on_step=on_step
    )
    predictions = trainer.predict(x_train, batch_size=batch_size)

    if verbose:
        for record in history.epochs:
            print(
                f"Epoch {record['epoch']}/{epochs}  "
                f"loss={record['loss']:.4f}  accuracy={record['accuracy']:.4f}"
            )
        print()
        print(model.summary())
        print()
        row_sums = predictions.sum(dim=1)
        max_dev = (row_sums - 1.0).abs().max().item()
        print(f"Output shape: {tuple(predictions.shape)}")
        print(f"Max |row sum - 1|: {max_dev:.2e}")

    return predictions, history


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Custom model walkthrough")
    parser.add_argument("--epochs", type=int, default=10)
    parser.add_argument("--batch-size", type=int, default=32)
    parser.add_argument("--num-classes", type=int, default=10)
    parser.add_argument("--use-dp", action=argparse.BooleanOptionalAction, default=True)
    parser.add_argument("--use-bn", action="store_true", default=False)
    parser.add_argument("--device", type=str, default=None)
    parser.add_argument("--seed", type=int, default=None)
    return parser


def main(argv: Optional[list[str]] = None):
    args = build_parser().parse_args(argv)

    execution = ExecutionContext()
    if args.device is not None:
        execution.device = args.device
    if args.seed is not None:
        execution.seed = args.seed

    execution.print_info()
    run(
        epochs=args.epochs,
        batch_size=args.batch_size,
        num_classes=args.num_classes,
        use_dp=args.use_dp,
        use_bn=args.use_bn,
        execution=execution,
    )


if __name__ == "__main__":
    main()
