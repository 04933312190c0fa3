"""Trainer tests — compile errors, fitting, auxiliary losses, untracked weights.

Usage:
    pytest cmc/test_trainer.py
    python -m cmc.test_trainer
"""

import pytest
import torch
import torch.nn as nn

from cmc.config import ExecutionContext
from cmc.data import to_categorical
from cmc.model import custom_model
from cmc.models.mlp import simple_mlp
from cmc.tracking import find_untracked
from cmc.trainer import CompileError, Trainer
from cmc.testing import run_module


CPU = ExecutionContext(device="cpu", dtype="float32", seed=0)


def _toy_problem(n: int = 256, features: int = 8, classes: int = 4):
    """Label is the argmax of the first `classes` features — learnable."""
    g = torch.Generator().manual_seed(0)
    x = torch.rand(n, features, generator=g)
    labels = x[:, :classes].argmax(dim=1)
    return x, labels


def test_fit_before_compile_raises():
    trainer = Trainer(simple_mlp(10, execution=CPU))
    with pytest.raises(CompileError, match="compile"):
        trainer.fit(torch.rand(4, 100), torch.zeros(4, 10))
    with pytest.raises(CompileError):
        trainer.evaluate(torch.rand(4, 100), torch.zeros(4, 10))


@pytest.mark.parametrize(
    "kwargs,match",
    [
        ({"optimizer": "adagrad"}, "Unknown optimizer"),
        ({"loss": "hinge"}, "Unknown loss"),
        ({"metrics": ["auc"]}, "Unknown metric"),
    ],
)
def test_unknown_names_raise_compile_error(kwargs, match):
    trainer = Trainer(simple_mlp(10, execution=CPU))
    with pytest.raises(CompileError, match=match):
        trainer.compile(**kwargs)


def test_compile_defaults_and_lr():
    trainer = Trainer(simple_mlp(10, execution=CPU)).compile()
    assert trainer.compiled
    assert isinstance(trainer.optimizer, torch.optim.RMSprop)
    assert trainer.optimizer.param_groups[0]["lr"] == pytest.approx(1e-3)

    trainer = Trainer(simple_mlp(10, execution=CPU)).compile(optimizer="SGD", lr=0.05)
    assert isinstance(trainer.optimizer, torch.optim.SGD)
    assert trainer.optimizer.param_groups[0]["lr"] == pytest.approx(0.05)


def test_compile_with_optimizer_factory():
    def factory(params, lr=0.1):
        return torch.optim.SGD(params, lr=lr, momentum=0.9)

    trainer = Trainer(simple_mlp(10, execution=CPU))
    trainer.compile(optimizer=factory)
    assert trainer.optimizer.param_groups[0]["lr"] == pytest.approx(0.1)
    trainer.compile(optimizer=factory, lr=0.01)
    assert trainer.optimizer.param_groups[0]["lr"] == pytest.approx(0.01)


def test_compile_refuses_model_without_parameters():
    def build(ctx):
        ctx.register("act", nn.ReLU())

        def forward(ctx, inputs):
            return ctx.act(inputs)

        return forward

    trainer = Trainer(custom_model(build, execution=CPU))
    with pytest.raises(CompileError, match="no tracked parameters"):
        trainer.compile()


def test_loss_decreases_on_learnable_problem():
    x, labels = _toy_problem()
    model = simple_mlp(4, in_features=8, hidden_units=32, execution=CPU)
    trainer = Trainer(model).compile(optimizer="adam", lr=1e-2)
    history = trainer.fit(x, to_categorical(labels, 4), epochs=30, batch_size=32)
    losses = history.metric("loss")
    assert len(losses) == 30
    assert losses[-1] < losses[0]
    assert history.epochs[-1]["accuracy"] > history.epochs[0]["accuracy"]


def test_sparse_labels_with_sparse_loss():
    x, labels = _toy_problem()
    model = simple_mlp(4, in_features=8, execution=CPU)
    trainer = Trainer(model).compile(
        optimizer="adam", loss="sparse_categorical_crossentropy", lr=1e-2
    )
    history = trainer.fit(x, labels, epochs=2, batch_size=64)
    assert len(history.epochs) == 2
    result = trainer.evaluate(x, labels)
    assert set(result) == {"loss", "accuracy"}
    assert 0.0 <= result["accuracy"] <= 1.0


def test_unregistered_layer_never_trains():
    # The closure-captured layer is exactly the untracked-parameter hazard
    hidden = nn.Linear(8, 8)

    def build(ctx):
        ctx.register("head", nn.Sequential(nn.Linear(8, 4), nn.Softmax(dim=-1)))

        def forward(ctx, inputs):
            return ctx.head(torch.relu(hidden(inputs)))

        return forward

    model = custom_model(build, name="hazard", execution=CPU)
    hidden_before = hidden.weight.detach().clone()
    head_before = model.context["head"][0].weight.detach().clone()

    x, labels = _toy_problem()
    trainer = Trainer(model).compile(optimizer="sgd", lr=0.5)
    trainer.fit(x, to_categorical(labels, 4), epochs=2)

    assert torch.equal(hidden.weight, hidden_before)
    assert not torch.equal(model.context["head"][0].weight, head_before)
    assert [u.type_name for u in find_untracked(model, x[:4])] == ["Linear"]


def test_aux_losses_added_to_step_loss():
    x, labels = _toy_problem()
    model = simple_mlp(4, in_features=8, activity_l2=0.5, execution=CPU)
    trainer = Trainer(model).compile()
    history = trainer.fit(x, to_categorical(labels, 4), epochs=1, batch_size=64)
    assert len(history.steps) == 4
    for step in history.steps:
        assert step["aux_loss"] > 0
        assert step["loss"] > step["aux_loss"]

    plain = Trainer(simple_mlp(4, in_features=8, execution=CPU)).compile()
    plain_history = plain.fit(x, to_categorical(labels, 4), epochs=1, batch_size=64)
    assert "aux_loss" not in plain_history.steps[0]


def test_validation_split_adds_val_metrics():
    x, labels = _toy_problem(n=100)
    trainer = Trainer(simple_mlp(4, in_features=8, execution=CPU)).compile()
    history = trainer.fit(
        x, to_categorical(labels, 4), epochs=2, batch_size=10, validation_split=0.2
    )
    # 80 training rows -> 8 steps per epoch
    assert len(history.steps) == 16
    for record in history.epochs:
        assert {"loss", "accuracy", "val_loss", "val_accuracy"} <= set(record)
    assert len(history.metric("val_loss")) == 2


def test_on_step_and_stop():
    x, labels = _toy_problem()
    trainer = Trainer(simple_mlp(4, in_features=8, execution=CPU)).compile()
    seen = []

    def on_step(info):
        seen.append(info["step"])
        if info["step"] == 3:
            trainer.stop()

    history = trainer.fit(x, to_categorical(labels, 4), epochs=5, batch_size=16, on_step=on_step)
    assert seen == [1, 2, 3]
    assert len(history.steps) == 3
    assert len(history.epochs) == 1
    assert history.to_dict()["n_steps"] == 3


def test_predict_restores_training_mode():
    model = simple_mlp(10, use_dp=True, execution=CPU)
    trainer = Trainer(model).compile()
    model.train()
    out = trainer.predict(torch.rand(50, 100), batch_size=16)
    assert out.shape == (50, 10)
    assert model.training


def test_predict_on_empty_input():
    trainer = Trainer(simple_mlp(10, execution=CPU)).compile()
    out = trainer.predict(torch.zeros(0, 100))
    assert out.shape == (0, 10)


def test_failed_forward_restores_training_mode():
    def build(ctx):
        ctx.register("dense", nn.Linear(4, 2))

        def forward(ctx, inputs):
            raise RuntimeError("forward failed")

        return forward

    model = custom_model(build, name="broken", execution=CPU)
    trainer = Trainer(model).compile()
    model.train()
    with pytest.raises(RuntimeError, match="forward failed"):
        trainer.predict(torch.rand(4, 4))
    assert model.training
    with pytest.raises(RuntimeError, match="forward failed"):
        trainer.evaluate(torch.rand(4, 4), torch.zeros(4, 2))
    assert model.training


def test_single_metric_name_is_accepted():
    x, labels = _toy_problem(n=32)
    trainer = Trainer(simple_mlp(4, in_features=8, execution=CPU)).compile(metrics="accuracy")
    history = trainer.fit(x, to_categorical(labels, 4), epochs=1, batch_size=16)
    assert set(history.epochs[0]) >= {"loss", "accuracy"}
    assert "a" not in history.epochs[0]


def test_numpy_inputs():
    import numpy as np

    rng = np.random.default_rng(0)
    x = rng.random((64, 100))
    y = to_categorical(rng.integers(0, 10, size=64), 10)
    trainer = Trainer(simple_mlp(10, execution=CPU)).compile(metrics=["accuracy", "mse", "mae"])
    history = trainer.fit(x, y, epochs=1, batch_size=16)
    assert {"loss", "accuracy", "mse", "mae"} <= set(history.epochs[0])


if __name__ == "__main__":
    run_module(__file__)
