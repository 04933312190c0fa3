"""Example models built with custom_model().

Each module exposes a builder (ctx -> forward) plus a convenience
constructor returning a ready CustomModel. All forward procedures read
their settings from ctx.config, never from closed-over variables.
"""
