"""Failure taxonomy for spec replay runs.

Every fatal condition raised by the runner derives from ``ReplayError`` so the
CLI can report it uniformly. Only DB checks retry; everything else fails fast.
"""


class ReplayError(Exception):
    """Base class for every fatal replay failure."""


class ConfigurationError(ReplayError):
    """Missing spec path, missing database env, too many prerequisites, cycles."""


class SpecValidationError(ReplayError):
    """Missing required step field, unknown op, or unimplemented ``biz.*`` op."""


class ReplayAssertionError(ReplayError, AssertionError):
    """An expectation about the application under test did not hold."""


class InfrastructureError(ReplayError):
    """Database connection or browser session failure."""


def step_label(step) -> str:
    name = getattr(step, "name", "") or ""
    return f"step={name}"
