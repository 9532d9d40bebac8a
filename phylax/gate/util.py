"""
Module containing utilities for gate modules.
"""

import inspect

import wrapt

from .exceptions import GateError


def in_stage(stage, ancestry_arg = 'name'):
    """
    Decorator for coroutine functions that annotates any gate error raised by
    the wrapped function with the workflow stage and the ancestry being processed.

    The ancestry is taken from the argument called ``ancestry_arg``, if the wrapped
    function has one. Context that is already set on the error is left alone.
    """
    @wrapt.decorator
    async def wrapper(wrapped, instance, args, kwargs):
        try:
            return await wrapped(*args, **kwargs)
        except GateError as exc:
            if exc.stage is None:
                exc.stage = stage
            if exc.ancestry is None and ancestry_arg:
                try:
                    bound = inspect.signature(wrapped).bind_partial(*args, **kwargs)
                except TypeError:
                    pass
                else:
                    exc.ancestry = bound.arguments.get(ancestry_arg)
            raise
    return wrapper
