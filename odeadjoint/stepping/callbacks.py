"""Callbacks fired by the callback-aware integrator."""

from typing import Callable, Optional


class DiscreteCallback:
    """
    Fires ``affect(integrator)`` after any accepted step where
    ``condition(u, t, integrator)`` holds.
    """

    def __init__(
        self,
        condition: Callable,
        affect: Callable,
        finalize: Optional[Callable] = None,
    ):
        self.condition = condition
        self.affect = affect
        self.finalize = finalize


class IterativeCallback:
    """
    Fires at times chosen one at a time.

    ``time_choice(integrator)`` returns the next firing time, or None when the
    callback has nothing left to do. It is queried once at initialization and
    again after every firing. With ``initial_affect`` the affect also runs
    once before the first step.
    """

    def __init__(
        self,
        time_choice: Callable,
        affect: Callable,
        initial_affect: bool = False,
        finalize: Optional[Callable] = None,
    ):
        self.time_choice = time_choice
        self.affect = affect
        self.initial_affect = initial_affect
        self.finalize = finalize


class CallbackSet:
    """Ordered collection of callbacks; nested sets are flattened and None skipped."""

    def __init__(self, *callbacks):
        self.callbacks: list = []
        for cb in callbacks:
            if cb is None:
                continue
            if isinstance(cb, CallbackSet):
                self.callbacks.extend(cb.callbacks)
            elif isinstance(cb, (DiscreteCallback, IterativeCallback)):
                self.callbacks.append(cb)
            else:
                raise TypeError(f"Not a callback: {cb!r}")

    @property
    def discrete(self) -> list[DiscreteCallback]:
        return [cb for cb in self.callbacks if isinstance(cb, DiscreteCallback)]

    @property
    def iterative(self) -> list[IterativeCallback]:
        return [cb for cb in self.callbacks if isinstance(cb, IterativeCallback)]

    def __len__(self) -> int:
        return len(self.callbacks)

    def __iter__(self):
        return iter(self.callbacks)
