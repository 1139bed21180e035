"""Utilities."""

from odeadjoint.utils.arena import ScratchArena

__all__ = [
    "ScratchArena",
]
