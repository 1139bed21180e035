"""Fixed-layout scratch storage."""

import numpy as np
from numpy.typing import NDArray


class ScratchArena:
    """
    One contiguous float64 block carved into named views at fixed offsets.

    Offsets are decided at construction and the block is never resized, so
    every view keeps its identity for the lifetime of the arena. Views of
    size zero are allowed.

    Example:
        arena = ScratchArena({"J": (3, 3), "dg_val": (3,)})
        arena["J"][:] = 0.0
    """

    def __init__(self, layout: dict[str, tuple[int, ...]]):
        self.layout = {name: tuple(int(d) for d in shape) for name, shape in layout.items()}
        sizes = [int(np.prod(shape, dtype=int)) for shape in self.layout.values()]
        self.offsets = dict(zip(self.layout, np.cumsum([0] + sizes[:-1]).tolist()))
        self.block = np.zeros(sum(sizes))

        self._views: dict[str, NDArray] = {}
        for (name, shape), size in zip(self.layout.items(), sizes):
            start = self.offsets[name]
            self._views[name] = self.block[start:start + size].reshape(shape)

    @property
    def nbytes(self) -> int:
        return self.block.nbytes

    def __contains__(self, name: str) -> bool:
        return name in self._views

    def __getitem__(self, name: str) -> NDArray:
        return self._views[name]

    def get(self, name: str):
        """View by name, or None when the arena has no such entry."""
        return self._views.get(name)
