from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .errors import DispatchFailed


DEFAULT_LOCAL_SIZE = (16, 16)


@dataclass(frozen=True)
class WorkSize:
    """2-D NDRange: dimension 0 is the column, dimension 1 the row."""

    global_size: tuple[int, int]
    local_size: Optional[tuple[int, int]]

    @property
    def groups(self) -> Optional[tuple[int, int]]:
        if self.local_size is None:
            return None
        return (
            self.global_size[0] // self.local_size[0],
            self.global_size[1] // self.local_size[1],
        )


def check_work_size(global_size: tuple[int, int], local_size: Optional[tuple[int, int]]) -> None:
    """Fail fast unless every global dimension is a multiple of the tile."""

    if len(global_size) != 2:
        raise DispatchFailed(f"Expected a 2-D global size, got {global_size}")
    if any(int(g) <= 0 for g in global_size):
        raise DispatchFailed(f"Global work size must be positive, got {global_size}")
    if local_size is None:
        return
    if len(local_size) != 2 or any(int(t) <= 0 for t in local_size):
        raise DispatchFailed(f"Local work size must be two positive ints, got {local_size}")
    for dim, (g, tile) in enumerate(zip(global_size, local_size)):
        if g % tile != 0:
            raise DispatchFailed(
                f"Global size {g} is not divisible by local size {tile} in dimension {dim}",
                context={"global_size": global_size, "local_size": local_size},
            )


def work_sizes(
    c_width: int,
    c_height: int,
    local_size: Optional[tuple[int, int]] = DEFAULT_LOCAL_SIZE,
) -> WorkSize:
    """One work-item per element of C, tiled by ``local_size``."""

    global_size = (int(c_width), int(c_height))
    if local_size is not None:
        local_size = (int(local_size[0]), int(local_size[1]))
    check_work_size(global_size, local_size)
    return WorkSize(global_size=global_size, local_size=local_size)
