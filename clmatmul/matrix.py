from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from .errors import ShapeMismatch


@dataclass
class HostMatrix:
    """A row-major float32 matrix in host memory."""

    data: np.ndarray

    def __post_init__(self) -> None:
        arr = np.ascontiguousarray(self.data, dtype=np.float32)
        if arr.ndim != 2:
            raise ValueError(f"HostMatrix expects a 2D array, got shape {arr.shape}")
        self.data = arr

    @classmethod
    def empty(cls, height: int, width: int) -> "HostMatrix":
        return cls(np.zeros((int(height), int(width)), dtype=np.float32))

    @classmethod
    def linear(cls, height: int, width: int, scale: float) -> "HostMatrix":
        """Element at linear index i is ``i * scale`` (float32)."""
        n = int(height) * int(width)
        values = np.arange(n, dtype=np.float32) * np.float32(scale)
        return cls(values.reshape(int(height), int(width)))

    @property
    def height(self) -> int:
        return int(self.data.shape[0])

    @property
    def width(self) -> int:
        return int(self.data.shape[1])

    @property
    def shape(self) -> tuple[int, int]:
        return (self.height, self.width)

    @property
    def nbytes(self) -> int:
        return int(self.data.nbytes)


def product_shape(a: HostMatrix, b: HostMatrix) -> tuple[int, int]:
    """Shape of ``a @ b`` as (height, width); raises if the inner sizes differ."""

    if a.width != b.height:
        raise ShapeMismatch(
            f"Matrix dimensions are incompatible: width(A)={a.width} != height(B)={b.height}",
            context={"A": a.shape, "B": b.shape},
        )
    return (a.height, b.width)
