from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from .dispatch import DEFAULT_LOCAL_SIZE
from .errors import ConfigurationError


DEVICE_CHOICES = ("gpu", "cpu", "accelerator", "all")


@dataclass
class RunConfig:
    """Settings for one pipeline run. Defaults reproduce the 1024x1024 demo."""

    width_a: int = 1024
    height_a: int = 1024
    width_b: int = 1024
    local_size: Optional[tuple[int, int]] = DEFAULT_LOCAL_SIZE
    device_type: str = "gpu"
    build_log_limit: int = 16384
    fill_a: float = 0.123
    fill_b: float = 0.321

    @property
    def height_b(self) -> int:
        return self.width_a

    @property
    def width_c(self) -> int:
        return self.width_b

    @property
    def height_c(self) -> int:
        return self.height_a

    def validate(self) -> "RunConfig":
        for name in ("width_a", "height_a", "width_b"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        if self.device_type not in DEVICE_CHOICES:
            raise ConfigurationError(
                f"device_type must be one of {', '.join(DEVICE_CHOICES)}, got {self.device_type!r}"
            )
        if self.local_size is not None:
            if len(self.local_size) != 2 or any(int(t) <= 0 for t in self.local_size):
                raise ConfigurationError(f"local_size must be two positive ints, got {self.local_size!r}")
        if self.build_log_limit <= 0:
            raise ConfigurationError("build_log_limit must be positive")
        return self

    @classmethod
    def from_args(cls, args: Any) -> "RunConfig":
        """Build a config from an argparse namespace (see :mod:`clmatmul.cli`)."""

        local_size = args.local_size
        if local_size is not None:
            local_size = (int(local_size[0]), int(local_size[1]))
        return cls(
            width_a=args.width_a,
            height_a=args.height_a,
            width_b=args.width_b,
            local_size=local_size,
            device_type=args.device,
        ).validate()
