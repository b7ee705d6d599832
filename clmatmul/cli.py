from __future__ import annotations

import argparse
import logging
from typing import Optional, Sequence

from .config import DEVICE_CHOICES, RunConfig
from .errors import ConfigurationError, DeviceUnavailable, PlatformUnavailable
from .pipeline import run


def _local_size(value: str) -> Optional[int]:
    if value == "auto":
        return None
    return int(value)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Multiply two matrices on an OpenCL device")
    parser.add_argument("--width-a", type=int, default=1024)
    parser.add_argument("--height-a", type=int, default=1024)
    parser.add_argument("--width-b", type=int, default=1024)
    parser.add_argument(
        "--local-size",
        type=_local_size,
        nargs="+",
        default=[16, 16],
        metavar="N",
        help="Work-group tile as 'X Y', or 'auto' to let the runtime choose",
    )
    parser.add_argument("--device", choices=DEVICE_CHOICES, default="gpu")
    parser.add_argument("--show", type=int, default=0, help="Print the top-left NxN block of C")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.local_size == [None]:
        args.local_size = None
    elif len(args.local_size) != 2 or None in args.local_size:
        parser.error("--local-size takes two integers or 'auto'")

    try:
        config = RunConfig.from_args(args)
    except ConfigurationError as e:
        print(e)
        raise SystemExit(e.exit_code) from e

    status = run(config, show=args.show)
    if status in (PlatformUnavailable.exit_code, DeviceUnavailable.exit_code):
        print(
            "Tip: ensure an OpenCL driver (ICD) for the requested device type is installed, "
            "or try --device all."
        )
    raise SystemExit(status)
