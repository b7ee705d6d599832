"""Error hierarchy for the clmatmul dispatch pipeline.

Every stage of the pipeline raises exactly one of these when it fails. The
pipeline never retries: the first error short-circuits to cleanup and is then
reported by :func:`clmatmul.pipeline.run` as a diagnostic plus exit code.

Error categories:
- MatmulError: base class, carries the diagnostic and the process exit code
- PlatformUnavailable / DeviceUnavailable: device selection
- ContextCreationFailed / QueueCreationFailed: execution context
- AllocationFailed / TransferFailed: device memory
- CompileSourceFailed / BuildFailed / KernelNotFound / ArgumentBindingFailed:
  kernel compiler and binder
- DispatchFailed: NDRange submission
- ShapeMismatch / ConfigurationError: rejected before touching the device
"""

from __future__ import annotations

from typing import Optional


class MatmulError(Exception):
    """
    Base class for all clmatmul errors.

    Attributes:
        message: One-line human-readable diagnostic
        status: Underlying OpenCL status code, when the runtime reported one
        context: Extra key/value details for debugging
    """

    exit_code = 1
    default_message = "Matrix multiplication failed."

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status: Optional[int] = None,
        context: Optional[dict] = None,
    ):
        self.message = message or self.default_message
        self.status = status
        self.context = context or {}
        super().__init__(self._format_message())

    def _format_message(self) -> str:
        msg = self.message
        if self.status is not None:
            msg = f"{msg} (status {self.status})"
        return msg

    def diagnostic_lines(self) -> list[str]:
        """Lines printed to stdout when this error ends a run."""
        return [str(self)]


class PlatformUnavailable(MatmulError):
    exit_code = 2
    default_message = "Failed to get platform ID."


class DeviceUnavailable(MatmulError):
    exit_code = 3
    default_message = "Failed to get device ID."


class ContextCreationFailed(MatmulError):
    exit_code = 4
    default_message = "Failed to create OpenCL context."


class QueueCreationFailed(MatmulError):
    exit_code = 5
    default_message = "Failed to create command queue for device."


class AllocationFailed(MatmulError):
    exit_code = 6
    default_message = "Failed to allocate device buffer."


class TransferFailed(MatmulError):
    """
    A blocking host/device copy failed.

    ``buffer`` names the device buffer involved so that a failed write of A
    can be told apart from a failed write of B.
    """

    exit_code = 7
    default_message = "Failed to copy data between host and device."

    def __init__(self, message: Optional[str] = None, *, buffer: Optional[str] = None, **kwargs):
        self.buffer = buffer
        super().__init__(message, **kwargs)

    def _format_message(self) -> str:
        msg = super()._format_message()
        if self.buffer:
            msg = f"{msg} [buffer {self.buffer}]"
        return msg


class CompileSourceFailed(MatmulError):
    exit_code = 8
    default_message = "Failed to create OpenCL program from source."


class BuildFailed(MatmulError):
    """
    The device compiler rejected the kernel source.

    This is the only error that carries a mandatory textual payload: the
    compiler's build log for the selected device.
    """

    exit_code = 9
    default_message = "Failed to build program."

    def __init__(self, log: str, message: Optional[str] = None, **kwargs):
        self.log = log
        super().__init__(message, **kwargs)

    def diagnostic_lines(self) -> list[str]:
        return [str(self), f"Error in kernel: {self.log}"]


class KernelNotFound(MatmulError):
    exit_code = 10
    default_message = "Failed to create kernel."


class ArgumentBindingFailed(MatmulError):
    exit_code = 11
    default_message = "Failed to set kernel arguments."

    def __init__(self, message: Optional[str] = None, *, index: Optional[int] = None, **kwargs):
        self.index = index
        super().__init__(message, **kwargs)

    def _format_message(self) -> str:
        msg = super()._format_message()
        if self.index is not None:
            msg = f"{msg} [slot {self.index}]"
        return msg


class DispatchFailed(MatmulError):
    exit_code = 12
    default_message = "Failed to queue kernel for execution."


class ShapeMismatch(MatmulError):
    """Raised when width(A) != height(B)."""

    exit_code = 13
    default_message = "Matrix dimensions are incompatible."


class ConfigurationError(MatmulError):
    exit_code = 64
    default_message = "Invalid configuration."
