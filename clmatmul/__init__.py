from importlib.metadata import PackageNotFoundError, version

from .config import RunConfig
from .errors import MatmulError
from .matrix import HostMatrix
from .pipeline import MatmulPipeline, Resources, release_all, run
from .program import KERNEL_SIGNATURE, KernelSource, load_kernel_source

try:
	__version__ = version("clmatmul")
except PackageNotFoundError:  # pragma: no cover
	__version__ = "0.1.0"

__all__ = [
	"RunConfig",
	"MatmulError",
	"HostMatrix",
	"MatmulPipeline",
	"Resources",
	"release_all",
	"run",
	"KERNEL_SIGNATURE",
	"KernelSource",
	"load_kernel_source",
	"__version__",
]
