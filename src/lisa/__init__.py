"""Lisa: autonomous issue resolution with supervised AI coding agents."""

from lisa.version import get_lisa_version

__version__ = get_lisa_version()

__all__ = ["__version__"]
