"""motionlog: durable streaming logger for device motion and location."""

from importlib.metadata import PackageNotFoundError, version

__all__ = ["__version__"]

try:
    __version__: str = version("motionlog")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"
