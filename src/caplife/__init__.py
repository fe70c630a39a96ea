"""caplife: capability/template lifecycle engine with convention-based project discovery."""

from importlib.metadata import PackageNotFoundError, version

try:
    __version__ = version("caplife")
except PackageNotFoundError:
    __version__ = "0.0.0-dev"

from caplife.core import Capability, CatalogDB, Template
from caplife.engine import LifecycleEngine

__all__ = ["Capability", "CatalogDB", "LifecycleEngine", "Template", "__version__"]
