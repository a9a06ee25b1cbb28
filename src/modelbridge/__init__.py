"""modelbridge - schema-driven models, validated instances and pluggable connectors."""

from importlib.metadata import version, PackageNotFoundError

try:
    __version__ = version("modelbridge")
except PackageNotFoundError:
    __version__ = "unknown"

from modelbridge.errors import ORMError, ValidationError
from modelbridge.services.collection import Collection
from modelbridge.services.connector import Connector
from modelbridge.services.instance import Instance
from modelbridge.services.memory import MemoryConnector
from modelbridge.services.model import Model

__all__ = [
    "__version__",
    "Collection",
    "Connector",
    "Instance",
    "MemoryConnector",
    "Model",
    "ORMError",
    "ValidationError",
]
