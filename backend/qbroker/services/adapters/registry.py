# qbroker/services/adapters/registry.py
import importlib
import logging
from typing import Any, Dict, List, Type

from qbroker.models.query import QueryDocument
from qbroker.services.adapters.base import QueryAdapter

logger = logging.getLogger("adapter.registry")

ADAPTER_REGISTRY: Dict[str, Type[QueryAdapter]] = {}

# Modules whose adapters are available without explicit registration.
BUILTIN_ADAPTER_MODULES: List[str] = [
    "qbroker.services.adapters.ts171",
]

AUTO_REGISTER_BUILTINS_ON_IMPORT = True


class UnsupportedSourceError(Exception):
    """No adapter variant is registered for a source type."""

    def __init__(self, source_type: str):
        super().__init__(f"No adapter registered for source type {source_type!r}")
        self.source_type = source_type


def register_adapter(source_type: str):
    """
    Class decorator registering an adapter variant for `source_type`.

    Exactly one variant may serve a source type.
    """
    def decorator(cls: Type[QueryAdapter]) -> Type[QueryAdapter]:
        existing = ADAPTER_REGISTRY.get(source_type)
        if existing is not None and existing is not cls:
            raise ValueError(f"Source type {source_type!r} already served by {existing.__name__}")
        ADAPTER_REGISTRY[source_type] = cls
        logger.debug("Registered adapter %s for %s", cls.__name__, source_type)
        return cls
    return decorator


def unregister_adapter(source_type: str) -> None:
    ADAPTER_REGISTRY.pop(source_type, None)


def register_builtin_adapters() -> None:
    for module in BUILTIN_ADAPTER_MODULES:
        importlib.import_module(module)


def is_supported(source_type: str) -> bool:
    return source_type in ADAPTER_REGISTRY


def create_adapter(document: QueryDocument, document_store, blob_store, **kwargs: Any) -> QueryAdapter:
    """Bind the variant matching document.endpoint.sourceType; fails fast when none is registered."""
    source_type = document.endpoint.sourceType
    cls = ADAPTER_REGISTRY.get(source_type)
    if cls is None:
        raise UnsupportedSourceError(source_type)
    return cls(document, document_store, blob_store, **kwargs)


if AUTO_REGISTER_BUILTINS_ON_IMPORT:
    register_builtin_adapters()
