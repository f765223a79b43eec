"""Component registry for swappable annotators.

This module provides a registry pattern for reference-based classifiers,
allowing runtime selection of implementations via configuration.

Usage:
    # Register a component (typically in the component's module)
    @register_annotator
    class CellTypistAnnotator:
        name = "celltypist"
        ...

    # Get a component by name
    annotator = get_annotator("celltypist", config)

    # List available components
    names = list_annotators()  # ["celltypist", "singler"]
"""

from typing import Any, TypeVar

from sclabel.config import AnnotationConfig
from sclabel.pipeline.base import AnnotatorProtocol

A = TypeVar("A", bound=AnnotatorProtocol)

_ANNOTATOR_REGISTRY: dict[str, type[AnnotatorProtocol]] = {}


def register_annotator(cls: type[A]) -> type[A]:
    """Decorator to register an annotator class.

    The class must have a 'name' attribute used as the registry key.

    Example:
        @register_annotator
        class CellTypistAnnotator:
            name = "celltypist"
            ...
    """
    if not hasattr(cls, "name"):
        raise ValueError(f"Annotator class {cls.__name__} must have a 'name' attribute")

    name = cls.name
    if name in _ANNOTATOR_REGISTRY:
        raise ValueError(f"Annotator '{name}' is already registered")

    _ANNOTATOR_REGISTRY[name] = cls
    return cls


def get_annotator(
    name: str,
    config: AnnotationConfig | None = None,
    **kwargs: Any,
) -> AnnotatorProtocol:
    """Get an annotator instance by name.

    Args:
        name: Registered annotator name (e.g., "celltypist", "singler")
        config: Optional configuration to pass to constructor
        **kwargs: Additional constructor arguments

    Returns:
        Instantiated annotator

    Raises:
        ValueError: If annotator name is not registered
    """
    cls = get_annotator_class(name)

    if config is not None:
        return cls(config=config, **kwargs)
    return cls(**kwargs)


def get_annotator_class(name: str) -> type[AnnotatorProtocol]:
    """Get an annotator class by name (without instantiation)."""
    if name not in _ANNOTATOR_REGISTRY:
        available = ", ".join(_ANNOTATOR_REGISTRY.keys())
        raise ValueError(f"Unknown annotator '{name}'. Available: {available}")
    return _ANNOTATOR_REGISTRY[name]


def list_annotators() -> list[str]:
    """List all registered annotator names."""
    return list(_ANNOTATOR_REGISTRY.keys())


def unregister_annotator(name: str) -> None:
    """Remove an annotator from the registry (useful for testing)."""
    _ANNOTATOR_REGISTRY.pop(name, None)
