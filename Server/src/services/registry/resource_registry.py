"""
Resource registry for auto-discovery of MCP resources.
"""
from typing import Any, Callable, Dict, List, Optional

_resource_registry: List[Dict[str, Any]] = []


def forge_resource(
    uri: str,
    name: Optional[str] = None,
    description: Optional[str] = None,
    **kwargs,
) -> Callable:
    """
    Decorator for registering MCP resources.

    Args:
        uri: Resource URI (e.g. "gallery://models")
        name: Resource name (defaults to the function name)
        description: Resource description shown to MCP clients
        **kwargs: Extra options passed through to mcp.resource()
    """
    def decorator(func: Callable) -> Callable:
        _resource_registry.append({
            'func': func,
            'uri': uri,
            'name': name or func.__name__,
            'description': description,
            'kwargs': kwargs,
        })
        return func

    return decorator


def get_registered_resources() -> List[Dict[str, Any]]:
    """Get all registered resources."""
    return _resource_registry.copy()


def clear_resource_registry():
    """Clear the resource registry (useful for testing)."""
    _resource_registry.clear()
