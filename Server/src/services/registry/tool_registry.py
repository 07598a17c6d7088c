"""
Tool registry for auto-discovery of MCP tools.

Modules under services.tools decorate their entry points with @forge_tool;
the server imports the package and registers whatever was collected.
"""
from typing import Any, Callable, Dict, List, Optional

_tool_registry: List[Dict[str, Any]] = []


def forge_tool(
    name: Optional[str] = None,
    description: Optional[str] = None,
    **kwargs,
) -> Callable:
    """
    Decorator for registering MCP tools.

    Args:
        name: Tool name (defaults to the function name)
        description: Tool description shown to MCP clients
        **kwargs: Extra options passed through to mcp.tool()
    """
    def decorator(func: Callable) -> Callable:
        _tool_registry.append({
            'func': func,
            'name': name or func.__name__,
            'description': description,
            'kwargs': kwargs,
        })
        return func

    return decorator


def get_registered_tools() -> List[Dict[str, Any]]:
    """Get all registered tools."""
    return _tool_registry.copy()


def clear_tool_registry():
    """Clear the tool registry (useful for testing)."""
    _tool_registry.clear()
