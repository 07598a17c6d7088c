"""
Registry package for MCP tool and resource auto-discovery.
"""
from .tool_registry import (
    forge_tool,
    get_registered_tools,
    clear_tool_registry,
)
from .resource_registry import (
    forge_resource,
    get_registered_resources,
    clear_resource_registry,
)

__all__ = [
    'forge_tool',
    'get_registered_tools',
    'clear_tool_registry',
    'forge_resource',
    'get_registered_resources',
    'clear_resource_registry'
]
