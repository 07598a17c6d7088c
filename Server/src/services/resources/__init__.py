"""
MCP resources. Importing this package registers every resource module.
"""

from . import gallery_models  # noqa: F401
