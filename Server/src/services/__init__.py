"""
Services Module

Polling, orchestration, animation lookup, sessions and the saved-model
gallery for the rigforge server. MCP tools and resources live in the
``tools`` and ``resources`` subpackages.
"""
