"""
Routes Module

This module provides HTTP route handlers for the rigforge server.
"""

from .asset_proxy import AssetProxy, get_proxy_routes, proxied_asset_url
from .generation import GenerationRoutes, get_generation_routes

__all__ = [
    "AssetProxy",
    "get_proxy_routes",
    "proxied_asset_url",
    "GenerationRoutes",
    "get_generation_routes",
]
