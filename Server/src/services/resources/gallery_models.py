"""
Gallery resource: the saved characters, newest first, as JSON.
"""

import json

from services.registry import forge_resource
from services.tools import get_state


@forge_resource(
    "gallery://models",
    description="Saved rigged characters (prompt, model URL, animation URLs), newest first.",
    mime_type="application/json",
)
def gallery_models() -> str:
    state = get_state()
    return json.dumps({"models": [entry.to_dict() for entry in state.gallery.list()]})
