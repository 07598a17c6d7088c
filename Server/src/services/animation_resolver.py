"""
Animation clip lookup for rigged characters.

Rigging results usually already carry walking/running clips. This module
finds them, in order of preference:

1. The known ``basic_animations`` fields, armature-only variants first
   (skeleton + clip, smaller and friendlier to the asset proxy), then the
   fully baked model variants.
2. A recursive scan of the whole result tree for GLB URLs stored under a
   run/walk/animation-looking key.
3. Two new animation jobs (running and walking) against the rigging task,
   polled concurrently. One failing does not affect the other.

An empty result is a valid outcome, not an error.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, Optional, Tuple
from urllib.parse import urlsplit

import httpx

from integrations.meshy_client import AnimationLibrary, MeshyError, MeshyTaskError, Stage
from services.polling import PollingTask

logger = logging.getLogger("rigforge-server.animations")

ASSET_EXTENSION = ".glb"
RUNNING = "running"
WALKING = "walking"

# (field name, kind) in priority order
_KNOWN_FIELDS: Tuple[Tuple[str, str], ...] = (
    ("running_armature_glb_url", RUNNING),
    ("walking_armature_glb_url", WALKING),
    ("running_glb_url", RUNNING),
    ("walking_glb_url", WALKING),
)

ACTION_IDS = {
    RUNNING: AnimationLibrary.RUN,
    WALKING: AnimationLibrary.WALK,
}


@dataclass
class AnimationUrls:
    """Animation clip URLs for a rigged character."""
    running: Optional[str] = None
    walking: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not (self.running or self.walking)

    def get(self, kind: str) -> Optional[str]:
        return getattr(self, kind)

    def set(self, kind: str, url: str) -> None:
        setattr(self, kind, url)

    def to_dict(self) -> Dict[str, str]:
        """Only the kinds that were found."""
        return {kind: url for kind, url in ((RUNNING, self.running), (WALKING, self.walking)) if url}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "AnimationUrls":
        data = data or {}
        return cls(running=data.get(RUNNING), walking=data.get(WALKING))


# =============================================================================
# Known fields
# =============================================================================

@dataclass
class BasicAnimations:
    """Basic animations included with rigging (walking and running)."""
    walking_glb_url: Optional[str] = None
    walking_armature_glb_url: Optional[str] = None
    running_glb_url: Optional[str] = None
    running_armature_glb_url: Optional[str] = None

    @classmethod
    def from_result(cls, payload: Dict[str, Any]) -> Optional["BasicAnimations"]:
        """
        Decode ``basic_animations`` from a rigging task payload.

        Accepts either the full task payload (``result.basic_animations``) or
        the bare ``result`` object.
        """
        result = payload.get("result") if isinstance(payload.get("result"), dict) else payload
        basic = result.get("basic_animations")
        if not isinstance(basic, dict) or not basic:
            return None

        def _str(name: str) -> Optional[str]:
            value = basic.get(name)
            return value if isinstance(value, str) and value else None

        return cls(
            walking_glb_url=_str("walking_glb_url"),
            walking_armature_glb_url=_str("walking_armature_glb_url"),
            running_glb_url=_str("running_glb_url"),
            running_armature_glb_url=_str("running_armature_glb_url"),
        )

    def urls(self) -> AnimationUrls:
        found = AnimationUrls()
        for name, kind in _KNOWN_FIELDS:
            value = getattr(self, name)
            if value and not found.get(kind):
                found.set(kind, value)
        return found


# =============================================================================
# Fallback scan
# =============================================================================

def _has_asset_extension(value: str) -> bool:
    path = urlsplit(value).path if "://" in value else value.split("?", 1)[0]
    return path.lower().endswith(ASSET_EXTENSION)


def _kind_from_text(text: str) -> Optional[str]:
    text = text.lower()
    is_run = "run" in text
    is_walk = "walk" in text
    if is_run == is_walk:
        return None
    return RUNNING if is_run else WALKING


def classify_animation_candidate(key: str, value: Any) -> Optional[str]:
    """
    Decide whether ``key: value`` looks like an animation clip URL.

    The value must be a string whose path ends in the asset extension, and
    the key must mention run, walk or anim. Returns ``"running"``,
    ``"walking"`` or None when the pair is not a candidate or is ambiguous.
    A generic "anim" key takes its kind from the URL's file name.
    """
    if not isinstance(value, str) or not isinstance(key, str):
        return None
    if not _has_asset_extension(value):
        return None

    lowered = key.lower()
    if not any(marker in lowered for marker in ("run", "walk", "anim")):
        return None

    kind = _kind_from_text(lowered)
    if kind is None and "run" not in lowered and "walk" not in lowered:
        kind = _kind_from_text(urlsplit(value).path.rsplit("/", 1)[-1])
    return kind


def _walk(node: Any, key: str = "") -> Iterator[Tuple[str, Any]]:
    if isinstance(node, dict):
        for child_key, child in node.items():
            yield from _walk(child, str(child_key))
    elif isinstance(node, list):
        for child in node:
            yield from _walk(child, key)
    else:
        yield key, node


def scan_for_animation_urls(tree: Any) -> AnimationUrls:
    """Depth-first scan of a JSON tree; the first match per kind wins."""
    found = AnimationUrls()
    for key, value in _walk(tree):
        kind = classify_animation_candidate(key, value)
        if kind and not found.get(kind):
            found.set(kind, value)
            logger.debug(f"[Animations] Scan matched {kind} under key {key!r}")
        if found.running and found.walking:
            break
    return found


# =============================================================================
# Resolver
# =============================================================================

class AnimationResolver:
    """
    Resolves running/walking clips for a rigging result.

    Args:
        client: Object exposing ``animate(rig_task_id, action_id)`` and
            ``check_status(task_id, stage)`` (normally a MeshyClient).
        poller_factory: Builds a fresh PollingTask for each animation job.
    """

    def __init__(self, client, poller_factory: Callable[[], PollingTask]):
        self.client = client
        self.poller_factory = poller_factory

    async def resolve(self, rig_task_id: str, rigging_result: Dict[str, Any]) -> AnimationUrls:
        basic = BasicAnimations.from_result(rigging_result or {})
        if basic is not None:
            urls = basic.urls()
            if not urls.is_empty:
                logger.info(f"[Animations] Using rigging basic animations: {sorted(urls.to_dict())}")
                return urls

        urls = scan_for_animation_urls(rigging_result or {})
        if not urls.is_empty:
            logger.info(f"[Animations] Found animations by scanning result: {sorted(urls.to_dict())}")
            return urls

        logger.info(f"[Animations] No clips on rigging task {rig_task_id}, requesting running and walking")
        return await self.create_animations(rig_task_id)

    async def create_animations(self, rig_task_id: str) -> AnimationUrls:
        running, walking = await asyncio.gather(
            self._create_and_poll(rig_task_id, RUNNING),
            self._create_and_poll(rig_task_id, WALKING),
        )
        return AnimationUrls(running=running, walking=walking)

    async def _create_and_poll(self, rig_task_id: str, kind: str) -> Optional[str]:
        try:
            handle = await self.client.animate(rig_task_id, ACTION_IDS[kind])
        except (MeshyError, httpx.HTTPError) as e:
            logger.warning(f"[Animations] Could not submit {kind} animation: {e}")
            return None

        async def check(task_id: str):
            return await self.client.check_status(task_id, Stage.ANIMATION)

        outcome = await self.poller_factory().poll(handle.task_id, check)
        try:
            outcome.raise_for_result()
        except MeshyTaskError as e:
            logger.warning(f"[Animations] {kind} animation: {e}")
            return None
        return outcome.artifact_url
