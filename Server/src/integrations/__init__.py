"""
rigforge Integrations Module

Async client for the Meshy.ai generation service used by the character
chain: text-to-3D preview, image-to-image, image-to-3D, retexture, rigging
and animation.

Usage:
    from integrations import MeshyClient, PoseMode, Stage

    async with MeshyClient(config) as client:
        handle = await client.text_to_3d_preview("a brave knight", pose_mode=PoseMode.A_POSE)
        task = await client.check_status(handle.task_id, Stage.MESH)
"""

from .meshy_client import (
    MeshyClient,
    MeshyTask,
    MeshyError,
    MeshyAPIError,
    MeshyConfigError,
    MeshyTaskError,
    Stage,
    PoseMode,
    TaskStatus as MeshyTaskStatus,
    TaskHandle,
    ModelUrls,
    AnimationLibrary,
    get_animation_action_id,
)

__all__ = [
    "MeshyClient",
    "MeshyTask",
    "MeshyError",
    "MeshyAPIError",
    "MeshyConfigError",
    "MeshyTaskError",
    "Stage",
    "PoseMode",
    "MeshyTaskStatus",
    "TaskHandle",
    "ModelUrls",
    "AnimationLibrary",
    "get_animation_action_id",
]
