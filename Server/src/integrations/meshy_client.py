"""
Meshy.ai Client for the character generation chain

This client provides async access to the Meshy.ai endpoints used to turn a
text prompt into a rigged, animated character:
- Text-to-3D preview (mesh synthesis)
- Image-to-Image refinement and Image-to-3D (mesh from a reference image)
- Retexture (apply a texture style to an existing mesh)
- Rigging (auto-rig humanoid models, includes basic walking/running clips)
- Animation (apply a clip from the animation library to a rigged model)

Every submission returns a task id immediately; the job itself runs for tens
of seconds to minutes and is observed by polling its status endpoint.

API Documentation: https://docs.meshy.ai/en/api
"""

import logging
import time
from enum import Enum
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any, Tuple

import httpx

from services.config import ForgeConfig

logger = logging.getLogger("rigforge-server.meshy")


# =============================================================================
# Enums
# =============================================================================

class Stage(str, Enum):
    """One remote job type of the mesh -> texture -> rig -> animate chain."""
    MESH = "text-to-3d"
    IMAGE_MESH = "image-to-3d"
    RETEXTURE = "retexture"
    RIGGING = "rigging"
    ANIMATION = "animations"
    IMAGE_REFINE = "image-to-image"

    @property
    def api_version(self) -> str:
        return "v2" if self is Stage.MESH else "v1"

    @property
    def label(self) -> str:
        return {
            Stage.MESH: "mesh generation",
            Stage.IMAGE_MESH: "image-to-3d mesh generation",
            Stage.RETEXTURE: "retexture",
            Stage.RIGGING: "rigging",
            Stage.ANIMATION: "animation",
            Stage.IMAGE_REFINE: "image refinement",
        }[self]


# Order in which status endpoints are tried when a task's stage is unknown
STATUS_FALLBACK_ORDER: Tuple[Stage, ...] = (
    Stage.MESH,
    Stage.RETEXTURE,
    Stage.RIGGING,
    Stage.ANIMATION,
    Stage.IMAGE_MESH,
    Stage.IMAGE_REFINE,
)


class PoseMode(str, Enum):
    """Pose mode for character rigging preparation."""
    NONE = ""
    A_POSE = "a-pose"
    T_POSE = "t-pose"


class TaskStatus(str, Enum):
    """Task processing status."""
    PENDING = "PENDING"
    IN_PROGRESS = "IN_PROGRESS"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELED = "CANCELED"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, raw: Any) -> "TaskStatus":
        """Map an upstream status string, tolerating new or lowercase values."""
        if raw is None:
            return cls.PENDING
        value = str(raw).strip().upper()
        aliases = {
            "COMPLETED": cls.SUCCEEDED,
            "SUCCESS": cls.SUCCEEDED,
            "PROCESSING": cls.IN_PROGRESS,
            "RUNNING": cls.IN_PROGRESS,
            "QUEUED": cls.PENDING,
            "CANCELLED": cls.CANCELED,
            "ERROR": cls.FAILED,
        }
        if value in aliases:
            return aliases[value]
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


def _enum_value(val) -> str:
    """Extract string value from enum or return string as-is."""
    return val.value if hasattr(val, 'value') else str(val)


# =============================================================================
# Animation Library
# =============================================================================

class AnimationLibrary:
    """
    Meshy Animation Library action IDs.

    Basic animations (walking, running) usually come for free with rigging;
    these ids are used when they have to be requested explicitly.
    """
    # Locomotion
    IDLE = 92
    WALK = 93
    RUN = 94
    SPRINT = 95

    # Combat
    PUNCH = 100
    KICK = 101
    SWORD_SLASH = 102

    # Actions
    JUMP = 110
    CROUCH = 111
    ROLL = 112

    # Emotes
    WAVE = 120
    DANCE = 121


_ANIMATION_NAMES = {
    "idle": AnimationLibrary.IDLE,
    "walk": AnimationLibrary.WALK,
    "walking": AnimationLibrary.WALK,
    "run": AnimationLibrary.RUN,
    "running": AnimationLibrary.RUN,
    "sprint": AnimationLibrary.SPRINT,
    "punch": AnimationLibrary.PUNCH,
    "kick": AnimationLibrary.KICK,
    "slash": AnimationLibrary.SWORD_SLASH,
    "jump": AnimationLibrary.JUMP,
    "crouch": AnimationLibrary.CROUCH,
    "roll": AnimationLibrary.ROLL,
    "wave": AnimationLibrary.WAVE,
    "dance": AnimationLibrary.DANCE,
}


def get_animation_action_id(animation_name: str) -> Optional[int]:
    """
    Get the Meshy animation library action ID for an animation name.

    Returns None if the animation name isn't recognized.
    """
    return _ANIMATION_NAMES.get(animation_name.lower().strip())


# =============================================================================
# Data Classes
# =============================================================================

@dataclass(frozen=True)
class TaskHandle:
    """Identity of a submitted remote job."""
    stage: Stage
    task_id: str
    submitted_at: float = field(default_factory=time.time)


@dataclass
class ModelUrls:
    """3D model download URLs. The chain only consumes GLB."""
    glb: Optional[str] = None


@dataclass
class MeshyTask:
    """Latest status snapshot of a Meshy task."""
    id: str
    task_type: str
    status: TaskStatus
    progress: Optional[int] = None
    model_urls: Optional[ModelUrls] = None
    thumbnail_url: Optional[str] = None
    error_message: Optional[str] = None

    # Rigging-specific fields
    rigged_glb_url: Optional[str] = None

    # Animation-specific fields
    animation_glb_url: Optional[str] = None

    # Image-to-image output
    image_url: Optional[str] = None

    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def glb_url(self) -> Optional[str]:
        """Get GLB download URL if available."""
        return self.model_urls.glb if self.model_urls else None

    @property
    def artifact_url(self) -> Optional[str]:
        """The downloadable GLB this task produced, whatever its type."""
        return self.glb_url or self.rigged_glb_url or self.animation_glb_url or None

    @property
    def result(self) -> Dict[str, Any]:
        """The nested ``result`` object of rigging/animation tasks."""
        value = self.raw.get("result")
        return value if isinstance(value, dict) else {}


# =============================================================================
# Main Client
# =============================================================================

class MeshyClient:
    """
    Async client for Meshy.ai API.

    Usage:
        async with MeshyClient(config) as client:
            handle = await client.text_to_3d_preview("a knight", pose_mode=PoseMode.A_POSE)
            task = await client.check_status(handle.task_id, handle.stage)
    """

    REQUEST_TIMEOUT = 30.0

    def __init__(self, config: ForgeConfig, transport: Optional[httpx.AsyncBaseTransport] = None):
        """
        Initialize Meshy.ai client.

        Args:
            config: Process configuration holding the API key and base URL.
            transport: Optional httpx transport (used to fake the API in tests).
        """
        if not config.meshy_api_key:
            raise MeshyConfigError(
                "Meshy API key required. Set MESHY_API_KEY environment variable."
            )

        self.api_key = config.meshy_api_key
        self.base_url = config.meshy_base_url.rstrip("/")
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def __aenter__(self) -> "MeshyClient":
        self._get_client()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.REQUEST_TIMEOUT, transport=self._transport)
        return self._client

    @property
    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _stage_url(self, stage: Stage, task_id: Optional[str] = None) -> str:
        url = f"{self.base_url}/openapi/{stage.api_version}/{stage.value}"
        return f"{url}/{task_id}" if task_id else url

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        body = response.text.strip().replace("\n", " ")
        raise MeshyAPIError(response.status_code, body[:300])

    # =========================================================================
    # Parsing
    # =========================================================================

    def _parse_model_urls(self, data: Dict[str, Any]) -> Optional[ModelUrls]:
        """Parse model_urls from API response."""
        urls = data.get("model_urls")
        if not isinstance(urls, dict) or not urls:
            return None
        return ModelUrls(glb=urls.get("glb"))

    def _parse_image_url(self, data: Dict[str, Any], result: Dict[str, Any]) -> Optional[str]:
        """image_urls[0], then result.image_url, then image_url."""
        image_urls = data.get("image_urls")
        if isinstance(image_urls, list) and image_urls:
            return image_urls[0]
        return result.get("image_url") or data.get("image_url")

    def _json_object(self, response: httpx.Response, what: str) -> Dict[str, Any]:
        """Decode a JSON object body; anything else is an API error."""
        try:
            data = response.json()
        except ValueError:
            raise MeshyAPIError(response.status_code, f"invalid JSON in {what} response")
        if not isinstance(data, dict):
            raise MeshyAPIError(response.status_code, f"expected a JSON object in {what} response")
        return data

    def _parse_task(self, data: Dict[str, Any], task_type: str = "") -> MeshyTask:
        """Parse task response into MeshyTask dataclass."""
        error_msg = None
        task_error = data.get("task_error")
        if isinstance(task_error, dict):
            error_msg = task_error.get("message") or None

        result = data.get("result")
        if not isinstance(result, dict):
            result = {}

        progress = data.get("progress")
        try:
            progress = int(progress) if progress is not None else None
        except (TypeError, ValueError):
            progress = None

        return MeshyTask(
            id=str(data.get("id", "")),
            task_type=data.get("type") or task_type,
            status=TaskStatus.parse(data.get("status")),
            progress=progress,
            model_urls=self._parse_model_urls(data),
            thumbnail_url=data.get("thumbnail_url"),
            error_message=error_msg,
            rigged_glb_url=result.get("rigged_character_glb_url"),
            animation_glb_url=result.get("animation_glb_url"),
            image_url=self._parse_image_url(data, result),
            raw=data,
        )

    async def _submit(self, stage: Stage, body: Dict[str, Any]) -> TaskHandle:
        client = self._get_client()
        response = await client.post(self._stage_url(stage), headers=self._headers, json=body)
        self._raise_for_status(response)

        task_id = self._json_object(response, f"{stage.label} submission").get("result")
        if not task_id:
            raise MeshyAPIError(response.status_code, f"Meshy API did not return a {stage.label} task ID")

        logger.info(f"[Meshy] Submitted {stage.label} task {task_id}")
        return TaskHandle(stage=stage, task_id=str(task_id))

    # =========================================================================
    # Submissions
    # =========================================================================

    async def text_to_3d_preview(
        self,
        prompt: str,
        *,
        pose_mode: PoseMode = PoseMode.NONE,
        ai_model: str = "meshy-5",
    ) -> TaskHandle:
        """
        Create a Text-to-3D preview task (untextured mesh).

        Args:
            prompt: Description of the character (max 600 chars).
            pose_mode: A-pose/T-pose so the mesh can be rigged afterwards.
            ai_model: Meshy model version.
        """
        prompt = prompt.strip()
        if not prompt:
            raise ValueError("Prompt must not be empty")
        if len(prompt) > 600:
            raise ValueError("Prompt must be <= 600 characters")

        body = {
            "mode": "preview",
            "prompt": prompt,
            "ai_model": ai_model,
            "should_remesh": False,
        }
        if _enum_value(pose_mode):
            body["pose_mode"] = _enum_value(pose_mode)

        return await self._submit(Stage.MESH, body)

    async def image_to_image(
        self,
        reference_image_urls: List[str],
        prompt: str,
        *,
        ai_model: str = "nano-banana",
    ) -> TaskHandle:
        """Refine reference images (URLs or data URIs) with a prompt; the result is one image."""
        urls = [url.strip() for url in reference_image_urls if url and url.strip()]
        if not urls:
            raise ValueError("At least one reference image is required")
        if not prompt or not prompt.strip():
            raise ValueError("Prompt must not be empty")

        body = {
            "reference_image_urls": urls,
            "prompt": prompt.strip(),
            "ai_model": ai_model or "nano-banana",
        }
        return await self._submit(Stage.IMAGE_REFINE, body)

    async def image_to_3d(
        self,
        image_url: str,
        *,
        texture_prompt: Optional[str] = None,
        pose_mode: PoseMode = PoseMode.NONE,
        should_texture: bool = False,
        enable_pbr: Optional[bool] = None,
    ) -> TaskHandle:
        """
        Create an Image-to-3D task from an image URL or data URI.

        The chain generates the bare mesh here (should_texture=False) and
        textures it with a separate retexture task.
        """
        if not image_url or not image_url.strip():
            raise ValueError("image_url must not be empty")

        body: Dict[str, Any] = {
            "image_url": image_url.strip(),
            "should_texture": should_texture,
        }
        if texture_prompt and texture_prompt.strip():
            body["texture_prompt"] = texture_prompt.strip()
        if enable_pbr is not None:
            body["enable_pbr"] = enable_pbr
        if _enum_value(pose_mode):
            body["pose_mode"] = _enum_value(pose_mode)

        return await self._submit(Stage.IMAGE_MESH, body)

    async def retexture(
        self,
        input_task_id: str,
        text_style_prompt: str,
        *,
        enable_pbr: bool = False,
        enable_original_uv: bool = True,
    ) -> TaskHandle:
        """Retexture the output of a previous task using a text style prompt."""
        if not text_style_prompt or not text_style_prompt.strip():
            raise ValueError("text_style_prompt must not be empty")

        body = {
            "input_task_id": input_task_id,
            "text_style_prompt": text_style_prompt.strip()[:600],
            "enable_original_uv": enable_original_uv,
            "enable_pbr": enable_pbr,
        }
        return await self._submit(Stage.RETEXTURE, body)

    async def rig(self, input_task_id: str, *, height_meters: float = 1.7) -> TaskHandle:
        """
        Rig a humanoid model produced by a previous task.

        The rigging result usually carries basic walking/running clips.
        """
        body = {
            "input_task_id": input_task_id,
            "height_meters": height_meters,
        }
        return await self._submit(Stage.RIGGING, body)

    async def animate(self, rig_task_id: str, action_id: int) -> TaskHandle:
        """Apply an animation library action to a rigged model."""
        body = {
            "rig_task_id": rig_task_id,
            "action_id": int(action_id),
        }
        return await self._submit(Stage.ANIMATION, body)

    # =========================================================================
    # Task Status
    # =========================================================================

    async def get_task(self, task_id: str, stage: Stage) -> MeshyTask:
        """Get status of a task from one endpoint family."""
        client = self._get_client()
        response = await client.get(self._stage_url(stage, task_id), headers=self._headers)
        self._raise_for_status(response)
        data = self._json_object(response, f"{stage.label} status")
        return self._parse_task(data, task_type=stage.value)

    async def check_status(self, task_id: str, stage: Optional[Stage] = None) -> MeshyTask:
        """
        Get task status, trying endpoint families until one knows the id.

        The given stage's endpoint is tried first; the rest follow the fixed
        order text-to-3d -> retexture -> rigging -> animations -> image-to-3d
        -> image-to-image. Only a 404 moves on to the next family.
        """
        order: List[Stage] = list(STATUS_FALLBACK_ORDER)
        if stage is not None:
            order.remove(stage)
            order.insert(0, stage)

        last_error: Optional[MeshyAPIError] = None
        for candidate in order:
            try:
                return await self.get_task(task_id, candidate)
            except MeshyAPIError as e:
                if e.status_code != 404:
                    raise
                last_error = e
                logger.debug(f"[Meshy] Task {task_id} not found under {candidate.value}")

        raise last_error

    async def get_balance(self) -> Dict[str, Any]:
        """Get the remaining credit balance."""
        client = self._get_client()
        response = await client.get(f"{self.base_url}/openapi/v1/balance", headers=self._headers)
        self._raise_for_status(response)
        return self._json_object(response, "balance")


# =============================================================================
# Exceptions
# =============================================================================

class MeshyError(Exception):
    """Base exception for Meshy client."""
    pass


class MeshyConfigError(MeshyError):
    """Raised when configuration is missing or invalid."""
    pass


class MeshyAPIError(MeshyError):
    """API-level error from Meshy."""

    def __init__(self, status_code: int, message: str):
        self.status_code = status_code
        self.message = message
        super().__init__(f"[HTTP {status_code}] {message}")


class MeshyTaskError(MeshyError):
    """Task execution error."""

    def __init__(self, task_id: str, status: str, message: Optional[str]):
        self.task_id = task_id
        self.status = status
        self.message = message
        super().__init__(f"Task {task_id} {status}: {message}")
