"""
pytest configuration and shared fixtures.

Provides a scripted fake Meshy client, a recording sleep and task
snapshot builders.
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from integrations.meshy_client import (
    MeshyTask,
    ModelUrls,
    Stage,
    TaskHandle,
    TaskStatus,
)
from services.config import ForgeConfig
from services.gallery import Gallery, InMemoryListStore
from services.polling import PollingTask


ASSET_HOST = "https://assets.meshy.ai"
MESH_URL = f"{ASSET_HOST}/tasks/mesh-task/model.glb?Expires=4102444800&Signature=abc"
TEXTURE_URL = f"{ASSET_HOST}/tasks/texture-task/model.glb?Expires=4102444800&Signature=def"
RIG_URL = f"{ASSET_HOST}/tasks/rig-task/Character_output.glb?Expires=4102444800&Signature=ghi"
RUN_URL = f"{ASSET_HOST}/tasks/rig-task/Animation_Running_withSkin.glb"
WALK_URL = f"{ASSET_HOST}/tasks/rig-task/Animation_Walking_withSkin.glb"


# ============ Task snapshots ============

def make_task(
    status: str = "IN_PROGRESS",
    glb: Optional[str] = None,
    task_id: str = "task-1",
    progress: Optional[int] = None,
    error: Optional[str] = None,
    result: Optional[Dict[str, Any]] = None,
    task_type: str = "text-to-3d",
    image_url: Optional[str] = None,
) -> MeshyTask:
    """Build a status snapshot the way MeshyClient parses one."""
    raw: Dict[str, Any] = {"id": task_id, "type": task_type, "status": status}
    if glb:
        raw["model_urls"] = {"glb": glb}
    if result is not None:
        raw["result"] = result
    if error:
        raw["task_error"] = {"message": error}
    if image_url:
        raw["image_urls"] = [image_url]
    result = result or {}
    return MeshyTask(
        id=task_id,
        task_type=task_type,
        status=TaskStatus.parse(status),
        progress=progress,
        model_urls=ModelUrls(glb=glb) if glb else None,
        error_message=error,
        rigged_glb_url=result.get("rigged_character_glb_url"),
        animation_glb_url=result.get("animation_glb_url"),
        image_url=image_url,
        raw=raw,
    )


def succeeded(glb: str, task_id: str = "task-1") -> MeshyTask:
    return make_task("SUCCEEDED", glb=glb, task_id=task_id, progress=100)


def rigged(result: Dict[str, Any], task_id: str = "rig-task") -> MeshyTask:
    return make_task("SUCCEEDED", task_id=task_id, progress=100, result=result, task_type="rig")


# ============ Fakes ============

class FakeSleep:
    """Records requested delays and returns immediately."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


class FakeMeshyClient:
    """
    Scripted stand-in for MeshyClient.

    Each submission returns a fixed task id per stage (animations use
    ``anim-<action_id>``). ``script(task_id, *items)`` sets the status
    snapshots returned for that task in order; the last item repeats.
    Exceptions in a script are raised instead of returned.
    """

    TASK_IDS = {
        Stage.MESH: "mesh-task",
        Stage.IMAGE_MESH: "image-mesh-task",
        Stage.RETEXTURE: "texture-task",
        Stage.RIGGING: "rig-task",
    }

    def __init__(self):
        self.submitted: List[tuple] = []
        self.status_calls: List[str] = []
        self.submit_errors: Dict[Stage, Exception] = {}
        self.balance: Dict[str, Any] = {"balance": 100}
        self._scripts: Dict[str, List[Any]] = {}

    def script(self, task_id: str, *items: Any) -> None:
        self._scripts[task_id] = list(items)

    def submitted_stages(self) -> List[Stage]:
        return [stage for stage, _ in self.submitted]

    def params_for(self, stage: Stage) -> Dict[str, Any]:
        for submitted_stage, params in self.submitted:
            if submitted_stage == stage:
                return params
        raise KeyError(stage)

    async def _submit(self, stage: Stage, task_id: str, params: Dict[str, Any]) -> TaskHandle:
        await asyncio.sleep(0)
        if stage in self.submit_errors:
            raise self.submit_errors[stage]
        self.submitted.append((stage, params))
        return TaskHandle(stage=stage, task_id=task_id)

    async def text_to_3d_preview(self, prompt, *, pose_mode="", ai_model="meshy-5"):
        params = {"prompt": prompt, "pose_mode": pose_mode, "ai_model": ai_model}
        return await self._submit(Stage.MESH, self.TASK_IDS[Stage.MESH], params)

    async def image_to_3d(self, image_url, *, texture_prompt=None, pose_mode="", should_texture=False, enable_pbr=None):
        params = {"image_url": image_url, "texture_prompt": texture_prompt, "pose_mode": pose_mode, "should_texture": should_texture}
        return await self._submit(Stage.IMAGE_MESH, self.TASK_IDS[Stage.IMAGE_MESH], params)

    async def image_to_image(self, reference_image_urls, prompt, *, ai_model="nano-banana"):
        params = {"reference_image_urls": reference_image_urls, "prompt": prompt, "ai_model": ai_model}
        return await self._submit(Stage.IMAGE_REFINE, "refine-task", params)

    async def retexture(self, input_task_id, text_style_prompt, *, enable_pbr=False):
        params = {"input_task_id": input_task_id, "text_style_prompt": text_style_prompt, "enable_pbr": enable_pbr}
        return await self._submit(Stage.RETEXTURE, self.TASK_IDS[Stage.RETEXTURE], params)

    async def rig(self, input_task_id, *, height_meters=1.7):
        params = {"input_task_id": input_task_id, "height_meters": height_meters}
        return await self._submit(Stage.RIGGING, self.TASK_IDS[Stage.RIGGING], params)

    async def animate(self, rig_task_id, action_id):
        params = {"rig_task_id": rig_task_id, "action_id": action_id}
        return await self._submit(Stage.ANIMATION, f"anim-{action_id}", params)

    async def check_status(self, task_id, stage=None):
        self.status_calls.append(task_id)
        await asyncio.sleep(0)
        items = self._scripts.get(task_id)
        if not items:
            return make_task("IN_PROGRESS", task_id=task_id)
        item = items.pop(0) if len(items) > 1 else items[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def get_balance(self):
        return self.balance

    async def aclose(self):
        pass


# ============ Fixtures ============

@pytest.fixture
def config():
    return ForgeConfig(
        meshy_api_key="test-key",
        poll_interval=5.0,
        poll_initial_delay=2.0,
        poll_max_attempts=3,
    )


@pytest.fixture
def fake_sleep():
    return FakeSleep()


@pytest.fixture
def fake_client():
    return FakeMeshyClient()


@pytest.fixture
def gallery():
    return Gallery(InMemoryListStore(), limit=20)


@pytest.fixture
def poller_factory(config, fake_sleep):
    """PollingTask factory with the configured budget and no real waiting."""
    def factory(*_args):
        return PollingTask(
            interval=config.poll_interval,
            max_attempts=config.poll_max_attempts,
            initial_delay=config.poll_initial_delay,
            sleep=fake_sleep,
        )
    return factory
