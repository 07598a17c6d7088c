"""
Character generation chain: mesh -> retexture -> rigging -> animations.

The mesh comes either from a text prompt (text-to-3d preview) or from a
reference image (image-to-3d without texturing); both feed the same
retexture step.

The chain is an explicit state machine. ``advance(session, event, config)``
is the only transition function: it mutates the GenerationSession and
returns the effects to run next (submit a stage, resolve animations, render
an artifact, persist a gallery entry). GenerationOrchestrator executes those
effects and feeds the resulting events back into ``advance``.

Fallback policy:
- Mesh failure (text or image) ends the session (nothing to show).
- Retexture failure rigs the untextured mesh instead.
- Rigging failure finishes with the latest good artifact and no animations.
- Missing animations are not a failure.
"""

import logging
import time
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Union

import httpx

from integrations.meshy_client import MeshyError, PoseMode, Stage
from services.animation_resolver import AnimationResolver, AnimationUrls
from services.config import ForgeConfig
from services.gallery import Gallery, GalleryEntry
from services.polling import PollingTask, PollProgress, PollResult

logger = logging.getLogger("rigforge-server.orchestrator")

MAX_PROMPT_LENGTH = 600
DEFAULT_TEXTURE_PROMPT = "realistic textures"
_IMAGE_URL_PREFIXES = ("http://", "https://", "data:image/")

# Rough expected durations, used only for the advisory time estimate
EXPECTED_STAGE_SECONDS = {
    Stage.MESH: 60.0,
    Stage.IMAGE_MESH: 90.0,
    Stage.RETEXTURE: 60.0,
    Stage.RIGGING: 90.0,
    Stage.ANIMATION: 60.0,
    Stage.IMAGE_REFINE: 30.0,
}


class SessionValidationError(ValueError):
    """Rejected generation request."""

    def __init__(self, message: str, field_name: Optional[str] = None):
        self.field_name = field_name
        super().__init__(message)


class InvalidTransitionError(RuntimeError):
    """An event arrived that the current state cannot accept."""


class SessionState(str, Enum):
    IDLE = "idle"
    MESH_PENDING = "mesh_pending"
    TEXTURE_PENDING = "texture_pending"
    RIG_PENDING = "rig_pending"
    ANIMATION_PENDING = "animation_pending"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.DONE, SessionState.FAILED)


_PENDING_STAGE = {
    SessionState.MESH_PENDING: Stage.MESH,
    SessionState.TEXTURE_PENDING: Stage.RETEXTURE,
    SessionState.RIG_PENDING: Stage.RIGGING,
    SessionState.ANIMATION_PENDING: Stage.ANIMATION,
}


# =============================================================================
# Session
# =============================================================================

@dataclass
class StageResult:
    """What one stage produced."""
    stage: Stage
    outcome: str
    task_id: Optional[str] = None
    artifact_url: Optional[str] = None
    reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.outcome == PollResult.SUCCEEDED.value and bool(self.artifact_url)


@dataclass
class GenerationSession:
    """State of one prompt-to-character generation."""
    prompt: str
    pose_mode: str
    model_version: str = "meshy-5"
    session_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=time.time)
    state: SessionState = SessionState.IDLE
    stage_results: List[StageResult] = field(default_factory=list)
    animation_urls: AnimationUrls = field(default_factory=AnimationUrls)
    interim_model_url: Optional[str] = None
    final_model_url: Optional[str] = None
    error: Optional[str] = None
    warnings: List[str] = field(default_factory=list)
    progress: Optional[Dict[str, Any]] = None
    abandoned: bool = False
    image_url: Optional[str] = None

    @classmethod
    def create(
        cls,
        prompt: Optional[str],
        pose_mode: Optional[str],
        model_version: str = "meshy-5",
        image_url: Optional[str] = None,
    ) -> "GenerationSession":
        """
        Validate a request and build a fresh session.

        With ``image_url`` the mesh is built from that image and the prompt
        only styles the texture, so it may be omitted.
        """
        if prompt is not None and not isinstance(prompt, str):
            raise SessionValidationError("Prompt must be a string", "prompt")
        prompt = (prompt or "").strip()

        if image_url is not None:
            if not isinstance(image_url, str) or not image_url.strip().startswith(_IMAGE_URL_PREFIXES):
                raise SessionValidationError("image_url must be an http(s) URL or a data:image URI", "image_url")
            image_url = image_url.strip()
            prompt = prompt or DEFAULT_TEXTURE_PROMPT

        if not prompt:
            raise SessionValidationError("Missing prompt", "prompt")
        if len(prompt) > MAX_PROMPT_LENGTH:
            raise SessionValidationError(f"Prompt must be <= {MAX_PROMPT_LENGTH} characters", "prompt")

        valid_poses = [p.value for p in PoseMode if p.value]
        if pose_mode not in valid_poses:
            raise SessionValidationError(f"pose_mode must be one of {valid_poses}", "pose_mode")

        return cls(
            prompt=prompt,
            pose_mode=pose_mode,
            model_version=model_version or "meshy-5",
            image_url=image_url,
        )

    @property
    def source_stage(self) -> Stage:
        """The stage that produces the first mesh."""
        return Stage.IMAGE_MESH if self.image_url else Stage.MESH

    @property
    def current_stage(self) -> Optional[Stage]:
        if self.state == SessionState.MESH_PENDING:
            return self.source_stage
        return _PENDING_STAGE.get(self.state)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def last_good(self) -> Optional[StageResult]:
        """Most recent stage that produced a usable artifact."""
        for result in reversed(self.stage_results):
            if result.succeeded:
                return result
        return None

    def result_for(self, stage: Stage) -> Optional[StageResult]:
        for result in reversed(self.stage_results):
            if result.stage == stage:
                return result
        return None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        data["stage_results"] = [
            {**asdict(r), "stage": r.stage.value} for r in self.stage_results
        ]
        data["animation_urls"] = self.animation_urls.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenerationSession":
        data = dict(data)
        data["state"] = SessionState(data.get("state", SessionState.IDLE.value))
        data["stage_results"] = [
            StageResult(**{**r, "stage": Stage(r["stage"])}) for r in data.get("stage_results", [])
        ]
        data["animation_urls"] = AnimationUrls.from_dict(data.get("animation_urls"))
        return cls(**data)


# =============================================================================
# Events & effects
# =============================================================================

@dataclass(frozen=True)
class Start:
    pass


@dataclass(frozen=True)
class StageSucceeded:
    stage: Stage
    task_id: str
    artifact_url: str
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class StageFailed:
    stage: Stage
    outcome: str
    reason: str
    task_id: Optional[str] = None


@dataclass(frozen=True)
class AnimationsResolved:
    urls: AnimationUrls


Event = Union[Start, StageSucceeded, StageFailed, AnimationsResolved]


@dataclass(frozen=True)
class SubmitStage:
    stage: Stage
    params: Dict[str, Any]


@dataclass(frozen=True)
class ResolveAnimations:
    rig_task_id: str
    rigging_result: Dict[str, Any]


@dataclass(frozen=True)
class RenderArtifact:
    model_url: str
    animation_urls: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class PersistGalleryEntry:
    entry: GalleryEntry


Effect = Union[SubmitStage, ResolveAnimations, RenderArtifact, PersistGalleryEntry]


# =============================================================================
# Transition function
# =============================================================================

def _rigging_params(input_task_id: str, config: ForgeConfig) -> Dict[str, Any]:
    return {"input_task_id": input_task_id, "height_meters": config.rig_height_meters}


def _finish(session: GenerationSession, model_url: str, animation_urls: AnimationUrls) -> List[Effect]:
    session.state = SessionState.DONE
    session.final_model_url = model_url
    session.interim_model_url = model_url
    session.animation_urls = animation_urls
    session.progress = None
    entry = GalleryEntry(
        prompt=session.prompt,
        model_url=model_url,
        animations=animation_urls.to_dict(),
    )
    return [RenderArtifact(model_url, animation_urls.to_dict()), PersistGalleryEntry(entry)]


def _describe_last_good(session: GenerationSession) -> str:
    good = session.last_good()
    if good is None:
        return "No model was produced."
    return f"Last good model ({good.stage.label}): {good.artifact_url}"


def advance(session: GenerationSession, event: Event, config: ForgeConfig) -> List[Effect]:
    """
    Apply one event to the session and return the effects to execute.

    Events for a finished or abandoned session are ignored, so late poll
    results never resurrect it.
    """
    if session.abandoned or session.is_terminal:
        logger.debug(f"[Orchestrator] Ignoring {type(event).__name__} for session {session.session_id} ({session.state.value})")
        return []

    state = session.state

    if isinstance(event, Start):
        if state != SessionState.IDLE:
            raise InvalidTransitionError(f"Session {session.session_id} already started")
        session.state = SessionState.MESH_PENDING
        if session.image_url:
            return [SubmitStage(Stage.IMAGE_MESH, {
                "image_url": session.image_url,
                "texture_prompt": session.prompt,
                "pose_mode": session.pose_mode,
                "should_texture": False,
            })]
        return [SubmitStage(Stage.MESH, {
            "prompt": session.prompt,
            "pose_mode": session.pose_mode,
            "ai_model": session.model_version,
        })]

    expected = session.current_stage
    event_stage = Stage.ANIMATION if isinstance(event, AnimationsResolved) else event.stage
    if expected is None or event_stage != expected:
        raise InvalidTransitionError(
            f"{type(event).__name__}({event_stage.value}) not valid in state {state.value}"
        )

    if isinstance(event, StageSucceeded):
        session.stage_results.append(StageResult(
            stage=event.stage,
            outcome=PollResult.SUCCEEDED.value,
            task_id=event.task_id,
            artifact_url=event.artifact_url,
        ))
        session.interim_model_url = event.artifact_url
        session.progress = None
        effects: List[Effect] = [RenderArtifact(event.artifact_url)]

        if event.stage == session.source_stage:
            session.state = SessionState.TEXTURE_PENDING
            effects.append(SubmitStage(Stage.RETEXTURE, {
                "input_task_id": event.task_id,
                "text_style_prompt": session.prompt,
                "enable_pbr": config.enable_pbr,
            }))
        elif event.stage == Stage.RETEXTURE:
            session.state = SessionState.RIG_PENDING
            effects.append(SubmitStage(Stage.RIGGING, _rigging_params(event.task_id, config)))
        else:
            session.state = SessionState.ANIMATION_PENDING
            effects.append(ResolveAnimations(event.task_id, event.payload))
        return effects

    if isinstance(event, StageFailed):
        session.stage_results.append(StageResult(
            stage=event.stage,
            outcome=event.outcome,
            task_id=event.task_id,
            reason=event.reason,
        ))
        session.progress = None
        message = f"{event.stage.label.capitalize()} {event.outcome}: {event.reason}."

        if event.stage == session.source_stage:
            session.state = SessionState.FAILED
            session.error = f"{message} {_describe_last_good(session)}"
            logger.warning(f"[Orchestrator] Session {session.session_id} failed: {session.error}")
            return []

        good = session.last_good()
        session.warnings.append(f"{message} {_describe_last_good(session)}")

        if event.stage == Stage.RETEXTURE:
            logger.warning(f"[Orchestrator] Retexture failed for {session.session_id}, rigging the untextured mesh")
            session.state = SessionState.RIG_PENDING
            return [SubmitStage(Stage.RIGGING, _rigging_params(good.task_id, config))]

        logger.warning(f"[Orchestrator] Rigging failed for {session.session_id}, finishing with {good.stage.label} model")
        return _finish(session, good.artifact_url, AnimationUrls())

    # AnimationsResolved
    rigged = session.result_for(Stage.RIGGING)
    return _finish(session, rigged.artifact_url, event.urls)


# =============================================================================
# Driver
# =============================================================================

RenderCallback = Callable[[str, Dict[str, str]], None]


class GenerationOrchestrator:
    """
    Runs sessions against the Meshy API.

    Stages run strictly one after another; only the two animation jobs run
    concurrently (inside AnimationResolver).

    Usage:
        async with MeshyClient(config) as client:
            orchestrator = GenerationOrchestrator(client, config, gallery=gallery)
            session = GenerationSession.create("a knight", "a-pose")
            await orchestrator.run(session)
            print(session.final_model_url, session.animation_urls)
    """

    def __init__(
        self,
        client,
        config: ForgeConfig,
        *,
        gallery: Optional[Gallery] = None,
        render: Optional[RenderCallback] = None,
        poller_factory: Optional[Callable[[Stage], PollingTask]] = None,
    ):
        self.client = client
        self.config = config
        self.gallery = gallery
        self.render = render
        self._poller_factory = poller_factory or self._default_poller

    def _default_poller(self, stage: Stage) -> PollingTask:
        return PollingTask(
            interval=self.config.poll_interval,
            max_attempts=self.config.poll_max_attempts,
            initial_delay=self.config.poll_initial_delay,
            expected_seconds=EXPECTED_STAGE_SECONDS[stage],
        )

    async def run(self, session: GenerationSession) -> GenerationSession:
        """Drive the session until it is done, failed or abandoned."""
        logger.info(f"[Orchestrator] Starting session {session.session_id}: {session.prompt[:60]!r}")
        pending: List[Effect] = advance(session, Start(), self.config)

        while pending:
            if session.abandoned:
                logger.info(f"[Orchestrator] Session {session.session_id} abandoned, discarding {len(pending)} pending step(s)")
                return session

            effect = pending.pop(0)
            event = await self._execute(session, effect)
            if event is not None:
                pending.extend(advance(session, event, self.config))

        logger.info(
            f"[Orchestrator] Session {session.session_id} {session.state.value}: "
            f"model={session.final_model_url} animations={session.animation_urls.to_dict()}"
        )
        return session

    async def recover(self, session: GenerationSession, error: BaseException) -> bool:
        """
        Finish a session whose run crashed with its latest good artifact.

        Returns False when there is nothing to finish with; the caller then
        marks the session failed.
        """
        good = session.last_good()
        if good is None or session.is_terminal or session.abandoned:
            return False
        session.warnings.append(f"Internal error: {error}. {_describe_last_good(session)}")
        logger.warning(f"[Orchestrator] Session {session.session_id} crashed, finishing with {good.stage.label} model")
        for effect in _finish(session, good.artifact_url, AnimationUrls()):
            await self._execute(session, effect)
        return True

    async def _execute(self, session: GenerationSession, effect: Effect) -> Optional[Event]:
        if isinstance(effect, SubmitStage):
            return await self._run_stage(session, effect)

        if isinstance(effect, ResolveAnimations):
            resolver = AnimationResolver(self.client, lambda: self._poller_factory(Stage.ANIMATION))
            urls = await resolver.resolve(effect.rig_task_id, effect.rigging_result)
            return AnimationsResolved(urls)

        if isinstance(effect, RenderArtifact):
            if self.render:
                try:
                    self.render(effect.model_url, effect.animation_urls)
                except Exception as e:
                    logger.error(f"[Orchestrator] Render callback failed: {e}", exc_info=True)
            return None

        if isinstance(effect, PersistGalleryEntry):
            if self.gallery:
                self.gallery.add(effect.entry)
            return None

        raise TypeError(f"Unknown effect {effect!r}")

    def _submitter(self, stage: Stage):
        return {
            Stage.MESH: self.client.text_to_3d_preview,
            Stage.IMAGE_MESH: self.client.image_to_3d,
            Stage.RETEXTURE: self.client.retexture,
            Stage.RIGGING: self.client.rig,
        }[stage]

    async def _run_stage(self, session: GenerationSession, effect: SubmitStage) -> Event:
        stage = effect.stage
        try:
            handle = await self._submitter(stage)(**effect.params)
        except (MeshyError, httpx.HTTPError, ValueError) as e:
            logger.warning(f"[Orchestrator] {stage.label} submission rejected: {e}")
            return StageFailed(stage, "rejected", str(e))

        def on_progress(progress: PollProgress) -> None:
            if session.abandoned:
                return
            session.progress = {
                "stage": stage.value,
                "task_id": progress.task_id,
                "attempt": progress.attempt,
                "max_attempts": progress.max_attempts,
                "percent": round(progress.percent, 1),
                "estimated_seconds_remaining": progress.estimated_seconds_remaining,
            }

        async def check(task_id: str):
            return await self.client.check_status(task_id, stage)

        poller = self._poller_factory(stage)
        if poller.on_progress is None:
            poller.on_progress = on_progress
        outcome = await poller.poll(handle.task_id, check)

        if outcome.succeeded:
            return StageSucceeded(stage, handle.task_id, outcome.artifact_url, outcome.task.raw)
        return StageFailed(stage, outcome.result.value, outcome.reason or "unknown error", handle.task_id)
