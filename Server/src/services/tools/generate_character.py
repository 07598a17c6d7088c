"""
Generate Character Tool

Turns a text prompt into a rigged, animated 3D character through the
Meshy chain (preview mesh -> retexture -> rigging -> walking/running clips).
A reference image can replace the text prompt as the source of the mesh.

Usage via MCP:
    # Start a generation and return immediately
    await generate_character(action="generate", prompt="a desert ranger", pose_mode="a-pose")

    # Poll it
    await generate_character(action="status", session_id="...")

    # Run the whole chain in one call, streaming progress
    await generate_character(action="generate", prompt="a knight", pose_mode="t-pose", wait=True)

    # Start from a reference image; the prompt styles the texture
    await generate_character(action="generate", image_url="https://.../sketch.png", pose_mode="a-pose")
"""

import asyncio
from typing import Annotated, Any, Literal, Optional

from fastmcp import Context

from routes.asset_proxy import proxied_asset_url
from services.orchestrator import GenerationSession, SessionState, SessionValidationError
from services.registry import forge_tool
from services.sessions import session_snapshot
from services.tools import ForgeState, get_state

# How often a waiting call reports progress to the MCP client
PROGRESS_REPORT_INTERVAL = 2.0


def _snapshot(state: ForgeState, session: GenerationSession) -> dict[str, Any]:
    return session_snapshot(session, lambda url: proxied_asset_url(url, state.config))


@forge_tool(
    description="""Generate a rigged, animated 3D character from a text prompt using Meshy.ai.

The chain runs preview mesh -> retexture -> rigging -> walking/running animations.
If a later stage fails, the latest good model is kept (untextured mesh, or
unrigged model without animations).

Actions:
- generate: Start a new character (pose_mode and a prompt or image_url required)
- status: Get the state of a session
- abandon: Stop following a session; late results are discarded
- list_gallery: List saved characters, newest first

Examples:
- Start: action="generate", prompt="a robot samurai", pose_mode="a-pose"
- From an image: action="generate", image_url="https://...", prompt="weathered leather", pose_mode="a-pose"
- Wait for the result: action="generate", prompt="a goblin scout", pose_mode="t-pose", wait=True
- Check: action="status", session_id="..."
"""
)
async def generate_character(
    ctx: Context,
    action: Annotated[
        Literal["generate", "status", "abandon", "list_gallery"],
        "Action to perform: start a generation, check a session, abandon it, or list saved models"
    ],
    prompt: Annotated[
        Optional[str],
        "Text description of the character, or the texture style when image_url is given (max 600 chars)"
    ] = None,
    image_url: Annotated[
        Optional[str],
        "Reference image (http(s) URL or data:image URI) to build the mesh from instead of the prompt"
    ] = None,
    pose_mode: Annotated[
        Optional[Literal["a-pose", "t-pose"]],
        "Pose of the generated mesh; rigging works best with a-pose or t-pose"
    ] = None,
    session_id: Annotated[
        Optional[str],
        "Session ID for status or abandon (from a previous generate call)"
    ] = None,
    wait: Annotated[
        bool,
        "Wait for the whole chain to finish, reporting progress"
    ] = False,
    timeout: Annotated[
        float,
        "Maximum wait time in seconds when wait=True"
    ] = 1800.0,
) -> dict[str, Any]:
    """Generate rigged characters and inspect their sessions."""

    state = get_state()

    if action == "list_gallery":
        models = [entry.to_dict() for entry in state.gallery.list()]
        return {
            "success": True,
            "models": models,
            "message": f"{len(models)} saved model(s)"
        }

    if action == "status":
        if not session_id:
            return {"success": False, "message": "session_id required for status check"}
        session = state.sessions.get(session_id) if state.sessions else None
        if session is None:
            return {"success": False, "message": f"Unknown session: {session_id}"}
        return {"success": True, "session": _snapshot(state, session)}

    if action == "abandon":
        if not session_id:
            return {"success": False, "message": "session_id required for abandon"}
        if not state.sessions or not state.sessions.abandon(session_id):
            return {"success": False, "message": f"Unknown session: {session_id}"}
        return {"success": True, "session_id": session_id, "message": "Session abandoned"}

    if action == "generate":
        if state.sessions is None:
            return {
                "success": False,
                "message": "Meshy is not configured. Set the MESHY_API_KEY environment variable."
            }
        try:
            session = GenerationSession.create(prompt, pose_mode, state.config.ai_model, image_url=image_url)
        except SessionValidationError as e:
            return {"success": False, "field": e.field_name, "message": str(e)}

        state.sessions.start(session)
        await ctx.info(f"Started character generation {session.session_id}: {session.prompt[:50]}")

        if not wait:
            return {
                "success": True,
                "session_id": session.session_id,
                "state": session.state.value,
                "message": "Generation started. Use action='status' to follow it."
            }

        return await _wait_for_session(ctx, state, session, timeout)

    return {"success": False, "message": f"Unknown action: {action}"}


async def _wait_for_session(
    ctx: Context,
    state: ForgeState,
    session: GenerationSession,
    timeout: float,
) -> dict[str, Any]:
    """Follow a running session, forwarding its progress to the MCP client."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    last_stage = None

    while not session.is_terminal and not session.abandoned:
        stage = session.current_stage
        if stage is not None and stage != last_stage:
            await ctx.info(f"Stage: {stage.label}")
            last_stage = stage
        if session.progress:
            await ctx.report_progress(progress=session.progress["percent"], total=100)

        remaining = deadline - loop.time()
        if remaining <= 0:
            return {
                "success": True,
                "session_id": session.session_id,
                "session": _snapshot(state, session),
                "message": f"Still running after {timeout:.0f}s. Use action='status' to follow it."
            }
        try:
            await state.sessions.wait(session.session_id, min(PROGRESS_REPORT_INTERVAL, remaining))
        except asyncio.TimeoutError:
            continue

    snapshot = _snapshot(state, session)
    for warning in session.warnings:
        await ctx.warning(warning)

    if session.state == SessionState.FAILED:
        await ctx.error(f"Character generation failed: {session.error}")
        return {
            "success": False,
            "session_id": session.session_id,
            "session": snapshot,
            "message": session.error or "Generation failed"
        }

    return {
        "success": True,
        "session_id": session.session_id,
        "session": snapshot,
        "model_url": session.final_model_url,
        "animations": session.animation_urls.to_dict(),
        "message": "Character ready" if not session.abandoned else "Session abandoned"
    }
