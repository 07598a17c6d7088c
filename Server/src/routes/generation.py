"""
Character Generation API

HTTP surface over the generation chain and the saved-model gallery:

    POST   /api/characters                  start a session (from a prompt or an image_url)
    GET    /api/characters/{session_id}     session snapshot (poll this)
    DELETE /api/characters/{session_id}     abandon a session
    POST   /api/images/refine               image-to-image refinement task
    GET    /api/tasks/{task_id}             raw status of one Meshy task
    GET    /api/balance                     Meshy credit balance
    GET    /api/gallery                     saved models, newest first
    DELETE /api/gallery?url=...             remove a saved model
"""

import json
import logging
from typing import Optional

import httpx
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from integrations.meshy_client import MeshyAPIError, MeshyClient
from routes.asset_proxy import proxied_asset_url
from services.config import ForgeConfig
from services.gallery import Gallery
from services.orchestrator import GenerationSession, SessionValidationError
from services.sessions import SessionManager, session_snapshot

logger = logging.getLogger("rigforge-server")

MISSING_KEY_MESSAGE = "Missing MESHY_API_KEY (or VITE_MESHY_API_KEY) in environment"


class GenerationRoutes:
    """Request handlers bound to the server's shared components."""

    def __init__(
        self,
        config: ForgeConfig,
        gallery: Gallery,
        sessions: Optional[SessionManager] = None,
        client: Optional[MeshyClient] = None,
    ):
        self.config = config
        self.gallery = gallery
        self.sessions = sessions
        self.client = client

    def _rewrite(self, url: str) -> str:
        return proxied_asset_url(url, self.config)

    async def create_character(self, request: Request) -> Response:
        if self.sessions is None:
            return JSONResponse({"error": MISSING_KEY_MESSAGE}, status_code=500)

        try:
            body = await request.json()
        except json.JSONDecodeError:
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Request body must be an object"}, status_code=400)

        try:
            session = GenerationSession.create(
                body.get("prompt"),
                body.get("pose_mode"),
                body.get("model_version") or self.config.ai_model,
                image_url=body.get("image_url"),
            )
        except SessionValidationError as e:
            return JSONResponse({"error": str(e), "field": e.field_name}, status_code=400)

        self.sessions.start(session)
        logger.info(f"[API] Started session {session.session_id}")
        return JSONResponse(
            {"session_id": session.session_id, "state": session.state.value},
            status_code=202,
        )

    async def get_character(self, request: Request) -> Response:
        session_id = request.path_params["session_id"]
        session = self.sessions.get(session_id) if self.sessions else None
        if session is None:
            return JSONResponse({"error": "Session not found", "session_id": session_id}, status_code=404)
        return JSONResponse(session_snapshot(session, self._rewrite))

    async def abandon_character(self, request: Request) -> Response:
        session_id = request.path_params["session_id"]
        if not self.sessions or not self.sessions.abandon(session_id):
            return JSONResponse({"error": "Session not found", "session_id": session_id}, status_code=404)
        return JSONResponse({"session_id": session_id, "abandoned": True})

    async def refine_image(self, request: Request) -> Response:
        """Start an image-to-image task; follow it with GET /api/tasks/{task_id}."""
        if self.client is None:
            return JSONResponse({"error": MISSING_KEY_MESSAGE}, status_code=500)

        try:
            body = await request.json()
        except json.JSONDecodeError:
            return JSONResponse({"error": "Invalid JSON"}, status_code=400)
        if not isinstance(body, dict):
            return JSONResponse({"error": "Request body must be an object"}, status_code=400)

        image_urls = body.get("reference_image_urls")
        if not isinstance(image_urls, list):
            image_urls = [body["image_url"]] if isinstance(body.get("image_url"), str) else []
        image_urls = [url for url in image_urls if isinstance(url, str) and url.strip()]
        if not image_urls:
            return JSONResponse({"error": "Missing image_url or reference_image_urls"}, status_code=400)

        prompt = body.get("prompt")
        if not isinstance(prompt, str) or not prompt.strip():
            return JSONResponse({"error": "Missing prompt"}, status_code=400)

        try:
            handle = await self.client.image_to_image(image_urls, prompt, ai_model=body.get("ai_model") or "nano-banana")
        except MeshyAPIError as e:
            return JSONResponse({"error": f"Meshy.ai API error: {e.message}"}, status_code=e.status_code)
        except httpx.HTTPError as e:
            logger.error(f"[API] Image refinement request failed: {e}")
            return JSONResponse({"error": str(e)}, status_code=502)

        return JSONResponse({"taskId": handle.task_id, "status": "pending"}, status_code=202)

    async def task_status(self, request: Request) -> Response:
        if self.client is None:
            return JSONResponse({"error": MISSING_KEY_MESSAGE}, status_code=500)

        task_id = request.path_params["task_id"]
        try:
            task = await self.client.check_status(task_id)
        except MeshyAPIError as e:
            return JSONResponse({"error": f"Meshy.ai API error: {e.message}"}, status_code=e.status_code)
        except httpx.TimeoutException:
            return JSONResponse({"error": "Request timeout - Meshy API took too long to respond"}, status_code=504)
        except httpx.HTTPError as e:
            logger.error(f"[API] Status check for {task_id} failed: {e}")
            return JSONResponse({"error": str(e)}, status_code=502)

        payload = {
            "taskId": task_id,
            "type": task.task_type,
            "status": task.status.value,
            "progress": task.progress,
            "modelUrl": task.artifact_url,
            "viewerUrl": self._rewrite(task.artifact_url) if task.artifact_url else None,
            "thumbnailUrl": task.thumbnail_url,
            "imageUrl": task.image_url,
            "error": task.error_message,
        }
        if task.result:
            payload["result"] = task.result
        return JSONResponse(payload)

    async def balance(self, request: Request) -> Response:
        if self.client is None:
            return JSONResponse({"error": MISSING_KEY_MESSAGE}, status_code=500)
        try:
            return JSONResponse(await self.client.get_balance())
        except MeshyAPIError as e:
            return JSONResponse({"error": f"Meshy.ai API error: {e.message}"}, status_code=e.status_code)
        except httpx.HTTPError as e:
            logger.error(f"[API] Balance request failed: {e}")
            return JSONResponse({"error": str(e)}, status_code=502)

    async def list_gallery(self, request: Request) -> Response:
        entries = [entry.to_dict() for entry in self.gallery.list()]
        return JSONResponse({"models": entries})

    async def delete_gallery_entry(self, request: Request) -> Response:
        url = request.query_params.get("url")
        if not url:
            return JSONResponse({"error": "Missing url parameter"}, status_code=400)
        if not self.gallery.delete(url):
            return JSONResponse({"error": "Model not found"}, status_code=404)
        return JSONResponse({"deleted": url})


def get_generation_routes(
    config: ForgeConfig,
    gallery: Gallery,
    sessions: Optional[SessionManager] = None,
    client: Optional[MeshyClient] = None,
):
    """Routes for the generation API, bound to the given components."""
    handlers = GenerationRoutes(config, gallery, sessions, client)
    return [
        Route("/api/characters", handlers.create_character, methods=["POST"]),
        Route("/api/characters/{session_id}", handlers.get_character, methods=["GET"]),
        Route("/api/characters/{session_id}", handlers.abandon_character, methods=["DELETE"]),
        Route("/api/images/refine", handlers.refine_image, methods=["POST"]),
        Route("/api/tasks/{task_id}", handlers.task_status, methods=["GET"]),
        Route("/api/balance", handlers.balance, methods=["GET"]),
        Route("/api/gallery", handlers.list_gallery, methods=["GET"]),
        Route("/api/gallery", handlers.delete_gallery_entry, methods=["DELETE"]),
    ]
