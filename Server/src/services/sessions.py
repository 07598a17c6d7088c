"""
In-process registry of running generation sessions.

Each session runs as its own asyncio task. Abandoning a session does not
cancel in-flight polls; it only marks the session so that later results
are dropped.

Finished and abandoned sessions stay readable for ``ttl_seconds`` after
their run ends. Beyond ``max_sessions`` the oldest finished ones go first.
"""

import asyncio
import logging
import time
from typing import Any, Callable, Dict, List, Optional

from services.orchestrator import GenerationOrchestrator, GenerationSession, SessionState

logger = logging.getLogger("rigforge-server.orchestrator")


class SessionManager:
    """Tracks sessions by id and runs them in the background."""

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        *,
        ttl_seconds: float = 3600.0,
        max_sessions: int = 200,
        clock: Callable[[], float] = time.time,
    ):
        self.orchestrator = orchestrator
        self.ttl_seconds = ttl_seconds
        self.max_sessions = max_sessions
        self._clock = clock
        self._sessions: Dict[str, GenerationSession] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        # session id -> time its run ended
        self._finished: Dict[str, float] = {}

    def start(self, session: GenerationSession) -> GenerationSession:
        """Schedule the session on the running event loop."""
        self.evict()
        self._sessions[session.session_id] = session
        task = asyncio.create_task(self._run(session), name=f"session-{session.session_id}")
        self._tasks[session.session_id] = task
        return session

    async def _run(self, session: GenerationSession) -> GenerationSession:
        try:
            return await self.orchestrator.run(session)
        except Exception as e:
            logger.error(f"[Orchestrator] Session {session.session_id} crashed: {e}", exc_info=True)
            if not session.is_terminal and not session.abandoned:
                if not await self.orchestrator.recover(session, e):
                    session.error = f"Internal error: {e}"
                    session.state = SessionState.FAILED
            return session
        finally:
            self._tasks.pop(session.session_id, None)
            self._finished[session.session_id] = self._clock()

    def evict(self) -> int:
        """Drop expired sessions, then the oldest finished ones over the cap."""
        now = self._clock()
        expired = [
            session_id for session_id, finished_at in self._finished.items()
            if now - finished_at >= self.ttl_seconds
        ]
        for session_id in expired:
            self._forget(session_id)

        evicted = len(expired)
        overflow = len(self._sessions) - self.max_sessions
        if overflow > 0:
            oldest = sorted(self._finished, key=self._finished.get)[:overflow]
            for session_id in oldest:
                self._forget(session_id)
            evicted += len(oldest)

        if evicted:
            logger.debug(f"[Orchestrator] Evicted {evicted} finished session(s)")
        return evicted

    def _forget(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)
        self._finished.pop(session_id, None)

    def get(self, session_id: str) -> Optional[GenerationSession]:
        self.evict()
        return self._sessions.get(session_id)

    def list(self) -> List[GenerationSession]:
        self.evict()
        return list(self._sessions.values())

    def abandon(self, session_id: str) -> bool:
        session = self._sessions.get(session_id)
        if session is None:
            return False
        session.abandoned = True
        logger.info(f"[Orchestrator] Session {session_id} abandoned by caller")
        return True

    async def wait(self, session_id: str, timeout: Optional[float] = None) -> Optional[GenerationSession]:
        """Wait for a running session to finish (or return it if already finished)."""
        task = self._tasks.get(session_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return self._sessions.get(session_id)

    async def shutdown(self) -> None:
        for task in list(self._tasks.values()):
            task.cancel()
        await asyncio.gather(*self._tasks.values(), return_exceptions=True)
        self._tasks.clear()


def session_snapshot(
    session: GenerationSession,
    rewrite_url: Optional[Callable[[str], str]] = None,
) -> Dict[str, Any]:
    """JSON view of a session for API and tool callers."""
    data = session.to_dict()
    data["current_stage"] = session.current_stage.value if session.current_stage else None
    if rewrite_url is not None:
        model_url = session.final_model_url or session.interim_model_url
        data["viewer_urls"] = {
            "model": rewrite_url(model_url) if model_url else None,
            "animations": {
                kind: rewrite_url(url) for kind, url in session.animation_urls.to_dict().items()
            },
        }
    return data
