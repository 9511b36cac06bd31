"""
sessions.py — Voice Builder · Generation Session Manager
=========================================================
Supervises one code generation job per approved spec.

Lifecycle
---------
    starting ─▶ generating ─▶ building ─▶ ready
        │            │            │
        └──────▶ error / cancelled ◀┘

  • ``start()``        validate → call the backend → record the result.
                       Never raises for validation or backend failures;
                       both come back as a failed ``GenerationOutcome``.
  • ``cancel()``       signal the backend (at most once), drop the session,
                       remove its artifacts.  Unknown / finished ids → False.
  • ``sweep_stale()``  evict every non-ready session older than a max age.
  • ``run_sweeper()``  the recurring sweep; the next sweep is only scheduled
                       after the previous one finishes.

Every non-success exit removes ``<output_dir>/<session_id>``.  A cleanup
failure is logged and never replaces the original error.

All mutation happens on the event loop thread, so the registry needs no locks.
"""

from __future__ import annotations

import asyncio
import logging
import re
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from extraction import Specification

log = logging.getLogger("voice_builder.sessions")

_SAFE_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


class SessionStatus(str, Enum):
    STARTING   = "starting"
    GENERATING = "generating"
    BUILDING   = "building"
    READY      = "ready"
    ERROR      = "error"
    CANCELLED  = "cancelled"


TERMINAL_STATUSES = frozenset({SessionStatus.READY, SessionStatus.ERROR, SessionStatus.CANCELLED})


class GenerationCancelled(Exception):
    """Raised by a backend that stopped because its cancel handle fired."""


class _BackendTimedOut(Exception):
    """The manager's own deadline expired; distinct from timeouts raised inside a backend."""


class CancelHandle:
    """One-shot cooperative cancellation signal shared with the backend."""

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> bool:
        """Fire the signal.  Returns False if it had already fired."""
        if self._event.is_set():
            return False
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()


# ---------------------------------------------------------------------------
# Collaborator interfaces
# ---------------------------------------------------------------------------

@dataclass
class GenerationResult:
    artifact_path: str
    preview_endpoint: str


class GenerationCallbacks(Protocol):
    """Streaming capabilities handed to the backend."""
    async def on_log(self, chunk: str) -> None: ...
    async def on_file_tree(self, tree: dict) -> None: ...
    async def on_preview_ready(self, url: str) -> None: ...
    async def on_error(self, message: str) -> None: ...


class GenerationBackend(Protocol):
    async def generate(
        self,
        specification: Specification,
        session_id: str,
        callbacks: GenerationCallbacks,
        cancel: CancelHandle,
    ) -> GenerationResult: ...


class SessionListener:
    """Lifecycle observer for one session.  Every hook defaults to a no-op."""

    async def on_start(self, session: "GenerationSession") -> None:
        pass

    async def on_validation_passed(self, session: "GenerationSession") -> None:
        pass

    async def on_log(self, session: "GenerationSession", chunk: str) -> None:
        pass

    async def on_file_tree(self, session: "GenerationSession", tree: dict) -> None:
        pass

    async def on_preview_ready(self, session: "GenerationSession", url: str) -> None:
        pass

    async def on_complete(self, session: "GenerationSession", duration_ms: int) -> None:
        pass

    async def on_error(self, session: "GenerationSession", error: str, duration_ms: int) -> None:
        pass

    async def on_cancelled(self, session: "GenerationSession") -> None:
        pass


# ---------------------------------------------------------------------------
# Session record + registry
# ---------------------------------------------------------------------------

@dataclass
class GenerationSession:
    session_id: str
    specification: Specification
    started_at: float
    status: SessionStatus = SessionStatus.STARTING
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    artifact_path: Optional[str] = None
    preview_endpoint: Optional[str] = None
    error: Optional[str] = None
    cancel_handle: CancelHandle = field(default_factory=CancelHandle, repr=False)
    listener: SessionListener = field(default_factory=SessionListener, repr=False)

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, now: float) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "age_sec": round(now - self.started_at, 1),
            "artifact_path": self.artifact_path,
            "preview_endpoint": self.preview_endpoint,
            "error": self.error,
        }


class SessionStore:
    """Process-wide registry: session_id → GenerationSession."""

    def __init__(self) -> None:
        self._sessions: dict[str, GenerationSession] = {}

    def get(self, session_id: str) -> Optional[GenerationSession]:
        return self._sessions.get(session_id)

    def add(self, session: GenerationSession) -> None:
        self._sessions[session.session_id] = session

    def remove(self, session: GenerationSession) -> None:
        # Only drop the entry if it still points at this exact session.
        if self._sessions.get(session.session_id) is session:
            del self._sessions[session.session_id]

    def values(self) -> list[GenerationSession]:
        return list(self._sessions.values())

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


@dataclass
class GenerationOutcome:
    session_id: str
    success: bool
    status: SessionStatus
    preview_endpoint: Optional[str] = None
    artifact_path: Optional[str] = None
    error: Optional[str] = None
    duration_ms: int = 0


# ---------------------------------------------------------------------------
# Validation + artifact cleanup
# ---------------------------------------------------------------------------

def validate_specification(specification: Specification, required: Iterable[str]) -> list[str]:
    """Schema re-check.  Returns human-readable, field-level errors."""
    errors: list[str] = []
    for name in required:
        if name not in specification.fields:
            errors.append(f"Missing required field: {name}")
        elif not specification.fields[name].strip():
            errors.append(f"Field '{name}' is empty")
    return errors


def session_dir(output_dir: str | Path, session_id: str) -> Path:
    """Artifact root for a session.  Rejects ids that are not path-safe."""
    if not _SAFE_SESSION_ID_RE.match(session_id) or ".." in session_id:
        raise ValueError(f"unsafe session id: {session_id!r}")
    return Path(output_dir) / session_id


async def remove_session_artifacts(output_dir: str | Path, session_id: str) -> bool:
    """Delete a session's artifact subtree.  Failures are logged, never raised."""
    try:
        path = session_dir(output_dir, session_id)
        if not path.exists():
            return True
        await asyncio.to_thread(shutil.rmtree, path)
        log.info("event=artifacts_removed session_id=%s path=%s", session_id, path)
        return True
    except Exception as exc:
        log.error("event=cleanup_failed session_id=%s error=%s", session_id, exc)
        return False


# ---------------------------------------------------------------------------
# Callback bridge (backend → listener)
# ---------------------------------------------------------------------------

class _SessionCallbacks:
    """Feeds backend progress into the session and its listener.

    Ready and error are terminal and mutually exclusive: whichever arrives
    first wins and the other is dropped.
    """

    def __init__(self, manager: "GenerationSessionManager", session: GenerationSession) -> None:
        self._manager = manager
        self._session = session
        self.error: Optional[str] = None

    def _closed(self) -> bool:
        return self._session.terminal or self.error is not None

    async def on_log(self, chunk: str) -> None:
        if self._closed():
            return
        await self._manager._notify(self._session.listener.on_log(self._session, chunk))

    async def on_file_tree(self, tree: dict) -> None:
        if self._closed():
            return
        if self._session.status is SessionStatus.GENERATING:
            self._session.status = SessionStatus.BUILDING
            log.info("event=session_status session_id=%s status=building", self._session.session_id)
        await self._manager._notify(self._session.listener.on_file_tree(self._session, tree))

    async def on_preview_ready(self, url: str) -> None:
        if self._closed() or self._session.preview_endpoint is not None:
            return
        self._session.preview_endpoint = url
        await self._manager._notify(self._session.listener.on_preview_ready(self._session, url))

    async def on_error(self, message: str) -> None:
        if self._closed():
            return
        if self._session.preview_endpoint is not None:
            log.warning("event=late_backend_error_ignored session_id=%s error=%s", self._session.session_id, message)
            return
        self.error = message
        log.warning("event=backend_error session_id=%s error=%s", self._session.session_id, message)


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------

class GenerationSessionManager:
    def __init__(
        self,
        store: SessionStore,
        backend: GenerationBackend,
        *,
        output_dir: str | Path,
        required_fields: Iterable[str],
        timeout_sec: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._store = store
        self._backend = backend
        self._output_dir = Path(output_dir)
        self._required = list(required_fields)
        self._timeout_sec = timeout_sec
        self._clock = clock
        self._sweeping = False

    @property
    def store(self) -> SessionStore:
        return self._store

    def _elapsed_ms(self, session: GenerationSession) -> int:
        return int((self._clock() - session.started_at) * 1000)

    async def _call_backend(self, call: Awaitable[GenerationResult]) -> GenerationResult:
        if self._timeout_sec is None:
            return await call
        task = asyncio.ensure_future(call)
        try:
            done, _ = await asyncio.wait({task}, timeout=self._timeout_sec)
        finally:
            if not task.done():
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        if not done:
            raise _BackendTimedOut()
        return task.result()

    async def _notify(self, hook: Awaitable[None]) -> None:
        try:
            await hook
        except Exception as exc:
            log.warning("event=listener_error error=%s", exc)

    async def _cleanup(self, session: GenerationSession) -> None:
        await remove_session_artifacts(self._output_dir, session.session_id)

    # -----------------------------------------------------------------------
    # start
    # -----------------------------------------------------------------------

    async def start(
        self,
        specification: Specification,
        session_id: str,
        listener: Optional[SessionListener] = None,
    ) -> GenerationOutcome:
        existing = self._store.get(session_id)
        if existing is not None and not existing.terminal:
            log.warning("event=session_already_active session_id=%s status=%s", session_id, existing.status.value)
            return GenerationOutcome(
                session_id=session_id,
                success=False,
                status=existing.status,
                error="A generation is already running for this session.",
            )

        session = GenerationSession(
            session_id=session_id,
            specification=specification,
            started_at=self._clock(),
            listener=listener or SessionListener(),
        )
        self._store.add(session)
        log.info("event=session_start session_id=%s", session_id)
        await self._notify(session.listener.on_start(session))

        errors = validate_specification(specification, self._required)
        if errors:
            log.warning("event=spec_validation_failed session_id=%s errors=%s", session_id, errors)
            return await self._fail(session, "Spec validation failed: " + "; ".join(errors))

        session.status = SessionStatus.GENERATING
        log.info("event=session_status session_id=%s status=generating", session_id)
        await self._notify(session.listener.on_validation_passed(session))

        callbacks = _SessionCallbacks(self, session)
        try:
            result = await self._call_backend(
                self._backend.generate(specification, session_id, callbacks, session.cancel_handle)
            )
        except asyncio.CancelledError:
            session.cancel_handle.cancel()
            if not session.terminal:
                session.status = SessionStatus.CANCELLED
            self._store.remove(session)
            await self._cleanup(session)
            log.info("event=session_task_cancelled session_id=%s", session_id)
            raise
        except _BackendTimedOut:
            session.cancel_handle.cancel()
            if session.status is SessionStatus.CANCELLED:
                return await self._cancelled_outcome(session)
            return await self._fail(session, f"Generation timed out after {self._timeout_sec:.0f}s")
        except GenerationCancelled:
            if session.status is not SessionStatus.CANCELLED:
                await self.cancel(session_id)
            return await self._cancelled_outcome(session)
        except Exception as exc:
            if session.status is SessionStatus.CANCELLED:
                return await self._cancelled_outcome(session)
            log.error("event=backend_failed session_id=%s error=%s", session_id, exc, exc_info=True)
            return await self._fail(session, callbacks.error or str(exc) or exc.__class__.__name__)

        if session.status is SessionStatus.CANCELLED:
            return await self._cancelled_outcome(session)
        if callbacks.error is not None:
            return await self._fail(session, callbacks.error)

        session.artifact_path = result.artifact_path
        session.preview_endpoint = session.preview_endpoint or result.preview_endpoint
        session.status = SessionStatus.READY
        duration_ms = self._elapsed_ms(session)
        log.info(
            "event=session_ready session_id=%s duration_ms=%d preview=%s",
            session_id, duration_ms, session.preview_endpoint,
        )
        await self._notify(session.listener.on_complete(session, duration_ms))
        return GenerationOutcome(
            session_id=session_id,
            success=True,
            status=session.status,
            preview_endpoint=session.preview_endpoint,
            artifact_path=session.artifact_path,
            duration_ms=duration_ms,
        )

    async def _fail(self, session: GenerationSession, message: str) -> GenerationOutcome:
        session.status = SessionStatus.ERROR
        session.error = message
        duration_ms = self._elapsed_ms(session)
        self._store.remove(session)
        await self._cleanup(session)
        log.error("event=session_error session_id=%s duration_ms=%d error=%s", session.session_id, duration_ms, message)
        await self._notify(session.listener.on_error(session, message, duration_ms))
        return GenerationOutcome(
            session_id=session.session_id,
            success=False,
            status=session.status,
            error=message,
            duration_ms=duration_ms,
        )

    async def _cancelled_outcome(self, session: GenerationSession) -> GenerationOutcome:
        # The backend may have kept writing after cancel(); sweep its output again.
        await self._cleanup(session)
        return GenerationOutcome(
            session_id=session.session_id,
            success=False,
            status=SessionStatus.CANCELLED,
            error="Generation was cancelled.",
            duration_ms=self._elapsed_ms(session),
        )

    # -----------------------------------------------------------------------
    # cancel / status
    # -----------------------------------------------------------------------

    async def cancel(self, session_id: str) -> bool:
        session = self._store.get(session_id)
        if session is None or session.terminal:
            return False
        session.cancel_handle.cancel()
        session.status = SessionStatus.CANCELLED
        self._store.remove(session)
        log.info("event=session_cancelled session_id=%s", session_id)
        await self._cleanup(session)
        await self._notify(session.listener.on_cancelled(session))
        return True

    def status(self, session_id: str) -> Optional[GenerationSession]:
        return self._store.get(session_id)

    def active(self) -> list[GenerationSession]:
        return self._store.values()

    # -----------------------------------------------------------------------
    # Staleness
    # -----------------------------------------------------------------------

    async def sweep_stale(self, max_age_sec: float) -> int:
        if self._sweeping:
            log.warning("event=sweep_skipped reason=already_running")
            return 0
        self._sweeping = True
        try:
            now = self._clock()
            stale = [
                s for s in self._store.values()
                if s.status is not SessionStatus.READY and now - s.started_at > max_age_sec
            ]
            for session in stale:
                session.cancel_handle.cancel()
                if not session.terminal:
                    session.status = SessionStatus.CANCELLED
                self._store.remove(session)
                await self._cleanup(session)
                await self._notify(session.listener.on_cancelled(session))
                log.info(
                    "event=session_evicted session_id=%s age_sec=%.0f",
                    session.session_id, now - session.started_at,
                )
            if stale:
                log.info("event=sweep_done evicted=%d remaining=%d", len(stale), len(self._store))
            return len(stale)
        finally:
            self._sweeping = False

    async def run_sweeper(self, interval_sec: float, max_age_sec: float) -> None:
        """Sweep forever.  Each sleep starts only after the previous sweep ends."""
        log.info("event=sweeper_started interval_sec=%.0f max_age_sec=%.0f", interval_sec, max_age_sec)
        while True:
            await asyncio.sleep(interval_sec)
            try:
                await self.sweep_stale(max_age_sec)
            except Exception as exc:
                log.error("event=sweep_failed error=%s", exc, exc_info=True)

    async def shutdown(self) -> None:
        pending = [s.session_id for s in self._store.values() if not s.terminal]
        for session_id in pending:
            await self.cancel(session_id)
        if pending:
            log.info("event=sessions_shutdown cancelled=%d", len(pending))
