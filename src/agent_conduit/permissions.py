"""Permission request/response correlation.

Bridges an asynchronously arriving "may I run this tool" prompt from a
backend to an asynchronously arriving decision from the consumer. Each
backend instance owns one ``PermissionCorrelator``; pending entries are
keyed by the permission request id and settle exactly once.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass

from agent_conduit.models import PermissionHandler, PermissionRequest, PermissionResponse

logger = logging.getLogger("agent_conduit.permissions")


@dataclass
class PendingPermission:
    """A permission prompt waiting for its decision."""

    request: PermissionRequest
    future: asyncio.Future[PermissionResponse | None]
    waiter: asyncio.Task | None = None


class PermissionCorrelator:
    """Table of pending permission prompts for one backend instance.

    Args:
        name: Label used in log messages (usually the backend type).
    """

    def __init__(self, name: str = "backend") -> None:
        self._name = name
        self._handler: PermissionHandler | None = None
        self._pending: dict[str, PendingPermission] = {}

    # ------------------------------------------------------------------
    # Handler
    # ------------------------------------------------------------------

    def set_handler(self, handler: PermissionHandler | None) -> None:
        """Register the consumer callback (replaces any previous one)."""
        self._handler = handler

    @property
    def has_handler(self) -> bool:
        return self._handler is not None

    # ------------------------------------------------------------------
    # Inbound prompts
    # ------------------------------------------------------------------

    async def request(self, permission: PermissionRequest) -> PermissionResponse | None:
        """Publish ``permission`` and wait for the decision.

        Returns a cancelled response immediately when no handler is
        registered. Returns None if the prompt was dismissed because it
        was answered through another path.
        """
        if self._handler is None:
            logger.debug(
                "[%s] No permission handler registered; cancelling request %s",
                self._name,
                permission.id,
            )
            return PermissionResponse.cancelled("No permission handler registered")

        stale = self._pending.pop(permission.id, None)
        if stale is not None and not stale.future.done():
            logger.warning("[%s] Permission request %s superseded", self._name, permission.id)
            stale.future.set_result(PermissionResponse.cancelled("Superseded"))

        future: asyncio.Future[PermissionResponse | None] = asyncio.get_running_loop().create_future()
        entry = PendingPermission(permission, future, asyncio.current_task())
        self._pending[permission.id] = entry

        try:
            result = self._handler(permission)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.exception("[%s] Permission handler failed for %s", self._name, permission.id)
            self._discard(permission.id, entry)
            if not future.done():
                return PermissionResponse.cancelled("Permission handler failed")

        try:
            return await future
        finally:
            self._discard(permission.id, entry)

    def _discard(self, request_id: str, entry: PendingPermission) -> None:
        if self._pending.get(request_id) is entry:
            del self._pending[request_id]

    # ------------------------------------------------------------------
    # Decisions
    # ------------------------------------------------------------------

    def resolve(self, request_id: str, response: PermissionResponse) -> bool:
        """Deliver a decision. Unknown or already-answered ids are a no-op.

        Returns:
            True if a pending prompt was settled.
        """
        entry = self._pending.pop(request_id, None)
        if entry is None or entry.future.done():
            logger.debug("[%s] No pending permission request for id %s", self._name, request_id)
            return False
        entry.future.set_result(response)
        return True

    def dismiss(self, request_id: str) -> bool:
        """Drop a prompt that was answered elsewhere; its waiter gets None."""
        entry = self._pending.pop(request_id, None)
        if entry is None or entry.future.done():
            return False
        entry.future.set_result(None)
        return True

    def cancel_session(self, session_id: str, reason: str = "Session closed") -> int:
        """Answer every pending prompt of ``session_id`` with a cancelled outcome."""
        ids = [rid for rid, entry in self._pending.items() if entry.request.session_id == session_id]
        for rid in ids:
            self.resolve(rid, PermissionResponse.cancelled(reason))
        return len(ids)

    def cancel_all(self, reason: str = "Backend disconnected") -> int:
        """Answer every pending prompt with a cancelled outcome."""
        ids = list(self._pending)
        for rid in ids:
            self.resolve(rid, PermissionResponse.cancelled(reason))
        return len(ids)

    # ------------------------------------------------------------------
    # Accessors
    # ------------------------------------------------------------------

    def get(self, request_id: str) -> PermissionRequest | None:
        entry = self._pending.get(request_id)
        return entry.request if entry else None

    def pending(self, session_id: str | None = None) -> list[PermissionRequest]:
        """Pending prompts, optionally filtered by session."""
        return [
            entry.request
            for entry in self._pending.values()
            if session_id is None or entry.request.session_id == session_id
        ]

    def waiters(self) -> set[asyncio.Task]:
        """Tasks blocked on a pending prompt; they deliver the answer once it settles."""
        current = asyncio.current_task()
        return {
            entry.waiter
            for entry in self._pending.values()
            if entry.waiter is not None and entry.waiter is not current and not entry.waiter.done()
        }

    def __len__(self) -> int:
        return len(self._pending)
