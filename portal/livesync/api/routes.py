"""
API routes for portal-livesync.

Exposes live views to the portal frontend:
- One-shot reads of a scoped table (open, snapshot, close)
- Dashboard counters for one client
- A websocket that streams a view's snapshot after every change; the
  socket's lifetime is the view's lifetime
"""

import asyncio
import logging
from typing import Any

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    Request,
    WebSocket,
    WebSocketDisconnect,
)
from pydantic import BaseModel, Field

from ..feed.base import LiveSyncError
from ..kinds import EntityKind, KindRegistry
from ..sync.session import ViewSession
from ..views.dashboard import LiveDashboard, Perspective

logger = logging.getLogger(__name__)

router = APIRouter(tags=["livesync"])


# --- Response Models ---


class EntityResponse(BaseModel):
    """One entity of a live view."""

    id: Any
    scope_key: str | None = None
    payload: dict[str, Any]


class ViewResponse(BaseModel):
    """Snapshot of a scoped table."""

    table: str
    scope_key: str
    entities: list[EntityResponse]


class DashboardResponse(BaseModel):
    """Dashboard counters for one client."""

    scope_key: str
    perspective: str
    unread_messages: int = Field(..., description="Incoming messages not yet read")
    pending_tasks: int
    active_project: str | None = None
    note_count: int


# --- Dependencies ---


def get_backend(request: Request) -> Any:
    """Get the data backend from app state."""
    return request.app.state.backend


def get_registry(request: Request) -> KindRegistry:
    """Get the kind registry from app state."""
    return request.app.state.registry


def _kind_or_404(registry: KindRegistry, table: str) -> EntityKind:
    if table not in registry:
        raise HTTPException(status_code=404, detail=f"Unknown table: {table}")
    return registry.get(table)


# --- Routes ---


@router.get("/views/{table}/{scope_key}", response_model=ViewResponse)
async def read_view(
    table: str,
    scope_key: str,
    backend: Any = Depends(get_backend),
    registry: KindRegistry = Depends(get_registry),
) -> ViewResponse:
    """Read the current rows of a scoped table."""
    kind = _kind_or_404(registry, table)

    async with ViewSession(kind, backend, backend) as view:
        try:
            await view.open(scope_key)
        except LiveSyncError as e:
            logger.warning(f"View read failed: {e}", extra={"table": table, "scope_key": scope_key})
            raise HTTPException(status_code=502, detail=str(e))
        entities = [EntityResponse(**e.to_dict()) for e in view.snapshot()]

    return ViewResponse(table=table, scope_key=scope_key, entities=entities)


@router.get("/dashboard/{scope_key}", response_model=DashboardResponse)
async def read_dashboard(
    request: Request,
    scope_key: str,
    perspective: Perspective = Query(Perspective.ADMIN),
    backend: Any = Depends(get_backend),
    registry: KindRegistry = Depends(get_registry),
) -> DashboardResponse:
    """Dashboard counters for one client."""
    tables = request.app.state.config.session.dashboard_tables

    async with LiveDashboard(registry, backend, backend, tables, perspective) as dashboard:
        try:
            await dashboard.open(scope_key)
        except LiveSyncError as e:
            raise HTTPException(status_code=502, detail=str(e))
        summary = dashboard.summary()

    return DashboardResponse(
        scope_key=scope_key,
        perspective=perspective.value,
        **summary.to_dict(),
    )


@router.websocket("/live/{table}/{scope_key}")
async def live_view(websocket: WebSocket, table: str, scope_key: str) -> None:
    """Stream a view's snapshot on settle and after every change."""
    registry: KindRegistry = websocket.app.state.registry
    backend = websocket.app.state.backend

    if table not in registry:
        await websocket.close(code=4404)
        return

    await websocket.accept()
    changed = asyncio.Event()
    view = ViewSession(registry.get(table), backend, backend)
    view.on_change(changed.set)
    disconnected = asyncio.create_task(_wait_for_disconnect(websocket))

    try:
        try:
            await view.open(scope_key)
        except LiveSyncError as e:
            await websocket.send_json({"type": "error", "detail": str(e)})
            await websocket.close(code=1011)
            return

        while True:
            changed.clear()
            await websocket.send_json(
                {
                    "type": "snapshot",
                    "table": table,
                    "scope_key": scope_key,
                    "entities": [e.to_dict() for e in view.snapshot()],
                }
            )
            waiter = asyncio.create_task(changed.wait())
            done, _ = await asyncio.wait(
                {waiter, disconnected}, return_when=asyncio.FIRST_COMPLETED
            )
            if disconnected in done:
                waiter.cancel()
                break
    except WebSocketDisconnect:
        pass
    finally:
        disconnected.cancel()
        await view.close()
        logger.debug("Live socket closed", extra={"table": table, "scope_key": scope_key})


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return
