"""API routes for Setting Forge."""
import logging
from contextlib import contextmanager
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from setting_forge.errors import (
    HistoryNotFoundError,
    InvalidSessionStateError,
    ModelConfigError,
    NodeNotFoundError,
    SessionNotFoundError,
    ValidationFailed,
)
from setting_forge.models import GenerationSession, ModificationScope, SaveResult, SettingNode
from setting_forge.models.events import BaseEvent
from setting_forge.services.event_bus import StreamKind
from setting_forge.services.generation_service import GenerationService, SessionProgress, generation_service
from setting_forge.services.strategies import GenerationStrategy


logger = logging.getLogger(__name__)

PREFIX = "/api/setting-generation"

router = APIRouter()


def get_generation_service() -> GenerationService:
    return generation_service


# Request/Response models
class StartRequest(BaseModel):
    """Request to start a new setting generation."""
    prompt: str
    user_id: str = "anonymous"
    novel_id: Optional[str] = None
    strategy_id: Optional[str] = None
    prompt_template_id: Optional[str] = None
    model_config_id: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class HybridStartRequest(StartRequest):
    """Streaming start; may run on the shared model pool."""
    use_public_pool: bool = False


class StartResponse(BaseModel):
    """Response after starting generation."""
    session_id: str
    status: str


class ModifyNodeRequest(BaseModel):
    instruction: str
    scope: ModificationScope = ModificationScope.SELF
    model_config_id: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class AdjustRequest(BaseModel):
    instruction: str
    model_config_id: Optional[str] = None
    prompt_template_id: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class UpdateContentRequest(BaseModel):
    description: str


class HistoryStartRequest(BaseModel):
    history_id: str
    new_prompt: Optional[str] = None
    model_config_id: Optional[str] = None

    model_config = {"protected_namespaces": ()}


class SaveRequest(BaseModel):
    novel_id: Optional[str] = None
    update_existing: bool = False
    target_history_id: Optional[str] = None


class DeleteNodeResponse(BaseModel):
    deleted_node_ids: list[str]


class StatusResponse(BaseModel):
    session_id: str
    status: str


@contextmanager
def translate_errors():
    """Map engine errors to HTTP status codes."""
    try:
        yield
    except (SessionNotFoundError, NodeNotFoundError, HistoryNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e)) from e
    except InvalidSessionStateError as e:
        raise HTTPException(status_code=409, detail=str(e)) from e
    except (ModelConfigError, ValidationFailed) as e:
        raise HTTPException(status_code=400, detail=str(e)) from e


async def _sse(events: AsyncIterator[BaseEvent]) -> AsyncIterator[str]:
    async for event in events:
        yield f"data: {event.model_dump_json()}\n\n"


def _sse_response(events: AsyncIterator[BaseEvent]) -> StreamingResponse:
    return StreamingResponse(
        _sse(events),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.get(f"{PREFIX}/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "setting-forge"}


@router.get(f"{PREFIX}/strategies", response_model=list[GenerationStrategy])
async def list_strategies(service: GenerationService = Depends(get_generation_service)):
    return service.list_strategies()


@router.post(f"{PREFIX}/start", response_model=StartResponse)
async def start_generation(request: StartRequest, service: GenerationService = Depends(get_generation_service)):
    """Start a tool-loop generation. Follow progress on the event stream."""
    with translate_errors():
        session = await service.start(
            user_id=request.user_id,
            prompt=request.prompt,
            novel_id=request.novel_id,
            strategy_id=request.strategy_id,
            prompt_template_id=request.prompt_template_id,
            model_config_id=request.model_config_id,
        )
    return StartResponse(session_id=session.session_id, status=session.status.value)


@router.post(f"{PREFIX}/start-hybrid", response_model=StartResponse)
async def start_hybrid_generation(
    request: HybridStartRequest,
    service: GenerationService = Depends(get_generation_service),
):
    """Start a streaming generation with incremental extraction."""
    with translate_errors():
        session = await service.start_hybrid(
            user_id=request.user_id,
            prompt=request.prompt,
            novel_id=request.novel_id,
            strategy_id=request.strategy_id,
            prompt_template_id=request.prompt_template_id,
            model_config_id=request.model_config_id,
            use_public_pool=request.use_public_pool,
        )
    return StartResponse(session_id=session.session_id, status=session.status.value)


@router.post(f"{PREFIX}/start-from-history", response_model=StartResponse)
async def start_from_history(
    request: HistoryStartRequest,
    service: GenerationService = Depends(get_generation_service),
):
    """Reopen a saved setting tree as a COMPLETED session for further edits."""
    with translate_errors():
        session = service.start_from_history(
            request.history_id,
            new_prompt=request.new_prompt,
            model_config_id=request.model_config_id,
        )
    return StartResponse(session_id=session.session_id, status=session.status.value)


@router.get(f"{PREFIX}/{{session_id}}/events")
async def generation_events(session_id: str, service: GenerationService = Depends(get_generation_service)):
    """Server-sent generation events, replaying the recent ones first."""
    with translate_errors():
        events = service.stream(session_id, StreamKind.GENERATION)
    return _sse_response(events)


@router.get(f"{PREFIX}/{{session_id}}/modification-events")
async def modification_events(session_id: str, service: GenerationService = Depends(get_generation_service)):
    with translate_errors():
        events = service.stream(session_id, StreamKind.MODIFICATION)
    return _sse_response(events)


@router.post(f"{PREFIX}/{{session_id}}/nodes/{{node_id}}/modify", response_model=StatusResponse)
async def modify_node(
    session_id: str,
    node_id: str,
    request: ModifyNodeRequest,
    service: GenerationService = Depends(get_generation_service),
):
    """Start a scoped modification; results arrive on the modification stream."""
    with translate_errors():
        await service.modify_node(session_id, node_id, request.instruction, request.scope, request.model_config_id)
    return StatusResponse(session_id=session_id, status="MODIFYING")


@router.put(f"{PREFIX}/{{session_id}}/nodes/{{node_id}}/content", response_model=SettingNode)
async def update_node_content(
    session_id: str,
    node_id: str,
    request: UpdateContentRequest,
    service: GenerationService = Depends(get_generation_service),
):
    with translate_errors():
        return service.update_node_content(session_id, node_id, request.description)


@router.delete(f"{PREFIX}/{{session_id}}/nodes/{{node_id}}", response_model=DeleteNodeResponse)
async def delete_node(session_id: str, node_id: str, service: GenerationService = Depends(get_generation_service)):
    with translate_errors():
        removed = service.delete_node(session_id, node_id)
    return DeleteNodeResponse(deleted_node_ids=removed)


@router.post(f"{PREFIX}/{{session_id}}/adjust", response_model=StatusResponse)
async def adjust_session(
    session_id: str,
    request: AdjustRequest,
    service: GenerationService = Depends(get_generation_service),
):
    """Extend a completed tree; progress arrives on the generation stream."""
    with translate_errors():
        session = await service.adjust(
            session_id, request.instruction, request.model_config_id, request.prompt_template_id,
        )
    return StatusResponse(session_id=session_id, status=session.status.value)


@router.post(f"{PREFIX}/{{session_id}}/cancel", response_model=StatusResponse)
async def cancel_generation(session_id: str, service: GenerationService = Depends(get_generation_service)):
    with translate_errors():
        session = await service.cancel(session_id)
    return StatusResponse(session_id=session_id, status=session.status.value)


@router.post(f"{PREFIX}/{{session_id}}/save", response_model=SaveResult)
async def save_session(
    session_id: str,
    request: Optional[SaveRequest] = None,
    service: GenerationService = Depends(get_generation_service),
):
    """Persist the tree. Repeated saves return the same history id."""
    request = request or SaveRequest()
    with translate_errors():
        return await service.save(
            session_id,
            novel_id=request.novel_id,
            update_existing=request.update_existing,
            target_history_id=request.target_history_id,
        )


@router.get(f"{PREFIX}/{{session_id}}/status", response_model=SessionProgress)
async def get_status(session_id: str, service: GenerationService = Depends(get_generation_service)):
    with translate_errors():
        return service.status(session_id)


@router.get(f"{PREFIX}/{{session_id}}", response_model=GenerationSession)
async def get_session(session_id: str, service: GenerationService = Depends(get_generation_service)):
    """Full session with its current tree."""
    with translate_errors():
        return service.get_session(session_id)


@router.websocket("/ws/setting-generation/{session_id}")
async def websocket_stream(
    websocket: WebSocket,
    session_id: str,
    service: GenerationService = Depends(get_generation_service),
):
    """
    WebSocket endpoint for real-time streaming of generation events.
    """
    await websocket.accept()
    try:
        events = service.stream(session_id, StreamKind.GENERATION)
    except SessionNotFoundError:
        await websocket.send_json({"type": "error", "detail": f"Session not found: {session_id}"})
        await websocket.close(code=4404)
        return

    try:
        async for event in events:
            await websocket.send_json(event.model_dump(mode="json"))
        await websocket.close()
    except WebSocketDisconnect:
        logger.debug("WebSocket client for session %s disconnected", session_id)
