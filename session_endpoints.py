"""
HTTP endpoints for conversation sessions.

A thin adapter over ConversationManager and ConversationFlowEngine. Every
endpoint that changes a session saves it through the manager before
responding; errors propagate to the handlers registered in errors.handlers.
"""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from errors.exceptions import session_not_found
from flow.engine import ConversationFlowEngine
from session.manager import ConversationManager, SessionSpec
from session.models import ConversationSession, MessageRole, WorkflowState
from telemetry.service import set_session_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sessions", tags=["sessions"])


# Request models

class CreateSessionRequest(BaseModel):
    user_id: int
    context_type: Optional[str] = None
    session_id: Optional[str] = None
    title: Optional[str] = None
    initial_state: WorkflowState = WorkflowState.WELCOME
    initial_context: dict[str, Any] = Field(default_factory=dict)


class BatchLoadRequest(BaseModel):
    session_ids: list[str] = Field(min_length=1, max_length=100)


class AddMessageRequest(BaseModel):
    role: MessageRole
    content: str = Field(min_length=1)
    metadata: dict[str, Any] = Field(default_factory=dict)
    context_updates: dict[str, Any] = Field(default_factory=dict)


class ReasonRequest(BaseModel):
    reason: Optional[str] = None


class CompleteRequest(BaseModel):
    data: dict[str, Any] = Field(default_factory=dict)


class ImportRequest(BaseModel):
    data: dict[str, Any]
    preserve_session_id: bool = True
    target_user_id: Optional[int] = None
    overwrite: bool = False


class SyncRequest(BaseModel):
    last_updated: Optional[Any] = None
    last_modified: Optional[Any] = None


class BranchRequest(BaseModel):
    target: str
    branch_data: dict[str, Any] = Field(default_factory=dict)
    flow: Optional[str] = None


class BacktrackRequest(BaseModel):
    target: Optional[str] = None
    steps: Optional[int] = Field(default=None, ge=1)
    reason: Optional[str] = None
    confirmed: bool = False


class RecoverRequest(BaseModel):
    strategy: Optional[str] = None
    confirmed: bool = False


class MarkErrorRequest(BaseModel):
    error_context: dict[str, Any] = Field(default_factory=dict)


# Dependencies

def get_manager(request: Request) -> ConversationManager:
    return request.app.state.manager


def get_engine(request: Request) -> ConversationFlowEngine:
    return request.app.state.engine


async def _require_session(manager: ConversationManager, session_id: str) -> ConversationSession:
    set_session_id(session_id)
    session = await manager.load(session_id)
    if session is None:
        raise session_not_found(session_id)
    return session


def _view(session: ConversationSession) -> dict[str, Any]:
    return session.model_dump(mode="json")


# Lifecycle

@router.post("", status_code=201)
async def create_session(
    body: CreateSessionRequest,
    manager: ConversationManager = Depends(get_manager),
):
    session = await manager.create(SessionSpec(
        user_id=body.user_id,
        context_type=body.context_type,
        session_id=body.session_id,
        title=body.title,
        initial_state=body.initial_state,
        initial_context=body.initial_context,
    ))
    set_session_id(session.session_id)
    return _view(session)


@router.post("/batch")
async def load_sessions(
    body: BatchLoadRequest,
    manager: ConversationManager = Depends(get_manager),
):
    found = await manager.load_many(body.session_ids)
    return {
        "sessions": {sid: _view(s) for sid, s in found.items()},
        "missing": [sid for sid in body.session_ids if sid not in found],
    }


@router.post("/import", status_code=201)
async def import_session(
    body: ImportRequest,
    manager: ConversationManager = Depends(get_manager),
):
    session = await manager.import_session(
        body.data,
        preserve_session_id=body.preserve_session_id,
        target_user_id=body.target_user_id,
        overwrite=body.overwrite,
    )
    return _view(session)


@router.get("/users/{user_id}")
async def list_user_sessions(
    user_id: int,
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    manager: ConversationManager = Depends(get_manager),
):
    return {
        "user_id": user_id,
        "sessions": await manager.list_user_sessions(user_id, limit=limit, offset=offset),
    }


@router.get("/{session_id}")
async def get_session(session_id: str, manager: ConversationManager = Depends(get_manager)):
    return _view(await _require_session(manager, session_id))


@router.delete("/{session_id}")
async def delete_session(session_id: str, manager: ConversationManager = Depends(get_manager)):
    set_session_id(session_id)
    if not await manager.delete(session_id):
        raise session_not_found(session_id)
    return {"session_id": session_id, "deleted": True}


@router.post("/{session_id}/messages", status_code=201)
async def add_message(
    session_id: str,
    body: AddMessageRequest,
    manager: ConversationManager = Depends(get_manager),
):
    session = await _require_session(manager, session_id)
    message = session.add_message(body.role, body.content, body.metadata)
    if body.context_updates:
        session.update_context(body.context_updates)
    await manager.save(session)
    return message.model_dump(mode="json")


async def _status_change(result: bool, manager: ConversationManager, session_id: str):
    if not result:
        raise session_not_found(session_id)
    session = await manager.load(session_id)
    return {"session_id": session_id, "status": session.status.value if session else None}


@router.post("/{session_id}/pause")
async def pause_session(
    session_id: str,
    body: ReasonRequest = ReasonRequest(),
    manager: ConversationManager = Depends(get_manager),
):
    set_session_id(session_id)
    return await _status_change(await manager.pause(session_id, body.reason), manager, session_id)


@router.post("/{session_id}/resume")
async def resume_session(session_id: str, manager: ConversationManager = Depends(get_manager)):
    set_session_id(session_id)
    return await _status_change(await manager.resume(session_id), manager, session_id)


@router.post("/{session_id}/complete")
async def complete_session(
    session_id: str,
    body: CompleteRequest = CompleteRequest(),
    manager: ConversationManager = Depends(get_manager),
):
    set_session_id(session_id)
    return await _status_change(await manager.complete(session_id, body.data), manager, session_id)


@router.post("/{session_id}/abandon")
async def abandon_session(
    session_id: str,
    body: ReasonRequest = ReasonRequest(),
    manager: ConversationManager = Depends(get_manager),
):
    set_session_id(session_id)
    return await _status_change(await manager.abandon(session_id, body.reason), manager, session_id)


@router.get("/{session_id}/export")
async def export_session(session_id: str, manager: ConversationManager = Depends(get_manager)):
    set_session_id(session_id)
    return await manager.export_session(session_id)


@router.post("/{session_id}/sync")
async def sync_session(
    session_id: str,
    body: SyncRequest,
    manager: ConversationManager = Depends(get_manager),
):
    set_session_id(session_id)
    return await manager.sync_session(session_id, body.model_dump(exclude_none=True))


@router.get("/{session_id}/analytics")
async def session_analytics(session_id: str, manager: ConversationManager = Depends(get_manager)):
    set_session_id(session_id)
    return await manager.get_session_analytics(session_id)


# Navigation

@router.post("/{session_id}/flow")
async def determine_flow(
    session_id: str,
    manager: ConversationManager = Depends(get_manager),
    engine: ConversationFlowEngine = Depends(get_engine),
):
    session = await _require_session(manager, session_id)
    decision = engine.determine_optimal_flow(session)
    await manager.save(session)
    return decision.model_dump(mode="json")


@router.get("/{session_id}/branches")
async def list_branches(
    session_id: str,
    flow: Optional[str] = None,
    manager: ConversationManager = Depends(get_manager),
    engine: ConversationFlowEngine = Depends(get_engine),
):
    session = await _require_session(manager, session_id)
    branches = engine.get_next_branches(session, flow)
    return {
        "session_id": session_id,
        "current_state": session.current_state.value,
        "branches": [b.model_dump(mode="json") for b in branches],
    }


@router.post("/{session_id}/branches")
async def select_branch(
    session_id: str,
    body: BranchRequest,
    manager: ConversationManager = Depends(get_manager),
    engine: ConversationFlowEngine = Depends(get_engine),
):
    session = await _require_session(manager, session_id)
    result = engine.handle_branching(session, body.target, body.branch_data, body.flow)
    await manager.save(session)
    return result.model_dump(mode="json")


@router.post("/{session_id}/backtrack")
async def backtrack(
    session_id: str,
    body: BacktrackRequest,
    manager: ConversationManager = Depends(get_manager),
    engine: ConversationFlowEngine = Depends(get_engine),
):
    session = await _require_session(manager, session_id)
    options = body.model_dump(exclude={"target"}, exclude_none=True)
    result = engine.handle_backtracking(session, body.target, options)
    if result.success:
        await manager.save(session)
    return result.model_dump(mode="json")


@router.post("/{session_id}/recover")
async def recover(
    session_id: str,
    body: RecoverRequest = RecoverRequest(),
    manager: ConversationManager = Depends(get_manager),
    engine: ConversationFlowEngine = Depends(get_engine),
):
    session = await _require_session(manager, session_id)
    result = engine.handle_conversation_recovery(session, body.model_dump(exclude_none=True))
    if not session.is_terminal:
        await manager.save(session)
    return result.model_dump(mode="json")


@router.get("/{session_id}/navigation")
async def navigation_suggestions(
    session_id: str,
    manager: ConversationManager = Depends(get_manager),
    engine: ConversationFlowEngine = Depends(get_engine),
):
    session = await _require_session(manager, session_id)
    return engine.suggest_navigation(session)


@router.post("/{session_id}/error")
async def mark_error(
    session_id: str,
    body: MarkErrorRequest,
    manager: ConversationManager = Depends(get_manager),
    engine: ConversationFlowEngine = Depends(get_engine),
):
    session = await _require_session(manager, session_id)
    engine.mark_error(session, body.error_context)
    await manager.save(session)
    logger.info(
        "Session moved to error state via API",
        extra={"extra_data": {"session_id": session_id}},
    )
    return _view(session)
