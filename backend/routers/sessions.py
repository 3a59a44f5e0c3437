"""
Forkline Sessions Router
Conversation tree listing, branch history, forking and deletion

Trees and branches live in the SQLite conversation store; IDs are
``tree_<hex>`` and ``session_<hex>``.
"""

import logging
import re
from typing import Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from errors import success_response
from routers.chat_orchestration import ChatOrchestrator
from services.messages import ChatMessage

# Session/tree ID validation pattern: prefix + hex, max 64 chars
_SESSION_ID_PATTERN = re.compile(r"^session_[a-f0-9]{1,56}$")
_TREE_ID_PATTERN = re.compile(r"^tree_[a-f0-9]{1,59}$")

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1", tags=["sessions"])


class ForkRequest(BaseModel):
    parent_message_id: int
    message: Optional[ChatMessage] = Field(default=None, description="First message of the new branch")


def get_orchestrator(request: Request) -> ChatOrchestrator:
    return request.app.state.orchestrator


def _validate_id(value: str, pattern: re.Pattern, kind: str) -> None:
    if not pattern.match(value):
        raise HTTPException(status_code=400, detail=f"Invalid {kind} ID.")


# =============================================================================
# API ENDPOINTS
# =============================================================================


@router.get("/sessions")
async def list_sessions(request: Request):
    """All conversation trees, most recently updated first"""
    trees = get_orchestrator(request).list_sessions()
    return {"trees": [tree.to_dict() for tree in trees], "count": len(trees)}


@router.get("/sessions/{session_id}")
async def get_session(session_id: str, request: Request):
    """Ancestors plus the branch's own messages"""
    _validate_id(session_id, _SESSION_ID_PATTERN, "session")
    messages = get_orchestrator(request).get_session(session_id)
    return {"session_id": session_id, "messages": [m.to_dict() for m in messages]}


@router.post("/sessions/fork")
async def fork_session(body: ForkRequest, request: Request):
    """Open a new branch at an existing message, optionally with its first message"""
    tree_id, session_id, message_id = get_orchestrator(request).fork(body.parent_message_id, body.message)
    return success_response(
        tree_id=tree_id,
        session_id=session_id,
        parent_message_id=body.parent_message_id,
        message_id=message_id,
    )


@router.get("/trees/{tree_id}")
async def get_tree(tree_id: str, request: Request):
    """Summary of one tree: title, latest branch and snippet"""
    _validate_id(tree_id, _TREE_ID_PATTERN, "tree")
    return get_orchestrator(request).get_tree(tree_id).to_dict()


@router.get("/trees/{tree_id}/sessions")
async def list_branches(tree_id: str, request: Request):
    """Branches of one tree in creation order"""
    _validate_id(tree_id, _TREE_ID_PATTERN, "tree")
    branches = get_orchestrator(request).list_branches(tree_id)
    return {"tree_id": tree_id, "sessions": [b.to_dict() for b in branches]}


@router.delete("/trees/{tree_id}")
async def delete_tree(tree_id: str, request: Request):
    """Delete a tree with all of its branches and messages"""
    _validate_id(tree_id, _TREE_ID_PATTERN, "tree")
    get_orchestrator(request).delete_tree(tree_id)
    return success_response(tree_id=tree_id)
