"""
API routes for the Voxtier server.

Thin REST and WebSocket wrappers over DataService. The requester identity
comes from the X-Actor header (or the `actor` query parameter for clients
that cannot set headers), exactly as issued by the identity provider's
session layer in front of this service.

Invariants:
    - Every route resolves the requester before touching the service
    - Missing and not-permitted rows both answer 404
    - Realtime subscribers are registered before the socket is accepted
    - A realtime session ends as soon as either delivery or the client side
      stops; a failed delivery closes the socket with 1011
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import (
    APIRouter,
    Depends,
    HTTPException,
    Query,
    Request,
    Response,
    WebSocket,
    WebSocketDisconnect,
)
from pydantic import BaseModel, Field

from ..store.acl import Principal, Table
from ..store.canonical_store import Role
from ..store.service import DataService

logger = logging.getLogger(__name__)

router = APIRouter(tags=["Voxtier"])

NOT_FOUND = "not found"


# --- Request Models ---


class ProfileCreateRequest(BaseModel):
    """Register the requester's profile."""

    role: Role = Field(..., description="client, mentor or training_director")
    full_name: str = Field(..., min_length=1, description="Display name")
    avatar_url: str | None = Field(None, description="Avatar locator")


class ProfileUpdateRequest(BaseModel):
    """Change display fields."""

    full_name: str | None = Field(None, min_length=1)
    avatar_url: str | None = None


class MentorAssignRequest(BaseModel):
    mentor_id: str | None = Field(None, description="Mentor profile id, null to clear")


class DirectorAssignRequest(BaseModel):
    director_id: str | None = Field(None, description="Director profile id, null to clear")


class ConversationCreateRequest(BaseModel):
    client_id: str
    mentor_id: str


class MessageCreateRequest(BaseModel):
    """Post a voice or text message."""

    audio_url: str | None = Field(None, description="Uploaded recording path")
    duration: float = Field(0.0, description="Recording length in seconds")
    text_transcript: str | None = Field(None, description="Text body or transcript")
    message_id: str | None = Field(None, description="Id chosen when uploading the recording")


class BookmarkCreateRequest(BaseModel):
    timestamp_sec: float = Field(0.0, ge=0)
    label: str | None = None


class BookmarkUpdateRequest(BaseModel):
    timestamp_sec: float | None = Field(None, ge=0)
    label: str | None = None


class FolderRequest(BaseModel):
    name: str = Field(..., min_length=1)


# --- Dependencies ---


def get_service(request: Request) -> DataService:
    """Get the data service from app state."""
    return request.app.state.service


def _parse_actor(raw: str | None) -> Principal | None:
    if not raw:
        return None
    try:
        return Principal.parse(raw)
    except ValueError:
        return None


def get_actor(
    request: Request,
    actor: str | None = Query(None, description="Requester, when X-Actor cannot be sent"),
) -> Principal:
    """Resolve the requester from the X-Actor header or query param."""
    principal = _parse_actor(request.headers.get("X-Actor") or actor)
    if principal is None:
        raise HTTPException(status_code=401, detail="X-Actor header is required")
    return principal


def _found(row: Any) -> dict[str, Any]:
    if row is None:
        raise HTTPException(status_code=404, detail=NOT_FOUND)
    return row.to_dict()


def _deleted(ok: bool) -> Response:
    if not ok:
        raise HTTPException(status_code=404, detail=NOT_FOUND)
    return Response(status_code=204)


# --- Profile Routes ---


@router.post("/profiles", status_code=201)
async def register_profile(
    body: ProfileCreateRequest,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    profile = await service.register_profile(actor, body.role, body.full_name, body.avatar_url)
    return profile.to_dict()


@router.get("/profiles")
async def list_profiles(
    role: Role | None = Query(None),
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return {"items": [p.to_dict() for p in await service.list_profiles(actor, role)]}


@router.get("/profiles/me")
async def get_own_profile(
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return _found(await service.get_profile(actor, actor.id))


@router.get("/profiles/{profile_id}")
async def get_profile(
    profile_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return _found(await service.get_profile(actor, profile_id))


@router.patch("/profiles/{profile_id}")
async def update_profile(
    profile_id: str,
    body: ProfileUpdateRequest,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return _found(
        await service.update_profile(
            actor, profile_id, full_name=body.full_name, avatar_url=body.avatar_url
        )
    )


@router.delete("/profiles/{profile_id}", status_code=204)
async def delete_profile(
    profile_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return _deleted(await service.delete_profile(actor, profile_id))


@router.put("/profiles/{profile_id}/mentor")
async def assign_mentor(
    profile_id: str,
    body: MentorAssignRequest,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return (await service.assign_mentor(actor, profile_id, body.mentor_id)).to_dict()


@router.put("/profiles/{profile_id}/director")
async def assign_director(
    profile_id: str,
    body: DirectorAssignRequest,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return (await service.assign_director(actor, profile_id, body.director_id)).to_dict()


@router.get("/contacts")
async def list_contacts(
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return {"items": [p.to_dict() for p in await service.list_contacts(actor)]}


# --- Conversation Routes ---


@router.post("/conversations", status_code=201)
async def create_conversation(
    body: ConversationCreateRequest,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    conversation = await service.create_conversation(actor, body.client_id, body.mentor_id)
    return conversation.to_dict()


@router.post("/conversations/with/{contact_id}")
async def open_conversation(
    contact_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    """Find or create the conversation between the requester and a contact."""
    return (await service.get_or_create_conversation(actor, contact_id)).to_dict()


@router.get("/conversations")
async def list_conversations(
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return {"items": [c.to_dict() for c in await service.list_conversations(actor)]}


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return _found(await service.get_conversation(actor, conversation_id))


@router.get("/conversations/{conversation_id}/participants")
async def list_participants(
    conversation_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    rows = await service.list_participants(actor, conversation_id)
    return {"items": [p.to_dict() for p in rows]}


@router.get("/conversations/{conversation_id}/messages")
async def list_messages(
    conversation_id: str,
    limit: int = Query(100, ge=1, le=500),
    offset: int = Query(0, ge=0),
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    rows = await service.list_messages(actor, conversation_id, limit=limit, offset=offset)
    return {"items": [m.to_dict() for m in rows], "limit": limit, "offset": offset}


@router.post("/conversations/{conversation_id}/messages", status_code=201)
async def send_message(
    conversation_id: str,
    body: MessageCreateRequest,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    message = await service.send_message(
        actor,
        conversation_id,
        audio_url=body.audio_url,
        duration=body.duration,
        text_transcript=body.text_transcript,
        message_id=body.message_id,
    )
    return message.to_dict()


# --- Message Routes ---


@router.get("/messages/recent")
async def list_recent_messages(
    limit: int = Query(20, ge=1, le=100),
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return {"items": [m.to_dict() for m in await service.list_recent_messages(actor, limit)]}


@router.get("/messages/{message_id}")
async def get_message(
    message_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return _found(await service.get_message(actor, message_id))


@router.delete("/messages/{message_id}", status_code=204)
async def delete_message(
    message_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return _deleted(await service.delete_message(actor, message_id))


@router.post("/messages/{message_id}/bookmarks", status_code=201)
async def add_bookmark(
    message_id: str,
    body: BookmarkCreateRequest,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    bookmark = await service.add_bookmark(actor, message_id, body.timestamp_sec, body.label)
    return bookmark.to_dict()


@router.put("/messages/{message_id}/favorite")
async def add_favorite(
    message_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return (await service.add_favorite(actor, message_id)).to_dict()


@router.delete("/messages/{message_id}/favorite", status_code=204)
async def remove_favorite(
    message_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return _deleted(await service.remove_favorite(actor, message_id))


@router.post("/messages/{message_id}/favorite/toggle")
async def toggle_favorite(
    message_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return {"message_id": message_id, "favorite": await service.toggle_favorite(actor, message_id)}


# --- Bookmark / Favorite Routes ---


@router.get("/bookmarks")
async def list_bookmarks(
    message_id: str | None = Query(None),
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return {"items": [b.to_dict() for b in await service.list_bookmarks(actor, message_id)]}


@router.patch("/bookmarks/{bookmark_id}")
async def update_bookmark(
    bookmark_id: str,
    body: BookmarkUpdateRequest,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return _found(
        await service.update_bookmark(
            actor, bookmark_id, label=body.label, timestamp_sec=body.timestamp_sec
        )
    )


@router.delete("/bookmarks/{bookmark_id}", status_code=204)
async def delete_bookmark(
    bookmark_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return _deleted(await service.delete_bookmark(actor, bookmark_id))


@router.get("/favorites")
async def list_favorites(
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return {"items": [f.to_dict() for f in await service.list_favorites(actor)]}


# --- Folder Routes ---


@router.post("/folders", status_code=201)
async def create_folder(
    body: FolderRequest,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return (await service.create_folder(actor, body.name)).to_dict()


@router.get("/folders")
async def list_folders(
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return {"items": [f.to_dict() for f in await service.list_folders(actor)]}


@router.patch("/folders/{folder_id}")
async def rename_folder(
    folder_id: str,
    body: FolderRequest,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return _found(await service.rename_folder(actor, folder_id, body.name))


@router.delete("/folders/{folder_id}", status_code=204)
async def delete_folder(
    folder_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return _deleted(await service.delete_folder(actor, folder_id))


@router.get("/folders/{folder_id}/items")
async def list_folder_items(
    folder_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return {"items": [i.to_dict() for i in await service.list_folder_items(actor, folder_id)]}


@router.put("/folders/{folder_id}/items/{message_id}")
async def add_folder_item(
    folder_id: str,
    message_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return (await service.add_folder_item(actor, folder_id, message_id)).to_dict()


@router.delete("/folders/{folder_id}/items/{message_id}", status_code=204)
async def remove_folder_item(
    folder_id: str,
    message_id: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return _deleted(await service.remove_folder_item(actor, folder_id, message_id))


# --- Object Routes ---


@router.put("/objects/{conversation_id}/{filename}", status_code=201)
async def upload_audio(
    conversation_id: str,
    filename: str,
    request: Request,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    """Upload a recording; the request body is the raw audio."""
    data = await request.body()
    content_type = request.headers.get("Content-Type", "audio/mp3")
    stored = await service.upload_audio(actor, f"{conversation_id}/{filename}", data, content_type)
    return {"path": stored.path, "size": stored.size, "content_type": stored.content_type}


@router.get("/objects/{conversation_id}/{filename}")
async def download_audio(
    conversation_id: str,
    filename: str,
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    stored = await service.download_audio(actor, f"{conversation_id}/{filename}")
    if stored is None:
        raise HTTPException(status_code=404, detail=NOT_FOUND)
    return Response(content=stored.data, media_type=stored.content_type)


# --- Admin Routes ---


@router.get("/admin/membership")
async def verify_membership(
    conversation_id: str | None = Query(None),
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    reports = await service.verify_membership(actor, conversation_id)
    return {
        "items": [r.to_dict() for r in reports],
        "consistent": all(r.consistent for r in reports),
    }


@router.post("/admin/membership/backfill")
async def backfill_membership(
    service: DataService = Depends(get_service),
    actor: Principal = Depends(get_actor),
):
    return {"rows_inserted": await service.backfill_membership(actor)}


# --- Realtime ---


def _parse_tables(raw: str | None) -> list[Table] | None:
    if not raw:
        return None
    return [Table(name.strip()) for name in raw.split(",") if name.strip()]


@router.websocket("/realtime")
async def realtime(websocket: WebSocket):
    """Stream committed inserts the requester is allowed to read.

    Query parameters:
        actor: Requester (or X-Actor header)
        tables: Comma-separated subset of the published tables
        conversation_id: Only rows of this conversation

    Each event is a JSON object with type "change". Send "ping" to get
    {"type": "pong"}.
    """
    service: DataService = websocket.app.state.service
    principal = _parse_actor(
        websocket.headers.get("X-Actor") or websocket.query_params.get("actor")
    )
    try:
        tables = _parse_tables(websocket.query_params.get("tables"))
    except ValueError:
        await websocket.close(code=1008)
        return
    if principal is None:
        await websocket.close(code=1008)
        return

    subscription = service.hub.subscribe(
        principal,
        tables=tables,
        conversation_id=websocket.query_params.get("conversation_id"),
    )

    async def pump() -> None:
        async for event in subscription:
            await websocket.send_json(event.to_dict())

    async def answer_pings() -> None:
        while True:
            message = await websocket.receive_text()
            if message == "ping":
                await websocket.send_json({"type": "pong"})

    tasks: list[asyncio.Task] = []
    try:
        await websocket.accept()
        await websocket.send_json({"type": "subscribed", "subscription_id": subscription.id})
        pump_task = asyncio.create_task(pump())
        receive_task = asyncio.create_task(answer_pings())
        tasks = [pump_task, receive_task]

        # Whichever side stops first ends the session.
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        if receive_task in done:
            receive_task.result()
        else:
            error = pump_task.exception()
            if isinstance(error, WebSocketDisconnect):
                raise error
            if error is not None:
                logger.warning(
                    "Realtime delivery failed",
                    extra={"subscription_id": subscription.id, "error": str(error)},
                )
            await websocket.close(code=1011 if error is not None else 1001)
    except WebSocketDisconnect:
        logger.debug("Realtime client disconnected", extra={"subscription_id": subscription.id})
    finally:
        service.hub.unsubscribe(subscription)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
