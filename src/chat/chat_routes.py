from fastapi import APIRouter, Depends, UploadFile, File, Form
from fastapi.responses import StreamingResponse, JSONResponse
from typing import Optional
import logging

from src.firebase.firebase_service import Identity
from .deps import get_current_user, get_service
from .models import MessageIn
from .service import ChatService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/conversations/for-listing/{listing_id}")
async def get_or_create_conversation(
    listing_id: str,
    user: Identity = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    """Open (or reuse) the conversation between the caller and the listing owner"""
    conversation, created = await service.open_conversation(listing_id, user.user_id)
    return JSONResponse(content={"ok": True, "conversation": conversation, "created": created})


@router.get("/conversations")
async def list_conversations(
    user: Identity = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    conversations = await service.list_conversations(user.user_id)
    return JSONResponse(content={"ok": True, "conversations": conversations})


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    user: Identity = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    """Full message log; marks the other party's messages as read by the caller"""
    conversation, messages = await service.fetch_conversation(conversation_id, user.user_id)
    return JSONResponse(content={"ok": True, "conversation": conversation, "messages": messages})


@router.post("/conversations/{conversation_id}/messages")
async def send_message(
    conversation_id: str,
    body: MessageIn,
    user: Identity = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    message = await service.send_message(conversation_id, user.user_id, body.content, body.type, body.attachment)
    return JSONResponse(status_code=201, content={"ok": True, "message": message})


@router.post("/conversations/{conversation_id}/attachments")
async def upload_attachment(
    conversation_id: str,
    file: UploadFile = File(...),
    kind: Optional[str] = Form(None),
    user: Identity = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    """
    Validate, compress and store a file. The returned descriptor is then sent
    as the ``attachment`` of a message.
    """
    data = await file.read()
    attachment, message_type = await service.upload_attachment(
        conversation_id, user.user_id, file.filename, file.content_type, data, kind
    )
    return JSONResponse(content={"ok": True, "attachment": attachment.model_dump(), "type": message_type})


@router.post("/conversations/{conversation_id}/messages/upload")
async def send_message_with_file(
    conversation_id: str,
    file: UploadFile = File(...),
    content: Optional[str] = Form(None),
    kind: Optional[str] = Form(None),
    user: Identity = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    data = await file.read()
    message = await service.send_with_attachment(
        conversation_id, user.user_id, content, file.filename, file.content_type, data, kind
    )
    return JSONResponse(status_code=201, content={"ok": True, "message": message})


@router.delete("/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    user: Identity = Depends(get_current_user),
    service: ChatService = Depends(get_service),
):
    await service.delete_conversation(conversation_id, user.user_id)
    return JSONResponse(content={"ok": True})


@router.get("/files/{file_id}")
async def get_file(file_id: str, service: ChatService = Depends(get_service)):
    grid_out = await service.blob_store.open(file_id)
    metadata = grid_out.metadata or {}

    async def iterfile():
        while True:
            chunk = await grid_out.readchunk()
            if not chunk:
                break
            yield chunk

    return StreamingResponse(
        iterfile(),
        media_type=metadata.get("mime", "application/octet-stream"),
        headers={
            "Content-Disposition": f'inline; filename="{grid_out.filename}"',
            "Cache-Control": "public, max-age=31536000, immutable",
            "ETag": f'"{file_id}"',
        },
    )
