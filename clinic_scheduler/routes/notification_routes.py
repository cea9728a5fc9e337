import asyncio
import contextlib
import logging
from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from fastapi.websockets import WebSocketState
from pydantic import BaseModel

from clinic_scheduler.auth.dependencies import Principal, get_current_principal, principal_from_token
from clinic_scheduler.core.errors import SchedulingError, to_http_exception
from clinic_scheduler.routes.dependencies import get_dispatcher
from clinic_scheduler.services.connection_registry import ConnectionRegistry, NotificationChannel
from clinic_scheduler.services.notification_dispatcher import NotificationDispatcher

router = APIRouter(tags=['notifications'])

logger = logging.getLogger(__name__)


class NotificationResponse(BaseModel):
    id: int
    user_id: int
    message: str
    created_at: datetime
    is_read: bool

    class Config:
        from_attributes = True


class UnreadCountResponse(BaseModel):
    count: int


class MarkAllReadResponse(BaseModel):
    updated: int


@router.get('', response_model=list[NotificationResponse])
def list_notifications(
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    try:
        return dispatcher.list_for_user(principal.user_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.get('/unread', response_model=list[NotificationResponse])
def list_unread_notifications(
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    try:
        return dispatcher.list_unread(principal.user_id)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.get('/unread/count', response_model=UnreadCountResponse)
def unread_count(
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    try:
        return UnreadCountResponse(count=dispatcher.unread_count(principal.user_id))
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.put('/read-all', response_model=MarkAllReadResponse)
def mark_all_read(
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    try:
        return MarkAllReadResponse(updated=dispatcher.mark_all_read(principal.user_id))
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


@router.put('/{notification_id}/read', response_model=NotificationResponse)
def mark_read(
    notification_id: int,
    principal: Principal = Depends(get_current_principal),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
):
    owner = None if principal.is_admin else principal.user_id
    try:
        return dispatcher.mark_read(notification_id, user_id=owner)
    except SchedulingError as exc:
        raise to_http_exception(exc) from exc


async def _watch_disconnect(
    websocket: WebSocket,
    registry: ConnectionRegistry,
    user_id: int,
    channel: NotificationChannel,
) -> None:
    # Client frames of any kind are ignored; reading only tells us when the client leaves.
    try:
        while True:
            message = await websocket.receive()
            if message['type'] == 'websocket.disconnect':
                break
    except (WebSocketDisconnect, RuntimeError) as exc:
        logger.info('Stopped reading notification stream for user %s: %r', user_id, exc)
    finally:
        registry.unregister(user_id, channel)


@router.websocket('/stream')
async def notification_stream(websocket: WebSocket, token: str = Query(...)):
    """Push each new notification for the caller as it is published.

    Nothing stored before the connection opened is replayed here; clients
    fetch the backlog from ``/notifications/unread``.
    """
    try:
        principal = principal_from_token(token)
    except HTTPException as exc:
        logger.warning('Rejected notification stream: %s', exc.detail)
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    registry: ConnectionRegistry = websocket.app.state.connection_registry
    await websocket.accept()
    channel = registry.register(principal.user_id)
    watcher = asyncio.create_task(_watch_disconnect(websocket, registry, principal.user_id, channel))

    try:
        await websocket.send_json({'event': 'connected', 'user_id': principal.user_id})
        while True:
            payload = await channel.receive()
            if payload is None:
                break
            await websocket.send_json({'event': 'notification', 'data': payload})
    except WebSocketDisconnect:
        logger.info('Notification stream for user %s disconnected', principal.user_id)
    finally:
        watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await watcher
        registry.unregister(principal.user_id, channel)
        if websocket.client_state == WebSocketState.CONNECTED and websocket.application_state == WebSocketState.CONNECTED:
            await websocket.close()
