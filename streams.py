"""
Real-time WebSocket endpoints.

Each connection binds one SnapshotListener. Snapshots arrive on the listener's
thread and are handed to the event loop with call_soon_threadsafe before being
sent, so the socket is only touched from the loop. The listener is removed when
the client goes away.
"""

import asyncio
import logging
from typing import Callable, List, Optional

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from fastapi.encoders import jsonable_encoder
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

import database
import repository
from auth import resolve_session
from errors import failure_message
from listeners import SnapshotListener
from schemas import GroupDetail

router = APIRouter()
logger = logging.getLogger(__name__)


async def _receive_until_disconnect(websocket: WebSocket) -> None:
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        return


async def _stream(
    websocket: WebSocket,
    collection_name: str,
    fetch: Callable[[], object],
    action: str,
    pipeline: Optional[List[dict]] = None,
) -> None:
    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()

    def on_snapshot(data):
        loop.call_soon_threadsafe(queue.put_nowait, {"type": "snapshot", "data": jsonable_encoder(data)})

    def on_error(error: Exception):
        loop.call_soon_threadsafe(queue.put_nowait, {"type": "error", "detail": failure_message(action, error)})

    try:
        listener = SnapshotListener(
            database.collection(collection_name),
            fetch,
            on_snapshot,
            on_error,
            pipeline=pipeline,
            name=f"listener-{collection_name}",
        ).start()
    except database.DatabaseNotAvailable as e:
        await websocket.send_json({"type": "error", "detail": failure_message(action, e)})
        await websocket.close()
        return

    receiver = asyncio.ensure_future(_receive_until_disconnect(websocket))
    try:
        while True:
            getter = asyncio.ensure_future(queue.get())
            done, _ = await asyncio.wait({getter, receiver}, return_when=asyncio.FIRST_COMPLETED)
            if receiver in done:
                getter.cancel()
                break
            message = getter.result()
            await websocket.send_json(message)
            if message["type"] == "error":
                await websocket.close()
                break
    except WebSocketDisconnect:
        pass
    finally:
        receiver.cancel()
        listener.stop()
        await run_in_threadpool(listener.remove)
        logger.debug("Listener on %s removed", collection_name)


def _watching(field: str, value: str) -> List[dict]:
    # Deletes carry no fullDocument, so let them through and re-query
    return [{"$match": {"$or": [{f"fullDocument.{field}": value}, {"operationType": "delete"}]}}]


@router.websocket("/ws/posts")
async def posts_stream(websocket: WebSocket, limit: int = 50):
    await _stream(websocket, "post", lambda: repository.fetch_posts(limit), "fetch posts")


@router.websocket("/ws/groups/{group_id}")
async def group_stream(websocket: WebSocket, group_id: str, token: Optional[str] = None):
    # Browsers cannot set headers on a WebSocket, so the session token rides in the query string
    try:
        auth = await run_in_threadpool(resolve_session, token)
        group = await run_in_threadpool(repository.fetch_group, group_id)
    except (PyMongoError, database.DatabaseNotAvailable) as e:
        logger.error(failure_message("fetch group", e))
        await websocket.close(code=1011)
        return
    if group is None:
        await websocket.close(code=4404)
        return

    def fetch():
        current = repository.fetch_group(group_id)
        return GroupDetail.for_user(current, auth.user_id) if current else None

    pipeline = [{"$match": {"documentKey._id": database.object_id(group.id)}}]
    await _stream(websocket, "group", fetch, "fetch group", pipeline=pipeline)


@router.websocket("/ws/groups/{group_id}/threads/{thread_id}/replies")
async def replies_stream(websocket: WebSocket, group_id: str, thread_id: str, token: Optional[str] = None):
    try:
        auth = await run_in_threadpool(resolve_session, token)
        group = await run_in_threadpool(repository.fetch_group, group_id)
        thread = await run_in_threadpool(repository.fetch_thread, group_id, thread_id)
    except (PyMongoError, database.DatabaseNotAvailable) as e:
        logger.error(failure_message("load replies", e))
        await websocket.close(code=1011)
        return
    if group is None:
        await websocket.close(code=4404)
        return
    if not group.has_member(auth.user_id):
        await websocket.close(code=4403)
        return
    if thread is None:
        await websocket.close(code=4404)
        return
    await _stream(
        websocket,
        "reply",
        lambda: repository.fetch_replies(thread.id),
        "load replies",
        pipeline=_watching("thread_id", thread.id),
    )
