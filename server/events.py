"""In-process event broadcaster for Server-Sent Events (SSE).

Usage:
  from .events import broadcast, EventType
  await broadcast({"type": EventType.DATA_UPDATE, "new_count": 3, "total": 42})

Clients connect to /stream and receive frames formatted as:
  event: message\n
  data: { ... json ... }\n\n
No persistence: with no listeners an event is dropped.
"""
from __future__ import annotations

import asyncio
import json
from enum import Enum
from typing import Any, AsyncIterator, Dict, List


class EventType(str, Enum):
    STATUS_UPDATE = "status_update"
    DATA_UPDATE = "data_update"
    COLLECTION_COMPLETE = "collection_complete"
    ERROR = "error"
    DATA_CLEARED = "data_cleared"


_listeners: List[asyncio.Queue[Dict[str, Any]]] = []
_lock = asyncio.Lock()


async def register_listener() -> asyncio.Queue[Dict[str, Any]]:
    q: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize=100)
    async with _lock:
        _listeners.append(q)
    return q


async def unregister_listener(q: asyncio.Queue[Dict[str, Any]]) -> None:
    async with _lock:
        try:
            _listeners.remove(q)
        except ValueError:
            pass


def listener_count() -> int:
    return len(_listeners)


async def broadcast(payload: Dict[str, Any]) -> None:
    # Push to all queues; a full queue means a stalled client and it is dropped
    dead: List[asyncio.Queue[Dict[str, Any]]] = []
    for q in list(_listeners):
        try:
            q.put_nowait(payload)
        except asyncio.QueueFull:
            dead.append(q)
    if dead:
        async with _lock:
            for dq in dead:
                if dq in _listeners:
                    _listeners.remove(dq)


def encode_frame(item: Dict[str, Any]) -> bytes:
    data = json.dumps(item, ensure_ascii=False, default=str)
    return f"event: message\ndata: {data}\n\n".encode("utf-8")


async def sse_event_iter() -> AsyncIterator[bytes]:
    q = await register_listener()
    try:
        while True:
            item = await q.get()
            yield encode_frame(item)
    except asyncio.CancelledError:  # client went away
        pass
    finally:
        await unregister_listener(q)
