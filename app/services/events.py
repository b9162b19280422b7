"""
Live Update Publisher
Pushes job summaries to the owning user's connected sessions.

Delivery is best-effort and at-most-once: clients can always re-read job
state through the polling endpoint, so a lost event is harmless. Publish
never raises into the caller.
"""

import asyncio
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Set

from fastapi import WebSocket

from app.core.redis import RedisManager
from app.schemas.job import JobEvent, JobResponse

logger = logging.getLogger(__name__)

JOB_EVENT = "model3d:job"


def build_job_event(job) -> Dict[str, Any]:
    """Event payload carrying the full current job summary."""
    event = JobEvent(event=JOB_EVENT, job=JobResponse.model_validate(job))
    return event.model_dump(mode="json")


class EventPublisher(ABC):
    """publish(owner_id, event) - the only thing the orchestrator knows about push."""

    @abstractmethod
    async def publish(self, user_id: str, event: Dict[str, Any]) -> None:
        ...


class NullPublisher(EventPublisher):
    async def publish(self, user_id: str, event: Dict[str, Any]) -> None:
        return None


class ConnectionManager(EventPublisher):
    """
    WebSocket rooms keyed by user id. One user may have several sessions
    (tabs, devices); every session in the room receives the event.
    """

    def __init__(self, send_timeout: float = 2.0):
        self.rooms: Dict[str, Set[WebSocket]] = {}
        self.send_timeout = send_timeout

    async def connect(self, websocket: WebSocket, user_id: str):
        await websocket.accept()
        self.rooms.setdefault(user_id, set()).add(websocket)
        logger.info(f"[Events] User {user_id} connected. Sessions: {len(self.rooms[user_id])}")

    def disconnect(self, websocket: WebSocket, user_id: str):
        room = self.rooms.get(user_id)
        if not room:
            return
        room.discard(websocket)
        if not room:
            del self.rooms[user_id]
        logger.info(f"[Events] User {user_id} disconnected")

    def session_count(self, user_id: str) -> int:
        return len(self.rooms.get(user_id, ()))

    async def _send(self, websocket: WebSocket, user_id: str, event: Dict[str, Any]) -> None:
        try:
            await asyncio.wait_for(websocket.send_json(event), timeout=self.send_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[Events] Dropping slow session for {user_id}")
            self.disconnect(websocket, user_id)
        except Exception as e:
            logger.warning(f"[Events] Dropping session for {user_id}: {e}")
            self.disconnect(websocket, user_id)

    async def publish(self, user_id: str, event: Dict[str, Any]) -> None:
        # Sessions are sent to concurrently; a slow one is cut off at send_timeout
        sessions = list(self.rooms.get(user_id, ()))
        if sessions:
            await asyncio.gather(*(self._send(ws, user_id, event) for ws in sessions))


class RedisEventPublisher(EventPublisher):
    """Publishes events on a per-user Redis channel for other processes."""

    def __init__(self, manager: RedisManager, channel_prefix: str = "model3d:user:"):
        self.manager = manager
        self.channel_prefix = channel_prefix

    def channel_for(self, user_id: str) -> str:
        return f"{self.channel_prefix}{user_id}"

    async def publish(self, user_id: str, event: Dict[str, Any]) -> None:
        await self.manager.publish(self.channel_for(user_id), json.dumps(event))


class FanoutPublisher(EventPublisher):
    """Sends each event to every backend; one failing backend does not stop the rest."""

    def __init__(self, publishers: Iterable[EventPublisher]):
        self.publishers: List[EventPublisher] = list(publishers)

    async def publish(self, user_id: str, event: Dict[str, Any]) -> None:
        for publisher in self.publishers:
            try:
                await publisher.publish(user_id, event)
            except Exception as e:
                logger.warning(f"[Events] {type(publisher).__name__} publish failed for {user_id}: {e}")
