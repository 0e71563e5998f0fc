"""Socket.IO server: subscription protocol plus the fan-out listener."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any

import socketio
import uvicorn

from unbias_pipeline.config import Settings
from unbias_pipeline.queue.connections import RedisConnections
from unbias_pipeline.realtime.fanout import RealtimeFanout, SubscriptionRegistry, room_for

logger = logging.getLogger(__name__)


class RealtimeHub:
    """Handlers for ``subscribeToJob``, ``unsubscribeFromJob`` and ``checkSubscription``."""

    def __init__(self, sio: Any, registry: SubscriptionRegistry) -> None:
        self.sio = sio
        self.registry = registry

    def register(self) -> None:
        self.sio.on("connect", self.on_connect)
        self.sio.on("disconnect", self.on_disconnect)
        self.sio.on("subscribeToJob", self.on_subscribe)
        self.sio.on("unsubscribeFromJob", self.on_unsubscribe)
        self.sio.on("checkSubscription", self.on_check_subscription)

    async def on_connect(self, sid: str, environ: dict[str, Any], auth: Any = None) -> None:
        self.registry.connect(sid)
        logger.info("Client connected: %s", sid)

    async def on_disconnect(self, sid: str, *_: Any) -> None:
        jobs = self.registry.disconnect(sid)
        logger.info("Client disconnected: %s (was following %s)", sid, jobs)

    async def on_subscribe(self, sid: str, data: dict[str, Any] | None) -> None:
        job_id = _job_id(data)
        if job_id is None:
            logger.warning("Client %s sent subscribeToJob without a jobId", sid)
            return
        await self._join(sid, job_id)

    async def on_unsubscribe(self, sid: str, data: Any = None) -> None:
        for job_id in self.registry.unsubscribe_all(sid):
            await self.sio.leave_room(sid, room_for(job_id))
        for room in self.sio.rooms(sid):
            if room.startswith("job_"):
                await self.sio.leave_room(sid, room)
        logger.info("Client %s left all job rooms", sid)

    async def on_check_subscription(self, sid: str, data: dict[str, Any] | None) -> None:
        """Report subscription state and re-join the room when tracking and rooms disagree."""

        job_id = _job_id(data)
        if job_id is None:
            return
        room = room_for(job_id)
        in_room = room in self.sio.rooms(sid)
        tracked = self.registry.is_subscribed(sid, job_id)
        await self.sio.emit(
            "subscriptionStatus",
            {"jobId": job_id, "subscribed": in_room and tracked, "room": room},
            to=sid,
        )
        if not (in_room and tracked):
            logger.info("Re-subscribing client %s to %s", sid, room)
            await self._join(sid, job_id)

    async def _join(self, sid: str, job_id: str) -> None:
        room = room_for(job_id)
        await self.sio.enter_room(sid, room)
        self.registry.subscribe(sid, job_id)
        await self.sio.emit("joined", {"jobId": job_id, "room": room, "success": True}, to=sid)
        logger.info("Client %s subscribed to %s", sid, room)


def _job_id(data: Any) -> str | None:
    if isinstance(data, dict) and data.get("jobId"):
        return str(data["jobId"])
    return None


def _log_fanout_exit(task: asyncio.Task[None]) -> None:
    if task.cancelled():
        return
    error = task.exception()
    if error is not None:
        logger.critical("Fan-out listener stopped; job updates are no longer delivered", exc_info=error)


def build_realtime_app(settings: Settings, connections: RedisConnections) -> socketio.ASGIApp:
    """ASGI app whose lifespan runs the fan-out listener."""

    sio = socketio.AsyncServer(
        async_mode="asgi",
        cors_allowed_origins=list(settings.realtime.cors_origins),
    )
    registry = SubscriptionRegistry()
    RealtimeHub(sio, registry).register()
    fanout = RealtimeFanout(
        connections.subscriber,
        registry=registry,
        emitter=sio,
        channel=settings.redis.updates_channel,
    )
    state: dict[str, asyncio.Task[None]] = {}

    async def _startup() -> None:
        task = asyncio.create_task(fanout.run())
        task.add_done_callback(_log_fanout_exit)
        state["fanout"] = task

    async def _shutdown() -> None:
        task = state.pop("fanout", None)
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        await connections.close()

    return socketio.ASGIApp(sio, on_startup=_startup, on_shutdown=_shutdown)


def serve(settings: Settings, *, host: str | None = None, port: int | None = None) -> None:
    connections = RedisConnections.from_url(settings.redis.url)
    app = build_realtime_app(settings, connections)
    uvicorn.run(
        app,
        host=host or settings.realtime.host,
        port=port or settings.realtime.port,
        log_config=None,
    )
