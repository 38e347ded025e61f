"""
Realtime hub for the general ``/ws`` channel.

The hub owns the registry of open connections and is the single place that
fans events out. Everything runs on the application's event loop: the
registry is only touched from connection handlers and the heartbeat task,
and each connection's frames are handled one at a time in arrival order.

Routing is by topic. A connection starts subscribed to every topic, which
reproduces a plain broadcast; clients can narrow it with ``subscribe`` /
``unsubscribe`` frames.
"""
import asyncio
import json
import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError as SchemaError

from .alerts import ALERT_CREATED, AlertLifecycleManager
from .errors import DispatchError, NotFound, TransportError
from .models import EmergencyAlert
from .schemas import AlertOut, EmergencyAlertFrame, LocationUpdate, SubscriptionFrame

logger = logging.getLogger(__name__)

LOCATION_TOPIC = "location"
ALERTS_TOPIC = "alerts"
TOPICS = frozenset({LOCATION_TOPIC, ALERTS_TOPIC})

GOING_AWAY = 1001


@dataclass(eq=False)
class Connection:
    websocket: WebSocket
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    topics: Set[str] = field(default_factory=lambda: set(TOPICS))
    last_seen: float = 0.0


def alert_payload(alert: EmergencyAlert) -> Dict[str, Any]:
    return AlertOut.model_validate(alert).model_dump(mode="json", by_alias=True)


def parse_frame(raw: str) -> Dict[str, Any]:
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise TransportError(f"Invalid JSON frame: {e}") from e
    if not isinstance(data, dict) or not isinstance(data.get("type"), str):
        raise TransportError("Frame must be an object with a string 'type'")
    return data


class RealtimeHub:
    def __init__(self, alerts: AlertLifecycleManager):
        self.alerts = alerts
        self.store = alerts.store
        self._connections: Dict[str, Connection] = {}
        self._heartbeat_task: Optional[asyncio.Task] = None
        alerts.subscribe(self._on_alert)

    # Registry

    @property
    def connections(self) -> list[Connection]:
        return list(self._connections.values())

    async def connect(self, websocket: WebSocket) -> Connection:
        await websocket.accept()
        # Only handshaken sockets are registered; a broadcast racing the handshake skips this one.
        connection = Connection(websocket=websocket, last_seen=asyncio.get_running_loop().time())
        self._connections[connection.id] = connection
        logger.info(f"WebSocket client {connection.id} connected ({len(self._connections)} open)")
        return connection

    def disconnect(self, connection: Connection) -> None:
        if self._connections.pop(connection.id, None) is not None:
            logger.info(f"WebSocket client {connection.id} disconnected ({len(self._connections)} open)")

    async def drop(self, connection: Connection) -> None:
        """Unregister and close, so the connection's serve loop ends too."""
        self.disconnect(connection)
        try:
            await connection.websocket.close(code=GOING_AWAY)
        except Exception as e:
            logger.debug(f"Close of client {connection.id} failed: {e}")

    async def serve(self, websocket: WebSocket) -> None:
        """Run one connection until it closes."""
        connection = await self.connect(websocket)
        try:
            while True:
                raw = await websocket.receive_text()
                await self.handle(connection, raw)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"Error in WebSocket handler for {connection.id}: {e}")
        finally:
            self.disconnect(connection)

    # Inbound

    async def handle(self, connection: Connection, raw: str) -> None:
        connection.last_seen = asyncio.get_running_loop().time()
        try:
            frame = parse_frame(raw)
        except TransportError as e:
            logger.warning(f"Dropped frame from {connection.id}: {e.message}")
            return

        kind = frame["type"]
        try:
            if kind == "location_update":
                await self._handle_location(connection, LocationUpdate.model_validate(frame))
            elif kind == "emergency_alert":
                await self._handle_emergency(EmergencyAlertFrame.model_validate(frame))
            elif kind in ("subscribe", "unsubscribe"):
                await self._handle_subscription(connection, SubscriptionFrame.model_validate(frame))
            elif kind == "ping":
                await self.send(connection, {"type": "pong"})
            elif kind == "pong":
                pass
            else:
                logger.warning(f"Ignoring unknown message type {kind!r} from {connection.id}")
        except SchemaError as e:
            logger.warning(f"Invalid {kind} frame from {connection.id}: {e.error_count()} error(s)")
            await self.send(connection, {"type": "error", "message": f"Invalid {kind} message"})
        except DispatchError as e:
            logger.warning(f"{kind} from {connection.id} rejected: {e.message}")
            await self.send(connection, {"type": "error", "message": e.message})
        except Exception:
            logger.exception(f"WebSocket message error from {connection.id}")
            await self.send(connection, {"type": "error", "message": "Error processing message"})

    async def _handle_location(self, connection: Connection, update: LocationUpdate) -> None:
        if update.role == "ambulance":
            await self._record_unit_position(update)
        await self.broadcast(
            LOCATION_TOPIC,
            {
                "type": "location_update",
                "data": {
                    "id": update.id,
                    "latitude": update.latitude,
                    "longitude": update.longitude,
                    "role": update.role,
                },
            },
            exclude=connection,
        )

    async def _record_unit_position(self, update: LocationUpdate) -> None:
        try:
            unit_id = int(update.id)
        except (TypeError, ValueError):
            logger.warning(f"Ambulance location for non-numeric id {update.id!r} not stored")
            return
        try:
            await self.store.update_ambulance_location(unit_id, update.latitude, update.longitude)
        except NotFound:
            logger.warning(f"Location update for unknown ambulance unit {unit_id}")

    async def _handle_emergency(self, frame: EmergencyAlertFrame) -> None:
        # The manager notifies _on_alert, which does the broadcast.
        await self.alerts.create(
            user_id=frame.user_id,
            latitude=frame.latitude,
            longitude=frame.longitude,
            emergency_type=frame.emergency_type,
            description=frame.description or "",
        )

    async def _handle_subscription(self, connection: Connection, frame: SubscriptionFrame) -> None:
        topics = set(frame.topics)
        unknown = topics - TOPICS
        if unknown:
            logger.warning(f"Client {connection.id} asked for unknown topics {sorted(unknown)}")
        topics &= TOPICS
        if frame.type == "subscribe":
            connection.topics |= topics
        else:
            connection.topics -= topics
        await self.send(connection, {"type": "subscriptions", "topics": sorted(connection.topics)})

    # Outbound

    async def _on_alert(self, event: str, alert: EmergencyAlert) -> None:
        kind = "emergency_broadcast" if event == ALERT_CREATED else "emergency_update"
        await self.broadcast(ALERTS_TOPIC, {"type": kind, "data": alert_payload(alert)})

    async def send(self, connection: Connection, payload: Dict[str, Any]) -> bool:
        try:
            await connection.websocket.send_json(payload)
            return True
        except Exception as e:
            logger.warning(f"Send to {connection.id} failed, dropping connection: {e}")
            await self.drop(connection)
            return False

    async def broadcast(self, topic: str, payload: Dict[str, Any], exclude: Optional[Connection] = None) -> int:
        """Best-effort fan-out to every subscriber of `topic`; returns deliveries."""
        delivered = 0
        for connection in self.connections:
            if connection is exclude or topic not in connection.topics:
                continue
            if await self.send(connection, payload):
                delivered += 1
        return delivered

    # Liveness

    async def sweep(self, grace_seconds: float) -> int:
        """Evict connections silent for longer than the grace period, ping the rest."""
        now = asyncio.get_running_loop().time()
        evicted = 0
        for connection in self.connections:
            if now - connection.last_seen > grace_seconds:
                logger.info(f"Evicting stale client {connection.id}")
                await self.drop(connection)
                evicted += 1
            else:
                await self.send(connection, {"type": "ping"})
        return evicted

    async def _heartbeat(self, interval_seconds: float, grace_seconds: float) -> None:
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                await self.sweep(grace_seconds)
            except Exception:
                logger.exception("Heartbeat sweep failed")

    def start_heartbeat(self, interval_seconds: float, grace_seconds: float) -> None:
        if self._heartbeat_task is None:
            self._heartbeat_task = asyncio.create_task(self._heartbeat(interval_seconds, grace_seconds))

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
