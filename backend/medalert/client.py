"""
Client-side helpers for devices and dashboards talking to the dispatch API.

``RealtimeClient`` keeps a ``/ws`` connection alive with bounded exponential
backoff and ends in a terminal ``gave_up`` state instead of retrying
forever. ``AlertSubmitter`` raises an emergency over HTTP and tells the
three ways that can fail apart, so each gets its own message for the user.
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Iterator, Optional

import requests
import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake

logger = logging.getLogger(__name__)

NORMAL_CLOSURE = 1000


# ---------------------- Reconnect policy ----------------------

@dataclass(frozen=True)
class ReconnectPolicy:
    max_attempts: int = 5
    base_delay: float = 1.0
    max_delay: float = 10.0

    def delay(self, attempt: int) -> float:
        """Delay before reconnect attempt number `attempt` (1-based)."""
        return min(self.base_delay * 2 ** (attempt - 1), self.max_delay)

    def delays(self) -> Iterator[float]:
        for attempt in range(1, self.max_attempts + 1):
            yield self.delay(attempt)


class ConnectionState(str, Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"
    GAVE_UP = "gave_up"


class ReconnectExhausted(Exception):
    """Raised once every reconnect attempt has failed."""


MessageHandler = Callable[[Dict[str, Any]], Awaitable[None]]


class RealtimeClient:
    def __init__(
        self,
        url: str,
        policy: ReconnectPolicy = ReconnectPolicy(),
        connect: Callable = websockets.connect,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.url = url
        self.policy = policy
        self.state = ConnectionState.IDLE
        self.attempts = 0
        self._connect = connect
        self._sleep = sleep
        self._socket = None

    async def send(self, message: Dict[str, Any]) -> bool:
        if self._socket is None or self.state != ConnectionState.OPEN:
            logger.error("WebSocket is not connected")
            return False
        try:
            await self._socket.send(json.dumps(message))
            return True
        except ConnectionClosed as e:
            logger.error(f"Error sending WebSocket message: {e}")
            return False

    async def _session(self, on_message: Optional[MessageHandler], on_open) -> Optional[int]:
        """One connection lifetime; returns the close code."""
        async with self._connect(self.url) as socket:
            self._socket = socket
            self.state = ConnectionState.OPEN
            self.attempts = 0
            logger.info(f"WebSocket connection established to {self.url}")
            try:
                if on_open is not None:
                    await on_open(self)
                async for raw in socket:
                    try:
                        data = json.loads(raw)
                    except ValueError as e:
                        logger.error(f"Error parsing WebSocket message: {e}")
                        continue
                    if on_message is not None:
                        await on_message(data)
            except ConnectionClosed as e:
                return e.rcvd.code if e.rcvd is not None else None
            finally:
                self._socket = None
            return socket.close_code or NORMAL_CLOSURE

    async def run(
        self,
        on_message: Optional[MessageHandler] = None,
        on_open: Optional[Callable[["RealtimeClient"], Awaitable[None]]] = None,
    ) -> None:
        """Connect and keep reconnecting until a normal close or the policy runs out."""
        self.attempts = 0
        self.state = ConnectionState.CONNECTING
        while True:
            try:
                code = await self._session(on_message, on_open)
                if code == NORMAL_CLOSURE:
                    self.state = ConnectionState.CLOSED
                    logger.info("WebSocket connection closed normally")
                    return
                logger.warning(f"WebSocket connection closed: {code}")
            except (OSError, ConnectionClosed, InvalidHandshake) as e:
                logger.warning(f"Error connecting to WebSocket: {e}")

            if self.attempts >= self.policy.max_attempts:
                self.state = ConnectionState.GAVE_UP
                logger.error("Max reconnect attempts reached.")
                raise ReconnectExhausted(f"Gave up on {self.url} after {self.policy.max_attempts} attempts")
            self.attempts += 1
            delay = self.policy.delay(self.attempts)
            self.state = ConnectionState.RECONNECTING
            logger.info(f"Attempting to reconnect ({self.attempts}/{self.policy.max_attempts}) in {delay:g}s")
            await self._sleep(delay)


# ---------------------- Alert submission ----------------------

LOCATION_UNAVAILABLE_TEXT = (
    "We could not determine your location. Turn on location services and try again."
)
ALERT_REJECTED_TEXT = "The emergency alert was rejected: {reason}"
SERVER_UNREACHABLE_TEXT = (
    "We could not reach the emergency service. Check your connection and try again."
)


class AlertSubmissionError(Exception):
    user_message = "The emergency alert could not be sent."


class LocationUnavailable(AlertSubmissionError):
    """No position fix; nothing was sent."""

    user_message = LOCATION_UNAVAILABLE_TEXT


class AlertRejected(AlertSubmissionError):
    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason
        self.user_message = ALERT_REJECTED_TEXT.format(reason=reason)


class ServerUnreachable(AlertSubmissionError):
    """Transient; the same alert can be retried."""

    user_message = SERVER_UNREACHABLE_TEXT


class AlertSubmitter:
    def __init__(self, base_url: str, token: str, timeout: float = 10.0, session: Optional[requests.Session] = None):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.session = session or requests.Session()

    def submit(
        self,
        latitude: Optional[float],
        longitude: Optional[float],
        emergency_type: str,
        description: Optional[str] = None,
    ) -> Dict[str, Any]:
        if latitude is None or longitude is None:
            raise LocationUnavailable()

        try:
            response = self.session.post(
                f"{self.base_url}/api/emergencies",
                json={
                    "latitude": latitude,
                    "longitude": longitude,
                    "emergencyType": emergency_type,
                    "description": description,
                },
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=self.timeout,
            )
        except (requests.ConnectionError, requests.Timeout) as e:
            raise ServerUnreachable(str(e)) from e

        if response.status_code >= 500:
            raise ServerUnreachable(f"HTTP {response.status_code}")
        if response.status_code >= 400:
            try:
                reason = response.json().get("message", response.reason)
            except ValueError:
                reason = response.reason
            raise AlertRejected(reason)
        return response.json()
