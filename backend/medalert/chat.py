"""
Live support chat over ``/ws/chat``.

End users are paired with the support agent carrying the fewest
conversations; agents answer by naming the user's connection id in
``recipientId``. Messages are relayed only while both sides are online and
every message is written to the chat audit trail whatever happened to its
delivery.
"""
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as SchemaError

from .constants import DISPATCH_ROLES
from .models import ChatMessageRecord, User
from .schemas import ChatMessage, TypingIndicator
from .store import EntityStore

logger = logging.getLogger(__name__)

WELCOME_TEXT = "Welcome to live chat! An agent will be with you shortly."
NO_AGENT_TEXT = "No support agents are currently available. Please try again later."
RECIPIENT_GONE_TEXT = "The user is no longer connected."
ERROR_TEXT = "Error processing message. Please try again."


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def system_message(text: str, status: str = "sent") -> Dict[str, Any]:
    return {
        "id": uuid.uuid4().hex,
        "text": text,
        "sender": "support",
        "timestamp": _now(),
        "status": status,
    }


@dataclass(eq=False)
class ChatClient:
    websocket: WebSocket
    user_id: int
    role: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])
    last_agent_id: Optional[str] = None

    @property
    def is_agent(self) -> bool:
        return self.role in {role.value for role in DISPATCH_ROLES}


class ChatRouter:
    def __init__(self, store: EntityStore):
        self.store = store
        self._users: Dict[str, ChatClient] = {}
        self._agents: Dict[str, ChatClient] = {}
        # Conversations per agent, kept in step with ChatClient.last_agent_id.
        self._load: Dict[str, int] = {}

    @property
    def users(self) -> List[ChatClient]:
        return list(self._users.values())

    @property
    def agents(self) -> List[ChatClient]:
        return list(self._agents.values())

    def load_of(self, agent_id: str) -> int:
        return self._load.get(agent_id, 0)

    # Connection lifecycle

    async def authenticate(self, token: Optional[str]) -> Optional[User]:
        if not token:
            return None
        try:
            return await self.store.get_session_user(token)
        except Exception as e:
            logger.error(f"Session validation error: {e}")
            return None

    async def serve(self, websocket: WebSocket) -> None:
        user = await self.authenticate(websocket.query_params.get("token"))
        if user is None:
            logger.warning("Rejected chat connection without a valid session")
            await websocket.accept()
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Unauthorized")
            return

        client = ChatClient(websocket=websocket, user_id=user.id, role=user.role)
        self.register(client)
        try:
            await websocket.accept()
            await self.greet(client)
            while True:
                raw = await websocket.receive_text()
                await self.handle(client, raw)
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error(f"WebSocket error for chat client {client.id}: {e}")
        finally:
            await self.unregister(client)

    def register(self, client: ChatClient) -> None:
        if client.is_agent:
            self._agents[client.id] = client
            self._load[client.id] = 0
        else:
            self._users[client.id] = client
        logger.info(f"Chat client {client.id} joined as {client.role} (user {client.user_id})")

    async def greet(self, client: ChatClient) -> None:
        if client.is_agent:
            for user in self.users:
                await self._send(client, {
                    "type": "active_chat",
                    "userId": user.user_id,
                    "clientId": user.id,
                    "timestamp": _now(),
                })
        else:
            await self._send(client, system_message(WELCOME_TEXT))

    async def unregister(self, client: ChatClient) -> None:
        if client.is_agent:
            if self._agents.pop(client.id, None) is None:
                return
            self._load.pop(client.id, None)
            for user in self.users:
                if user.last_agent_id == client.id:
                    user.last_agent_id = None
        else:
            if self._users.pop(client.id, None) is None:
                return
            self._assign(client, None)
            for agent in self.agents:
                await self._send(agent, {
                    "type": "user_disconnected",
                    "userId": client.user_id,
                    "clientId": client.id,
                    "timestamp": _now(),
                })
        logger.info(f"Chat client {client.id} left")

    # Agent selection

    def select_agent(self) -> Optional[ChatClient]:
        """Least-loaded agent; ties go to the agent that connected first."""
        agents = self.agents
        if not agents:
            return None
        return min(agents, key=lambda agent: self.load_of(agent.id))

    def _assign(self, user: ChatClient, agent: Optional[ChatClient]) -> None:
        new_id = agent.id if agent else None
        if user.last_agent_id == new_id:
            return
        if user.last_agent_id in self._load:
            self._load[user.last_agent_id] -= 1
        user.last_agent_id = new_id
        if new_id is not None:
            self._load[new_id] = self._load.get(new_id, 0) + 1

    # Inbound

    async def handle(self, client: ChatClient, raw: str) -> None:
        try:
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError("chat frame must be a JSON object")
            if data.get("type") == "typing":
                await self._relay_typing(client, TypingIndicator.model_validate(data))
                return
            message = ChatMessage.model_validate(data)
        except (ValueError, SchemaError) as e:
            logger.warning(f"Malformed chat frame from {client.id}: {e}")
            await self._send(client, system_message(ERROR_TEXT, status="error"))
            return

        delivered = False
        try:
            if client.is_agent:
                delivered = await self._from_agent(client, message)
            else:
                delivered = await self._from_user(client, message)
        except Exception:
            logger.exception(f"Error handling chat message from {client.id}")
            await self._send(client, system_message(ERROR_TEXT, status="error"))
        finally:
            await self._record(client, message, delivered)

    async def _from_user(self, client: ChatClient, message: ChatMessage) -> bool:
        agent = self.select_agent()
        if agent is None:
            await self._send(client, system_message(NO_AGENT_TEXT))
            return False

        self._assign(client, agent)
        forwarded = {
            **message.model_dump(mode="json", by_alias=True, exclude_none=True),
            "sender": "user",
            "userId": client.user_id,
            "clientId": client.id,
            "status": "sent",
        }
        delivered = await self._send(agent, forwarded)
        await self._send(client, {**forwarded, "status": "sent" if delivered else "error"})
        return delivered

    async def _from_agent(self, agent: ChatClient, message: ChatMessage) -> bool:
        target = self._users.get(message.recipient_id or "")
        if target is None:
            await self._send(agent, {
                **system_message(RECIPIENT_GONE_TEXT, status="error"),
                "recipientId": message.recipient_id,
            })
            return False

        self._assign(target, agent)
        formatted = {
            **message.model_dump(mode="json", by_alias=True, exclude_none=True),
            "sender": "support",
            "status": "sent",
        }
        delivered = await self._send(target, formatted)
        await self._send(agent, {
            **formatted,
            "status": "sent" if delivered else "error",
            "recipientId": target.id,
            "userId": target.user_id,
        })
        return delivered

    async def _relay_typing(self, client: ChatClient, indicator: TypingIndicator) -> None:
        if client.is_agent:
            target = self._users.get(indicator.recipient_id or "")
            if target is None and indicator.user_id is not None:
                target = next((u for u in self.users if u.user_id == indicator.user_id), None)
            if target is not None:
                await self._send(target, {"type": "typing", "isTyping": indicator.is_typing, "userId": client.user_id})
            return

        frame = {"type": "typing", "isTyping": indicator.is_typing, "userId": client.user_id, "clientId": client.id}
        agent = self._agents.get(client.last_agent_id or "")
        for recipient in ([agent] if agent else self.agents):
            await self._send(recipient, frame)

    # Outbound and audit

    async def _send(self, client: ChatClient, payload: Dict[str, Any]) -> bool:
        try:
            await client.websocket.send_json(payload)
            return True
        except Exception as e:
            logger.warning(f"Send to chat client {client.id} failed: {e}")
            return False

    async def _record(self, client: ChatClient, message: ChatMessage, delivered: bool) -> None:
        try:
            await self.store.create_chat_message(ChatMessageRecord(
                message_id=message.id,
                text=message.text,
                sender="support" if client.is_agent else "user",
                user_id=client.user_id,
                recipient_id=message.recipient_id,
                status="sent" if delivered else "undelivered",
                timestamp=message.timestamp or datetime.now(timezone.utc),
            ))
        except Exception as e:
            logger.error(f"Error storing message {message.id}: {e}")
