import json
import logging

from asgiref.sync import sync_to_async
from channels.generic.websocket import AsyncWebsocketConsumer
from django.contrib.auth.models import AnonymousUser
from rest_framework.exceptions import APIException

from clinic.models import Conversation
from clinic.services.messaging import MAX_MESSAGE_LENGTH, check_conversation_access, send_message

logger = logging.getLogger(__name__)


async def _ws_error(ws, code: int, message: str, *, close: bool = False):
    """
    Send an error frame, optionally closing the socket.
    Application codes: 4xxx for client errors, 5xxx for server errors.
    """
    payload = {"type": "error", "code": code, "message": message}
    try:
        await ws.send(json.dumps(payload))
    finally:
        if close:
            await ws.close(code=code)


def _load(conversation_id):
    return Conversation.objects.select_related("patient", "dietitian").filter(id=conversation_id).first()


class ConversationConsumer(AsyncWebsocketConsumer):
    async def connect(self):
        try:
            self.conversation_id = int(self.scope["url_route"]["kwargs"].get("conversation_id"))
        except (KeyError, TypeError, ValueError):
            await self.close(code=4001)
            return

        user = self.scope.get("user") or AnonymousUser()

        conversation = await sync_to_async(_load)(self.conversation_id)
        if conversation is None:
            await self.close(code=4004)
            return

        allowed = await sync_to_async(check_conversation_access)(user, conversation)
        if not allowed:
            await self.close(code=4003)
            return

        self.group_name = f"conversation.{self.conversation_id}"
        await self.channel_layer.group_add(self.group_name, self.channel_name)
        await self.accept()

    async def disconnect(self, close_code):
        if hasattr(self, "group_name"):
            await self.channel_layer.group_discard(self.group_name, self.channel_name)

    async def receive(self, text_data=None, bytes_data=None):
        if not text_data:
            return

        try:
            data = json.loads(text_data)
        except ValueError:
            await _ws_error(self, 4000, "invalid_json")
            return

        if not isinstance(data, dict):
            await _ws_error(self, 4001, "invalid_payload")
            return

        if data.get("type") != "send":
            await _ws_error(self, 4002, "unsupported_type")
            return

        content = data.get("content", "")
        if not isinstance(content, str):
            await _ws_error(self, 4003, "invalid_content_type")
            return
        content = content.strip()
        if not content:
            await _ws_error(self, 4004, "empty_message")
            return
        if len(content) > MAX_MESSAGE_LENGTH:
            await _ws_error(self, 4005, "message_too_long")
            return

        user = self.scope.get("user") or AnonymousUser()

        conversation = await sync_to_async(_load)(self.conversation_id)
        if conversation is None:
            await _ws_error(self, 4006, "conversation_not_found", close=True)
            return
        try:
            # the service re-checks access and broadcasts to the group on commit
            msg = await sync_to_async(send_message)(conversation, user, content)
        except APIException as exc:
            if exc.status_code == 403:
                await _ws_error(self, 4007, "forbidden", close=True)
            else:
                await _ws_error(self, 4008, str(exc.detail))
            return
        except Exception:
            logger.exception("Failed to store message for conversation %s", self.conversation_id)
            await _ws_error(self, 5000, "server_error")
            return
        await self.send(json.dumps({"type": "ack", "ok": True, "id": msg.id}))

    async def conversation_message(self, event):
        """
        Relay group events to the client.
        Event format: {"type": "conversation.message", "payload": {...}}
        """
        payload = event.get("payload", {})
        await self.send(json.dumps({"type": "message", **payload}))
