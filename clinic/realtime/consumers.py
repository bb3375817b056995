import json

from channels.generic.websocket import AsyncWebsocketConsumer

from clinic.models import User


class UpdatesConsumer(AsyncWebsocketConsumer):
    """Staff-wide push channel: campaign progress and refresh hints."""
    GROUP = "updates"

    async def connect(self):
        user = self.scope.get("user")
        if not (user and user.is_authenticated and user.role in User.STAFF_ROLES):
            await self.close(code=4003)
            return
        await self.channel_layer.group_add(self.GROUP, self.channel_name)
        await self.accept()
        await self.send(json.dumps({"type": "welcome", "message": "connected"}))

    async def disconnect(self, close_code):
        await self.channel_layer.group_discard(self.GROUP, self.channel_name)

    async def broadcast_refresh(self, event):
        # event: {"type": "broadcast.refresh", "version": int, "ts": "...", "keys": [...]}
        await self.send(json.dumps(event))

    async def campaign_progress(self, event):
        # event: {"type": "campaign.progress", "campaignId": int, "status": str, "processed": int, "ts": "..."}
        await self.send(json.dumps(event))
