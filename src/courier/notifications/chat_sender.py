"""
Chat Sender

Sends notifications to Slack via the Web API using httpx.
"""
import logging
from typing import Optional

import httpx

from .base_sender import HttpSender, SendResult, http_failure
from ..models.notification import Notification, NotificationChannel

logger = logging.getLogger("courier.notifications.chat")

SLACK_API_BASE = "https://slack.com/api"

# Slack error codes that will not succeed on retry
PERMANENT_SLACK_ERRORS = frozenset({
    "channel_not_found",
    "not_in_channel",
    "is_archived",
    "invalid_auth",
    "not_authed",
    "account_inactive",
    "user_not_found",
    "msg_too_long",
    "no_text",
})


class ChatSender(HttpSender):
    """Send messages via Slack chat.postMessage"""

    channel = NotificationChannel.CHAT

    def __init__(
        self,
        bot_token: str,
        client: Optional[httpx.AsyncClient] = None,
        api_base: str = SLACK_API_BASE,
    ):
        super().__init__(client=client)
        self.bot_token = bot_token
        self.api_base = api_base

    async def send(self, notification: Notification) -> SendResult:
        """Post to recipient.chat_channel, or DM recipient.chat_user_id"""
        target = notification.recipient.chat_channel or notification.recipient.chat_user_id
        if not target:
            return SendResult.permanent("No chat channel or user in recipient", code="missing_recipient")

        if not self.bot_token:
            return SendResult.permanent("SLACK_BOT_TOKEN not configured", code="not_configured")

        try:
            client = self._get_client()
            response = await client.post(
                f"{self.api_base}/chat.postMessage",
                headers={"Authorization": f"Bearer {self.bot_token}"},
                json={
                    "channel": target,
                    "text": notification.content.text,
                    "mrkdwn": True,
                },
            )
        except httpx.HTTPError as e:
            logger.error(f"Chat send error: {e}")
            return SendResult.transient(str(e), code="transport_error")

        if response.status_code != 200:
            result = http_failure(response)
            logger.error(f"Chat request failed: {result.error}")
            return result

        data = response.json()
        if data.get("ok"):
            logger.info(f"Chat message sent to {target} (notification {notification.id})")
            return SendResult.ok(provider_message_id=data.get("ts"))

        err = data.get("error", "unknown_error")
        logger.error(f"Slack API error: {err}")
        if err in PERMANENT_SLACK_ERRORS:
            return SendResult.permanent(err, code=err)
        return SendResult.transient(err, code=err)
