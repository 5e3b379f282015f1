"""
Courier Notification Senders

Delivery channels: Email, SMS, Push, Chat, Webhook, plus a generic fallback.
"""
from .base_sender import BaseSender, HttpSender, SendResult
from .email_sender import EmailSender
from .sms_sender import SmsSender
from .push_sender import PushSender
from .chat_sender import ChatSender
from .webhook_sender import WebhookSender, compute_signature
from .generic_sender import GenericSender
from .registry import ChannelDispatcher

__all__ = [
    'BaseSender',
    'HttpSender',
    'SendResult',
    'EmailSender',
    'SmsSender',
    'PushSender',
    'ChatSender',
    'WebhookSender',
    'GenericSender',
    'ChannelDispatcher',
    'compute_signature',
]
