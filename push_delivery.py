"""
Push delivery for bus-arrival alerts.

Parent apps register either an FCM registration token (mobile) or a Web Push
subscription serialised as JSON (browser). ``ChannelPushSender`` inspects the
token and hands the message to the matching channel:

    sender = ChannelPushSender(
        fcm=FcmPushSender(project_id="...", access_token="..."),
        web=WebPushSender(vapid_private_key="...", vapid_subject="mailto:..."),
    )
    message_id = await sender.send(message)

Every channel raises ``PushDeliveryError`` on failure so callers only need to
handle one exception type.
"""

from __future__ import annotations

import asyncio
import json
import os
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

FCM_PROJECT_ID = (os.getenv("FCM_PROJECT_ID") or "").strip()
FCM_ACCESS_TOKEN = (os.getenv("FCM_ACCESS_TOKEN") or "").strip()
FCM_SEND_URL = "https://fcm.googleapis.com/v1/projects/{project_id}/messages:send"
VAPID_PRIVATE_KEY = os.getenv("VAPID_PRIVATE_KEY", "")
VAPID_SUBJECT = os.getenv("VAPID_SUBJECT", "mailto:ops@busmate.app")

VOICE_NOTIFICATION = "voice notification"
ANDROID_CHANNEL_ID = "busmate"
# Arrival alerts are useless once the bus has passed
PUSH_TTL_S = 60

_LANGUAGE_SOUNDS = {
    "english": "notification_english",
    "hindi": "notification_hindi",
    "tamil": "notification_tamil",
    "telugu": "notification_telugu",
    "kannada": "notification_kannada",
    "malayalam": "notification_malayalam",
}


class PushDeliveryError(RuntimeError):
    def __init__(self, message: str, *, invalid_token: bool = False):
        super().__init__(message)
        self.invalid_token = invalid_token


def sound_for_language(language: Optional[str]) -> str:
    return _LANGUAGE_SOUNDS.get((language or "").strip().lower(), "notification_english")


@dataclass
class PushMessage:
    token: str
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)
    voice: bool = False
    language: Optional[str] = None

    @property
    def sound(self) -> str:
        return sound_for_language(self.language) if self.voice else "default"

    def to_fcm(self) -> Dict[str, Any]:
        apns_sound = f"{self.sound}.wav" if self.voice else "default"
        return {
            "token": self.token,
            "notification": {"title": self.title, "body": self.body},
            "data": {k: str(v) for k, v in self.data.items()},
            "android": {
                "priority": "high",
                "ttl": f"{PUSH_TTL_S}s",
                "notification": {
                    "channel_id": ANDROID_CHANNEL_ID,
                    "sound": self.sound,
                    "visibility": "PUBLIC",
                    "click_action": "FLUTTER_NOTIFICATION_CLICK",
                    "default_vibrate_timings": True,
                    "default_light_settings": True,
                },
            },
            "apns": {
                "headers": {"apns-priority": "10", "apns-expiration": str(PUSH_TTL_S)},
                "payload": {
                    "aps": {
                        "alert": {"title": self.title, "body": self.body},
                        "sound": apns_sound,
                        "badge": 1,
                        "content-available": 1,
                        "mutable-content": 1,
                    }
                },
            },
        }

    def to_web_payload(self) -> Dict[str, Any]:
        return {
            "title": self.title,
            "body": self.body,
            "tag": f"bus-arrival-{self.data.get('tripId', '')}",
            "data": dict(self.data),
        }


def is_web_push_token(token: str) -> bool:
    text = token.strip()
    if not text.startswith("{"):
        return False
    try:
        parsed = json.loads(text)
    except json.JSONDecodeError:
        return False
    return isinstance(parsed, dict) and bool(parsed.get("endpoint"))


class PushSender(ABC):
    """Delivers one message; returns the provider's message id."""

    @abstractmethod
    async def send(self, message: PushMessage) -> str:
        pass


class FcmPushSender(PushSender):
    """FCM HTTP v1 sender. ``access_token`` is an OAuth2 bearer token."""

    def __init__(
        self,
        *,
        project_id: str = FCM_PROJECT_ID,
        access_token: str = FCM_ACCESS_TOKEN,
        timeout_s: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.project_id = project_id
        self.access_token = access_token
        self.timeout_s = timeout_s
        self._client = client

    def is_configured(self) -> bool:
        return bool(self.project_id and self.access_token)

    async def send(self, message: PushMessage) -> str:
        if not self.is_configured():
            raise PushDeliveryError("FCM is not configured")
        url = FCM_SEND_URL.format(project_id=self.project_id)
        headers = {"Authorization": f"Bearer {self.access_token}"}
        body = {"message": message.to_fcm()}
        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, headers=headers, timeout=self.timeout_s)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                    response = await client.post(url, json=body, headers=headers)
        except httpx.HTTPError as exc:
            raise PushDeliveryError(f"FCM request failed: {exc}") from exc

        if response.status_code in (400, 404):
            # UNREGISTERED / INVALID_ARGUMENT: the token will never work again
            raise PushDeliveryError(
                f"FCM rejected token (HTTP {response.status_code})", invalid_token=True
            )
        if response.status_code >= 300:
            raise PushDeliveryError(f"FCM returned HTTP {response.status_code}")
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        return str(payload.get("name") or uuid.uuid4())


class WebPushSender(PushSender):
    """Web Push (VAPID) sender for browser subscriptions."""

    def __init__(
        self,
        *,
        vapid_private_key: str = VAPID_PRIVATE_KEY,
        vapid_subject: str = VAPID_SUBJECT,
    ):
        self.vapid_private_key = vapid_private_key
        self.vapid_subject = vapid_subject

    def is_configured(self) -> bool:
        return bool(self.vapid_private_key)

    async def send(self, message: PushMessage) -> str:
        from pywebpush import webpush, WebPushException

        if not self.is_configured():
            raise PushDeliveryError("VAPID keys are not configured")
        try:
            subscription_info = json.loads(message.token)
        except json.JSONDecodeError as exc:
            raise PushDeliveryError("malformed web push subscription", invalid_token=True) from exc

        try:
            response = await asyncio.to_thread(
                webpush,
                subscription_info=subscription_info,
                data=json.dumps(message.to_web_payload()),
                vapid_private_key=self.vapid_private_key,
                vapid_claims={"sub": self.vapid_subject},
                ttl=PUSH_TTL_S,
            )
        except WebPushException as exc:
            status = exc.response.status_code if exc.response is not None else None
            raise PushDeliveryError(
                f"web push failed: {exc}", invalid_token=status in (404, 410)
            ) from exc

        location = None
        headers = getattr(response, "headers", None)
        if headers is not None:
            location = headers.get("Location")
        return str(location or uuid.uuid4())


class ChannelPushSender(PushSender):
    """Routes each message to FCM or Web Push depending on the token's shape."""

    def __init__(self, *, fcm: Optional[PushSender] = None, web: Optional[PushSender] = None):
        self.fcm = fcm
        self.web = web

    async def send(self, message: PushMessage) -> str:
        if is_web_push_token(message.token):
            channel = self.web
            label = "web push"
        else:
            channel = self.fcm
            label = "FCM"
        if channel is None:
            raise PushDeliveryError(f"no {label} channel configured")
        return await channel.send(message)


__all__ = [
    "ChannelPushSender",
    "FcmPushSender",
    "PushDeliveryError",
    "PushMessage",
    "PushSender",
    "WebPushSender",
    "is_web_push_token",
    "sound_for_language",
]
