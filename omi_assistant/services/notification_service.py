"""Outbound notifications to device users through the Omi integrations API."""

from typing import Optional

import httpx

from omi_assistant.logging_config import get_logger

logger = get_logger("notification_service")


class OmiNotificationClient:
    def __init__(
        self,
        app_id: Optional[str],
        app_secret: Optional[str],
        api_url: str = "https://api.omi.me",
        timeout_seconds: float = 10.0,
    ):
        self.app_id = app_id
        self.app_secret = app_secret
        self.api_url = api_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    @property
    def is_configured(self) -> bool:
        return bool(self.app_id and self.app_secret)

    def send(self, uid: str, message: str) -> bool:
        """Send a direct notification to a device user.

        Returns:
            True if the platform accepted the notification
        """
        if not self.is_configured:
            logger.warning(f"Notifications not configured, skipping delivery to {uid}")
            return False
        if not uid or not message:
            return False

        try:
            with httpx.Client(timeout=self.timeout_seconds) as client:
                response = client.post(
                    f"{self.api_url}/v2/integrations/{self.app_id}/notification",
                    params={"uid": uid, "message": message},
                    headers={
                        "Authorization": f"Bearer {self.app_secret}",
                        "Content-Type": "application/json",
                    },
                )
        except Exception as e:
            logger.error(f"Failed to send notification: {e}")
            return False

        if response.status_code >= 300:
            logger.warning(
                "Notification rejected",
                extra={"context": {"uid": uid, "status": response.status_code, "body": response.text[:500]}},
            )
            return False
        logger.info(f"Notification sent to {uid}")
        return True
