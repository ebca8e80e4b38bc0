"""Manual approval of newly registered accounts."""

from __future__ import annotations

import logging
from typing import Dict, List, Literal, Optional

import httpx
from pydantic import BaseModel, field_validator

from .database import Database
from .models import User

logger = logging.getLogger("panel.approvals")

SETTING_PREFIX = "approvals:"
ENABLED_KEY = SETTING_PREFIX + "enabled"
WEBHOOK_KEY = SETTING_PREFIX + "webhook"


class ApprovalSettingsForm(BaseModel):
    enabled: Literal["true", "false"]
    webhook: Optional[str] = None

    @field_validator("webhook")
    @classmethod
    def _validate_webhook(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        if not stripped:
            return None
        try:
            url = httpx.URL(stripped)
        except httpx.InvalidURL as exc:
            raise ValueError("The webhook must be a valid http(s) URL.") from exc
        if url.scheme not in {"http", "https"} or not url.host:
            raise ValueError("The webhook must be a valid http(s) URL.")
        return stripped

    def normalize(self) -> Dict[str, Optional[str]]:
        return {"enabled": self.enabled, "webhook": self.webhook}


class ApprovalService:
    def __init__(self, database: Database, *, http_timeout: float = 5.0) -> None:
        self._database = database
        self._http_timeout = http_timeout

    def is_enabled(self) -> bool:
        return self._database.get_setting(ENABLED_KEY, "false") == "true"

    def webhook(self) -> Optional[str]:
        return self._database.get_setting(WEBHOOK_KEY)

    def pending_users(self) -> List[User]:
        return self._database.list_unapproved_users()

    def update(self, form: ApprovalSettingsForm) -> None:
        for key, value in form.normalize().items():
            self._database.set_setting(SETTING_PREFIX + key, value)

    def approve(self, user_id: int) -> Optional[User]:
        user = self._database.get_user(user_id)
        if user is None:
            return None
        updated = self._database.set_user_flags(user_id, approved=True)
        logger.info("User %s (%s) has been approved", user.id, user.username)
        return updated

    def deny(self, user_id: int) -> Optional[User]:
        """Delete a pending account. Approved accounts are left untouched."""

        user = self._database.get_user(user_id)
        if user is None or user.approved:
            return None
        self._database.delete_user(user_id)
        logger.info("User %s (%s) has been denied", user.id, user.username)
        return user

    def bulk(self, action: str) -> int:
        if action == "approve":
            count = self._database.approve_pending_users()
        else:
            count = self._database.delete_pending_users()
        logger.info("Bulk approval action '%s' applied to %s user(s)", action, count)
        return count

    def notify_pending(self, user: User) -> bool:
        """Post a registration notice to the configured webhook, if any."""

        url = self.webhook()
        if not url:
            return False

        payload = {
            "content": f"{user.username} ({user.email or 'no email'}) has registered and is awaiting approval.",
        }
        try:
            response = httpx.post(url, json=payload, timeout=self._http_timeout)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.warning("Failed to deliver approval webhook for user %s: %s", user.id, exc)
            return False
        return True


__all__ = ["ApprovalService", "ApprovalSettingsForm", "ENABLED_KEY", "WEBHOOK_KEY"]
