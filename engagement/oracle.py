"""
Membership Oracle and Notifier adapters.

The oracle answers "is this Telegram user currently a member of this channel".
Network trouble is reported as ``UNAVAILABLE``, never as ``NOT_MEMBER``.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Protocol

import requests

from .errors import OracleNotConfiguredError
from .models import normalize_channel

logger = logging.getLogger(__name__)

TELEGRAM_API = "https://api.telegram.org"
MEMBER_STATUSES = {"creator", "administrator", "member"}
GONE_STATUSES = {"left", "kicked"}
USER_NOT_FOUND_HINTS = ("user not found", "participant_id_invalid", "user_not_participant")


class MembershipStatus(str, Enum):
    MEMBER = "member"
    NOT_MEMBER = "not_member"
    UNAVAILABLE = "unavailable"


class MembershipOracle(Protocol):
    def is_member(self, channel: str, external_user_id: str) -> MembershipStatus: ...


class Notifier(Protocol):
    def send(self, external_user_id: str, message: str) -> bool: ...


class TelegramMembershipOracle:
    def __init__(self, bot_token: str, timeout: float = 5.0, session: requests.Session | None = None):
        self.bot_token = bot_token
        self.timeout = timeout
        self.session = session or requests.Session()

    def is_member(self, channel: str, external_user_id: str) -> MembershipStatus:
        if not self.bot_token:
            raise OracleNotConfiguredError("TELEGRAM_BOT_TOKEN is not configured")

        chat_id = normalize_channel(channel)
        url = f"{TELEGRAM_API}/bot{self.bot_token}/getChatMember"
        try:
            r = self.session.get(
                url,
                params={"chat_id": chat_id, "user_id": external_user_id},
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.warning("getChatMember %s/%s failed: %s", chat_id, external_user_id, e)
            return MembershipStatus.UNAVAILABLE

        try:
            data = r.json()
        except ValueError:
            logger.warning("getChatMember %s returned non-JSON body (HTTP %s)", chat_id, r.status_code)
            return MembershipStatus.UNAVAILABLE

        return self._interpret(chat_id, r.status_code, data)

    @staticmethod
    def _interpret(chat_id: str, http_status: int, data) -> MembershipStatus:
        if not isinstance(data, dict):
            return MembershipStatus.UNAVAILABLE

        if data.get("ok") and isinstance(data.get("result"), dict):
            result = data["result"]
            status = result.get("status")
            if status in MEMBER_STATUSES:
                return MembershipStatus.MEMBER
            if status == "restricted":
                return MembershipStatus.MEMBER if result.get("is_member") else MembershipStatus.NOT_MEMBER
            if status in GONE_STATUSES:
                return MembershipStatus.NOT_MEMBER
            logger.warning("getChatMember %s: unknown member status %r", chat_id, status)
            return MembershipStatus.UNAVAILABLE

        description = str(data.get("description", "")).lower()
        if http_status == 400 and any(hint in description for hint in USER_NOT_FOUND_HINTS):
            return MembershipStatus.NOT_MEMBER

        logger.warning("getChatMember %s: HTTP %s %s", chat_id, http_status, description or "no description")
        return MembershipStatus.UNAVAILABLE


class TelegramNotifier:
    def __init__(self, bot_token: str, timeout: float = 8.0, session: requests.Session | None = None):
        self.bot_token = bot_token
        self.timeout = timeout
        self.session = session or requests.Session()

    def send(self, external_user_id: str, message: str) -> bool:
        if not self.bot_token:
            return False
        try:
            r = self.session.post(
                f"{TELEGRAM_API}/bot{self.bot_token}/sendMessage",
                json={"chat_id": external_user_id, "text": message, "disable_web_page_preview": True},
                timeout=self.timeout,
            )
            if not r.ok:
                logger.warning("sendMessage to %s failed: HTTP %s", external_user_id, r.status_code)
            return bool(r.ok)
        except requests.RequestException as e:
            logger.warning("sendMessage to %s failed: %s", external_user_id, e)
            return False


class LoggingNotifier:
    """Used when no bot token is configured; messages only reach the log."""

    def send(self, external_user_id: str, message: str) -> bool:
        logger.info("notify %s: %s", external_user_id, message)
        return True
