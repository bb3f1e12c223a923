from __future__ import annotations

import hashlib
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, List, Optional

import user_agents

from horizonauth.logging import get_logger
from horizonauth.service.errors import NotFoundError
from horizonauth.service.tokens import TokenCodec
from horizonauth.storage.common import CredentialStore
from horizonauth.storage.models import Device

if TYPE_CHECKING:
    from horizonauth.service.push_tokens import PushTokenRegistry
    from horizonauth.service.revocation import RevocationCache

logger = get_logger(__name__)

_VERSION_TAIL = re.compile(r"(\d+)(?:[._]\d+)+")
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class DeviceInfo:
    """Request metadata used to recognise a device."""

    user_agent: str
    device_name: Optional[str] = None
    ip: Optional[str] = None


@dataclass(frozen=True)
class ParsedUserAgent:
    browser: Optional[str]
    os: Optional[str]
    device_type: str


@dataclass(frozen=True)
class DeviceView:
    id: str
    name: Optional[str]
    device_type: str
    os: Optional[str]
    browser: Optional[str]
    last_active: datetime
    current: bool


def normalize_user_agent(user_agent: str) -> str:
    """Lower-case and keep only major versions so minor updates keep the fingerprint."""
    collapsed = _WHITESPACE.sub(" ", user_agent.strip().lower())
    return _VERSION_TAIL.sub(r"\1", collapsed)


def _describe(family: str, version: Optional[str]) -> Optional[str]:
    # ua-parser reports anything it cannot identify as "Other"
    if not family or family == "Other":
        return None
    return f"{family} {version}" if version else family


def parse_user_agent(user_agent: str) -> ParsedUserAgent:
    agent = user_agents.parse(user_agent or "")
    browser_version = agent.browser.version
    if agent.is_tablet:
        device_type = "tablet"
    elif agent.is_mobile:
        device_type = "mobile"
    else:
        device_type = "desktop"
    return ParsedUserAgent(
        browser=_describe(
            agent.browser.family, str(browser_version[0]) if browser_version else None
        ),
        os=_describe(agent.os.family, agent.os.version_string),
        device_type=device_type,
    )


class DeviceTracker:
    """Per-user device records bound to refresh tokens."""

    def __init__(
        self,
        store: CredentialStore,
        *,
        revocation: Optional["RevocationCache"] = None,
        push_tokens: Optional["PushTokenRegistry"] = None,
    ) -> None:
        self.store = store
        self.revocation = revocation
        self.push_tokens = push_tokens

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @staticmethod
    def generate_fingerprint(user_agent: str, ip: Optional[str] = None) -> str:
        normalized = normalize_user_agent(user_agent)
        data = f"{normalized}:{ip}" if ip else normalized
        return hashlib.sha256(data.encode("utf-8")).hexdigest()

    def create_or_update_device(self, user_id: str, device_info: DeviceInfo) -> Device:
        fingerprint = self.generate_fingerprint(device_info.user_agent, device_info.ip)
        parsed = parse_user_agent(device_info.user_agent)
        device = self.store.upsert_device(
            user_id,
            fingerprint,
            name=device_info.device_name,
            os=parsed.os,
            browser=parsed.browser,
            device_type=parsed.device_type,
            now=self._now(),
        )
        logger.debug("device_seen", user_id=user_id, device_id=device.id)
        return device

    def get_user_devices(
        self, user_id: str, current_device_id: Optional[str] = None
    ) -> List[DeviceView]:
        """Devices with at least one live refresh token, most recent first."""
        return [
            DeviceView(
                id=device.id,
                name=device.name,
                device_type=device.device_type,
                os=device.os,
                browser=device.browser,
                last_active=device.last_active,
                current=device.id == current_device_id,
            )
            for device in self.store.list_active_devices(user_id, self._now())
        ]

    async def revoke_device(self, user_id: str, device_id: str) -> int:
        """Revoke every refresh token scoped to the device; returns how many."""
        device = self.store.get_device(device_id)
        if not device or device.user_id != user_id:
            raise NotFoundError("Device not found", detail={"device_id": device_id})
        revoked = self.store.revoke_device_refresh_tokens(device_id)
        if self.revocation:
            now = self._now()
            for record in revoked:
                await self.revocation.blacklist(
                    record.jti, TokenCodec.calculate_ttl(record.expires_at, now)
                )
        if self.push_tokens:
            self.push_tokens.revoke_device_push_tokens(device_id)
        logger.info(
            "device_revoked", user_id=user_id, device_id=device_id, tokens=len(revoked)
        )
        return len(revoked)

    def update_last_active(self, device_id: str) -> None:
        self.store.touch_device(device_id, self._now())

    def get_device_by_fingerprint(
        self, user_id: str, fingerprint: str
    ) -> Optional[Device]:
        return self.store.get_device_by_fingerprint(user_id, fingerprint)
