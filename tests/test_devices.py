"""Tests for device fingerprinting, user-agent parsing and device revocation."""

from datetime import timedelta

import pytest

from conftest import CHROME_UA, IPHONE_UA
from horizonauth.service.devices import (
    DeviceInfo,
    DeviceTracker,
    normalize_user_agent,
    parse_user_agent,
)
from horizonauth.service.errors import NotFoundError
from horizonauth.storage.common import utcnow

ANDROID_TABLET_UA = (
    "Mozilla/5.0 (Linux; Android 13; SM-X700) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/119.0.0.0 Safari/537.36"
)
EDGE_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36 Edg/120.0.2210.61"
)
FIREFOX_MAC_UA = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10.15; rv:120.0) Gecko/20100101 Firefox/120.0"
)


@pytest.fixture
def user(store):
    return store.create_user("devices@example.com", "hash", tenant_id="default")


def _live_token(store, user_id, device_id, suffix="1"):
    return store.create_refresh_token(
        hashed_token=f"hash-{device_id}-{suffix}",
        jti=f"jti-{device_id}-{suffix}",
        user_id=user_id,
        expires_at=utcnow() + timedelta(days=7),
        device_id=device_id,
    )


class TestUserAgentParsing:
    @pytest.mark.parametrize(
        "user_agent,browser,os_name,device_type",
        [
            (CHROME_UA, "Chrome 120", "Windows 10", "desktop"),
            (IPHONE_UA, "Mobile Safari 17", "iOS 17.1", "mobile"),
            (ANDROID_TABLET_UA, "Chrome 119", "Android 13", "tablet"),
            (EDGE_UA, "Edge 120", "Windows 10", "desktop"),
            (FIREFOX_MAC_UA, "Firefox 120", "Mac OS X 10.15", "desktop"),
        ],
    )
    def test_parse(self, user_agent, browser, os_name, device_type):
        parsed = parse_user_agent(user_agent)

        assert parsed.browser == browser
        assert parsed.os == os_name
        assert parsed.device_type == device_type

    def test_empty_agent_defaults_to_desktop(self):
        parsed = parse_user_agent("")

        assert parsed.browser is None
        assert parsed.os is None
        assert parsed.device_type == "desktop"


class TestFingerprint:
    def test_minor_version_bump_keeps_fingerprint(self):
        newer = CHROME_UA.replace("120.0.6099.109", "120.0.6099.130")

        assert normalize_user_agent(newer) == normalize_user_agent(CHROME_UA)
        assert DeviceTracker.generate_fingerprint(newer) == DeviceTracker.generate_fingerprint(
            CHROME_UA
        )

    def test_major_version_and_ip_change_fingerprint(self):
        major = CHROME_UA.replace("Chrome/120", "Chrome/121")
        base = DeviceTracker.generate_fingerprint(CHROME_UA)

        assert DeviceTracker.generate_fingerprint(major) != base
        assert DeviceTracker.generate_fingerprint(CHROME_UA, "198.51.100.1") != base

    def test_fingerprint_is_sha256_hex(self):
        fingerprint = DeviceTracker.generate_fingerprint(CHROME_UA)

        assert len(fingerprint) == 64
        int(fingerprint, 16)


class TestDeviceTracker:
    def test_same_fingerprint_reuses_device(self, devices, user, device_info):
        first = devices.create_or_update_device(user.id, device_info)
        second = devices.create_or_update_device(user.id, device_info)

        assert first.id == second.id
        assert first.browser == "Chrome 120"
        assert first.name == "Work laptop"

    def test_lookup_by_fingerprint(self, devices, user, device_info):
        device = devices.create_or_update_device(user.id, device_info)

        found = devices.get_device_by_fingerprint(user.id, device.fingerprint)

        assert found.id == device.id
        assert devices.get_device_by_fingerprint("someone-else", device.fingerprint) is None

    def test_list_only_devices_with_live_tokens(self, store, devices, user, device_info):
        laptop = devices.create_or_update_device(user.id, device_info)
        phone = devices.create_or_update_device(user.id, DeviceInfo(user_agent=IPHONE_UA))
        _live_token(store, user.id, laptop.id)

        listed = devices.get_user_devices(user.id, current_device_id=laptop.id)

        assert [d.id for d in listed] == [laptop.id]
        assert listed[0].current is True
        assert phone.id not in [d.id for d in listed]

    async def test_revoke_device_kills_tokens_and_blacklists(
        self, store, devices, revocation, user, device_info
    ):
        device = devices.create_or_update_device(user.id, device_info)
        record = _live_token(store, user.id, device.id)

        count = await devices.revoke_device(user.id, device.id)

        assert count == 1
        assert store.get_refresh_token_by_hash(record.hashed_token).revoked is True
        assert await revocation.is_blacklisted(record.jti) is True
        assert devices.get_user_devices(user.id) == []

    async def test_revoke_device_deactivates_push_tokens(
        self, devices, push_tokens, user, device_info
    ):
        device = devices.create_or_update_device(user.id, device_info)
        push_tokens.register_push_token(user.id, device.id, "fcm-token", "FCM")

        await devices.revoke_device(user.id, device.id)

        assert push_tokens.get_active_tokens_for_user(user.id) == []

    async def test_cannot_revoke_other_users_device(self, store, devices, user, device_info):
        other = store.create_user("other@example.com", "hash", tenant_id="default")
        device = devices.create_or_update_device(other.id, device_info)

        with pytest.raises(NotFoundError):
            await devices.revoke_device(user.id, device.id)

    def test_update_last_active(self, store, devices, user, device_info):
        device = devices.create_or_update_device(user.id, device_info)
        before = store.get_device(device.id).last_active

        devices.update_last_active(device.id)

        assert store.get_device(device.id).last_active >= before
