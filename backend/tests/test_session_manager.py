from datetime import datetime
from datetime import timedelta
from datetime import timezone

import pytest
from cryptography.fernet import Fernet

from tests.helpers.fake_browser import FakeBrowserDriver
from tests.helpers.fake_browser import FakeRoute
from warden.services.session_manager import SessionCookie
from warden.services.session_manager import SessionReplayError
from warden.services.session_manager import SessionSnapshot
from warden.services.session_manager import apply_snapshot
from warden.services.session_manager import compute_session_expiry
from warden.services.session_manager import decrypt_session
from warden.services.session_manager import encrypt_session
from warden.services.session_manager import extract_session
from warden.services.session_manager import is_expired
from warden.services.session_manager import probe_session
from warden.services.session_manager import replay_session
from warden.utils.crypto import DecryptionError
from warden.utils.crypto import encrypt


def test_encrypt_decrypt_round_trip(sample_snapshot):
    token = encrypt_session(sample_snapshot)

    assert "abc123" not in token
    restored = decrypt_session(token)
    assert restored == sample_snapshot
    assert restored.local_storage == {"token": "t-1"}
    assert restored.session_storage == {"tab": "home"}
    assert restored.cookies[0].http_only is True


def test_decrypt_with_wrong_key_raises(sample_snapshot, monkeypatch):
    token = encrypt_session(sample_snapshot)
    monkeypatch.setenv("SESSION_ENCRYPTION_KEY", Fernet.generate_key().decode())

    with pytest.raises(DecryptionError):
        decrypt_session(token)


def test_decrypt_corrupted_token_raises():
    with pytest.raises(DecryptionError):
        decrypt_session("not-a-token")


def test_decrypt_non_snapshot_plaintext_raises():
    with pytest.raises(DecryptionError):
        decrypt_session(encrypt('{"cookies": "nope"}'))


def test_compute_session_expiry_uses_latest_cookie():
    early = datetime(2030, 1, 1, tzinfo=timezone.utc)
    late = datetime(2031, 6, 1, tzinfo=timezone.utc)
    snapshot = SessionSnapshot(
        cookies=[
            SessionCookie(name="a", value="1", expires=early.timestamp()),
            SessionCookie(name="b", value="2", expires=late.timestamp()),
            SessionCookie(name="c", value="3"),
        ]
    )

    assert compute_session_expiry(snapshot) == late


def test_compute_session_expiry_defaults_to_24_hours():
    now = datetime(2030, 1, 1, 12, tzinfo=timezone.utc)
    snapshot = SessionSnapshot(cookies=[SessionCookie(name="a", value="1")])

    assert compute_session_expiry(snapshot, now=now) == now + timedelta(hours=24)


def test_compute_session_expiry_without_cookies_is_unknown():
    assert compute_session_expiry(SessionSnapshot(local_storage={"k": "v"})) is None


def test_is_expired():
    now = datetime(2030, 1, 1, tzinfo=timezone.utc)

    assert is_expired(None, now=now) is False
    assert is_expired(now - timedelta(seconds=1), now=now) is True
    assert is_expired(now + timedelta(seconds=1), now=now) is False
    assert is_expired(now, now=now) is False
    # Naive values are read as UTC
    assert is_expired(datetime(2029, 12, 31), now=now) is True


@pytest.mark.asyncio
async def test_apply_snapshot_is_idempotent(sample_snapshot):
    driver = FakeBrowserDriver(routes={"https://site.com/app": FakeRoute("https://site.com/dashboard", "Home")})

    states = []
    verdicts = []
    for _ in range(2):
        async with driver.acquire_page() as page:
            await apply_snapshot(driver, page, sample_snapshot, url="https://site.com/app")
            await apply_snapshot(driver, page, sample_snapshot, url="https://site.com/app")
            states.append((sorted(c["name"] for c in page.context.cookies), page.headers, page.init_scripts[-1]))
            verdicts.append(await probe_session(driver, page, "https://site.com/app", timeout_ms=1000))

    assert states[0] == states[1]
    assert states[0][0] == ["pref", "sid"]
    assert states[0][1] == {"User-Agent": "TestAgent/1.0"}
    assert verdicts[0] == verdicts[1]
    assert verdicts[0].is_valid is True


@pytest.mark.asyncio
async def test_apply_snapshot_scopes_domainless_cookies_to_url():
    driver = FakeBrowserDriver()
    snapshot = SessionSnapshot(cookies=[SessionCookie(name="sid", value="1")])

    async with driver.acquire_page() as page:
        await apply_snapshot(driver, page, snapshot, url="https://site.com/login")
        assert page.context.cookies == [{"name": "sid", "value": "1", "url": "https://site.com/login"}]


@pytest.mark.asyncio
async def test_probe_session_detects_two_factor():
    driver = FakeBrowserDriver(
        routes={"https://site.com/app": FakeRoute("https://site.com/login", "Sign in", {'input[name="code"]'})}
    )

    async with driver.acquire_page() as page:
        result = await probe_session(driver, page, "https://site.com/app", timeout_ms=1000)

    assert result.is_valid is False
    assert result.needs_reconnect is True
    assert result.error_message.startswith("2FA required")


@pytest.mark.asyncio
async def test_probe_session_detects_expired_session_by_title():
    driver = FakeBrowserDriver(routes={"https://site.com/app": FakeRoute("https://site.com/start", "Please Log In")})

    async with driver.acquire_page() as page:
        result = await probe_session(driver, page, "https://site.com/app", timeout_ms=1000)

    assert result.needs_reconnect is True
    assert result.error_message.startswith("Session expired")


@pytest.mark.asyncio
async def test_probe_session_never_raises_on_navigation_error():
    driver = FakeBrowserDriver(goto_errors={"https://site.com/app": "net::ERR_NAME_NOT_RESOLVED"})

    async with driver.acquire_page() as page:
        result = await probe_session(driver, page, "https://site.com/app", timeout_ms=1000)

    assert result.is_valid is False
    assert result.needs_reconnect is True
    assert result.error_message == "net::ERR_NAME_NOT_RESOLVED"


@pytest.mark.asyncio
async def test_replay_session_releases_page(sample_snapshot):
    driver = FakeBrowserDriver()

    result = await replay_session(driver, encrypt_session(sample_snapshot), "https://site.com/home", timeout_ms=1000)

    assert result.is_valid is True
    assert driver.contexts_opened == 1
    assert driver.all_released


@pytest.mark.asyncio
async def test_replay_session_with_corrupted_data_raises_replay_error():
    driver = FakeBrowserDriver()

    with pytest.raises(SessionReplayError, match="Session decryption failed"):
        await replay_session(driver, "garbage", "https://site.com/home", timeout_ms=1000)
    assert driver.contexts_opened == 0


@pytest.mark.asyncio
async def test_extract_session_reads_live_page():
    driver = FakeBrowserDriver(
        storage={"localStorage": {"a": "1"}, "sessionStorage": {}, "userAgent": "Live/2.0"},
    )

    async with driver.acquire_page() as page:
        await driver.set_cookies(page, [{"name": "sid", "value": "x", "domain": ".site.com", "path": "/", "expires": -1}])
        snapshot = await extract_session(driver, page)

    assert [c.name for c in snapshot.cookies] == ["sid"]
    assert snapshot.cookies[0].expires is None
    assert snapshot.local_storage == {"a": "1"}
    assert snapshot.user_agent == "Live/2.0"


@pytest.mark.asyncio
async def test_replay_session_opens_context_with_captured_user_agent(sample_snapshot):
    driver = FakeBrowserDriver()

    await replay_session(driver, encrypt_session(sample_snapshot), "https://site.com/home", timeout_ms=1000)

    assert driver.contexts[0].user_agent == "TestAgent/1.0"


def test_cookie_same_site_is_case_insensitive():
    cookies = [
        SessionCookie.model_validate({"name": "a", "value": "1", "sameSite": raw}) for raw in ("lax", "STRICT", "none")
    ]

    assert [cookie.same_site for cookie in cookies] == ["Lax", "Strict", "None"]


def test_cookie_keeps_unmodelled_keys():
    cookie = SessionCookie.model_validate({"name": "a", "value": "1", "priority": "High", "sameParty": False})
    snapshot = SessionSnapshot(cookies=[cookie])

    restored = decrypt_session(encrypt_session(snapshot))

    dumped = restored.cookies[0].model_dump(by_alias=True)
    assert dumped["priority"] == "High"
    assert dumped["sameParty"] is False
    assert restored == snapshot


def test_cookie_expiry_in_milliseconds_is_read_as_seconds():
    moment = datetime(2030, 3, 1, tzinfo=timezone.utc)
    cookie = SessionCookie(name="a", value="1", expires=moment.timestamp() * 1000)

    assert cookie.expires == moment.timestamp()
    assert compute_session_expiry(SessionSnapshot(cookies=[cookie])) == moment


def test_compute_session_expiry_with_unrepresentable_expiry_uses_default():
    now = datetime(2030, 1, 1, 12, tzinfo=timezone.utc)
    snapshot = SessionSnapshot(cookies=[SessionCookie(name="a", value="1", expires=1e20)])

    assert compute_session_expiry(snapshot, now=now) == now + timedelta(hours=24)
