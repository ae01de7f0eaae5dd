from datetime import datetime
from datetime import timedelta

import pytest

from tests.helpers.fake_browser import FakeBrowserDriver
from tests.helpers.fake_browser import FakeRoute
from warden.crud import crud
from warden.models.enums import LoginStatus
from warden.services.reconnect import ReconnectBrowser
from warden.services.reconnect import ReconnectError
from warden.services.reconnect import complete_reconnect
from warden.services.reconnect import start_reconnect
from warden.services.session_manager import decrypt_session
from warden.utils.time import as_naive_utc
from warden.utils.time import utc_now


@pytest.mark.asyncio
async def test_start_reconnect_flags_login(db_session, make_login):
    login = make_login(template_id="github", login_url="https://github.com/login")

    instructions = await start_reconnect(db_session, login.id)

    assert instructions.login_url == "https://github.com/login"
    assert instructions.reconnect_session_id.startswith(f"reconnect_{login.id}_")
    assert instructions.prefill_selectors == ['input[name="login"]', 'input[name="password"]']
    assert len(instructions.steps) == 3

    db_session.refresh(login)
    assert login.status == LoginStatus.NEEDS_RECONNECT
    assert login.error_message == "Reconnection in progress"


@pytest.mark.asyncio
async def test_start_reconnect_with_broken_config_has_no_hints(db_session, make_login):
    login = make_login(custom_config={"steps": [{"type": "hover"}]})

    instructions = await start_reconnect(db_session, login.id)

    assert instructions.prefill_selectors == []


@pytest.mark.asyncio
async def test_start_reconnect_missing_login(db_session):
    assert await start_reconnect(db_session, 404) is None


@pytest.mark.asyncio
async def test_complete_reconnect_stores_session(db_session, make_login, sample_snapshot):
    login = make_login()
    crud.update_login_status(db_session, login.id, status=LoginStatus.NEEDS_RECONNECT, success=False)
    crud.update_login_status(db_session, login.id, status=LoginStatus.NEEDS_RECONNECT, success=False)

    updated = await complete_reconnect(
        db_session,
        login.id,
        sample_snapshot.model_dump(by_alias=True),
        current_url="https://site.com/dashboard",
        page_title="Dashboard",
    )

    assert updated.status == LoginStatus.ACTIVE
    assert updated.failure_count == 0
    assert updated.error_message is None
    assert updated.session_expiry is not None
    assert decrypt_session(updated.session_data).local_storage == {"token": "t-1"}


@pytest.mark.asyncio
async def test_complete_reconnect_uses_latest_cookie_expiry(db_session, make_login, sample_snapshot):
    login = make_login()

    updated = await complete_reconnect(db_session, login.id, sample_snapshot, current_url="https://site.com/app")

    expected = utc_now() + timedelta(days=7)
    assert abs(updated.session_expiry - as_naive_utc(expected)) < timedelta(minutes=1)


@pytest.mark.asyncio
async def test_complete_reconnect_refuses_login_page(db_session, make_login, sample_snapshot):
    login = make_login()

    with pytest.raises(ReconnectError, match="Still on login page"):
        await complete_reconnect(db_session, login.id, sample_snapshot, current_url="https://site.com/signin")

    db_session.refresh(login)
    assert login.session_data is None


@pytest.mark.asyncio
async def test_complete_reconnect_requires_session(db_session, make_login):
    login = make_login()

    with pytest.raises(ReconnectError, match="Session data is required"):
        await complete_reconnect(db_session, login.id, None, current_url="https://site.com/app")


@pytest.mark.asyncio
async def test_complete_reconnect_rejects_malformed_session(db_session, make_login):
    login = make_login()

    with pytest.raises(ReconnectError, match="Invalid session data"):
        await complete_reconnect(db_session, login.id, {"cookies": "nope"}, current_url="https://site.com/app")


@pytest.mark.asyncio
async def test_complete_reconnect_accepts_millisecond_cookie_expiry(db_session, make_login):
    login = make_login()
    session = {"cookies": [{"name": "sid", "value": "x", "domain": ".site.com", "expires": 1_900_000_000_000}]}

    updated = await complete_reconnect(db_session, login.id, session, current_url="https://site.com/app")

    assert updated.status == LoginStatus.ACTIVE
    assert updated.session_expiry == datetime(2030, 3, 17, 17, 46, 40)


@pytest.mark.asyncio
async def test_complete_reconnect_with_absurd_cookie_expiry_still_succeeds(db_session, make_login):
    login = make_login()
    session = {"cookies": [{"name": "sid", "value": "x", "domain": ".site.com", "expires": 1e20}]}

    updated = await complete_reconnect(db_session, login.id, session, current_url="https://site.com/app")

    assert updated.status == LoginStatus.ACTIVE
    expected = as_naive_utc(utc_now() + timedelta(hours=24))
    assert abs(updated.session_expiry - expected) < timedelta(minutes=1)


# ------------------------------------------------------------------
# Server-side reconnect page
# ------------------------------------------------------------------

GITHUB_DASHBOARD = FakeRoute("https://github.com/dashboard", "Dashboard")


@pytest.mark.asyncio
async def test_start_reconnect_opens_prefilled_page(db_session, make_login):
    driver = FakeBrowserDriver()
    browser = ReconnectBrowser(driver)
    login = make_login(template_id="github", login_url="https://github.com/login")

    instructions = await start_reconnect(db_session, login.id, browser=browser)

    assert instructions.browser_opened is True
    assert browser.has_page(login.id)
    page = driver.pages[0]
    assert driver.goto_calls == ["https://github.com/login"]
    assert page.fills == [('input[name="login"]', "alice@example.com"), ('input[name="password"]', "hunter2")]
    assert not page.closed


@pytest.mark.asyncio
async def test_start_reconnect_survives_unreachable_site(db_session, make_login):
    driver = FakeBrowserDriver(goto_errors={"https://site.com/login": "net::ERR_CONNECTION_REFUSED"})
    browser = ReconnectBrowser(driver)
    login = make_login()

    instructions = await start_reconnect(db_session, login.id, browser=browser)

    assert instructions.browser_opened is False
    assert not browser.has_page(login.id)
    assert driver.all_released


@pytest.mark.asyncio
async def test_complete_reconnect_captures_from_open_page(db_session, make_login):
    driver = FakeBrowserDriver(storage={"localStorage": {"k": "v"}, "sessionStorage": {}, "userAgent": "Live/3.0"})
    browser = ReconnectBrowser(driver)
    login = make_login(template_id="github", login_url="https://github.com/login")
    await start_reconnect(db_session, login.id, browser=browser)

    page = driver.pages[0]
    # The user finishes the sign-in in the opened page
    driver._land(page, GITHUB_DASHBOARD)
    await driver.set_cookies(page, [{"name": "user_session", "value": "s", "domain": ".github.com", "path": "/"}])

    updated = await complete_reconnect(db_session, login.id, browser=browser)

    assert updated.status == LoginStatus.ACTIVE
    snapshot = decrypt_session(updated.session_data)
    assert [cookie.name for cookie in snapshot.cookies] == ["user_session"]
    assert snapshot.local_storage == {"k": "v"}
    assert snapshot.user_agent == "Live/3.0"
    assert not browser.has_page(login.id)
    assert driver.all_released


@pytest.mark.asyncio
async def test_complete_reconnect_keeps_page_while_still_signing_in(db_session, make_login):
    driver = FakeBrowserDriver(storage={})
    browser = ReconnectBrowser(driver)
    login = make_login(template_id="github", login_url="https://github.com/login")
    await start_reconnect(db_session, login.id, browser=browser)

    with pytest.raises(ReconnectError, match="Still on login page"):
        await complete_reconnect(db_session, login.id, browser=browser)

    assert browser.has_page(login.id)
    assert not driver.pages[0].closed

    await browser.close_all()
    assert driver.all_released
