"""FastAPI dependencies for the shared browser driver and the services using it.

The driver lives on ``app.state.browser_driver``; it is created and closed
by :mod:`warden.main`.  Tests install a fake driver on the same attribute.
"""

from __future__ import annotations

from fastapi import Depends
from fastapi import HTTPException
from fastapi import Request
from fastapi import status

from warden.browser.driver import BrowserDriver
from warden.managers.agent_runner import AgentRunner
from warden.services.login_health import LoginHealthChecker
from warden.services.reconnect import ReconnectBrowser


def get_browser_driver(request: Request) -> BrowserDriver:
    driver = getattr(request.app.state, "browser_driver", None)
    if driver is None:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Browser driver not available")
    return driver


def get_health_checker(driver: BrowserDriver = Depends(get_browser_driver)) -> LoginHealthChecker:
    return LoginHealthChecker(driver)


def get_agent_runner(driver: BrowserDriver = Depends(get_browser_driver)) -> AgentRunner:
    return AgentRunner(driver)


def get_reconnect_browser(request: Request, driver: BrowserDriver = Depends(get_browser_driver)) -> ReconnectBrowser:
    """Reconnect pages live across requests, so one holder is kept per driver."""
    browser = getattr(request.app.state, "reconnect_browser", None)
    if browser is None or browser.driver is not driver:
        browser = ReconnectBrowser(driver)
        request.app.state.reconnect_browser = browser
    return browser
