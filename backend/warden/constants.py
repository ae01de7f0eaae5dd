# ---------------------------------------------------------------------------
# NOTE: This module is imported pretty much **everywhere** so we avoid any
# heavyweight dependencies or side-effects here.
# ---------------------------------------------------------------------------

from typing import Final
from typing import Tuple

# Base API prefix (all HTTP routes are served under /api/*)
API_PREFIX: Final = "/api"

# Router prefixes (relative to API_PREFIX)
LOGINS_PREFIX: Final = "/logins"
LOGIN_TEMPLATES_PREFIX: Final = "/login-templates"
AGENTS_PREFIX: Final = "/agents"

# ---------------------------------------------------------------------------
# Browser defaults
# ---------------------------------------------------------------------------

DEFAULT_USER_AGENT: Final = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
DEFAULT_VIEWPORT: Final = {"width": 1280, "height": 720}

# Timeout for the first navigation of an agent script / reconnect page
NAVIGATION_TIMEOUT_MS: Final = 30_000

# ---------------------------------------------------------------------------
# Login-page heuristics
# ---------------------------------------------------------------------------

# Substrings of the landing URL that mean "still on a login page"
LOGIN_URL_MARKERS: Tuple[str, ...] = ("login", "signin", "auth")
# Substrings of the (lower-cased) page title with the same meaning
LOGIN_TITLE_MARKERS: Tuple[str, ...] = ("sign in", "log in")

# Markers checked after a credential script completed
CREDENTIAL_LOGIN_URL_MARKERS: Tuple[str, ...] = ("login", "signin")

# Visible two-factor / verification inputs
TWO_FACTOR_SELECTOR: Final = 'input[type="tel"], #totpPin, [data-primary-action="verify"], input[name="totp"]'
# Session probes also treat a generic "code" input as a verification prompt
SESSION_TWO_FACTOR_SELECTOR: Final = TWO_FACTOR_SELECTOR + ', input[name="code"]'

# Default lifetime of a captured session whose cookies carry no expiry
DEFAULT_SESSION_LIFETIME_HOURS: Final = 24

# Development user every API request acts as
DEV_EMAIL: Final = "dev@local"


# Sets an input's value and fires input/change so framework listeners see it
FILL_INPUT_SCRIPT: Final = """
([selector, value]) => {
  const element = document.querySelector(selector);
  if (element) {
    element.focus();
    element.value = '';
    element.value = value;
    element.dispatchEvent(new Event('input', { bubbles: true }));
    element.dispatchEvent(new Event('change', { bubbles: true }));
  }
}
"""
