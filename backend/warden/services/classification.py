"""Rule-based classification of what a target site showed us.

Third-party login pages are an inherently fuzzy signal.  Instead of
hard-coded branching, each decision is an ordered list of
``predicate → verdict`` rules evaluated top to bottom; the first match wins.
New site quirks are handled by inserting a rule, not by editing the
validator's control flow.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Callable
from typing import Iterable
from typing import Optional
from typing import Sequence
from typing import Tuple

from warden.constants import CREDENTIAL_LOGIN_URL_MARKERS
from warden.constants import LOGIN_TITLE_MARKERS
from warden.constants import LOGIN_URL_MARKERS
from warden.models.enums import LoginStatus


@dataclass(frozen=True)
class LoginAttemptOutcome:
    """Where a credential script left the browser."""

    url: str
    title: str = ""
    has_two_factor: bool = False
    success_url_pattern: Optional[str] = None
    error_url_pattern: Optional[str] = None


@dataclass(frozen=True)
class Verdict:
    status: LoginStatus
    success: bool
    error_message: Optional[str] = None


@dataclass(frozen=True)
class ClassificationRule:
    name: str
    predicate: Callable[[LoginAttemptOutcome], bool]
    verdict: Verdict


class OutcomeClassifier:
    """Evaluate *rules* in order; fall back to *fallback* when none match."""

    def __init__(self, rules: Sequence[ClassificationRule], fallback: Verdict):
        self.rules = list(rules)
        self.fallback = fallback

    def classify(self, outcome: LoginAttemptOutcome) -> Verdict:
        for rule in self.rules:
            if rule.predicate(outcome):
                return rule.verdict
        return self.fallback

    def with_rule(self, rule: ClassificationRule, *, before: Optional[str] = None) -> "OutcomeClassifier":
        """Return a copy with *rule* inserted before the rule named *before* (or appended)."""

        rules = list(self.rules)
        if before is None:
            rules.append(rule)
        else:
            names = [r.name for r in rules]
            if before not in names:
                raise KeyError(before)
            rules.insert(names.index(before), rule)
        return OutcomeClassifier(rules, self.fallback)


def _pattern_matches(pattern: Optional[str], url: str) -> bool:
    return bool(pattern) and re.search(pattern, url, re.IGNORECASE) is not None


def _contains_any(haystack: str, needles: Iterable[str]) -> bool:
    return any(needle in haystack for needle in needles)


# Order matters: success pattern, error pattern, 2FA prompt, left login page.
DEFAULT_LOGIN_RULES: Tuple[ClassificationRule, ...] = (
    ClassificationRule(
        name="success_url",
        predicate=lambda o: _pattern_matches(o.success_url_pattern, o.url),
        verdict=Verdict(LoginStatus.ACTIVE, True),
    ),
    ClassificationRule(
        name="error_url",
        predicate=lambda o: _pattern_matches(o.error_url_pattern, o.url),
        verdict=Verdict(LoginStatus.BROKEN, False, "Login failed - error page detected"),
    ),
    # Some accounts always stop at a verification prompt; that still proves
    # the credentials were accepted.
    ClassificationRule(
        name="two_factor_prompt",
        predicate=lambda o: o.has_two_factor,
        verdict=Verdict(LoginStatus.ACTIVE, True),
    ),
    ClassificationRule(
        name="left_login_page",
        predicate=lambda o: not _contains_any(o.url, CREDENTIAL_LOGIN_URL_MARKERS),
        verdict=Verdict(LoginStatus.ACTIVE, True),
    ),
)

STILL_ON_LOGIN_PAGE = Verdict(LoginStatus.BROKEN, False, "Login failed - still on login page")

default_login_classifier = OutcomeClassifier(DEFAULT_LOGIN_RULES, STILL_ON_LOGIN_PAGE)


# ---------------------------------------------------------------------------
# Error-message reclassification
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ErrorMessageRule:
    keywords: Tuple[str, ...]
    status: LoginStatus


DEFAULT_ERROR_RULES: Tuple[ErrorMessageRule, ...] = (
    ErrorMessageRule(("expired", "invalid credentials"), LoginStatus.EXPIRED),
    ErrorMessageRule(("suspended", "blocked"), LoginStatus.SUSPENDED),
)


def classify_error_message(
    message: Optional[str],
    rules: Sequence[ErrorMessageRule] = DEFAULT_ERROR_RULES,
    default: LoginStatus = LoginStatus.BROKEN,
) -> LoginStatus:
    """Map a failed step's error text onto a login status (case-insensitive)."""

    text = (message or "").lower()
    for rule in rules:
        if _contains_any(text, rule.keywords):
            return rule.status
    return default


# ---------------------------------------------------------------------------
# Login-page detection (session probes, reconnect completion)
# ---------------------------------------------------------------------------


def is_login_page(
    url: str,
    title: str = "",
    *,
    url_markers: Sequence[str] = LOGIN_URL_MARKERS,
    title_markers: Sequence[str] = LOGIN_TITLE_MARKERS,
) -> bool:
    """True when the URL or title looks like a sign-in screen."""

    return _contains_any(url, url_markers) or _contains_any((title or "").lower(), title_markers)


__all__ = [
    "ClassificationRule",
    "ErrorMessageRule",
    "LoginAttemptOutcome",
    "OutcomeClassifier",
    "Verdict",
    "DEFAULT_LOGIN_RULES",
    "DEFAULT_ERROR_RULES",
    "default_login_classifier",
    "classify_error_message",
    "is_login_page",
]
