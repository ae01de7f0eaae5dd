import pytest

from warden.models.enums import LoginStatus
from warden.services.classification import ClassificationRule
from warden.services.classification import ErrorMessageRule
from warden.services.classification import LoginAttemptOutcome
from warden.services.classification import Verdict
from warden.services.classification import classify_error_message
from warden.services.classification import default_login_classifier
from warden.services.classification import is_login_page


@pytest.mark.parametrize(
    "outcome, status, message",
    [
        (
            LoginAttemptOutcome("https://site.com/login?error=1", error_url_pattern="error="),
            LoginStatus.BROKEN,
            "Login failed - error page detected",
        ),
        (LoginAttemptOutcome("https://site.com/dashboard"), LoginStatus.ACTIVE, None),
        (LoginAttemptOutcome("https://site.com/login", has_two_factor=True), LoginStatus.ACTIVE, None),
        (LoginAttemptOutcome("https://site.com/login"), LoginStatus.BROKEN, "Login failed - still on login page"),
    ],
)
def test_default_login_rules(outcome, status, message):
    verdict = default_login_classifier.classify(outcome)

    assert verdict.status == status
    assert verdict.success is (status == LoginStatus.ACTIVE)
    assert verdict.error_message == message


def test_success_pattern_wins_over_error_pattern():
    outcome = LoginAttemptOutcome(
        "https://site.com/signin/done?error=0",
        success_url_pattern="/done",
        error_url_pattern="error=",
    )

    assert default_login_classifier.classify(outcome).status == LoginStatus.ACTIVE


def test_error_pattern_wins_over_two_factor():
    outcome = LoginAttemptOutcome("https://site.com/verify?error=1", has_two_factor=True, error_url_pattern="error=")

    assert default_login_classifier.classify(outcome).status == LoginStatus.BROKEN


def test_with_rule_inserts_before_named_rule():
    locked = ClassificationRule(
        name="locked_page",
        predicate=lambda o: "/locked" in o.url,
        verdict=Verdict(LoginStatus.SUSPENDED, False, "Account locked"),
    )
    classifier = default_login_classifier.with_rule(locked, before="left_login_page")

    verdict = classifier.classify(LoginAttemptOutcome("https://site.com/locked"))

    assert verdict.status == LoginStatus.SUSPENDED
    # The shared default classifier is unchanged
    assert default_login_classifier.classify(LoginAttemptOutcome("https://site.com/locked")).status == LoginStatus.ACTIVE


def test_with_rule_unknown_anchor():
    rule = ClassificationRule("x", lambda o: True, Verdict(LoginStatus.ACTIVE, True))

    with pytest.raises(KeyError):
        default_login_classifier.with_rule(rule, before="missing")


@pytest.mark.parametrize(
    "message, status",
    [
        ("Password EXPIRED, please reset", LoginStatus.EXPIRED),
        ("Invalid credentials supplied", LoginStatus.EXPIRED),
        ("Your account has been suspended", LoginStatus.SUSPENDED),
        ("Blocked by administrator", LoginStatus.SUSPENDED),
        ("Timeout 5000ms exceeded", LoginStatus.BROKEN),
        (None, LoginStatus.BROKEN),
    ],
)
def test_classify_error_message(message, status):
    assert classify_error_message(message) == status


def test_classify_error_message_custom_rules():
    rules = (ErrorMessageRule(("captcha",), LoginStatus.NEEDS_RECONNECT),)

    assert classify_error_message("Captcha shown", rules) == LoginStatus.NEEDS_RECONNECT
    assert classify_error_message("account suspended", rules) == LoginStatus.BROKEN


def test_is_login_page():
    assert is_login_page("https://site.com/auth/start")
    assert is_login_page("https://site.com/home", "Sign In - Site")
    assert not is_login_page("https://site.com/home", "Dashboard")
