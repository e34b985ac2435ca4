import pytest

from callout_app.utils.upstream import UpstreamSettings, get_upstream_settings, is_upstream_sync_enabled
from config.base import _coerce_bool, _parse_int, _parse_list
from config.validation import validate_environment


@pytest.mark.parametrize(
    ("value", "expected"),
    [("1", True), ("yes", True), ("ON", True), ("0", False), ("off", False), ("maybe", False), (None, False)],
)
def test_coerce_bool(value, expected):
    assert _coerce_bool(value) is expected


def test_parse_list_dedupes_and_lowercases():
    assert _parse_list("Croix-Rouge.fr, example.org,croix-rouge.fr,") == ("croix-rouge.fr", "example.org")
    assert _parse_list("") == ()


def test_parse_int_falls_back_and_clamps():
    assert _parse_int("21", 18) == 21
    assert _parse_int("abc", 18) == 18
    assert _parse_int("-5", 18) == 0


def test_settings_read_from_app_config(app):
    app.config.update(
        UPSTREAM_PLATFORM="BE",
        UPSTREAM_PHONE_LOCALE="be",
        UPSTREAM_ORGANIZATIONAL_EMAIL_DOMAINS=("Croix-Rouge.be",),
        UPSTREAM_MINOR_AGE=16,
    )

    settings = get_upstream_settings(app)

    assert settings.platform == "be"
    assert settings.phone_locale == "BE"
    assert settings.organizational_email_domains == ("croix-rouge.be",)
    assert settings.minor_age == 16
    assert settings.admin_badge == "RTMR"


def test_settings_defaults_without_app_context(monkeypatch):
    monkeypatch.setattr("callout_app.utils.upstream.has_app_context", lambda: False)

    assert get_upstream_settings() == UpstreamSettings()
    assert is_upstream_sync_enabled() is False


def test_production_validation_reports_missing_values(monkeypatch):
    monkeypatch.delenv("SECRET_KEY", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)
    monkeypatch.setenv("UPSTREAM_SYNC_ENABLED", "true")
    monkeypatch.delenv("CELERY_BROKER_URL", raising=False)
    monkeypatch.setenv("UPSTREAM_MINOR_AGE", "eighteen")

    is_valid, errors = validate_environment("production")

    assert not is_valid
    assert len(errors) == 4
    assert validate_environment("development") == (True, [])
