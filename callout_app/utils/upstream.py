"""
Utility helpers for upstream reconciliation settings.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Tuple

from flask import current_app, has_app_context

DEFAULT_PLATFORM = "fr"
DEFAULT_PHONE_LOCALE = "FR"
DEFAULT_ADMIN_BADGE = "RTMR"
DEFAULT_ORGANIZATIONAL_EMAIL_DOMAINS = ("croix-rouge.fr",)
DEFAULT_MINOR_AGE = 18
DEFAULT_TRAINING_VALIDITY_MONTHS = 6


@dataclass(frozen=True)
class UpstreamSettings:
    platform: str = DEFAULT_PLATFORM
    phone_locale: str = DEFAULT_PHONE_LOCALE
    admin_badge: str = DEFAULT_ADMIN_BADGE
    organizational_email_domains: Tuple[str, ...] = DEFAULT_ORGANIZATIONAL_EMAIL_DOMAINS
    minor_age: int = DEFAULT_MINOR_AGE
    training_validity_months: int = DEFAULT_TRAINING_VALIDITY_MONTHS


def _get_config(app=None):
    if app is not None:
        return app.config
    if has_app_context():
        return current_app.config
    return {}


def is_upstream_sync_enabled(app=None) -> bool:
    """Return True when the upstream reconciliation feature flag is enabled."""
    config = _get_config(app)
    return bool(config.get("UPSTREAM_SYNC_ENABLED", False))


def get_upstream_settings(app=None) -> UpstreamSettings:
    """Resolve reconciliation settings from config, with defaults outside an app context."""
    config = _get_config(app)
    domains: Iterable[str] = config.get("UPSTREAM_ORGANIZATIONAL_EMAIL_DOMAINS", DEFAULT_ORGANIZATIONAL_EMAIL_DOMAINS)
    return UpstreamSettings(
        platform=str(config.get("UPSTREAM_PLATFORM", DEFAULT_PLATFORM)).lower(),
        phone_locale=str(config.get("UPSTREAM_PHONE_LOCALE", DEFAULT_PHONE_LOCALE)).upper(),
        admin_badge=str(config.get("UPSTREAM_ADMIN_BADGE", DEFAULT_ADMIN_BADGE)),
        organizational_email_domains=tuple(domain.lower() for domain in domains),
        minor_age=int(config.get("UPSTREAM_MINOR_AGE", DEFAULT_MINOR_AGE)),
        training_validity_months=int(config.get("UPSTREAM_TRAINING_VALIDITY_MONTHS", DEFAULT_TRAINING_VALIDITY_MONTHS)),
    )
