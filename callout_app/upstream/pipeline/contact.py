"""
Contact-info selection: which upstream phone numbers and email win.

Phone numbers are normalized to E.164 for the volunteer's region. A number
already owned by an enabled volunteer is never taken; one owned by a
disabled volunteer is reclaimed.
"""

from __future__ import annotations

import logging
import re
from typing import Iterable, Sequence

from email_validator import EmailNotValidError, validate_email
from sqlalchemy import select
from sqlalchemy.orm import Session

from callout_app.models import Phone, Volunteer, db
from callout_app.upstream.payloads import ContactEntry

logger = logging.getLogger(__name__)

# Channel codes in priority order; the work line comes last.
PHONE_CHANNELS = ("POR", "PORT", "PORE", "TELDOM", "TELTRAV")
EMAIL_CHANNELS = ("MAIL", "MAILDOM", "MAILTRAV")

_E164_REGEX = re.compile(r"^\+[1-9]\d{7,14}$")
_EXTENSION_REGEX = re.compile(r"\s*(x|ext|extension|#)\s*\d+.*$", re.IGNORECASE)

# region -> (country calling code, national significant number length, trunk prefix)
_NUMBERING_PLANS = {
    "FR": ("33", 9, "0"),
    "BE": ("32", 9, "0"),
    "CH": ("41", 9, "0"),
    "GB": ("44", 10, "0"),
    "DE": ("49", 10, "0"),
    "ES": ("34", 9, ""),
    "IT": ("39", 10, ""),
    "US": ("1", 10, "1"),
    "CA": ("1", 10, "1"),
}


class PhoneNumberParseError(ValueError):
    """Raised when a value cannot be read as a phone number for the region."""

    def __init__(self, value: object, region: str) -> None:
        super().__init__(f"Cannot parse {value!r} as a phone number for region {region}")
        self.value = value
        self.region = region


def normalize_phone(value: object | None, region: str = "FR") -> str:
    """
    Normalize a phone number to strict E.164 (+<country><number>).

    National numbers are read with the region's numbering plan (trunk prefix
    dropped, calling code prepended). Extensions are stripped.

    Raises:
        PhoneNumberParseError: the value is empty or does not fit the plan.
    """
    region = (region or "FR").upper()
    plan = _NUMBERING_PLANS.get(region)
    if plan is None:
        raise PhoneNumberParseError(value, region)
    calling_code, national_length, trunk_prefix = plan

    token = "" if value is None else str(value).strip()
    token = _EXTENSION_REGEX.sub("", token).strip()
    if not token:
        raise PhoneNumberParseError(value, region)

    token = token.replace(" ", "").replace("-", "").replace("(", "").replace(")", "").replace(".", "").replace("/", "")
    if token.startswith("00"):
        token = f"+{token[2:]}"

    international = token.startswith("+")
    digits = token[1:] if international else token
    if not digits.isdigit():
        raise PhoneNumberParseError(value, region)

    if international:
        normalized = f"+{digits}"
    elif trunk_prefix and len(digits) == national_length + len(trunk_prefix) and digits.startswith(trunk_prefix):
        normalized = f"+{calling_code}{digits[len(trunk_prefix):]}"
    elif len(digits) == national_length:
        normalized = f"+{calling_code}{digits}"
    elif len(digits) == len(calling_code) + national_length and digits.startswith(calling_code):
        normalized = f"+{digits}"
    else:
        raise PhoneNumberParseError(value, region)

    if not _E164_REGEX.match(normalized):
        raise PhoneNumberParseError(value, region)
    return normalized


def _channel_rank(channels: Sequence[str], entry: ContactEntry) -> int:
    return channels.index(entry.channel)


def phone_candidates(contacts: Iterable[ContactEntry]) -> list[ContactEntry]:
    """Whitelisted phone entries, highest priority first."""
    filtered = [entry for entry in contacts if entry.channel in PHONE_CHANNELS and entry.value]
    return sorted(filtered, key=lambda entry: _channel_rank(PHONE_CHANNELS, entry))


def _looks_like_email(value: str | None) -> bool:
    if not value:
        return False
    try:
        validate_email(value, check_deliverability=False)
    except EmailNotValidError:
        return False
    return True


def select_email(
    contacts: Iterable[ContactEntry],
    *,
    favorite_number: str | None = None,
    organizational_domains: Iterable[str] = (),
) -> str | None:
    """
    Pick the canonical email among upstream contact entries.

    The volunteer's favorite contact method wins when it is a valid email
    entry. Otherwise addresses on an organizational domain sort last, then
    channel priority decides.
    """
    candidates = [
        entry for entry in contacts if entry.channel in EMAIL_CHANNELS and _looks_like_email(entry.value)
    ]
    if favorite_number:
        for entry in candidates:
            if entry.number == favorite_number:
                return entry.value

    domains = tuple(domain.lower() for domain in organizational_domains)

    def _sort_key(entry: ContactEntry) -> tuple[int, int]:
        address = entry.value.lower()
        organizational = any(domain in address for domain in domains)
        return (1 if organizational else 0, _channel_rank(EMAIL_CHANNELS, entry))

    candidates.sort(key=_sort_key)
    if not candidates:
        return None
    return candidates[0].value


class PhoneResolver:
    """Attaches upstream phone numbers to a volunteer, honoring ownership."""

    def __init__(self, session: Session | None = None, *, region: str = "FR"):
        self.session = session or db.session
        self.region = region

    def find_phone(self, e164: str) -> Phone | None:
        return self.session.scalars(select(Phone).where(Phone.e164 == e164)).first()

    def resolve(self, volunteer: Volunteer, contacts: Iterable[ContactEntry]) -> list[str]:
        """
        Attach every usable candidate number to ``volunteer``.

        Returns:
            list[str]: numbers newly attached during this call.
        """
        attached: list[str] = []
        for entry in phone_candidates(contacts):
            try:
                e164 = normalize_phone(entry.value, self.region)
            except PhoneNumberParseError:
                logger.debug(
                    "Skipping unparsable phone number",
                    extra={"volunteer_external_id": volunteer.external_id, "phone_channel": entry.channel},
                )
                continue

            if volunteer.has_phone_number(e164):
                continue

            existing = self.find_phone(e164)
            if existing is not None and existing.volunteer is not volunteer:
                holder = existing.volunteer
                if holder is not None and holder.enabled:
                    logger.info(
                        "Phone number already owned by an enabled volunteer",
                        extra={
                            "volunteer_external_id": volunteer.external_id,
                            "phone_holder_external_id": holder.external_id,
                        },
                    )
                    continue
                if holder is not None:
                    holder.remove_phone(existing)
                    self.session.add(holder)
                    logger.info(
                        "Reclaiming phone number from a disabled volunteer",
                        extra={
                            "volunteer_external_id": volunteer.external_id,
                            "phone_holder_external_id": holder.external_id,
                        },
                    )
                else:
                    self.session.delete(existing)
                # The unique number must be released before it is re-inserted
                self.session.flush()

            volunteer.add_phone(e164)
            attached.append(e164)
        return attached
