"""
Typed views over the opaque upstream payloads.

Cached content is decoded once, at the cache boundary, into frozen dataclasses
with nullable fields. Malformed nested entries are skipped rather than
repaired; a payload missing its identifying block decodes to ``None``.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping

_DATETIME_REGEX = re.compile(r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}$")


def _get(data: Any, *path: str) -> Any:
    """Walk nested mappings, returning None on any missing step."""
    current = data
    for key in path:
        if not isinstance(current, Mapping):
            return None
        current = current.get(key)
    return current


def _coerce_string(value: Any) -> str | None:
    if value is None or isinstance(value, (dict, list)):
        return None
    token = str(value).strip()
    return token or None


def _entries(value: Any) -> list[Mapping[str, Any]]:
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, Mapping)]


def _parse_upstream_datetime(value: Any) -> datetime | None:
    """Parse ``YYYY-MM-DDTHH:MM:SS`` strictly; anything else is ignored."""
    token = _coerce_string(value)
    if token is None or not _DATETIME_REGEX.match(token):
        return None
    try:
        return datetime.strptime(token, "%Y-%m-%dT%H:%M:%S").replace(tzinfo=timezone.utc)
    except ValueError:
        return None


@dataclass(frozen=True)
class StructurePayload:
    id: str
    name: str | None = None
    parent_id: str | None = None
    responsible_id: str | None = None
    roster: tuple[str, ...] = ()

    @property
    def president(self) -> str | None:
        if self.responsible_id is None:
            return None
        return self.responsible_id.lstrip("0") or None


@dataclass(frozen=True)
class ContactEntry:
    channel: str
    value: str | None = None
    number: str | None = None


@dataclass(frozen=True)
class ActionEntry:
    structure_id: str | None = None
    action_id: str | None = None
    action_label: str | None = None
    group_id: str | None = None
    group_label: str | None = None


@dataclass(frozen=True)
class SkillEntry:
    id: str
    label: str | None = None


@dataclass(frozen=True)
class TrainingEntry:
    id: str
    code: str | None = None
    label: str | None = None
    refresh_due: datetime | None = None


@dataclass(frozen=True)
class NominationEntry:
    id: str
    short_label: str | None = None
    long_label: str | None = None


@dataclass(frozen=True)
class VolunteerPayload:
    user_id: str | None = None
    active: bool = False
    first_name: str | None = None
    last_name: str | None = None
    birthday: str | None = None
    favorite_contact_number: str | None = None
    contacts: tuple[ContactEntry, ...] = ()
    actions: tuple[ActionEntry, ...] = ()
    skills: tuple[SkillEntry, ...] = ()
    trainings: tuple[TrainingEntry, ...] = ()
    nominations: tuple[NominationEntry, ...] = ()
    structure_ids: tuple[str, ...] = field(default=(), repr=False)


def decode_roster(pages: Any) -> tuple[str, ...]:
    """Flatten roster pages (``list`` or ``content`` keyed) into ordered unique ids."""
    identifiers: dict[str, None] = {}
    for page in _entries(pages):
        rows = page.get("list")
        if rows is None:
            rows = page.get("content")
        for row in _entries(rows):
            identifier = _coerce_string(row.get("id"))
            if identifier:
                identifiers.setdefault(identifier, None)
    return tuple(identifiers)


def decode_structure(content: Mapping[str, Any] | None) -> StructurePayload | None:
    structure_id = _coerce_string(_get(content, "structure", "id"))
    if structure_id is None:
        return None
    return StructurePayload(
        id=structure_id,
        name=_coerce_string(_get(content, "structure", "libelle")),
        parent_id=_coerce_string(_get(content, "structure", "parent", "id")),
        responsible_id=_coerce_string(_get(content, "responsible", "responsableId")),
        roster=decode_roster(_get(content, "volunteers")),
    )


def _decode_contacts(raw: Any) -> tuple[ContactEntry, ...]:
    contacts = []
    for entry in _entries(raw):
        channel = _coerce_string(entry.get("moyenComId"))
        if channel is None:
            continue
        contacts.append(
            ContactEntry(
                channel=channel,
                value=_coerce_string(entry.get("libelle")),
                number=_coerce_string(entry.get("numero")),
            )
        )
    return tuple(contacts)


def _decode_actions(raw: Any) -> tuple[ActionEntry, ...]:
    return tuple(
        ActionEntry(
            structure_id=_coerce_string(_get(entry, "structure", "id")),
            action_id=_coerce_string(_get(entry, "action", "id")),
            action_label=_coerce_string(_get(entry, "action", "libelle")),
            group_id=_coerce_string(_get(entry, "groupeAction", "id")),
            group_label=_coerce_string(_get(entry, "groupeAction", "libelle")),
        )
        for entry in _entries(raw)
    )


def _decode_skills(raw: Any) -> tuple[SkillEntry, ...]:
    skills = []
    for entry in _entries(raw):
        skill_id = _coerce_string(entry.get("id"))
        if skill_id is not None:
            skills.append(SkillEntry(id=skill_id, label=_coerce_string(entry.get("libelle"))))
    return tuple(skills)


def _decode_trainings(raw: Any) -> tuple[TrainingEntry, ...]:
    trainings = []
    for entry in _entries(raw):
        training_id = _coerce_string(_get(entry, "formation", "id"))
        if training_id is None:
            continue
        trainings.append(
            TrainingEntry(
                id=training_id,
                code=_coerce_string(_get(entry, "formation", "code")),
                label=_coerce_string(_get(entry, "formation", "libelle")),
                refresh_due=_parse_upstream_datetime(entry.get("dateRecyclage")),
            )
        )
    return tuple(trainings)


def _decode_nominations(raw: Any) -> tuple[NominationEntry, ...]:
    nominations = []
    for entry in _entries(raw):
        nomination_id = _coerce_string(entry.get("id"))
        if nomination_id is None:
            continue
        nominations.append(
            NominationEntry(
                id=nomination_id,
                short_label=_coerce_string(entry.get("libelleCourt")),
                long_label=_coerce_string(entry.get("libelleLong")),
            )
        )
    return tuple(nominations)


def decode_volunteer(content: Mapping[str, Any] | None) -> VolunteerPayload | None:
    """
    Decode a volunteer detail payload.

    Returns None only when there is no payload at all; a payload without
    ``user.id`` decodes with ``user_id=None`` so callers can tell an invalid
    record from a never-fetched one.
    """
    if not isinstance(content, Mapping):
        return None
    actions = _decode_actions(content.get("actions"))
    structure_ids = tuple(dict.fromkeys(action.structure_id for action in actions if action.structure_id))
    return VolunteerPayload(
        user_id=_coerce_string(_get(content, "user", "id")),
        active=bool(_get(content, "user", "actif")),
        first_name=_coerce_string(_get(content, "user", "prenom")),
        last_name=_coerce_string(_get(content, "user", "nom")),
        birthday=_coerce_string(_get(content, "infos", "dateNaissance")),
        favorite_contact_number=_coerce_string(_get(content, "infos", "mailMoyenComId", "numero")),
        contacts=_decode_contacts(content.get("contact")),
        actions=actions,
        skills=_decode_skills(content.get("skills")),
        trainings=_decode_trainings(content.get("trainings")),
        nominations=_decode_nominations(content.get("nominations")),
        structure_ids=structure_ids,
    )
