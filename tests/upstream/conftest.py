from __future__ import annotations

import itertools
from datetime import datetime, timedelta, timezone
from typing import Any, Iterable

import pytest

from callout_app.models import Structure, UpstreamRecord, UpstreamRecordType, Volunteer, db
from callout_app.upstream.pipeline.curator import UpstreamCacheCurator
from callout_app.utils.upstream import get_upstream_settings


def structure_content(
    identifier: str,
    *,
    name: str | None = None,
    parent: str | None = None,
    responsible: str | None = None,
    roster: Iterable[str] = (),
) -> dict[str, Any]:
    content: dict[str, Any] = {
        "structure": {"id": identifier, "libelle": name or f"Structure {identifier}"},
        "volunteers": [{"list": [{"id": volunteer_id} for volunteer_id in roster]}],
    }
    if parent is not None:
        content["structure"]["parent"] = {"id": parent}
    if responsible is not None:
        content["responsible"] = {"responsableId": responsible}
    return content


def volunteer_content(
    identifier: str | None,
    *,
    active: bool = True,
    first_name: str = "jean",
    last_name: str = "DUPONT",
    birthday: str | None = "1980-05-12T00:00:00",
    contacts: Iterable[dict[str, Any]] = (),
    favorite: str | None = None,
    actions: Iterable[dict[str, Any]] = (),
    skills: Iterable[dict[str, Any]] = (),
    trainings: Iterable[dict[str, Any]] = (),
    nominations: Iterable[dict[str, Any]] = (),
) -> dict[str, Any]:
    user: dict[str, Any] = {"actif": active, "prenom": first_name, "nom": last_name}
    if identifier is not None:
        user["id"] = identifier
    infos: dict[str, Any] = {"dateNaissance": birthday}
    if favorite is not None:
        infos["mailMoyenComId"] = {"numero": favorite}
    return {
        "user": user,
        "infos": infos,
        "contact": list(contacts),
        "actions": list(actions),
        "skills": list(skills),
        "trainings": list(trainings),
        "nominations": list(nominations),
    }


def contact(channel: str, value: str, number: str | None = None) -> dict[str, Any]:
    return {"moyenComId": channel, "libelle": value, "numero": number or f"{channel}-1"}


class UpstreamCacheFactory:
    """Writes fetched payloads into the cache the way the fetch step would."""

    def __init__(self, curator: UpstreamCacheCurator):
        self.curator = curator

    def _record(self, record_type: UpstreamRecordType, identifier: str) -> UpstreamRecord:
        record = self.curator.find_record(record_type, identifier, only_enabled=False)
        if record is None:
            record = self.curator.create_record(record_type, identifier)
        return record

    def structure(self, identifier: str, **kwargs) -> UpstreamRecord:
        record = self._record(UpstreamRecordType.STRUCTURE, identifier)
        return self.curator.update_record(record, structure_content(identifier, **kwargs))

    def volunteer(self, identifier: str, *, parents: Iterable[str] = (), content: dict | None = None, **kwargs):
        record = self._record(UpstreamRecordType.VOLUNTEER, identifier)
        for parent in parents:
            record.add_parent(parent)
        if content is None:
            content = volunteer_content(record.identifier, **kwargs)
        return self.curator.update_record(record, content)


@pytest.fixture
def curator(app):
    """Curator whose clock moves a minute per fetch, so re-fetches never share a second."""
    ticks = itertools.count()
    start = datetime(2024, 5, 1, tzinfo=timezone.utc)
    return UpstreamCacheCurator(clock=lambda: start + timedelta(minutes=next(ticks)))


@pytest.fixture
def upstream_cache(curator):
    return UpstreamCacheFactory(curator)


@pytest.fixture
def settings(app):
    return get_upstream_settings(app)


@pytest.fixture
def make_structure(app):
    def _factory(external_id: str, *, name: str | None = None, parent: Structure | None = None, **fields) -> Structure:
        structure = Structure(platform="fr", external_id=external_id, name=name or f"Structure {external_id}", **fields)
        structure.parent_structure = parent
        db.session.add(structure)
        db.session.commit()
        return structure

    return _factory


@pytest.fixture
def make_volunteer(app):
    def _factory(external_id: str, **fields) -> Volunteer:
        fields.setdefault("first_name", "Test")
        fields.setdefault("last_name", f"Volunteer{external_id}")
        volunteer = Volunteer(platform="fr", external_id=external_id, report=[], **fields)
        db.session.add(volunteer)
        db.session.commit()
        return volunteer

    return _factory


@pytest.fixture
def build_structure():
    """Structure detail payload builder."""
    return structure_content


@pytest.fixture
def build_volunteer():
    """Volunteer detail payload builder."""
    return volunteer_content


@pytest.fixture
def build_contact():
    return contact
