import pytest
from sqlalchemy import event

from callout_app.models import Structure, Volunteer, db
from callout_app.upstream.pipeline.curator import UnknownUpstreamType, UpstreamRecordNotFound
from callout_app.upstream.pipeline.outcomes import ReconcileOutcome
from callout_app.upstream.pipeline.refresh import FINALISATION_UNITS, UpstreamRefreshService


@pytest.fixture
def write_statements(app):
    """Collects INSERT/UPDATE/DELETE statements while active."""
    statements: list[str] = []
    engine = db.engine

    def _before_cursor_execute(conn, cursor, statement, parameters, context, executemany):
        if statement.lstrip().split(" ", 1)[0].upper() in {"INSERT", "UPDATE", "DELETE"}:
            statements.append(statement)

    event.listen(engine, "before_cursor_execute", _before_cursor_execute)
    yield statements
    event.remove(engine, "before_cursor_execute", _before_cursor_execute)


def _seed(upstream_cache, build_contact):
    upstream_cache.structure("S0", name="Departement")
    upstream_cache.structure("S1", name="Unite locale", parent="S0", roster=["V100", "V101"])
    upstream_cache.volunteer("V100", contacts=[build_contact("POR", "06 12 34 56 78")], skills=[{"id": 1, "libelle": "PSE1"}])
    upstream_cache.volunteer("V101", active=False)


def test_single_pass_materializes_roster(upstream_cache):
    upstream_cache.structure("S1", roster=["V100"])
    upstream_cache.volunteer("V100")

    summary = UpstreamRefreshService().refresh()

    structure = db.session.query(Structure).filter_by(external_id="S1").one()
    volunteer = db.session.query(Volunteer).filter_by(external_id="V100").one()
    assert volunteer.structures == [structure]
    assert summary.structures.count(ReconcileOutcome.CREATED) == 1
    assert summary.volunteers.count(ReconcileOutcome.CREATED) == 1


def test_second_pass_writes_nothing(upstream_cache, build_contact, write_statements):
    _seed(upstream_cache, build_contact)
    service = UpstreamRefreshService()
    service.refresh()
    write_statements.clear()

    summary = service.refresh()

    assert write_statements == []
    assert summary.structures.count(ReconcileOutcome.UNCHANGED) == 2
    assert summary.parent_structures.count(ReconcileOutcome.LINKED) == 0
    assert summary.volunteers.count(ReconcileOutcome.UNCHANGED) == 1
    assert summary.volunteers.count(ReconcileOutcome.DISABLED) == 1


def test_locked_volunteer_second_pass_writes_nothing(upstream_cache, build_contact, write_statements):
    _seed(upstream_cache, build_contact)
    service = UpstreamRefreshService()
    service.refresh()
    volunteer = db.session.query(Volunteer).filter_by(external_id="V100").one()
    volunteer.locked = True
    db.session.commit()
    service.refresh()
    write_statements.clear()

    summary = service.refresh()

    assert write_statements == []
    assert summary.volunteers.count(ReconcileOutcome.UPDATE_LOCKED) == 1
    assert db.session.get(Volunteer, volunteer.id).report == ["update_locked"]


def test_forced_pass_reapplies_everything(upstream_cache, build_contact):
    _seed(upstream_cache, build_contact)
    service = UpstreamRefreshService()
    service.refresh()

    summary = service.refresh(force=True)

    assert summary.structures.count(ReconcileOutcome.UPDATED) == 2
    assert summary.volunteers.count(ReconcileOutcome.UPDATED) == 1
    assert summary.to_dict()["force"] is True


def test_failing_record_does_not_abort_pass(upstream_cache, monkeypatch):
    upstream_cache.structure("S1", roster=["1", "2"])
    upstream_cache.volunteer("1")
    upstream_cache.volunteer("2")
    service = UpstreamRefreshService()
    original = service.volunteers.apply_payload

    def _apply(volunteer, payload):
        if volunteer.external_id == "1":
            raise RuntimeError("upstream noise")
        return original(volunteer, payload)

    monkeypatch.setattr(service.volunteers, "apply_payload", _apply)

    summary = service.refresh()

    assert summary.volunteers.failed_records == 1
    assert summary.volunteers.count(ReconcileOutcome.CREATED) == 1
    assert db.session.query(Volunteer).filter_by(external_id="2").one()
    assert db.session.query(Volunteer).filter_by(external_id="1").one_or_none() is None


def test_refresh_async_dispatches_one_unit_per_record(upstream_cache):
    upstream_cache.structure("S1", roster=["V100"])
    upstream_cache.volunteer("V100")
    dispatched = []

    count = UpstreamRefreshService().refresh_async(force=True, dispatch=dispatched.append)

    assert count == 5
    assert dispatched[:2] == [
        {"record_type": "structure", "identifier": "S1", "force": True},
        {"record_type": "volunteer", "identifier": "00000000V100", "force": True},
    ]
    assert [unit["record_type"] for unit in dispatched[2:]] == list(FINALISATION_UNITS)


def test_refresh_async_defaults_to_celery_task(upstream_cache, monkeypatch):
    from callout_app.upstream import tasks

    upstream_cache.structure("S1")
    calls = []
    monkeypatch.setattr(tasks.sync_one_task, "apply_async", lambda kwargs=None, **options: calls.append(kwargs))

    assert UpstreamRefreshService().refresh_async() == 4
    assert calls[0] == {"record_type": "structure", "identifier": "S1", "force": False}


def test_sync_one_units(upstream_cache):
    upstream_cache.structure("S0")
    upstream_cache.structure("S1", parent="S0", roster=["V100"])
    upstream_cache.volunteer("V100")
    service = UpstreamRefreshService()

    assert service.sync_one("structure", "S0")["outcome"] == "created"
    assert service.sync_one("structure", "S1")["outcome"] == "created"
    assert service.sync_one("volunteer", "V100") == {"unit": "volunteer", "identifier": "00000000V100", "outcome": "created"}
    links = service.sync_one("parent_structures")
    assert links["counters"]["linked"] == 1
    assert service.sync_one("sync_structures") == {"unit": "sync_structures", "disabled": 0}
    assert service.sync_one("sync_volunteers") == {"unit": "sync_volunteers", "disabled": 0}


def test_sync_one_errors(upstream_cache):
    service = UpstreamRefreshService()

    with pytest.raises(UnknownUpstreamType):
        service.sync_one("badge", "1")
    with pytest.raises(UpstreamRecordNotFound):
        service.sync_one("structure", "missing")
