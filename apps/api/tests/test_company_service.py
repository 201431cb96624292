from __future__ import annotations

import uuid
from collections.abc import Generator

import pytest
from prometheus_client import REGISTRY
from sqlalchemy import create_engine, select
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app import audit, events
from app.company.models import Company, CompanyContact, Project
from app.company.repository import ContactRepository, ProjectRepository
from app.company.schemas import CompanyCreate, ContactCreate, ContactUpdate, ProjectCreate
from app.company.service import CompanyService, ContactService, ProjectService
from app.core.database import Base
from app.core.errors import ConflictError, ForbiddenError, InternalError, NotFoundError, UnauthorizedError
from app.platform.pagination import PageRequest
from app.platform.security.context import CallerContext


ADMIN = CallerContext.of("admin@example.com", ["ADMIN"], correlation_id="svc-corr-1")
USER = CallerContext.of("user@example.com", ["USER"])
ANONYMOUS = CallerContext.of(None)


@pytest.fixture()
def db_session() -> Generator[Session, None, None]:
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clear_stubs() -> Generator[None, None, None]:
    audit.audit_entries.clear()
    events.published_events.clear()
    yield
    audit.audit_entries.clear()
    events.published_events.clear()


@pytest.fixture()
def company_id(db_session: Session) -> uuid.UUID:
    company = Company(name="Acme")
    db_session.add(company)
    db_session.commit()
    return company.id


class _NoDemotionContactRepository(ContactRepository):
    def demote_primary(self, session: Session, company_id: uuid.UUID, *, exclude_id: uuid.UUID | None = None) -> int:
        return 0


class _BlindProjectRepository(ProjectRepository):
    def name_taken(self, session: Session, company_id: uuid.UUID, name_key: str, *, exclude_id: uuid.UUID | None = None) -> bool:
        return False


class _BrokenProjectRepository(ProjectRepository):
    def list_page(self, session, company_id, page_request):  # type: ignore[no-untyped-def]
        raise OperationalError("SELECT 1", {}, Exception("connection lost"))


def _conflict_count(resource: str, reason: str) -> float:
    value = REGISTRY.get_sample_value(
        "company_invariant_conflicts_total",
        {"resource": resource, "reason": reason},
    )
    return value or 0.0


def test_create_company_requires_admin(db_session: Session) -> None:
    service = CompanyService()

    with pytest.raises(ForbiddenError):
        service.create_company(db_session, USER, CompanyCreate(name="Acme"))
    with pytest.raises(UnauthorizedError):
        service.create_company(db_session, ANONYMOUS, CompanyCreate(name="Acme"))

    created = service.create_company(db_session, ADMIN, CompanyCreate(name="  Initech "))
    assert created.name == "Initech"
    assert service.get_company(db_session, USER, created.id).id == created.id
    assert events.published_events[-1]["event_type"] == "company.created"
    assert audit.entries_for("company", str(created.id))[0]["correlation_id"] == "svc-corr-1"

    with pytest.raises(NotFoundError):
        service.get_company(db_session, USER, uuid.uuid4())


def test_list_companies_orders_by_name(db_session: Session) -> None:
    service = CompanyService()
    for name in ["Umbrella", "Acme", "Globex"]:
        service.create_company(db_session, ADMIN, CompanyCreate(name=name))

    page = service.list_companies(db_session, USER, PageRequest(page=0, size=2))
    assert [item.name for item in page.items] == ["Acme", "Globex"]
    assert page.total_elements == 3
    assert page.total_pages == 2


def test_storage_index_backs_single_primary(db_session: Session, company_id: uuid.UUID) -> None:
    service = ContactService(contact_repository=_NoDemotionContactRepository())
    service.create_contact(db_session, USER, company_id, ContactCreate(first_name="Ann", last_name="Lee", is_primary=True))
    before = _conflict_count("company.contact", "primary_contact")

    with pytest.raises(ConflictError) as exc_info:
        service.create_contact(db_session, USER, company_id, ContactCreate(first_name="Bob", last_name="Lee", is_primary=True))

    assert exc_info.value.message == "company already has a primary contact"
    assert _conflict_count("company.contact", "primary_contact") == before + 1
    primaries = db_session.scalars(select(CompanyContact).where(CompanyContact.is_primary.is_(True))).all()
    assert len(primaries) == 1
    assert primaries[0].first_name == "Ann"
    assert [entry["action"] for entry in audit.audit_entries] == ["create"]


def test_storage_constraint_backs_unique_project_name(db_session: Session, company_id: uuid.UUID) -> None:
    service = ProjectService(project_repository=_BlindProjectRepository())
    service.create_project(db_session, ADMIN, company_id, ProjectCreate(name="Alpha"))

    with pytest.raises(ConflictError):
        service.create_project(db_session, ADMIN, company_id, ProjectCreate(name="ALPHA"))

    assert db_session.scalar(select(Project).where(Project.name_key == "alpha")) is not None
    assert len(db_session.scalars(select(Project)).all()) == 1


def test_storage_failure_becomes_internal_error(db_session: Session, company_id: uuid.UUID) -> None:
    service = ProjectService(project_repository=_BrokenProjectRepository())

    with pytest.raises(InternalError) as exc_info:
        service.list_projects_by_company(db_session, USER, company_id, PageRequest())

    assert exc_info.value.status_code == 500
    assert "connection lost" not in exc_info.value.message


def test_demotion_updates_every_previous_primary(db_session: Session, company_id: uuid.UUID) -> None:
    service = ContactService()
    first = service.create_contact(db_session, USER, company_id, ContactCreate(first_name="Ann", last_name="Lee", is_primary=True))
    second = service.create_contact(db_session, USER, company_id, ContactCreate(first_name="Bob", last_name="Lee"))

    promoted = service.update_contact(db_session, USER, company_id, second.id, ContactUpdate(is_primary=True))
    assert promoted.is_primary is True
    assert service.get_contact(db_session, USER, company_id, first.id).is_primary is False
    assert service.get_primary_contact(db_session, USER, company_id).id == second.id

    unchanged = service.update_contact(db_session, USER, company_id, second.id, ContactUpdate(is_primary=True))
    assert unchanged.row_version == promoted.row_version


def test_unauthenticated_caller_cannot_probe_companies(db_session: Session, company_id: uuid.UUID) -> None:
    contacts = ContactService()
    projects = ProjectService()

    for target in [company_id, uuid.uuid4()]:
        with pytest.raises(UnauthorizedError):
            contacts.list_contacts(db_session, ANONYMOUS, target, PageRequest())
        with pytest.raises(UnauthorizedError):
            projects.get_project_by_name(db_session, ANONYMOUS, target, "Alpha")
        with pytest.raises(ForbiddenError):
            projects.create_project(db_session, USER, target, ProjectCreate(name="Alpha"))


def test_list_for_caller_matches_identity_exactly(db_session: Session, company_id: uuid.UUID) -> None:
    service = ProjectService()
    service.create_project(db_session, ADMIN, company_id, ProjectCreate(name="Alpha"))
    shouting_admin = CallerContext.of("ADMIN@example.com", ["ADMIN"])

    assert service.list_projects_for_caller(db_session, ADMIN, PageRequest()).total_elements == 1
    assert service.list_projects_for_caller(db_session, shouting_admin, PageRequest()).total_elements == 0


def test_audit_entries_list_changed_fields(db_session: Session, company_id: uuid.UUID) -> None:
    service = ContactService()
    contact = service.create_contact(db_session, USER, company_id, ContactCreate(first_name="Ann", last_name="Lee"))
    service.update_contact(db_session, USER, company_id, contact.id, ContactUpdate(title="CTO", row_version=contact.row_version))

    entries = audit.entries_for_company(str(company_id))
    assert [entry["action"] for entry in entries] == ["create", "update"]
    assert "row_version" in entries[1]["changed_fields"]
    assert "title" in entries[1]["changed_fields"]
    assert "first_name" not in entries[1]["changed_fields"]
    assert audit.entries_for_company(str(uuid.uuid4())) == []


def test_case_folded_project_name_may_exceed_name_length(db_session: Session, company_id: uuid.UUID) -> None:
    service = ProjectService()
    long_name = "ß" * 255

    created = service.create_project(db_session, ADMIN, company_id, ProjectCreate(name=long_name))

    stored = db_session.get(Project, created.id)
    assert stored is not None
    assert stored.name == long_name
    assert len(stored.name_key) == 510
    assert Project.__table__.c.name_key.type.length is None
    with pytest.raises(ConflictError):
        service.create_project(db_session, ADMIN, company_id, ProjectCreate(name="SS" * 100 + "ß" * 155))


def test_delete_records_before_snapshot_and_event(db_session: Session, company_id: uuid.UUID) -> None:
    contacts = ContactService()
    projects = ProjectService()
    contact = contacts.create_contact(db_session, USER, company_id, ContactCreate(first_name="Ann", last_name="Lee"))
    project = projects.create_project(db_session, ADMIN, company_id, ProjectCreate(name="Alpha"))

    contacts.delete_contact(db_session, USER, company_id, contact.id)
    projects.delete_project(db_session, ADMIN, company_id, project.id)

    contact_delete = audit.entries_for("company.contact", str(contact.id))[-1]
    project_delete = audit.entries_for("company.project", str(project.id))[-1]
    assert contact_delete["action"] == project_delete["action"] == "delete"
    assert contact_delete["after"] is None
    assert contact_delete["before"]["id"] == str(contact.id)
    assert project_delete["company_id"] == str(company_id)
    assert [event["event_type"] for event in events.published_events][-2:] == [
        "company.contact.deleted",
        "company.project.deleted",
    ]


def test_in_memory_audit_and_event_buffers_are_bounded() -> None:
    assert audit.audit_entries.maxlen == audit.MAX_AUDIT_ENTRIES
    assert events.published_events.maxlen == events.MAX_PUBLISHED_EVENTS

    for index in range(audit.MAX_AUDIT_ENTRIES + 5):
        audit.record("admin@example.com", "company", str(index), "create", None, {"n": index})

    assert len(audit.audit_entries) == audit.MAX_AUDIT_ENTRIES
    assert audit.audit_entries[0]["entity_id"] == "5"
