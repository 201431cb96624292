from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app import audit, events
from app.company.models import Company, CompanyContact, Project, project_name_key
from app.company.repository import CompanyRepository, ContactRepository, ProjectRepository
from app.company.schemas import (
    CompanyCreate,
    CompanyRead,
    ContactCreate,
    ContactRead,
    ContactUpdate,
    ProjectCreate,
    ProjectRead,
    ProjectUpdate,
)
from app.core.errors import ConflictError, InternalError, InvalidInputError, NotFoundError, ServiceError
from app.metrics import observe_invariant_conflict, observe_primary_demotions
from app.otel import company_span
from app.platform.pagination import Page, PageRequest
from app.platform.security.context import CallerContext
from app.platform.security.policies import ResourceAction, authorize


logger = logging.getLogger("app.company")
tracer = trace.get_tracer("app.company")

COMPANY_RESOURCE = "company"
CONTACT_RESOURCE = "company.contact"
PROJECT_RESOURCE = "company.project"


@contextmanager
def unit_of_work(session: Session, *, resource: str, conflict_reason: str, conflict_message: str) -> Iterator[None]:
    """Commit on success, roll back on any failure.

    Storage constraint violations become ConflictError and other storage failures
    become InternalError, so no raw SQLAlchemy exception leaves a manager.
    """

    try:
        yield
        session.commit()
    except IntegrityError as exc:
        session.rollback()
        observe_invariant_conflict(resource, conflict_reason)
        logger.warning(
            "invariant.conflict",
            extra={"resource": resource, "reason": conflict_reason, "error": str(exc.orig)},
        )
        raise ConflictError(conflict_message) from exc
    except ServiceError:
        session.rollback()
        raise
    except SQLAlchemyError as exc:
        session.rollback()
        logger.exception("persistence.failure", extra={"resource": resource, "error": str(exc)})
        raise InternalError("persistence failure") from exc


def _read_failure(resource: str, exc: SQLAlchemyError) -> InternalError:
    logger.exception("persistence.failure", extra={"resource": resource, "error": str(exc)})
    return InternalError("persistence failure")


@dataclass(slots=True)
class CompanyService:
    company_repository: CompanyRepository = CompanyRepository()

    def create_company(self, session: Session, caller: CallerContext, dto: CompanyCreate) -> CompanyRead:
        authorize(caller, COMPANY_RESOURCE, ResourceAction.CREATE)

        with unit_of_work(
            session,
            resource=COMPANY_RESOURCE,
            conflict_reason="integrity",
            conflict_message="company could not be created",
        ):
            company = Company(name=dto.name)
            session.add(company)
            session.flush()
            created = CompanyRead.model_validate(company)

        audit.record(
            actor=caller.identity,
            entity_type=COMPANY_RESOURCE,
            entity_id=str(created.id),
            action="create",
            before=None,
            after=created.model_dump(mode="json"),
            company_id=str(created.id),
            correlation_id=caller.correlation_id,
        )
        events.publish(
            events.build_envelope(
                "company.created",
                actor=caller.identity,
                company_id=str(created.id),
                payload={"name": created.name},
            )
        )
        logger.info("company.created", extra={"company_id": str(created.id), "actor": caller.identity})
        return created

    def get_company(self, session: Session, caller: CallerContext, company_id: uuid.UUID) -> CompanyRead:
        authorize(caller, COMPANY_RESOURCE, ResourceAction.READ)
        return CompanyRead.model_validate(require_company(session, company_id))

    def list_companies(self, session: Session, caller: CallerContext, page_request: PageRequest) -> Page[CompanyRead]:
        authorize(caller, COMPANY_RESOURCE, ResourceAction.READ)
        try:
            rows, total = self.company_repository.list_page(session, page_request)
        except SQLAlchemyError as exc:
            raise _read_failure(COMPANY_RESOURCE, exc) from exc
        return Page[CompanyRead].build(
            [CompanyRead.model_validate(row) for row in rows],
            total_elements=total,
            request=page_request,
        )


_company_repository = CompanyRepository()


def require_company(session: Session, company_id: uuid.UUID, *, for_update: bool = False) -> Company:
    try:
        company = _company_repository.get(session, company_id, for_update=for_update)
    except SQLAlchemyError as exc:
        raise _read_failure(COMPANY_RESOURCE, exc) from exc
    if company is None:
        raise NotFoundError("company not found")
    return company


@dataclass(slots=True)
class ContactService:
    contact_repository: ContactRepository = ContactRepository()

    def list_contacts(
        self,
        session: Session,
        caller: CallerContext,
        company_id: uuid.UUID,
        page_request: PageRequest,
    ) -> Page[ContactRead]:
        authorize(caller, CONTACT_RESOURCE, ResourceAction.READ)
        require_company(session, company_id)
        try:
            rows, total = self.contact_repository.list_page(session, company_id, page_request)
        except SQLAlchemyError as exc:
            raise _read_failure(CONTACT_RESOURCE, exc) from exc
        return self._page(rows, total, page_request)

    def search_contacts(
        self,
        session: Session,
        caller: CallerContext,
        company_id: uuid.UUID,
        term: str,
        page_request: PageRequest,
    ) -> Page[ContactRead]:
        authorize(caller, CONTACT_RESOURCE, ResourceAction.READ)
        normalized_term = _require_search_term(term)
        require_company(session, company_id)
        try:
            rows, total = self.contact_repository.search_page(session, company_id, normalized_term, page_request)
        except SQLAlchemyError as exc:
            raise _read_failure(CONTACT_RESOURCE, exc) from exc
        return self._page(rows, total, page_request)

    def get_contact(
        self,
        session: Session,
        caller: CallerContext,
        company_id: uuid.UUID,
        contact_id: uuid.UUID,
    ) -> ContactRead:
        authorize(caller, CONTACT_RESOURCE, ResourceAction.READ)
        require_company(session, company_id)
        return ContactRead.model_validate(self._require_contact(session, company_id, contact_id))

    def get_primary_contact(self, session: Session, caller: CallerContext, company_id: uuid.UUID) -> ContactRead:
        authorize(caller, CONTACT_RESOURCE, ResourceAction.READ)
        require_company(session, company_id)
        try:
            contact = self.contact_repository.find_primary(session, company_id)
        except SQLAlchemyError as exc:
            raise _read_failure(CONTACT_RESOURCE, exc) from exc
        if contact is None:
            raise NotFoundError("primary contact not found")
        return ContactRead.model_validate(contact)

    def create_contact(
        self,
        session: Session,
        caller: CallerContext,
        company_id: uuid.UUID,
        dto: ContactCreate,
    ) -> ContactRead:
        authorize(caller, CONTACT_RESOURCE, ResourceAction.CREATE)

        with company_span(
            tracer, "company.contact.create", company_id=company_id, correlation_id=caller.correlation_id
        ) as span:
            demoted = 0
            with unit_of_work(
                session,
                resource=CONTACT_RESOURCE,
                conflict_reason="primary_contact",
                conflict_message="company already has a primary contact",
            ):
                require_company(session, company_id, for_update=True)
                if dto.is_primary:
                    demoted = self.contact_repository.demote_primary(session, company_id)

                contact = CompanyContact(
                    company_id=company_id,
                    first_name=dto.first_name,
                    last_name=dto.last_name,
                    email=str(dto.email) if dto.email is not None else None,
                    phone=dto.phone,
                    title=dto.title,
                    department=dto.department,
                    is_primary=dto.is_primary,
                )
                session.add(contact)
                session.flush()
                created = ContactRead.model_validate(contact)
            span.set_attribute("contact_id", str(created.id))

        observe_primary_demotions(demoted)
        self._record_change(caller, "create", created, after=created)
        if created.is_primary:
            self._publish_primary_changed(caller, created, demoted)
        return created

    def update_contact(
        self,
        session: Session,
        caller: CallerContext,
        company_id: uuid.UUID,
        contact_id: uuid.UUID,
        dto: ContactUpdate,
    ) -> ContactRead:
        authorize(caller, CONTACT_RESOURCE, ResourceAction.UPDATE)

        payload = dto.model_dump(exclude_unset=True)
        expected_version = payload.pop("row_version", None)
        changes = self._validated_changes(payload)

        with company_span(
            tracer,
            "company.contact.update",
            company_id=company_id,
            correlation_id=caller.correlation_id,
            contact_id=contact_id,
        ):

            demoted = 0
            with unit_of_work(
                session,
                resource=CONTACT_RESOURCE,
                conflict_reason="primary_contact",
                conflict_message="company already has a primary contact",
            ):
                require_company(session, company_id, for_update=True)
                contact = self._require_contact(session, company_id, contact_id)
                _check_row_version(CONTACT_RESOURCE, contact.row_version, expected_version)
                before = ContactRead.model_validate(contact)
                changes = {name: value for name, value in changes.items() if getattr(contact, name) != value}
                promoting = changes.get("is_primary") is True and not contact.is_primary

                if promoting:
                    demoted = self.contact_repository.demote_primary(session, company_id, exclude_id=contact.id)
                for field_name, value in changes.items():
                    setattr(contact, field_name, value)
                if changes:
                    contact.row_version = contact.row_version + 1
                session.flush()
                updated = ContactRead.model_validate(contact)

        if not changes:
            return updated

        observe_primary_demotions(demoted)
        self._record_change(caller, "update", updated, before=before, after=updated)
        if promoting:
            self._publish_primary_changed(caller, updated, demoted)
        return updated

    def delete_contact(
        self,
        session: Session,
        caller: CallerContext,
        company_id: uuid.UUID,
        contact_id: uuid.UUID,
    ) -> None:
        authorize(caller, CONTACT_RESOURCE, ResourceAction.DELETE)

        with unit_of_work(
            session,
            resource=CONTACT_RESOURCE,
            conflict_reason="integrity",
            conflict_message="contact could not be deleted",
        ):
            require_company(session, company_id)
            contact = self._require_contact(session, company_id, contact_id)
            before = ContactRead.model_validate(contact)
            session.delete(contact)

        # A company left without a primary contact is a valid state.
        self._record_change(caller, "delete", before, before=before)

    def _require_contact(self, session: Session, company_id: uuid.UUID, contact_id: uuid.UUID) -> CompanyContact:
        try:
            contact = self.contact_repository.get_in_company(session, company_id, contact_id)
        except SQLAlchemyError as exc:
            raise _read_failure(CONTACT_RESOURCE, exc) from exc
        if contact is None:
            raise NotFoundError("contact not found")
        return contact

    @staticmethod
    def _validated_changes(payload: dict[str, Any]) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        for field_name in ("first_name", "last_name"):
            if field_name in payload:
                value = payload[field_name]
                if value is None or not str(value).strip():
                    raise InvalidInputError(f"{field_name} cannot be empty", details={"field": field_name})
                changes[field_name] = str(value).strip()
        if "is_primary" in payload:
            if payload["is_primary"] is None:
                raise InvalidInputError("is_primary cannot be null", details={"field": "is_primary"})
            changes["is_primary"] = bool(payload["is_primary"])
        for field_name in ("phone", "title", "department"):
            if field_name in payload:
                changes[field_name] = payload[field_name]
        if "email" in payload:
            changes["email"] = str(payload["email"]) if payload["email"] is not None else None
        return changes

    @staticmethod
    def _page(rows: Any, total: int, page_request: PageRequest) -> Page[ContactRead]:
        return Page[ContactRead].build(
            [ContactRead.model_validate(row) for row in rows],
            total_elements=total,
            request=page_request,
        )

    @staticmethod
    def _record_change(
        caller: CallerContext,
        action: str,
        subject: ContactRead,
        *,
        before: ContactRead | None = None,
        after: ContactRead | None = None,
    ) -> None:
        audit.record(
            actor=caller.identity,
            entity_type=CONTACT_RESOURCE,
            entity_id=str(subject.id),
            action=action,
            before=before.model_dump(mode="json") if before is not None else None,
            after=after.model_dump(mode="json") if after is not None else None,
            company_id=str(subject.company_id),
            correlation_id=caller.correlation_id,
        )
        events.publish(
            events.build_envelope(
                f"company.contact.{action}d",
                actor=caller.identity,
                company_id=str(subject.company_id),
                payload={"contact_id": str(subject.id), "is_primary": subject.is_primary},
            )
        )
        logger.info(
            f"contact.{action}",
            extra={"company_id": str(subject.company_id), "contact_id": str(subject.id), "actor": caller.identity},
        )

    @staticmethod
    def _publish_primary_changed(caller: CallerContext, contact: ContactRead, demoted: int) -> None:
        events.publish(
            events.build_envelope(
                "company.contact.primary_changed",
                actor=caller.identity,
                company_id=str(contact.company_id),
                payload={"contact_id": str(contact.id), "demoted_count": demoted},
            )
        )


@dataclass(slots=True)
class ProjectService:
    project_repository: ProjectRepository = ProjectRepository()

    def list_projects_by_company(
        self,
        session: Session,
        caller: CallerContext,
        company_id: uuid.UUID,
        page_request: PageRequest,
    ) -> Page[ProjectRead]:
        authorize(caller, PROJECT_RESOURCE, ResourceAction.READ)
        require_company(session, company_id)
        try:
            rows, total = self.project_repository.list_page(session, company_id, page_request)
        except SQLAlchemyError as exc:
            raise _read_failure(PROJECT_RESOURCE, exc) from exc
        return self._page(rows, total, page_request)

    def list_projects_for_caller(
        self,
        session: Session,
        caller: CallerContext,
        page_request: PageRequest,
    ) -> Page[ProjectRead]:
        authorize(caller, PROJECT_RESOURCE, ResourceAction.READ)
        try:
            rows, total = self.project_repository.list_owned_page(session, caller.identity, page_request)
        except SQLAlchemyError as exc:
            raise _read_failure(PROJECT_RESOURCE, exc) from exc
        return self._page(rows, total, page_request)

    def search_projects(
        self,
        session: Session,
        caller: CallerContext,
        company_id: uuid.UUID,
        term: str,
        page_request: PageRequest,
    ) -> Page[ProjectRead]:
        authorize(caller, PROJECT_RESOURCE, ResourceAction.READ)
        normalized_term = _require_search_term(term)
        require_company(session, company_id)
        try:
            rows, total = self.project_repository.search_page(session, company_id, normalized_term, page_request)
        except SQLAlchemyError as exc:
            raise _read_failure(PROJECT_RESOURCE, exc) from exc
        return self._page(rows, total, page_request)

    def get_project(
        self,
        session: Session,
        caller: CallerContext,
        company_id: uuid.UUID,
        project_id: uuid.UUID,
    ) -> ProjectRead:
        authorize(caller, PROJECT_RESOURCE, ResourceAction.READ)
        require_company(session, company_id)
        return ProjectRead.model_validate(self._require_project(session, company_id, project_id))

    def get_project_by_name(
        self,
        session: Session,
        caller: CallerContext,
        company_id: uuid.UUID,
        name: str,
    ) -> ProjectRead:
        authorize(caller, PROJECT_RESOURCE, ResourceAction.READ)
        require_company(session, company_id)
        try:
            project = self.project_repository.get_by_name(session, company_id, name.strip())
        except SQLAlchemyError as exc:
            raise _read_failure(PROJECT_RESOURCE, exc) from exc
        if project is None:
            raise NotFoundError("project not found")
        return ProjectRead.model_validate(project)

    def create_project(
        self,
        session: Session,
        caller: CallerContext,
        company_id: uuid.UUID,
        dto: ProjectCreate,
    ) -> ProjectRead:
        authorize(caller, PROJECT_RESOURCE, ResourceAction.CREATE)
        name_key = project_name_key(dto.name)

        with company_span(
            tracer, "company.project.create", company_id=company_id, correlation_id=caller.correlation_id
        ) as span:
            with unit_of_work(
                session,
                resource=PROJECT_RESOURCE,
                conflict_reason="duplicate_name",
                conflict_message=_duplicate_name_message(dto.name),
            ):
                require_company(session, company_id, for_update=True)
                self._ensure_name_available(session, company_id, dto.name, name_key)

                project = Project(
                    company_id=company_id,
                    name=dto.name,
                    name_key=name_key,
                    description=dto.description,
                    owner_email=caller.identity,
                    status=dto.status,
                    start_date=dto.start_date,
                    end_date=dto.end_date,
                    budget=dto.budget,
                )
                session.add(project)
                session.flush()
                created = ProjectRead.model_validate(project)
            span.set_attribute("project_id", str(created.id))

        self._record_change(caller, "create", created, after=created)
        return created

    def update_project(
        self,
        session: Session,
        caller: CallerContext,
        company_id: uuid.UUID,
        project_id: uuid.UUID,
        dto: ProjectUpdate,
    ) -> ProjectRead:
        authorize(caller, PROJECT_RESOURCE, ResourceAction.UPDATE)

        payload = dto.model_dump(exclude_unset=True)
        expected_version = payload.pop("row_version", None)
        changes = self._validated_changes(payload)

        with company_span(
            tracer,
            "company.project.update",
            company_id=company_id,
            correlation_id=caller.correlation_id,
            project_id=project_id,
        ):

            with unit_of_work(
                session,
                resource=PROJECT_RESOURCE,
                conflict_reason="duplicate_name",
                conflict_message=_duplicate_name_message(changes.get("name", "")),
            ):
                require_company(session, company_id, for_update=True)
                project = self._require_project(session, company_id, project_id)
                _check_row_version(PROJECT_RESOURCE, project.row_version, expected_version)
                before = ProjectRead.model_validate(project)
                changes = {name: value for name, value in changes.items() if getattr(project, name) != value}

                if "name" in changes:
                    changes["name_key"] = project_name_key(changes["name"])
                    self._ensure_name_available(
                        session,
                        company_id,
                        changes["name"],
                        changes["name_key"],
                        exclude_id=project.id,
                    )

                start_date = changes.get("start_date", project.start_date)
                end_date = changes.get("end_date", project.end_date)
                if start_date and end_date and end_date < start_date:
                    raise InvalidInputError("end_date must be on or after start_date")

                for field_name, value in changes.items():
                    setattr(project, field_name, value)
                if changes:
                    project.row_version = project.row_version + 1
                session.flush()
                updated = ProjectRead.model_validate(project)

        if changes:
            self._record_change(caller, "update", updated, before=before, after=updated)
        return updated

    def delete_project(
        self,
        session: Session,
        caller: CallerContext,
        company_id: uuid.UUID,
        project_id: uuid.UUID,
    ) -> None:
        authorize(caller, PROJECT_RESOURCE, ResourceAction.DELETE)

        with unit_of_work(
            session,
            resource=PROJECT_RESOURCE,
            conflict_reason="integrity",
            conflict_message="project could not be deleted",
        ):
            require_company(session, company_id)
            project = self._require_project(session, company_id, project_id)
            before = ProjectRead.model_validate(project)
            session.delete(project)

        self._record_change(caller, "delete", before, before=before)

    def _require_project(self, session: Session, company_id: uuid.UUID, project_id: uuid.UUID) -> Project:
        try:
            project = self.project_repository.get_in_company(session, company_id, project_id)
        except SQLAlchemyError as exc:
            raise _read_failure(PROJECT_RESOURCE, exc) from exc
        if project is None:
            raise NotFoundError("project not found")
        return project

    def _ensure_name_available(
        self,
        session: Session,
        company_id: uuid.UUID,
        name: str,
        name_key: str,
        *,
        exclude_id: uuid.UUID | None = None,
    ) -> None:
        if self.project_repository.name_taken(session, company_id, name_key, exclude_id=exclude_id):
            observe_invariant_conflict(PROJECT_RESOURCE, "duplicate_name")
            logger.info(
                "invariant.conflict",
                extra={"company_id": str(company_id), "resource": PROJECT_RESOURCE, "reason": "duplicate_name"},
            )
            raise ConflictError(_duplicate_name_message(name), details={"name": name})

    @staticmethod
    def _validated_changes(payload: dict[str, Any]) -> dict[str, Any]:
        changes: dict[str, Any] = {}
        if "name" in payload:
            value = payload["name"]
            if value is None or not str(value).strip():
                raise InvalidInputError("name cannot be empty", details={"field": "name"})
            changes["name"] = str(value).strip()
        if "status" in payload:
            if payload["status"] is None:
                raise InvalidInputError("status cannot be null", details={"field": "status"})
            changes["status"] = payload["status"]
        for field_name in ("description", "start_date", "end_date", "budget"):
            if field_name in payload:
                changes[field_name] = payload[field_name]
        return changes

    @staticmethod
    def _page(rows: Any, total: int, page_request: PageRequest) -> Page[ProjectRead]:
        return Page[ProjectRead].build(
            [ProjectRead.model_validate(row) for row in rows],
            total_elements=total,
            request=page_request,
        )

    @staticmethod
    def _record_change(
        caller: CallerContext,
        action: str,
        subject: ProjectRead,
        *,
        before: ProjectRead | None = None,
        after: ProjectRead | None = None,
    ) -> None:
        audit.record(
            actor=caller.identity,
            entity_type=PROJECT_RESOURCE,
            entity_id=str(subject.id),
            action=action,
            before=before.model_dump(mode="json") if before is not None else None,
            after=after.model_dump(mode="json") if after is not None else None,
            company_id=str(subject.company_id),
            correlation_id=caller.correlation_id,
        )
        events.publish(
            events.build_envelope(
                f"company.project.{action}d",
                actor=caller.identity,
                company_id=str(subject.company_id),
                payload={"project_id": str(subject.id), "name": subject.name},
            )
        )
        logger.info(
            f"project.{action}",
            extra={"company_id": str(subject.company_id), "project_id": str(subject.id), "actor": caller.identity},
        )


def _check_row_version(resource: str, current: int, expected: int | None) -> None:
    if expected is not None and expected != current:
        observe_invariant_conflict(resource, "row_version")
        raise ConflictError("row_version conflict", details={"expected": expected, "current": current})


def _require_search_term(term: str | None) -> str:
    normalized = (term or "").strip()
    if not normalized:
        raise InvalidInputError("search term must not be blank", details={"field": "search_term"})
    return normalized


def _duplicate_name_message(name: str) -> str:
    return f"project named '{name}' already exists for this company"


company_service = CompanyService()
contact_service = ContactService()
project_service = ProjectService()
