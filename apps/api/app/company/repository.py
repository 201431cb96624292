from __future__ import annotations

import uuid
from collections.abc import Sequence
from typing import Any

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.orm import Session

from app.company.models import Company, CompanyContact, Project
from app.platform.pagination import PageRequest
from app.platform.security.repository import BaseRepository


class CompanyRepository(BaseRepository):
    resource = "company"
    model = Company
    sortable_fields = {"name": Company.name, "created_at": Company.created_at}
    default_order = (Company.name.asc(), Company.id.asc())

    def get(self, session: Session, company_id: uuid.UUID, *, for_update: bool = False) -> Company | None:
        query = select(Company).where(Company.id == company_id)
        if for_update:
            # Serializes primary-contact and project-name writes per company on backends with row locks.
            query = query.with_for_update()
        return session.scalar(query)

    def list_page(self, session: Session, page_request: PageRequest) -> tuple[Sequence[Company], int]:
        return self.fetch_page(session, select(Company), page_request)


class ContactRepository(BaseRepository):
    resource = "company.contact"
    model = CompanyContact
    sortable_fields = {
        "first_name": CompanyContact.first_name,
        "last_name": CompanyContact.last_name,
        "email": CompanyContact.email,
        "is_primary": CompanyContact.is_primary,
        "created_at": CompanyContact.created_at,
    }
    default_order = (CompanyContact.last_name.asc(), CompanyContact.first_name.asc(), CompanyContact.id.asc())

    def list_page(
        self,
        session: Session,
        company_id: uuid.UUID,
        page_request: PageRequest,
    ) -> tuple[Sequence[CompanyContact], int]:
        return self.fetch_page(session, self.apply_company_scope(select(CompanyContact), company_id), page_request)

    def search_page(
        self,
        session: Session,
        company_id: uuid.UUID,
        term: str,
        page_request: PageRequest,
    ) -> tuple[Sequence[CompanyContact], int]:
        pattern = self.like_pattern(term)
        full_name = CompanyContact.first_name + " " + CompanyContact.last_name
        query = self.apply_company_scope(select(CompanyContact), company_id).where(
            or_(
                func.lower(full_name).like(pattern, escape="\\"),
                func.lower(func.coalesce(CompanyContact.email, "")).like(pattern, escape="\\"),
            )
        )
        return self.fetch_page(session, query, page_request)

    def find_primary(self, session: Session, company_id: uuid.UUID) -> CompanyContact | None:
        query = self.apply_company_scope(select(CompanyContact), company_id).where(CompanyContact.is_primary.is_(True))
        return session.scalar(query)

    def demote_primary(self, session: Session, company_id: uuid.UUID, *, exclude_id: uuid.UUID | None = None) -> int:
        conditions: list[Any] = [CompanyContact.company_id == company_id, CompanyContact.is_primary.is_(True)]
        if exclude_id is not None:
            conditions.append(CompanyContact.id != exclude_id)
        result = session.execute(
            update(CompanyContact)
            .where(and_(*conditions))
            .values(is_primary=False, row_version=CompanyContact.row_version + 1)
            .execution_options(synchronize_session="fetch")
        )
        return int(result.rowcount or 0)


class ProjectRepository(BaseRepository):
    resource = "company.project"
    model = Project
    sortable_fields = {
        "name": Project.name_key,
        "status": Project.status,
        "start_date": Project.start_date,
        "end_date": Project.end_date,
        "budget": Project.budget,
        "created_at": Project.created_at,
    }
    default_order = (Project.name_key.asc(), Project.id.asc())

    def list_page(
        self,
        session: Session,
        company_id: uuid.UUID,
        page_request: PageRequest,
    ) -> tuple[Sequence[Project], int]:
        return self.fetch_page(session, self.apply_company_scope(select(Project), company_id), page_request)

    def list_owned_page(self, session: Session, owner_email: str, page_request: PageRequest) -> tuple[Sequence[Project], int]:
        return self.fetch_page(session, select(Project).where(Project.owner_email == owner_email), page_request)

    def search_page(
        self,
        session: Session,
        company_id: uuid.UUID,
        term: str,
        page_request: PageRequest,
    ) -> tuple[Sequence[Project], int]:
        pattern = self.like_pattern(term)
        query = self.apply_company_scope(select(Project), company_id).where(
            or_(
                func.lower(Project.name).like(pattern, escape="\\"),
                func.lower(func.coalesce(Project.description, "")).like(pattern, escape="\\"),
            )
        )
        return self.fetch_page(session, query, page_request)

    def get_by_name(self, session: Session, company_id: uuid.UUID, name: str) -> Project | None:
        query = self.apply_company_scope(select(Project), company_id).where(Project.name == name)
        return session.scalar(query)

    def name_taken(
        self,
        session: Session,
        company_id: uuid.UUID,
        name_key: str,
        *,
        exclude_id: uuid.UUID | None = None,
    ) -> bool:
        query = self.apply_company_scope(select(Project.id), company_id).where(Project.name_key == name_key)
        if exclude_id is not None:
            query = query.where(Project.id != exclude_id)
        return session.scalar(query.limit(1)) is not None
