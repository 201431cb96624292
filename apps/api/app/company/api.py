from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query, Request, Response, status
from sqlalchemy.orm import Session

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
from app.company.service import company_service, contact_service, project_service
from app.core.context import request_correlation_id
from app.core.auth import AuthUser, get_current_user as get_auth_user
from app.core.config import get_settings
from app.core.database import get_db
from app.core.errors import InvalidInputError
from app.platform.pagination import Page, PageRequest
from app.platform.security.context import CallerContext


companies_router = APIRouter(prefix="/api/companies", tags=["companies"])
contacts_router = APIRouter(prefix="/api/companies/{company_id}/contacts", tags=["company.contacts"])
projects_router = APIRouter(prefix="/api/companies/{company_id}/projects", tags=["company.projects"])
my_projects_router = APIRouter(prefix="/api/projects", tags=["company.projects"])

_ERROR_RESPONSES = {
    401: {"description": "No caller identity"},
    403: {"description": "Caller role does not grant the action"},
    404: {"description": "Company or resource not found"},
    422: {"description": "Invalid input"},
}


def get_caller_context(request: Request, auth_user: AuthUser = Depends(get_auth_user)) -> CallerContext:
    correlation_id = request_correlation_id(request)
    return CallerContext.of(auth_user.sub, auth_user.roles, correlation_id=correlation_id)


def get_page_request(
    page: int = Query(default=0, ge=0),
    size: int | None = Query(default=None, ge=1),
    sort: list[str] = Query(default=[]),
) -> PageRequest:
    settings = get_settings()
    if size is not None and size > settings.max_page_size:
        raise InvalidInputError(
            f"size must not exceed {settings.max_page_size}",
            details={"field": "size", "max": settings.max_page_size},
        )
    return PageRequest(page=page, size=size or settings.default_page_size, sort=sort)


def get_search_term(
    search_term: str | None = Query(default=None, alias="searchTerm"),
    snake_case_term: str | None = Query(default=None, alias="search_term", include_in_schema=False),
) -> str:
    if search_term is not None:
        return search_term
    return snake_case_term or ""


# Companies


@companies_router.post(
    "",
    response_model=CompanyRead,
    status_code=status.HTTP_201_CREATED,
    summary="Create a company",
    responses=_ERROR_RESPONSES,
)
def create_company(
    payload: CompanyCreate,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> CompanyRead:
    return company_service.create_company(db, caller, payload)


@companies_router.get("", response_model=Page[CompanyRead], summary="List companies", responses=_ERROR_RESPONSES)
def list_companies(
    page_request: PageRequest = Depends(get_page_request),
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> Page[CompanyRead]:
    return company_service.list_companies(db, caller, page_request)


@companies_router.get("/{company_id}", response_model=CompanyRead, summary="Get a company", responses=_ERROR_RESPONSES)
def get_company(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> CompanyRead:
    return company_service.get_company(db, caller, company_id)


# Contacts. Literal sub-paths are registered before /{contact_id}.


@contacts_router.get(
    "",
    response_model=Page[ContactRead],
    summary="List the contacts of a company",
    responses=_ERROR_RESPONSES,
)
def list_contacts(
    company_id: uuid.UUID,
    page_request: PageRequest = Depends(get_page_request),
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> Page[ContactRead]:
    return contact_service.list_contacts(db, caller, company_id, page_request)


@contacts_router.get(
    "/search",
    response_model=Page[ContactRead],
    summary="Search contacts by full name or email",
    responses=_ERROR_RESPONSES,
)
def search_contacts(
    company_id: uuid.UUID,
    search_term: str = Depends(get_search_term),
    page_request: PageRequest = Depends(get_page_request),
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> Page[ContactRead]:
    return contact_service.search_contacts(db, caller, company_id, search_term, page_request)


@contacts_router.get(
    "/primary",
    response_model=ContactRead,
    summary="Get the primary contact of a company",
    responses=_ERROR_RESPONSES,
)
def get_primary_contact(
    company_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> ContactRead:
    return contact_service.get_primary_contact(db, caller, company_id)


@contacts_router.get("/{contact_id}", response_model=ContactRead, summary="Get a contact", responses=_ERROR_RESPONSES)
def get_contact(
    company_id: uuid.UUID,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> ContactRead:
    return contact_service.get_contact(db, caller, company_id, contact_id)


@contacts_router.post(
    "",
    response_model=ContactRead,
    status_code=status.HTTP_201_CREATED,
    summary="Create a contact",
    responses={**_ERROR_RESPONSES, 409: {"description": "Primary contact conflict"}},
)
def create_contact(
    company_id: uuid.UUID,
    payload: ContactCreate,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> ContactRead:
    return contact_service.create_contact(db, caller, company_id, payload)


@contacts_router.put(
    "/{contact_id}",
    response_model=ContactRead,
    summary="Update a contact",
    responses={**_ERROR_RESPONSES, 409: {"description": "Primary contact or row_version conflict"}},
)
def update_contact(
    company_id: uuid.UUID,
    contact_id: uuid.UUID,
    payload: ContactUpdate,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> ContactRead:
    return contact_service.update_contact(db, caller, company_id, contact_id, payload)


@contacts_router.delete(
    "/{contact_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a contact",
    responses=_ERROR_RESPONSES,
)
def delete_contact(
    company_id: uuid.UUID,
    contact_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> Response:
    contact_service.delete_contact(db, caller, company_id, contact_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Projects


@projects_router.get(
    "",
    response_model=Page[ProjectRead],
    summary="List the projects of a company",
    responses=_ERROR_RESPONSES,
)
def list_projects(
    company_id: uuid.UUID,
    page_request: PageRequest = Depends(get_page_request),
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> Page[ProjectRead]:
    return project_service.list_projects_by_company(db, caller, company_id, page_request)


@projects_router.get(
    "/search",
    response_model=Page[ProjectRead],
    summary="Search projects by name or description",
    responses=_ERROR_RESPONSES,
)
def search_projects(
    company_id: uuid.UUID,
    search_term: str = Depends(get_search_term),
    page_request: PageRequest = Depends(get_page_request),
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> Page[ProjectRead]:
    return project_service.search_projects(db, caller, company_id, search_term, page_request)


@projects_router.get(
    "/name/{project_name}",
    response_model=ProjectRead,
    summary="Get a project by its exact name",
    responses=_ERROR_RESPONSES,
)
def get_project_by_name(
    company_id: uuid.UUID,
    project_name: str,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> ProjectRead:
    return project_service.get_project_by_name(db, caller, company_id, project_name)


@projects_router.get("/{project_id}", response_model=ProjectRead, summary="Get a project", responses=_ERROR_RESPONSES)
def get_project(
    company_id: uuid.UUID,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> ProjectRead:
    return project_service.get_project(db, caller, company_id, project_id)


@projects_router.post(
    "",
    response_model=ProjectRead,
    status_code=status.HTTP_201_CREATED,
    summary="Create a project owned by the caller",
    responses={**_ERROR_RESPONSES, 409: {"description": "Project name already used in the company"}},
)
def create_project(
    company_id: uuid.UUID,
    payload: ProjectCreate,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> ProjectRead:
    return project_service.create_project(db, caller, company_id, payload)


@projects_router.put(
    "/{project_id}",
    response_model=ProjectRead,
    summary="Update a project",
    responses={**_ERROR_RESPONSES, 409: {"description": "Project name or row_version conflict"}},
)
def update_project(
    company_id: uuid.UUID,
    project_id: uuid.UUID,
    payload: ProjectUpdate,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> ProjectRead:
    return project_service.update_project(db, caller, company_id, project_id, payload)


@projects_router.delete(
    "/{project_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete a project",
    responses=_ERROR_RESPONSES,
)
def delete_project(
    company_id: uuid.UUID,
    project_id: uuid.UUID,
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> Response:
    project_service.delete_project(db, caller, company_id, project_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@my_projects_router.get(
    "",
    response_model=Page[ProjectRead],
    summary="List projects owned by the caller",
    responses=_ERROR_RESPONSES,
)
def list_my_projects(
    page_request: PageRequest = Depends(get_page_request),
    db: Session = Depends(get_db),
    caller: CallerContext = Depends(get_caller_context),
) -> Page[ProjectRead]:
    return project_service.list_projects_for_caller(db, caller, page_request)
