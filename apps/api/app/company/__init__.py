from app.company.api import companies_router, contacts_router, my_projects_router, projects_router
from app.company.models import Company, CompanyContact, Project
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
from app.company.service import (
    CompanyService,
    ContactService,
    ProjectService,
    company_service,
    contact_service,
    project_service,
)

__all__ = [
    "companies_router",
    "contacts_router",
    "projects_router",
    "my_projects_router",
    "Company",
    "CompanyContact",
    "Project",
    "CompanyCreate",
    "CompanyRead",
    "ContactCreate",
    "ContactRead",
    "ContactUpdate",
    "ProjectCreate",
    "ProjectRead",
    "ProjectUpdate",
    "CompanyService",
    "ContactService",
    "ProjectService",
    "company_service",
    "contact_service",
    "project_service",
]
