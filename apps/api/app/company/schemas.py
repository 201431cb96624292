from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Annotated, Literal
from uuid import UUID

from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, model_validator


ProjectStatus = Literal["PLANNED", "ACTIVE", "ON_HOLD", "COMPLETED", "CANCELLED"]


def _strip_required(value: str) -> str:
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be blank")
    return stripped


NonBlankStr = Annotated[str, AfterValidator(_strip_required)]


class CompanyCreate(BaseModel):
    name: NonBlankStr = Field(min_length=1, max_length=255)


class CompanyRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str
    created_at: datetime
    updated_at: datetime


class ContactCreate(BaseModel):
    first_name: NonBlankStr = Field(min_length=1)
    last_name: NonBlankStr = Field(min_length=1)
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=64)
    title: str | None = None
    department: str | None = None
    is_primary: bool = False


class ContactUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    first_name: str | None = None
    last_name: str | None = None
    email: EmailStr | None = None
    phone: str | None = Field(default=None, max_length=64)
    title: str | None = None
    department: str | None = None
    is_primary: bool | None = None


class ContactRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    first_name: str
    last_name: str
    email: str | None
    phone: str | None
    title: str | None
    department: str | None
    is_primary: bool
    created_at: datetime
    updated_at: datetime
    row_version: int


class ProjectCreate(BaseModel):
    # Owner is stamped from the caller; unknown fields such as owner_email are ignored.
    name: NonBlankStr = Field(min_length=1, max_length=255)
    description: str | None = None
    status: ProjectStatus = "PLANNED"
    start_date: date | None = None
    end_date: date | None = None
    budget: Decimal | None = Field(default=None, ge=0, max_digits=18, decimal_places=2)

    @model_validator(mode="after")
    def validate_dates(self) -> "ProjectCreate":
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class ProjectUpdate(BaseModel):
    row_version: int | None = Field(default=None, ge=1)
    name: str | None = Field(default=None, max_length=255)
    description: str | None = None
    status: ProjectStatus | None = None
    start_date: date | None = None
    end_date: date | None = None
    budget: Decimal | None = Field(default=None, ge=0, max_digits=18, decimal_places=2)


class ProjectRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    company_id: UUID
    name: str
    description: str | None
    owner_email: str
    status: ProjectStatus
    start_date: date | None
    end_date: date | None
    budget: Decimal | None
    created_at: datetime
    updated_at: datetime
    row_version: int
