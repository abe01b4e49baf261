from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict, EmailStr, Field


class OrganizationCreate(BaseModel):
    name: str = Field(min_length=1)


class OrganizationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    public_id: str
    name: str
    created_at: datetime


class UserCreate(BaseModel):
    name: str = Field(min_length=1)
    email: EmailStr
    role: str = "sales"


class UserRead(BaseModel):
    public_id: str
    organization_id: str
    name: str
    email: str
    role: str
    created_at: datetime
