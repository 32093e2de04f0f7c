"""
Directory Models

Read-only records owned by the administration side of the product and
joined by the follow-up processor and the session validator.

- Supplier:   PK=SUPPLIER#<id>    SK=PROFILE
- Building:   PK=BUILDING#<id>    SK=PROFILE
- Assistance: PK=ASSISTANCE#<id>  SK=METADATA
"""

from datetime import date
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from maintenance.shared.models.follow_up import FollowUpPriority


class Supplier(BaseModel):
    """Service provider invited to work on assistances."""

    model_config = ConfigDict(frozen=True)

    supplier_id: str = Field(..., description="Supplier identifier")
    name: str = Field(..., description="Company or trade name")
    email: str | None = Field(default=None, description="Contact email")
    phone: str | None = Field(default=None, description="Contact phone")
    address: str | None = Field(default=None, description="Postal address")
    specialization: str | None = Field(default=None, description="Trade, e.g. plumbing")
    is_active: bool = Field(default=True, description="Inactive suppliers cannot log in")

    @property
    def pk(self) -> str:
        return f"SUPPLIER#{self.supplier_id}"

    def to_public_dict(self) -> dict[str, Any]:
        """Fields exposed to the portal after a successful validation."""
        return {
            "id": self.supplier_id,
            "name": self.name,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "specialization": self.specialization,
        }

    def to_dynamodb(self) -> dict[str, Any]:
        item = {
            "PK": self.pk,
            "SK": "PROFILE",
            "supplier_id": self.supplier_id,
            "name": self.name,
            "is_active": self.is_active,
        }
        for field_name in ("email", "phone", "address", "specialization"):
            value = getattr(self, field_name)
            if value:
                item[field_name] = value
        return item

    @classmethod
    def from_dynamodb(cls, item: dict[str, Any]) -> "Supplier":
        return cls(
            supplier_id=item.get("supplier_id", ""),
            name=item.get("name", ""),
            email=item.get("email"),
            phone=item.get("phone"),
            address=item.get("address"),
            specialization=item.get("specialization"),
            is_active=item.get("is_active", True),
        )


class Building(BaseModel):
    """Condominium building an assistance belongs to."""

    model_config = ConfigDict(frozen=True)

    building_id: str
    name: str
    address: str | None = None

    def to_dynamodb(self) -> dict[str, Any]:
        item = {
            "PK": f"BUILDING#{self.building_id}",
            "SK": "PROFILE",
            "building_id": self.building_id,
            "name": self.name,
        }
        if self.address:
            item["address"] = self.address
        return item

    @classmethod
    def from_dynamodb(cls, item: dict[str, Any]) -> "Building":
        return cls(
            building_id=item.get("building_id", ""),
            name=item.get("name", ""),
            address=item.get("address"),
        )


class Assistance(BaseModel):
    """Work order a supplier is engaged on."""

    model_config = ConfigDict(frozen=True)

    assistance_id: str = Field(..., description="Assistance identifier")
    title: str = Field(..., description="Short description of the request")
    description: str | None = Field(default=None, description="Full request text")
    priority: FollowUpPriority = Field(default=FollowUpPriority.NORMAL)
    building_id: str = Field(..., description="Building the work is for")
    scheduled_start_date: date | None = Field(default=None)
    expected_completion_date: date | None = Field(default=None)
    quotation_deadline: date | None = Field(default=None)

    def to_dynamodb(self) -> dict[str, Any]:
        item: dict[str, Any] = {
            "PK": f"ASSISTANCE#{self.assistance_id}",
            "SK": "METADATA",
            "assistance_id": self.assistance_id,
            "title": self.title,
            "priority": self.priority.value,
            "building_id": self.building_id,
        }
        if self.description:
            item["description"] = self.description
        for field_name in ("scheduled_start_date", "expected_completion_date", "quotation_deadline"):
            value = getattr(self, field_name)
            if value:
                item[field_name] = value.isoformat()
        return item

    @classmethod
    def from_dynamodb(cls, item: dict[str, Any]) -> "Assistance":
        return cls(
            assistance_id=item.get("assistance_id", ""),
            title=item.get("title", ""),
            description=item.get("description"),
            priority=FollowUpPriority(item.get("priority", "normal")),
            building_id=item.get("building_id", ""),
            scheduled_start_date=item.get("scheduled_start_date"),
            expected_completion_date=item.get("expected_completion_date"),
            quotation_deadline=item.get("quotation_deadline"),
        )
