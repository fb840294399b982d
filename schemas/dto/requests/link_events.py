"""
Request DTOs for link mutation notifications sent by the link management
collaborator.
"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from bson import ObjectId
from pydantic import BaseModel, ConfigDict, Field, field_validator

from schemas.models.link import LinkDoc, LinkStatus


class LinkPayload(BaseModel):
    """The link as the collaborator sees it after the mutation."""

    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(alias="linkId")
    short_code: str = Field(alias="shortCode")
    owner_id: Optional[str] = Field(default=None, alias="ownerId")
    created_at: datetime = Field(alias="createdAt")
    default_destination: str = Field(alias="defaultDestination")
    status: LinkStatus = LinkStatus.ACTIVE

    @field_validator("id")
    @classmethod
    def _check_link_id(cls, v: str) -> str:
        if not ObjectId.is_valid(v):
            raise ValueError("linkId must be a 24-character hex ObjectId")
        return v

    def to_doc(self) -> LinkDoc:
        return LinkDoc(
            _id=self.id,
            short_code=self.short_code,
            owner_id=self.owner_id,
            created_at=self.created_at,
            default_destination=self.default_destination,
            status=self.status,
        )


class LinkEventRequest(BaseModel):
    """Body for ``POST /internal/links/created`` and ``/updated``."""

    model_config = ConfigDict(populate_by_name=True)

    link: LinkPayload
    changed_fields: list[str] = Field(default_factory=list, alias="changedFields")
