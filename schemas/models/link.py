"""
Link and geo-rule document models.

Both collections are owned by the link management collaborator; this
service only reads them.

  LinkDoc    → links      (short_code unique and immutable)
  GeoRuleDoc → geo_rules  (ordered by priority ascending per link)
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import field_validator

from schemas.models.base import MongoBaseModel, PyObjectId


class LinkStatus(str, Enum):
    ACTIVE = "active"
    DISABLED = "disabled"


class LinkDoc(MongoBaseModel):
    """Document model for the `links` collection."""

    short_code: str
    owner_id: Optional[str] = None
    created_at: datetime
    default_destination: str
    status: LinkStatus = LinkStatus.ACTIVE

    @property
    def link_id(self) -> str:
        return str(self.id)

    @property
    def is_active(self) -> bool:
        return self.status == LinkStatus.ACTIVE


class GeoRuleDoc(MongoBaseModel):
    """
    Document model for the `geo_rules` collection.

    Several rules may share a region at different priorities; the lowest
    priority number is tried first and the rest form a fallback chain.
    """

    link_id: PyObjectId
    region_code: str
    destination: str
    priority: int

    @field_validator("region_code")
    @classmethod
    def _normalise_region(cls, v: str) -> str:
        return normalise_region(v)


def normalise_region(region_code: Optional[str]) -> str:
    """Region codes compare case-insensitively (``us`` == ``US``)."""
    return (region_code or "").strip().upper()
