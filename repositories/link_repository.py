"""Read access to links and their geo rules.

Both collections are written by the link management collaborator; this
repository never mutates them.
"""

from __future__ import annotations

from typing import Optional

from bson import ObjectId
from pymongo import ASCENDING
from pymongo.asynchronous.collection import AsyncCollection

from schemas.models.link import GeoRuleDoc, LinkDoc


def _to_object_id(link_id: str) -> Optional[ObjectId]:
    if isinstance(link_id, ObjectId):
        return link_id
    if ObjectId.is_valid(link_id):
        return ObjectId(link_id)
    return None


class LinkRepository:
    def __init__(self, links: AsyncCollection, geo_rules: AsyncCollection) -> None:
        self._links = links
        self._geo_rules = geo_rules

    async def get_by_short_code(self, short_code: str) -> Optional[LinkDoc]:
        doc = await self._links.find_one({"short_code": short_code})
        return LinkDoc.from_mongo(doc)

    async def exists(self, link_id: str) -> bool:
        oid = _to_object_id(link_id)
        if oid is None:
            return False
        doc = await self._links.find_one({"_id": oid}, {"_id": 1})
        return doc is not None

    async def get_geo_rules(self, link_id: str) -> list[GeoRuleDoc]:
        """Rules for a link, lowest priority number first.

        ``_id`` breaks ties so equal priorities keep insertion order.
        """
        oid = _to_object_id(link_id)
        if oid is None:
            return []
        cursor = self._geo_rules.find({"link_id": oid}).sort(
            [("priority", ASCENDING), ("_id", ASCENDING)]
        )
        return [GeoRuleDoc.from_mongo(doc) async for doc in cursor]
