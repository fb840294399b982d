"""
FastAPI dependency providers.

All injectable dependencies are defined here as plain functions used with
FastAPI's Depends() system. Long-lived components are built once in the
app lifespan and stored on app.state; the providers only hand them out.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Request

from config import AppSettings
from infrastructure.geoip import GeoIPService
from repositories.click_aggregate_repository import ClickAggregateRepository
from services.click_aggregator import ClickAggregatorRegistry
from services.link_events import LinkEventService
from services.resolver import RedirectResolver


def get_settings(request: Request) -> AppSettings:
    """Return the AppSettings instance stored on app.state."""
    return request.app.state.settings


async def get_db(request: Request):
    """Return the async MongoDB database from app.state."""
    return request.app.state.db


async def get_redis(request: Request):
    """Return the async Redis client from app.state (may be None if not configured)."""
    return request.app.state.redis


def get_resolver(request: Request) -> RedirectResolver:
    return request.app.state.resolver


def get_geoip(request: Request) -> Optional[GeoIPService]:
    return getattr(request.app.state, "geoip", None)


def get_link_event_service(request: Request) -> LinkEventService:
    return request.app.state.link_events


def get_aggregators(request: Request) -> ClickAggregatorRegistry:
    return request.app.state.aggregators


def get_click_aggregate_repo(request: Request) -> ClickAggregateRepository:
    return request.app.state.click_aggregates
