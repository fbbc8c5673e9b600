"""Shared pieces for the API routers."""
from fastapi import Request
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..core.config import Settings
from ..services.repository import SyncRepository


class ApiModel(BaseModel):
    """Request bodies use the same camelCase keys as the entity wire format."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def get_repository(request: Request) -> SyncRepository:
    return request.app.state.repository


def get_settings(request: Request) -> Settings:
    return request.app.state.settings
