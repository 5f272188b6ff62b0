"""Pydantic models for records flowing through the pipeline."""
from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Message(BaseModel):
    """A social message awaiting geo-location.

    ``id`` is frozen; the geo-fix stage only ever writes ``latitude`` and
    ``longitude``. Unknown fields are kept and written back out untouched.
    """

    model_config = ConfigDict(extra="allow")

    id: str | int = Field(frozen=True)
    text: Optional[str] = None
    from_user: Optional[str] = None
    source: Optional[str] = None
    language: Optional[str] = None
    location: Optional[str] = Field(default=None, description="Free-text place the author reports")
    date: Optional[datetime] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None

    @property
    def has_coordinates(self) -> bool:
        return self.latitude is not None and self.longitude is not None
