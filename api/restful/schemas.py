"""
Pydantic schemas for RESTful requests.
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field, field_validator

METHODS = ("GET", "POST", "PUT", "PATCH", "HEAD", "DELETE")


class RestfulRequest(BaseModel):
    method: str = Field(..., min_length=1, max_length=16)
    path: str
    # where / order / offset / limit
    query: dict[str, Any] | None = None
    body: dict[str, Any] | None = None

    @field_validator("method")
    @classmethod
    def _upper_method(cls, value: str) -> str:
        return value.strip().upper()
