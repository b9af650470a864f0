"""
API response models for the pakreq REST surface.

These Pydantic v2 models define the HTTP transport contract. They are
intentionally separate from the dataclasses in auth/models.py, which own the
internal domain representation. api/responses.py maps between the two.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict


class ErrorResponse(BaseModel):
    """Fixed error envelope shared by every REST failure."""

    model_config = ConfigDict(frozen=True)

    success: Literal[False] = False
    message: str


class TokenResponse(BaseModel):
    """Response for GET /api/login."""

    model_config = ConfigDict(frozen=True)

    success: Literal[True] = True
    token: str


class WhoAmIResponse(BaseModel):
    """Response for GET /api/whoami."""

    model_config = ConfigDict(frozen=True)

    success: Literal[True] = True
    username: str
