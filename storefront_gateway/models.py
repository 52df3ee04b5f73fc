"""
Data Models Module

This module defines Pydantic models shared by the gateway:
- Authentication models (identity stored in the session, token responses)
- Identifier models (decoded opaque identifiers)
- Error models
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# Authentication Models
# ============================================================================

class LoginAction(str, Enum):
    """Login action forwarded to the identity provider's authorization endpoint."""
    SIGNIN = "signin"
    SIGNUP = "signup"


class AuthenticatedIdentity(BaseModel):
    """
    Identity produced by a successful code exchange.

    Stored verbatim (as JSON) in the session ``user`` field. The profile is
    whatever the identity provider returned and is not validated here.
    """
    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(..., alias="accessToken", description="OAuth2 access token")
    profile: Dict[str, Any] = Field(default_factory=dict, description="Provider profile")


class TokenSet(BaseModel):
    """Token endpoint response for the authorization-code and refresh grants."""
    access_token: str = Field(..., description="Access token issued by the provider")
    refresh_token: Optional[str] = Field(None, description="Refresh token, if issued")
    token_type: Optional[str] = Field(None, description="Token type (usually Bearer)")
    expires_in: Optional[int] = Field(None, description="Access token lifetime in seconds")
    id_token: Optional[str] = Field(None, description="OpenID Connect ID token, if issued")
    raw: Dict[str, Any] = Field(default_factory=dict, description="Full token endpoint response")


# ============================================================================
# Identifier Models
# ============================================================================

class OpaqueId(BaseModel):
    """Decoded opaque identifier. ``id`` is None when the token had no separator."""
    model_config = ConfigDict(frozen=True)

    namespace: str
    id: Optional[str] = None


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(None, description="Additional error details")
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Error timestamp",
    )
