"""
Data Models Module

This module defines Pydantic models for the authentication state payload
and for request/response validation throughout the middleware service.

Models are organized by functional area:
- Authentication state (properties carried across the OIDC redirect)
- Authentication responses (session tokens, user profiles)
- Health and error responses
"""

from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field


REDIRECT_URI_KEY = ".redirect"


# ============================================================================
# Authentication State
# ============================================================================

class AuthenticationProperties(BaseModel):
    """
    State carried across a remote authentication round trip.

    Holds the post-login redirect target plus arbitrary string items such as
    the OIDC nonce and PKCE code verifier. Serialized to JSON by
    `PropertiesSerializer` and either stored in the distributed cache
    (ticketed state) or encrypted whole (protected state).
    """
    items: Dict[str, Optional[str]] = Field(
        default_factory=dict,
        description="State items keyed by name (e.g. '.redirect', 'nonce')",
    )
    issued_utc: Optional[datetime] = Field(None, description="When the state was issued")
    expires_utc: Optional[datetime] = Field(None, description="When the state stops being valid")
    is_persistent: bool = Field(default=False, description="Whether the resulting session persists")
    allow_refresh: Optional[bool] = Field(None, description="Whether the session may be refreshed")

    @property
    def redirect_uri(self) -> Optional[str]:
        """Post-login redirect target, if one was recorded."""
        return self.items.get(REDIRECT_URI_KEY)

    @classmethod
    def for_redirect(cls, redirect_uri: Optional[str], **items: Optional[str]) -> "AuthenticationProperties":
        """Convenience constructor recording a redirect target plus extra items."""
        state_items: Dict[str, Optional[str]] = dict(items)
        if redirect_uri is not None:
            state_items[REDIRECT_URI_KEY] = redirect_uri
        return cls(items=state_items)


# ============================================================================
# Authentication Responses
# ============================================================================

class TokenResponse(BaseModel):
    """Response model containing session JWT and metadata."""
    access_token: str = Field(..., description="Session JWT token")
    token_type: str = Field(default="Bearer", description="Token type")
    expires_in: int = Field(..., description="Token expiration time in seconds")
    redirect_uri: Optional[str] = Field(None, description="Redirect target recorded at login")


class UserProfile(BaseModel):
    """User profile information extracted from a verified session JWT."""
    user_id: str = Field(..., description="Unique user identifier")
    email: str = Field(..., description="User email address")
    name: Optional[str] = Field(None, description="User display name")
    scheme: Optional[str] = Field(None, description="Authentication scheme used to sign in")


# ============================================================================
# Health Check Models
# ============================================================================

class HealthResponse(BaseModel):
    """Health check response model."""
    status: str = Field(..., description="Service health status")
    service: str = Field(..., description="Service name")
    schemes: list = Field(default_factory=list, description="Configured authentication schemes")


# ============================================================================
# Error Models
# ============================================================================

class ErrorResponse(BaseModel):
    """Standardized error response model."""
    error: str = Field(..., description="Error type or code")
    message: str = Field(..., description="Human-readable error message")
    details: Optional[Dict[str, str]] = Field(None, description="Additional error details")
