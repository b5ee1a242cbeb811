"""
Configuration module for the authentication state middleware.

This module uses Pydantic Settings to load and validate environment variables
for state protection, the state cache, the OIDC scheme, JWT session
management, and CORS settings.

Environment variables are loaded from .env file or system environment.
"""

from functools import lru_cache
from typing import List, Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    """

    # =========================================================================
    # State Protection / Cache
    # =========================================================================

    STATE_PROTECTION_KEY: str = Field(
        ...,
        description="Master secret for protecting state tickets (shared by all replicas)",
        min_length=32,
    )

    STATE_STORAGE: Literal["distributed_cache", "protected"] = Field(
        default="distributed_cache",
        description="Store OIDC state in the cache behind a ticket, or encrypt it whole into the state parameter",
    )

    STATE_CACHE_URL: str = Field(
        default="memory://",
        description="State cache backend: 'memory://' or a redis URL (redis://host:6379/0)",
    )

    STATE_CACHE_TTL_SECONDS: int = Field(
        default=900,
        description="Lifetime of cached state entries in seconds",
        ge=60,
        le=86400,
    )

    STATE_CACHE_TIMEOUT_SECONDS: float = Field(
        default=2.0,
        description="Connect and read timeout for the redis state cache in seconds",
        gt=0,
        le=30,
    )

    # =========================================================================
    # OIDC Scheme Configuration
    # =========================================================================

    OIDC_SCHEME_NAME: str = Field(
        default="oidc",
        description="Name of the OIDC authentication scheme (used in /auth/{scheme}/... routes)",
        min_length=1,
    )

    OIDC_AUTHORITY: Optional[str] = Field(
        None,
        description="Authority URL (e.g., https://login.microsoftonline.com/<tenant-id>)",
    )

    OIDC_CLIENT_ID: Optional[str] = Field(None, description="Client ID registered with the identity provider")

    OIDC_CLIENT_SECRET: Optional[str] = Field(
        None,
        description="Client secret (optional for public clients)",
    )

    OIDC_REDIRECT_URI: Optional[str] = Field(
        None,
        description="Redirect URI registered with the identity provider (e.g., https://middleware.example.com/auth/oidc/callback)",
    )

    ALLOWED_DOMAINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed email domains (leave empty to allow any)",
    )

    # =========================================================================
    # Session JWT Configuration
    # =========================================================================

    SESSION_JWT_SECRET: str = Field(
        ...,
        description="Secret key for signing session JWTs (must be cryptographically secure)",
        min_length=32,
    )

    SESSION_JWT_ALGORITHM: str = Field(
        default="HS256",
        description="JWT signing algorithm (HS256, HS384, or HS512)",
    )

    SESSION_JWT_EXPIRY_MINUTES: int = Field(
        default=60,
        description="Session JWT expiry time in minutes",
        ge=5,
        le=1440,
    )

    JWT_ISSUER: str = Field(default="ticketstate-middleware", description="Issuer claim for session JWTs")

    JWKS_CACHE_SECONDS: int = Field(
        default=3600,
        description="Time to cache identity provider JWKS keys in seconds",
        ge=300,
        le=86400,
    )

    # =========================================================================
    # Server Configuration
    # =========================================================================

    ALLOWED_ORIGINS: Optional[str] = Field(
        None,
        description="Comma-separated list of allowed CORS origins (leave empty for no CORS)",
    )

    LOG_LEVEL: str = Field(default="INFO", description="Logging level")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # =========================================================================
    # Computed Properties
    # =========================================================================

    @property
    def allowed_domains_list(self) -> List[str]:
        """Lowercase allowed email domains; empty means any domain."""
        if not self.ALLOWED_DOMAINS:
            return []
        return [d.strip().lower() for d in self.ALLOWED_DOMAINS.split(",") if d.strip()]

    @property
    def allowed_origins_list(self) -> List[str]:
        if not self.ALLOWED_ORIGINS:
            return []
        return [o.strip() for o in self.ALLOWED_ORIGINS.split(",") if o.strip()]

    @property
    def oidc_configured(self) -> bool:
        """True when enough OIDC settings are present to register the scheme."""
        return bool(self.OIDC_AUTHORITY and self.OIDC_CLIENT_ID and self.OIDC_REDIRECT_URI)

    # =========================================================================
    # Validators
    # =========================================================================

    @field_validator("STATE_CACHE_URL")
    @classmethod
    def validate_cache_url(cls, v: str) -> str:
        if v == "memory://" or v.startswith(("redis://", "rediss://", "unix://")):
            return v
        raise ValueError(
            f"Unsupported STATE_CACHE_URL: '{v}'. "
            "Expected 'memory://' or a redis:// / rediss:// / unix:// URL"
        )

    @field_validator("SESSION_JWT_ALGORITHM")
    @classmethod
    def validate_jwt_algorithm(cls, v: str) -> str:
        allowed_algorithms = ["HS256", "HS384", "HS512"]

        if v not in allowed_algorithms:
            raise ValueError(
                f"JWT algorithm must be one of {allowed_algorithms}, got: {v}"
            )

        return v

    @field_validator("OIDC_AUTHORITY")
    @classmethod
    def validate_authority(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        if not v.startswith("https://"):
            raise ValueError(f"OIDC_AUTHORITY must be an https URL, got: {v}")
        return v.rstrip("/")

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Invalid LOG_LEVEL: {v}")
        return level


# =============================================================================
# Settings Singleton
# =============================================================================

@lru_cache()
def get_settings() -> Settings:
    """
    Get or create a singleton Settings instance.

    Raises:
        ValidationError: If required environment variables are missing
                        or invalid.
    """
    return Settings()


# =============================================================================
# Configuration Helpers
# =============================================================================

def validate_configuration(settings: Settings) -> dict:
    """
    Validate configuration settings and return a status report.

    Returns:
        Dictionary with validation status, errors and warnings.
    """
    errors = []
    warnings = []

    if settings.STATE_PROTECTION_KEY == settings.SESSION_JWT_SECRET:
        errors.append("STATE_PROTECTION_KEY must differ from SESSION_JWT_SECRET")

    if not settings.oidc_configured:
        warnings.append("OIDC scheme is not configured (OIDC_AUTHORITY, OIDC_CLIENT_ID, OIDC_REDIRECT_URI)")

    if settings.STATE_STORAGE == "distributed_cache" and settings.STATE_CACHE_URL == "memory://":
        warnings.append("State cache is in-memory; tickets will not resolve across replicas")

    if not settings.OIDC_CLIENT_SECRET:
        warnings.append("OIDC_CLIENT_SECRET is not set (required for confidential clients)")

    return {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
        "state_storage": settings.STATE_STORAGE,
        "state_cache_ttl_seconds": settings.STATE_CACHE_TTL_SECONDS,
    }
