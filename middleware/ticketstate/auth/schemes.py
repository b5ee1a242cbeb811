"""
OIDC authentication scheme options and registry wiring.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ticketstate.config import Settings
from ticketstate.state.cache import DistributedCache
from ticketstate.state.formatter import ProtectedPropertiesFormat
from ticketstate.state.options import (
    BoundFormatter,
    OptionsRegistry,
    RemoteAuthenticationOptions,
    Unconfigured,
    use_distributed_cache_state,
)
from ticketstate.state.protection import DataProtectionProvider

logger = logging.getLogger(__name__)


@dataclass
class OIDCSchemeOptions(RemoteAuthenticationOptions):
    """
    Options for one OpenID Connect authentication scheme.

    Endpoint properties follow the Microsoft Entra ID v2.0 layout under
    `authority` (e.g. https://login.microsoftonline.com/<tenant-id>).
    """
    authority: str = ""
    client_id: str = ""
    client_secret: Optional[str] = None
    redirect_uri: str = ""
    scope: str = "openid profile email"
    use_pkce: bool = True

    @property
    def issuer(self) -> str:
        return f"{self.authority}/v2.0"

    @property
    def authorization_endpoint(self) -> str:
        return f"{self.authority}/oauth2/v2.0/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.authority}/oauth2/v2.0/token"

    @property
    def jwks_uri(self) -> str:
        return f"{self.authority}/discovery/v2.0/keys"


@dataclass(frozen=True)
class DefaultStateFormatPostConfigure:
    """Binds the protected (whole-payload) format to schemes left Unconfigured."""
    protection_provider: DataProtectionProvider

    def post_configure(self, name: str, options: RemoteAuthenticationOptions) -> None:
        if isinstance(options.state_data_format, Unconfigured):
            options.state_data_format = BoundFormatter(
                ProtectedPropertiesFormat(self.protection_provider, name)
            )


def build_scheme_registry(
    settings: Settings,
    cache: DistributedCache,
    protection_provider: DataProtectionProvider,
) -> OptionsRegistry[OIDCSchemeOptions]:
    """
    Build the scheme registry from settings.

    Registers the OIDC scheme named OIDC_SCHEME_NAME when OIDC settings are
    present. With STATE_STORAGE=distributed_cache the scheme's state goes
    through the cache-backed ticket formatter; otherwise the default
    protected format is bound.
    """
    registry: OptionsRegistry[OIDCSchemeOptions] = OptionsRegistry(OIDCSchemeOptions)

    if settings.oidc_configured:
        name = settings.OIDC_SCHEME_NAME
        state_format = Unconfigured()
        if settings.STATE_STORAGE == "distributed_cache":
            state_format = use_distributed_cache_state(registry, name, cache, protection_provider)

        def configure(options: OIDCSchemeOptions) -> None:
            options.authority = settings.OIDC_AUTHORITY
            options.client_id = settings.OIDC_CLIENT_ID
            options.client_secret = settings.OIDC_CLIENT_SECRET
            options.redirect_uri = settings.OIDC_REDIRECT_URI
            options.state_data_format = state_format

        registry.configure(name, configure)
        logger.info(
            f"Registered OIDC scheme {name}",
            extra={"scheme": name, "state_storage": settings.STATE_STORAGE}
        )
    else:
        logger.warning("OIDC settings incomplete; no authentication scheme registered")

    registry.add_post_configure(DefaultStateFormatPostConfigure(protection_provider))
    return registry
