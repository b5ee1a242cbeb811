"""
Named State Format Binding
==========================

Wires state formatters into named authentication scheme options.

Each scheme's options carry a typed `state_data_format` slot holding exactly
one of:

    Unconfigured()            no format chosen yet
    PendingBinding(name)      "use cache-backed state" for scheme `name`
    BoundFormatter(formatter) a live format instance

Configuration code places a `PendingBinding` in the slot (see
`use_distributed_cache_state`). When the registry builds the options for a
name, it runs post-configure hooks. The cache-state initializer replaces a
`PendingBinding` whose name matches with a live
`DistributedCacheStateDataFormatter`. Any other slot, or a marker for a
different name, is left untouched. Many schemes can therefore share one
registry, one cache and one protection provider.

Example:
    >>> registry = OptionsRegistry(OIDCSchemeOptions)
    >>> marker = use_distributed_cache_state(registry, "corp", cache, provider)
    >>> registry.configure("corp", lambda o: setattr(o, "state_data_format", marker))
    >>> registry.get("corp").formatter.protect(props)
"""

import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Dict, Generic, List, Protocol, TypeVar, Union

from ticketstate.state.cache import DistributedCache
from ticketstate.state.exceptions import StateFormatConfigurationError
from ticketstate.state.formatter import DistributedCacheStateDataFormatter, SecureDataFormat
from ticketstate.state.protection import DataProtectionProvider

logger = logging.getLogger(__name__)


# =============================================================================
# State format slot
# =============================================================================

@dataclass(frozen=True)
class Unconfigured:
    """No state format has been chosen for the scheme."""


@dataclass(frozen=True)
class PendingBinding:
    """Marker: bind a cache-backed formatter for scheme `name` at post-configure time."""
    name: str


@dataclass(frozen=True)
class BoundFormatter:
    """A live state format instance."""
    formatter: SecureDataFormat


StateDataFormatSlot = Union[Unconfigured, PendingBinding, BoundFormatter]


@dataclass
class RemoteAuthenticationOptions:
    """Options shared by every remote authentication scheme."""
    state_data_format: StateDataFormatSlot = field(default_factory=Unconfigured)

    @property
    def formatter(self) -> SecureDataFormat:
        """
        The bound state format.

        Raises:
            StateFormatConfigurationError: If the slot has not been bound
        """
        slot = self.state_data_format
        if isinstance(slot, BoundFormatter):
            return slot.formatter
        raise StateFormatConfigurationError(
            f"State data format is not bound (slot is {type(slot).__name__})"
        )


OptionsT = TypeVar("OptionsT", bound=RemoteAuthenticationOptions)


class PostConfigureOptions(Protocol):
    """Hook run once per name after all configure actions for that name."""

    def post_configure(self, name: str, options: RemoteAuthenticationOptions) -> None:
        ...


# =============================================================================
# Registry
# =============================================================================

class OptionsRegistry(Generic[OptionsT]):
    """
    Named options store.

    Options for a name are built on first `get`: a fresh instance from
    `factory`, then every configure action registered for that name in
    order, then every post-configure hook in registration order. The result
    is cached, so later `get` calls return the same object. The lock is
    reentrant: hooks may query the registry for other names.
    """

    def __init__(self, factory: Callable[[], OptionsT]):
        self._factory = factory
        self._configure_actions: Dict[str, List[Callable[[OptionsT], None]]] = {}
        self._post_configure: List[PostConfigureOptions] = []
        self._built: Dict[str, OptionsT] = {}
        self._lock = threading.RLock()

    def configure(self, name: str, action: Callable[[OptionsT], None]) -> None:
        with self._lock:
            if name in self._built:
                raise StateFormatConfigurationError(
                    f"Options for '{name}' were already built; configure before first use"
                )
            self._configure_actions.setdefault(name, []).append(action)

    def add_post_configure(self, hook: PostConfigureOptions) -> bool:
        """
        Register a post-configure hook.

        Returns:
            False if an equal hook is already registered (nothing added)
        """
        with self._lock:
            if hook in self._post_configure:
                return False
            self._post_configure.append(hook)
            return True

    def get(self, name: str) -> OptionsT:
        with self._lock:
            options = self._built.get(name)
            if options is not None:
                return options

            options = self._factory()
            for action in self._configure_actions.get(name, []):
                action(options)
            for hook in self._post_configure:
                hook.post_configure(name, options)
            self._built[name] = options
            logger.debug(
                f"Built options for scheme {name}",
                extra={"scheme": name, "state_format": type(options.state_data_format).__name__}
            )
            return options

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._configure_actions)

    def __contains__(self, name: object) -> bool:
        with self._lock:
            return name in self._configure_actions


# =============================================================================
# Cache-backed state binding
# =============================================================================

@dataclass(frozen=True)
class DistributedCacheStateFormatterInitializer:
    """Replaces a matching PendingBinding with a DistributedCacheStateDataFormatter."""
    cache: DistributedCache
    protection_provider: DataProtectionProvider

    def post_configure(self, name: str, options: RemoteAuthenticationOptions) -> None:
        slot = options.state_data_format
        if not isinstance(slot, PendingBinding):
            return
        if slot.name != name:
            return

        options.state_data_format = BoundFormatter(
            DistributedCacheStateDataFormatter(self.cache, self.protection_provider, slot.name)
        )
        logger.info(f"Bound distributed cache state formatter for scheme {name}")


def use_distributed_cache_state(
    registry: OptionsRegistry,
    name: str,
    cache: DistributedCache,
    protection_provider: DataProtectionProvider,
) -> PendingBinding:
    """
    Opt scheme `name` in to cache-backed state.

    Registers the initializer (once per cache/provider pair) and returns the
    marker to place in the scheme's `state_data_format` slot.

    Raises:
        ValueError: If registry is missing or name is blank
    """
    if registry is None:
        raise ValueError("registry is required")
    if not name or not name.strip():
        raise ValueError("name must be a non-empty string")

    registry.add_post_configure(DistributedCacheStateFormatterInitializer(cache, protection_provider))
    return PendingBinding(name)


__all__ = [
    "Unconfigured",
    "PendingBinding",
    "BoundFormatter",
    "StateDataFormatSlot",
    "RemoteAuthenticationOptions",
    "PostConfigureOptions",
    "OptionsRegistry",
    "DistributedCacheStateFormatterInitializer",
    "use_distributed_cache_state",
]
