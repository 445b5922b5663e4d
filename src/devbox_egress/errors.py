"""Error taxonomy for the egress engine.

Every error raised on purpose by this package derives from
:class:`EgressError`, so callers can catch the whole family at once. "Already
exists" and "already absent" conditions from the container engine are never
raised; they count as success.
"""


class EgressError(Exception):
    """Base class for egress-control failures."""


class NotFoundError(EgressError):
    """An unknown profile or container identity was referenced."""


class ProfileNotFoundError(NotFoundError):
    """No profile file exists for the requested name."""


class ContainerNotFoundError(NotFoundError):
    """The container identity has never been provisioned (or was destroyed)."""


class ProfileValidationError(EgressError):
    """A profile file parsed but describes an inconsistent policy."""

    def __init__(self, name: str, errors: list[str]):
        self.name = name
        self.errors = errors
        super().__init__(f"Invalid profile '{name}': {'; '.join(errors)}")


class InvalidDomainError(EgressError, ValueError):
    """A domain pattern failed validation."""


class InvalidAddressError(EgressError, ValueError):
    """An IP address or CIDR block failed validation."""


class NetworkUnavailableError(EgressError):
    """The container engine could not allocate an isolated network."""


class SidecarStartTimeout(EgressError):
    """The DNS filtering sidecar never answered its canary query."""


class AlreadyProvisionedError(EgressError):
    """The identity is already provisioned with a different profile."""
