"""Values returned to callers of the egress controller."""

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any


class WarningCode(StrEnum):
    """Non-fatal conditions a caller must surface to the user."""

    DEGRADED_ISOLATION = "degraded_isolation"
    PACKET_FILTER_UNAVAILABLE = "packet_filter_unavailable"


@dataclass(frozen=True)
class EgressWarning:
    """A hardening step that could not be applied."""

    code: WarningCode
    message: str

    def __str__(self) -> str:
        return f"{self.code}: {self.message}"


@dataclass
class ProvisionResult:
    """Network attachment parameters for the main container.

    ``network_mode == "none"`` means the container must get no network at
    all. When neither a network nor a mode is set the engine's default
    networking applies.
    """

    container_id: str
    profile: str
    network_id: str | None = None
    network_name: str | None = None
    sidecar_ip: str | None = None
    network_mode: str | None = None
    warnings: list[EgressWarning] = field(default_factory=list)

    @property
    def has_network(self) -> bool:
        return self.network_id is not None

    def docker_run_args(self) -> list[str]:
        """Flags for ``docker run`` / ``podman run``."""
        if self.network_mode == "none":
            return ["--network", "none"]
        args: list[str] = []
        if self.network_name:
            args += ["--network", self.network_name]
        if self.sidecar_ip:
            args += ["--dns", self.sidecar_ip]
        return args

    def container_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for ``client.containers.create``."""
        if self.network_mode == "none":
            return {"network_mode": "none"}
        kwargs: dict[str, Any] = {}
        if self.network_name:
            kwargs["network"] = self.network_name
        if self.sidecar_ip:
            kwargs["dns"] = [self.sidecar_ip]
        return kwargs


@dataclass
class EgressStatus:
    """Snapshot of an identity's egress state."""

    container_id: str
    profile: str
    mode: str
    default_action: str | None
    network_name: str | None
    sidecar_ip: str | None
    sidecar_running: bool
    allowed_domains: list[str]
    blocked_domains: list[str]
    allowed_ips: list[str] = field(default_factory=list)
    blocked_ips: list[str] = field(default_factory=list)
    degraded: bool = False
