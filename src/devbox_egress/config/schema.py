"""Configuration schema for the egress engine using Pydantic."""

import ipaddress
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator


class NetworkConfig(BaseModel):
    """Per-container network allocation settings."""

    subnet_pool: str = Field(
        default="172.30.0.0/16",
        description="Address pool carved into per-container subnets",
    )
    subnet_prefix: int = Field(
        default=24,
        description="Prefix length of each per-container subnet",
        ge=16,
        le=29,
    )
    name_suffix: str = Field(
        default="-net",
        description="Suffix appended to the container identity to name its network",
    )
    isolate_containers: bool = Field(
        default=True,
        description="Disable inter-container communication on the bridge when the host supports it",
    )

    @field_validator("subnet_pool")
    @classmethod
    def _check_pool(cls, value: str) -> str:
        ipaddress.IPv4Network(value, strict=True)
        return value

    @model_validator(mode="after")
    def _check_prefix(self) -> "NetworkConfig":
        pool = ipaddress.IPv4Network(self.subnet_pool)
        if self.subnet_prefix < pool.prefixlen:
            raise ValueError(
                f"subnet_prefix /{self.subnet_prefix} is larger than pool {self.subnet_pool}"
            )
        return self


class SidecarSettings(BaseModel):
    """DNS filtering sidecar settings."""

    image: str = Field(
        default="alpine:3.20",
        description="Image the dnsmasq sidecar runs on (dnsmasq is installed at start)",
    )
    upstream_dns: list[str] = Field(
        default_factory=lambda: ["8.8.8.8", "1.1.1.1"],
        description="Upstream resolvers that allowed queries are forwarded to",
        min_length=1,
    )
    canary_domain: str = Field(
        default="canary.devbox-egress.internal",
        description="Name answered locally by every sidecar, used as the readiness probe",
    )
    readiness_attempts: int = Field(
        default=30,
        description="Canary queries attempted before giving up on a sidecar",
        ge=1,
    )
    initial_backoff: float = Field(
        default=0.25,
        description="Delay before the first canary query, in seconds",
        ge=0.0,
    )
    max_backoff: float = Field(
        default=2.0,
        description="Upper bound for the delay between canary queries, in seconds",
        ge=0.0,
    )
    log_queries: bool = Field(
        default=True,
        description="Log every query in the sidecar's container log",
    )
    cache_size: int = Field(default=1000, description="dnsmasq cache size", ge=0)

    @field_validator("upstream_dns")
    @classmethod
    def _check_upstreams(cls, value: list[str]) -> list[str]:
        for server in value:
            ipaddress.ip_address(server)
        return value


class PacketFilterConfig(BaseModel):
    """Optional iptables layer on each egress network's bridge."""

    enabled: bool = Field(
        default=False,
        description="Install iptables rules (requires root on the container host)",
    )
    iptables_path: str = Field(default="iptables", description="iptables executable")


class EgressConfig(BaseModel):
    """Root configuration schema for devbox-egress."""

    data_dir: str = Field(
        default="~/.devbox",
        description="Root directory for persisted rules and rendered sidecar configs",
    )
    profiles_dir: str | None = Field(
        default=None,
        description="User profile directory (None = <data_dir>/profiles)",
    )
    default_profile: str = Field(
        default="standard",
        description="Profile used when provisioning without an explicit profile",
    )
    container_engine: Literal["auto", "docker", "podman"] = Field(
        default="auto",
        description="Container engine to talk to",
    )
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    sidecar: SidecarSettings = Field(default_factory=SidecarSettings)
    packet_filter: PacketFilterConfig = Field(default_factory=PacketFilterConfig)

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser()

    @property
    def rules_path(self) -> Path:
        """Directory holding one subdirectory per container identity."""
        return self.data_path / "egress"

    @property
    def profiles_path(self) -> Path:
        if self.profiles_dir:
            return Path(self.profiles_dir).expanduser()
        return self.data_path / "profiles"
