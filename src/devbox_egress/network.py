"""Isolated per-container networks for egress control.

Each filtering container gets its own bridge network ``<id>-net`` with a
subnet carved from a configured pool. Two low addresses are reserved in it:

- ``network + 2``: the DNS sidecar's fixed address. The main container's
  ``--dns`` points here for its whole life, so it must never change while
  the handle exists.
- ``network + 3``: staging address used while a replacement sidecar is
  verified during reload.

The handle is persisted next to the container's rules, so a restarted
process finds the same network and address again. Networks whose handle
record was lost are adopted back through their labels.
"""

import asyncio
import hashlib
import ipaddress
import logging
from pathlib import Path
from typing import Any

from docker.errors import APIError, NotFound
from docker.types import IPAMConfig, IPAMPool
from pydantic import BaseModel

from devbox_egress.config.schema import NetworkConfig
from devbox_egress.container_engine import DOCKER, EngineInfo
from devbox_egress.errors import NetworkUnavailableError
from devbox_egress.results import EgressWarning, WarningCode
from devbox_egress.rules import atomic_write, validate_container_id

logger = logging.getLogger(__name__)

LABEL_CONTAINER = "devbox.container"
LABEL_TYPE = "devbox.type"
TYPE_NETWORK = "egress-network"
TYPE_DNS_PROXY = "dns-proxy"

ICC_OPTION = "com.docker.network.bridge.enable_icc"
BRIDGE_NAME_OPTION = "com.docker.network.bridge.name"

HANDLE_FILE = "network.json"

SIDECAR_OFFSET = 2
STAGING_OFFSET = 3


class NetworkHandle(BaseModel):
    """A provisioned egress network and the sidecar address reserved in it."""

    container_id: str
    network_id: str
    network_name: str
    subnet: str
    sidecar_ip: str
    bridge_name: str
    sidecar_container_id: str | None = None
    degraded: bool = False

    @property
    def staging_ip(self) -> str:
        return str(ipaddress.IPv4Network(self.subnet).network_address + STAGING_OFFSET)


class _SubnetConflict(Exception):
    """The engine rejected a subnet because it overlaps an existing one."""


def sidecar_address(subnet: ipaddress.IPv4Network) -> str:
    return str(subnet.network_address + SIDECAR_OFFSET)


def bridge_name_for(container_id: str) -> str:
    # Linux interface names are limited to 15 characters
    return "dbx-" + hashlib.sha256(container_id.encode()).hexdigest()[:10]


def _is_overlap_error(error: APIError) -> bool:
    text = str(error).lower()
    return "overlap" in text or "already used" in text or "already in use" in text


def _network_subnets(network: Any) -> list[ipaddress.IPv4Network]:
    subnets = []
    for config in (network.attrs.get("IPAM") or {}).get("Config") or []:
        try:
            subnet = ipaddress.ip_network(config.get("Subnet", ""), strict=False)
        except ValueError:
            continue
        if subnet.version == 4:
            subnets.append(subnet)
    return subnets


class NetworkNamespaceManager:
    """Create and destroy isolated networks, one per container identity."""

    def __init__(
        self,
        client: Any,
        state_root: Path,
        settings: NetworkConfig | None = None,
        engine_info: EngineInfo = DOCKER,
    ):
        """Initialize the network manager.

        Args:
            client: docker.DockerClient (Docker or Podman socket)
            state_root: Directory holding one subdirectory per identity
            settings: Subnet pool and isolation settings
            engine_info: Detected engine, used to skip unsupported options
        """
        self.client = client
        self.state_root = state_root
        self.settings = settings or NetworkConfig()
        self.engine_info = engine_info

    def network_name(self, container_id: str) -> str:
        return f"{container_id}{self.settings.name_suffix}"

    def _handle_path(self, container_id: str) -> Path:
        return self.state_root / validate_container_id(container_id) / HANDLE_FILE

    def get_handle(self, container_id: str) -> NetworkHandle | None:
        """Return the recorded handle for an identity, if any."""
        path = self._handle_path(container_id)
        if not path.exists():
            return None
        return NetworkHandle.model_validate_json(path.read_text())

    def save_handle(self, handle: NetworkHandle) -> None:
        atomic_write(self._handle_path(handle.container_id), handle.model_dump_json(indent=2))

    def _forget_handle(self, container_id: str) -> None:
        self._handle_path(container_id).unlink(missing_ok=True)

    async def create_network(self, container_id: str) -> tuple[NetworkHandle, list[EgressWarning]]:
        """Create the isolated network for a container, or return the existing one.

        Args:
            container_id: Container identity

        Returns:
            Tuple of (handle, warnings). A ``degraded_isolation`` warning means
            inter-container communication could not be disabled.

        Raises:
            NetworkUnavailableError: If no network could be allocated at all
        """
        handle = self.get_handle(container_id)
        if handle is not None:
            if await self.network_exists(handle):
                logger.info(f"Network {handle.network_name} already exists for {container_id}")
                return handle, self.warnings_for(handle)
            logger.warning(
                f"Recorded network {handle.network_name} for {container_id} is gone; recreating"
            )
            self._forget_handle(container_id)

        name = self.network_name(container_id)
        try:
            existing = await asyncio.to_thread(self.client.networks.get, name)
        except NotFound:
            existing = None

        if existing is not None:
            handle = self._adopt(container_id, existing)
        else:
            handle = await self._allocate(container_id, name)

        self.save_handle(handle)
        return handle, self.warnings_for(handle)

    async def network_exists(self, handle: NetworkHandle) -> bool:
        try:
            await asyncio.to_thread(self.client.networks.get, handle.network_id)
        except NotFound:
            return False
        return True

    def warnings_for(self, handle: NetworkHandle) -> list[EgressWarning]:
        if not handle.degraded:
            return []
        return [
            EgressWarning(
                WarningCode.DEGRADED_ISOLATION,
                f"Network {handle.network_name} allows inter-container communication "
                f"({self.engine_info.name} does not support disabling it on this host)",
            )
        ]

    def _adopt(self, container_id: str, network: Any) -> NetworkHandle:
        labels = network.attrs.get("Labels") or {}
        subnets = _network_subnets(network)
        if labels.get(LABEL_CONTAINER) != container_id or not subnets:
            raise NetworkUnavailableError(
                f"Network {network.name} exists but is not an egress network for {container_id}"
            )

        options = network.attrs.get("Options") or {}
        logger.info(f"Adopting existing network {network.name} for {container_id}")
        return NetworkHandle(
            container_id=container_id,
            network_id=network.id,
            network_name=network.name,
            subnet=str(subnets[0]),
            sidecar_ip=sidecar_address(subnets[0]),
            bridge_name=options.get(BRIDGE_NAME_OPTION, bridge_name_for(container_id)),
            degraded=options.get(ICC_OPTION) != "false",
        )

    def _used_subnets(self) -> list[ipaddress.IPv4Network]:
        used = []
        for network in self.client.networks.list():
            used.extend(_network_subnets(network))
        return used

    def _candidate_subnets(self):
        pool = ipaddress.IPv4Network(self.settings.subnet_pool)
        used = self._used_subnets()
        for subnet in pool.subnets(new_prefix=self.settings.subnet_prefix):
            if not any(subnet.overlaps(u) for u in used):
                yield subnet

    async def _allocate(self, container_id: str, name: str) -> NetworkHandle:
        candidates = await asyncio.to_thread(lambda: list(self._candidate_subnets()))
        bridge_name = bridge_name_for(container_id)

        for subnet in candidates:
            try:
                network, degraded = await self._create_with_fallback(
                    container_id, name, subnet, bridge_name
                )
            except _SubnetConflict:
                logger.debug(f"Subnet {subnet} taken, trying the next one")
                continue

            logger.info(f"Created egress network {name} ({subnet}) for {container_id}")
            return NetworkHandle(
                container_id=container_id,
                network_id=network.id,
                network_name=name,
                subnet=str(subnet),
                sidecar_ip=sidecar_address(subnet),
                bridge_name=bridge_name,
                degraded=degraded,
            )

        raise NetworkUnavailableError(
            f"No free /{self.settings.subnet_prefix} subnet left in {self.settings.subnet_pool}"
        )

    async def _create_with_fallback(
        self,
        container_id: str,
        name: str,
        subnet: ipaddress.IPv4Network,
        bridge_name: str,
    ) -> tuple[Any, bool]:
        """Create the network, dropping the ICC restriction if the host rejects it.

        Returns:
            Tuple of (network, degraded)
        """
        want_isolation = self.settings.isolate_containers
        options = {BRIDGE_NAME_OPTION: bridge_name}

        if want_isolation and self.engine_info.supports_icc_option:
            try:
                network = await self._create(
                    container_id, name, subnet, {**options, ICC_OPTION: "false"}
                )
                return network, False
            except APIError as e:
                if _is_overlap_error(e):
                    raise _SubnetConflict from e
                # Typically br_netfilter is not loaded on the host
                logger.warning(
                    f"Isolated network for {container_id} rejected ({e}); "
                    "falling back to a bridge without ICC restriction"
                )

        try:
            network = await self._create(container_id, name, subnet, options)
        except APIError as e:
            if _is_overlap_error(e):
                raise _SubnetConflict from e
            logger.error(f"Failed to create network {name}: {e}")
            raise NetworkUnavailableError(f"Failed to create network {name}: {e}") from e

        return network, want_isolation

    async def _create(
        self,
        container_id: str,
        name: str,
        subnet: ipaddress.IPv4Network,
        options: dict[str, str],
    ) -> Any:
        ipam = IPAMConfig(
            pool_configs=[IPAMPool(subnet=str(subnet), gateway=str(subnet.network_address + 1))]
        )
        return await asyncio.to_thread(
            self.client.networks.create,
            name=name,
            driver="bridge",
            options=options,
            ipam=ipam,
            labels={LABEL_CONTAINER: container_id, LABEL_TYPE: TYPE_NETWORK},
        )

    async def remove_sidecars(self, container_id: str) -> int:
        """Force-remove every sidecar container labelled for this identity.

        Returns:
            Number of containers removed
        """
        containers = await asyncio.to_thread(
            self.client.containers.list,
            all=True,
            filters={"label": [f"{LABEL_CONTAINER}={container_id}", f"{LABEL_TYPE}={TYPE_DNS_PROXY}"]},
        )
        removed = 0
        for container in containers:
            try:
                await asyncio.to_thread(container.remove, force=True)
                removed += 1
            except NotFound:
                continue
        return removed

    async def destroy_network(self, container_id: str) -> None:
        """Remove the identity's sidecars and network.

        Resources that are already gone are ignored. Any other engine error
        is raised and the handle record is kept, so a retry finds the network.
        """
        handle = self.get_handle(container_id)
        name = handle.network_name if handle else self.network_name(container_id)

        removed = await self.remove_sidecars(container_id)
        if removed:
            logger.info(f"Removed {removed} DNS sidecar(s) for {container_id}")

        try:
            network = await asyncio.to_thread(self.client.networks.get, name)
            await asyncio.to_thread(network.remove)
            logger.info(f"Removed egress network {name}")
        except NotFound:
            logger.debug(f"Network {name} already removed")
        except APIError as e:
            logger.error(f"Failed to remove network {name}: {e}")
            raise

        self._forget_handle(container_id)
