"""Egress controller: the single entry point for container egress control.

Coordinates the profile registry, rule store, network manager, DNS sidecar
and optional packet filter into one policy per container identity.

State per identity::

    Unprovisioned -> Provisioned(profile) -> [Reconfiguring -> Provisioned]* -> Destroyed

Operations on one identity are serialized with a per-identity lock, so a
reconfigure queued behind a destroy finds nothing to reload instead of
resurrecting the sidecar. The lock is an ``asyncio.Lock`` inside one
controller plus a file lock across processes (see :mod:`devbox_egress.locks`).
Different identities never wait for each other.

Usage:
    controller = create_controller(load_config())
    result = await controller.provision("c1", "strict")
    docker_args = result.docker_run_args()
    await controller.add_domain("c1", RuleList.ALLOW, "pkg.example.com", apply=True)
    await controller.destroy("c1")
"""

import asyncio
import logging
import weakref
from collections.abc import AsyncIterator, Callable, Iterable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field

from devbox_egress.config.schema import EgressConfig, SidecarSettings
from devbox_egress.container_engine import DOCKER, get_container_client
from devbox_egress.errors import (
    AlreadyProvisionedError,
    ContainerNotFoundError,
    NetworkUnavailableError,
    ProfileValidationError,
)
from devbox_egress.locks import LOCK_DIR, IdentityFileLock
from devbox_egress.network import NetworkHandle, NetworkNamespaceManager
from devbox_egress.packet_filter import PacketFilter
from devbox_egress.profiles import Action, NetworkMode, Profile, ProfileRegistry
from devbox_egress.results import EgressStatus, EgressWarning, ProvisionResult
from devbox_egress.rules import RuleList, RuleStore, atomic_write, validate_container_id
from devbox_egress.sidecar import DNSFilterSidecar, SidecarConfig, render_config

logger = logging.getLogger(__name__)

RECORD_FILE = "provision.json"


class ProvisionRecord(BaseModel):
    """Identity-keyed configuration fixed when the container is provisioned."""

    container_id: str
    profile: str
    mode: NetworkMode
    provisioned_at: datetime = Field(default_factory=lambda: datetime.now(UTC))


class EgressController:
    """Provision, reconfigure and destroy egress control for containers."""

    def __init__(
        self,
        registry: ProfileRegistry,
        rules: RuleStore,
        networks: NetworkNamespaceManager,
        sidecar: DNSFilterSidecar,
        packet_filter: PacketFilter | None = None,
        default_profile: str = "standard",
    ):
        self.registry = registry
        self.rules = rules
        self.networks = networks
        self.sidecar = sidecar
        self.packet_filter = packet_filter or PacketFilter()
        self.default_profile = default_profile
        # Entries disappear once no operation holds or waits on them
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()

    @property
    def sidecar_settings(self) -> SidecarSettings:
        return self.sidecar.settings

    def _lock_path(self, container_id: str) -> Path:
        return self.rules.root / LOCK_DIR / f"{container_id}.lock"

    @asynccontextmanager
    async def _lock(self, container_id: str, forget: bool = False) -> AsyncIterator[None]:
        """Hold the identity's lock in this process and across processes.

        Args:
            container_id: Container identity
            forget: Delete the lock file on release (after destroy)
        """
        validate_container_id(container_id)
        lock = self._locks.get(container_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[container_id] = lock

        async with lock:
            file_lock = IdentityFileLock(self._lock_path(container_id))
            await file_lock.acquire()
            try:
                yield
            finally:
                file_lock.release(unlink=forget)

    def _record_path(self, container_id: str) -> Path:
        return self.rules.container_dir(container_id) / RECORD_FILE

    def get_record(self, container_id: str) -> ProvisionRecord | None:
        path = self._record_path(container_id)
        if not path.exists():
            return None
        return ProvisionRecord.model_validate_json(path.read_text())

    def _require_record(self, container_id: str) -> ProvisionRecord:
        record = self.get_record(container_id)
        if record is None:
            raise ContainerNotFoundError(f"Container {container_id!r} is not provisioned")
        return record

    def _load_profile(self, record: ProvisionRecord) -> Profile:
        profile = self.registry.load(record.profile)
        if profile.mode != record.mode:
            # The main container's network attachment cannot change after creation
            raise ProfileValidationError(
                profile.name,
                [
                    f"mode changed from '{record.mode}' to '{profile.mode}' since {record.container_id} "
                    "was provisioned; recreate the container to apply it"
                ],
            )
        return profile

    def render(self, container_id: str, profile: Profile) -> SidecarConfig:
        """Render the sidecar config from the profile and current rules."""
        return render_config(
            container_id,
            profile,
            self.rules.list_domains(container_id, RuleList.ALLOW),
            self.rules.list_domains(container_id, RuleList.BLOCK),
            self.sidecar_settings,
        )

    async def _apply_packet_filter(self, handle: NetworkHandle, profile: Profile) -> list[EgressWarning]:
        return await self.packet_filter.apply(
            handle,
            profile,
            allowed_ips=self.rules.list_ips(handle.container_id, RuleList.ALLOW),
            blocked_ips=self.rules.list_ips(handle.container_id, RuleList.BLOCK),
        )

    @staticmethod
    def _result(
        record: ProvisionRecord,
        handle: NetworkHandle | None,
        warnings: list[EgressWarning],
    ) -> ProvisionResult:
        result = ProvisionResult(
            container_id=record.container_id,
            profile=record.profile,
            warnings=warnings,
        )
        if record.mode == NetworkMode.NONE:
            result.network_mode = "none"
        elif handle is not None:
            result.network_id = handle.network_id
            result.network_name = handle.network_name
            result.sidecar_ip = handle.sidecar_ip
        return result

    async def provision(
        self,
        container_id: str,
        profile_name: str | None = None,
        allow_domains: Iterable[str] = (),
        block_domains: Iterable[str] = (),
        allow_ips: Iterable[str] = (),
        block_ips: Iterable[str] = (),
    ) -> ProvisionResult:
        """Set up egress control for a container about to be created.

        Args:
            container_id: Container identity
            profile_name: Profile to apply (None = configured default)
            allow_domains: Domains to seed the allow list with
            block_domains: Domains to seed the block list with
            allow_ips: IPv4 addresses or CIDR blocks to seed the allowed-ips list with
            block_ips: IPv4 addresses or CIDR blocks to seed the blocked-ips list with

        Returns:
            Network attachment parameters and any warnings to surface

        Raises:
            ProfileNotFoundError: If the profile does not exist
            AlreadyProvisionedError: If provisioned before with another profile
            NetworkUnavailableError: If no network could be allocated
            SidecarStartTimeout: If the DNS sidecar never became ready
        """
        async with self._lock(container_id):
            profile = self.registry.load(profile_name or self.default_profile)

            record = self.get_record(container_id)
            if record is not None:
                if record.profile != profile.name:
                    raise AlreadyProvisionedError(
                        f"Container {container_id!r} is already provisioned with profile "
                        f"'{record.profile}'"
                    )
                logger.info(f"Container {container_id} already provisioned ({record.profile})")
                handle = self.networks.get_handle(container_id)
                warnings = self.networks.warnings_for(handle) if handle else []
                return self._result(record, handle, warnings)

            fresh = not self.rules.exists(container_id)
            try:
                for domain in allow_domains:
                    self.rules.add_domain(container_id, RuleList.ALLOW, domain)
                for domain in block_domains:
                    self.rules.add_domain(container_id, RuleList.BLOCK, domain)
                for cidr in allow_ips:
                    self.rules.add_ip(container_id, RuleList.ALLOW, cidr)
                for cidr in block_ips:
                    self.rules.add_ip(container_id, RuleList.BLOCK, cidr)

                record = ProvisionRecord(
                    container_id=container_id, profile=profile.name, mode=profile.mode
                )
                handle = None
                warnings: list[EgressWarning] = []
                if profile.is_filtering:
                    handle, warnings = await self._provision_filtering(container_id, profile)

                atomic_write(self._record_path(container_id), record.model_dump_json(indent=2))
            except Exception:
                if fresh:
                    self.rules.purge(container_id)
                raise

            for warning in warnings:
                logger.warning(f"{container_id}: {warning}")
            logger.info(f"Provisioned {container_id} with profile '{profile.name}' ({profile.mode})")
            return self._result(record, handle, warnings)

    async def _provision_filtering(
        self, container_id: str, profile: Profile
    ) -> tuple[NetworkHandle, list[EgressWarning]]:
        handle, warnings = await self.networks.create_network(container_id)
        try:
            handle = await self.sidecar.launch(handle, self.render(container_id, profile))
        except Exception:
            try:
                await self.networks.destroy_network(container_id)
            except Exception as cleanup_error:
                logger.error(f"Cleanup after failed provision of {container_id} failed: {cleanup_error}")
            raise

        self.networks.save_handle(handle)
        warnings = warnings + await self._apply_packet_filter(handle, profile)
        return handle, warnings

    async def reconfigure(self, container_id: str) -> ProvisionResult:
        """Re-render the policy and reload the sidecar at its fixed address.

        A no-op for profiles without a sidecar. Safe to call repeatedly.

        Raises:
            ContainerNotFoundError: If the identity is not provisioned
            NetworkUnavailableError: If the egress network was removed behind
                our back (the container has to be recreated)
            SidecarStartTimeout: If the new sidecar never became ready (the
                previous sidecar keeps running)
        """
        async with self._lock(container_id):
            return await self._reconfigure(container_id)

    async def _reconfigure(self, container_id: str) -> ProvisionResult:
        record = self._require_record(container_id)
        profile = self._load_profile(record)
        if not profile.is_filtering:
            logger.debug(f"Reconfigure of {container_id} is a no-op for mode '{profile.mode}'")
            return self._result(record, None, [])

        handle = self.networks.get_handle(container_id)
        warnings: list[EgressWarning] = []
        if handle is None:
            logger.warning(f"Network record for {container_id} missing; recovering it")
            handle, warnings = await self.networks.create_network(container_id)
        elif not await self.networks.network_exists(handle):
            # A new network would not be attached to the running main container
            raise NetworkUnavailableError(
                f"Network {handle.network_name} for {container_id} no longer exists; "
                f"destroy and provision {container_id} again, then recreate the container"
            )

        handle = await self.sidecar.reload(handle, self.render(container_id, profile))
        self.networks.save_handle(handle)
        warnings = warnings + await self._apply_packet_filter(handle, profile)

        logger.info(f"Reconfigured egress for {container_id} (DNS at {handle.sidecar_ip})")
        return self._result(record, handle, warnings)

    async def destroy(self, container_id: str) -> None:
        """Tear down sidecar, network, then persisted record and rules.

        Idempotent. Rules are only deleted after the network is gone, so a
        failed teardown can be retried without losing them.
        """
        async with self._lock(container_id, forget=True):
            handle = self.networks.get_handle(container_id)
            if handle is not None:
                await self.packet_filter.remove(handle)

            await self.sidecar.stop(container_id)
            await self.networks.destroy_network(container_id)
            self.rules.purge(container_id)
            logger.info(f"Destroyed egress control for {container_id}")

    async def _change_rules(
        self, container_id: str, change: Callable[[], bool], apply: bool
    ) -> bool:
        async with self._lock(container_id):
            self._require_record(container_id)
            changed = change()
            if changed and apply:
                await self._reconfigure(container_id)
            return changed

    async def add_domain(
        self, container_id: str, rule_list: RuleList, domain: str, apply: bool = False
    ) -> bool:
        """Add a domain to an identity's allow or block list.

        Args:
            apply: Reconfigure immediately if the list changed

        Returns:
            True if the list changed
        """
        return await self._change_rules(
            container_id, lambda: self.rules.add_domain(container_id, rule_list, domain), apply
        )

    async def remove_domain(
        self, container_id: str, rule_list: RuleList, domain: str, apply: bool = False
    ) -> bool:
        """Remove a domain from an identity's allow or block list.

        Returns:
            True if the list changed
        """
        return await self._change_rules(
            container_id, lambda: self.rules.remove_domain(container_id, rule_list, domain), apply
        )

    async def add_ip(
        self, container_id: str, rule_list: RuleList, cidr: str, apply: bool = False
    ) -> bool:
        """Add an IPv4 address or CIDR block to an identity's IP list.

        IP rules are enforced by the packet filter only. With the filter
        disabled they are stored and reported as a warning on reconfigure.

        Returns:
            True if the list changed
        """
        return await self._change_rules(
            container_id, lambda: self.rules.add_ip(container_id, rule_list, cidr), apply
        )

    async def remove_ip(
        self, container_id: str, rule_list: RuleList, cidr: str, apply: bool = False
    ) -> bool:
        return await self._change_rules(
            container_id, lambda: self.rules.remove_ip(container_id, rule_list, cidr), apply
        )

    def list_domains(self, container_id: str, rule_list: RuleList) -> list[str]:
        self._require_record(container_id)
        return self.rules.list_domains(container_id, rule_list)

    def list_ips(self, container_id: str, rule_list: RuleList) -> list[str]:
        self._require_record(container_id)
        return self.rules.list_ips(container_id, rule_list)

    def check(self, container_id: str, domain: str) -> Action:
        """Decide a domain against the identity's current policy."""
        record = self._require_record(container_id)
        profile = self._load_profile(record)
        if profile.mode == NetworkMode.NONE:
            return Action.DENY
        if profile.mode == NetworkMode.UNRESTRICTED:
            return Action.ALLOW
        return self.render(container_id, profile).decide(domain)

    async def resolve(self, container_id: str, domain: str) -> bool:
        """Resolve a domain through the identity's live sidecar."""
        self._require_record(container_id)
        handle = self.networks.get_handle(container_id)
        if handle is None:
            raise ContainerNotFoundError(f"Container {container_id!r} has no DNS sidecar")
        return await self.sidecar.resolve(handle, domain)

    async def status(self, container_id: str) -> EgressStatus:
        record = self._require_record(container_id)
        profile = self.registry.load(record.profile)
        handle = self.networks.get_handle(container_id)
        running = await self.sidecar.is_running(container_id) if handle else False

        return EgressStatus(
            container_id=container_id,
            profile=record.profile,
            mode=str(record.mode),
            default_action=str(profile.default_action) if profile.default_action else None,
            network_name=handle.network_name if handle else None,
            sidecar_ip=handle.sidecar_ip if handle else None,
            sidecar_running=running,
            allowed_domains=self.rules.list_domains(container_id, RuleList.ALLOW),
            blocked_domains=self.rules.list_domains(container_id, RuleList.BLOCK),
            allowed_ips=self.rules.list_ips(container_id, RuleList.ALLOW),
            blocked_ips=self.rules.list_ips(container_id, RuleList.BLOCK),
            degraded=handle.degraded if handle else False,
        )


def create_controller(config: EgressConfig, client=None) -> EgressController:
    """Build a controller wired to the configured container engine.

    Args:
        config: Loaded configuration
        client: Existing docker client (None = detect per ``container_engine``)
    """
    engine_info = DOCKER
    if client is None:
        client, engine_info = get_container_client(config.container_engine)

    state_root = config.rules_path
    return EgressController(
        registry=ProfileRegistry(config.profiles_path),
        rules=RuleStore(state_root),
        networks=NetworkNamespaceManager(client, state_root, config.network, engine_info),
        sidecar=DNSFilterSidecar(client, state_root, config.sidecar),
        packet_filter=PacketFilter(config.packet_filter),
        default_profile=config.default_profile,
    )
