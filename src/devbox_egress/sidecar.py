"""DNS filtering sidecar.

The sidecar is a dnsmasq container on the egress network, pinned to the
handle's fixed address. The main container uses it as its only resolver, so
name resolution is where the profile and rule store are enforced.

Rule precedence is most-specific-wins: dnsmasq applies the longest domain
that matches a query, and the catch-all (``address=/#/`` for deny, plain
``server=`` upstreams for allow) is the least specific rule there is. The
catch-all is always rendered first, but line order carries no meaning.
:meth:`SidecarConfig.decide` evaluates the same semantics in Python.

dnsmasq cannot be reconfigured live, and the main container's DNS server is
fixed when it is created. A policy change therefore restarts the sidecar at
the same address (see :meth:`DNSFilterSidecar.reload`). Queries fail for a
moment during the swap; that is accepted instead of restarting the main
container.
"""

import asyncio
import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from docker.errors import APIError, NotFound

from devbox_egress.config.schema import SidecarSettings
from devbox_egress.domains import domain_matches, specificity, strip_wildcard
from devbox_egress.errors import ContainerNotFoundError, SidecarStartTimeout
from devbox_egress.network import LABEL_CONTAINER, LABEL_TYPE, TYPE_DNS_PROXY, NetworkHandle
from devbox_egress.profiles import Action, Profile
from devbox_egress.rules import atomic_write, validate_container_id

logger = logging.getLogger(__name__)

CONFIG_FILE = "dnsmasq.conf"
CONFIG_ENV = "DEVBOX_DNSMASQ_CONF"

LABEL_DNS_MODE = "devbox.dns.mode"
LABEL_DIGEST = "devbox.dns.config-digest"

SIDECAR_SCRIPT = (
    "command -v dnsmasq >/dev/null 2>&1 || apk add --no-cache dnsmasq >/dev/null 2>&1 || exit 1; "
    f'printf "%s\\n" "${CONFIG_ENV}" > /etc/devbox-dnsmasq.conf && '
    "exec dnsmasq --keep-in-foreground --conf-file=/etc/devbox-dnsmasq.conf --log-facility=-"
)


def _dedupe(domains: list[str]) -> list[str]:
    seen: set[str] = set()
    result = []
    for domain in domains:
        key = strip_wildcard(domain)
        if key not in seen:
            seen.add(key)
            result.append(domain)
    return result


def merge_rules(
    profile: Profile, user_allowed: list[str], user_blocked: list[str]
) -> tuple[list[str], list[str]]:
    """Merge profile entries with the container's rule store.

    User entries override profile entries for the same domain, and a domain
    that ends up on both lists is blocked.

    Returns:
        Tuple of (allowed, blocked), each in first-seen order
    """
    user_allow_keys = {strip_wildcard(d) for d in user_allowed}
    user_block_keys = {strip_wildcard(d) for d in user_blocked}

    allowed = [d for d in profile.allowed_domains if strip_wildcard(d) not in user_block_keys]
    blocked = [d for d in profile.blocked_domains if strip_wildcard(d) not in user_allow_keys]

    blocked = _dedupe(blocked + list(user_blocked))
    block_keys = {strip_wildcard(d) for d in blocked}
    allowed = [d for d in _dedupe(allowed + list(user_allowed)) if strip_wildcard(d) not in block_keys]
    return allowed, blocked


@dataclass(frozen=True)
class SidecarConfig:
    """Rendered dnsmasq configuration. Disposable; regenerate, never edit."""

    container_id: str
    profile: str
    default_action: Action
    allowed: tuple[str, ...]
    blocked: tuple[str, ...]
    canary_domain: str
    text: str
    digest: str = field(init=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "digest", hashlib.sha256(self.text.encode()).hexdigest())

    def decide(self, domain: str) -> Action:
        """Evaluate a domain with dnsmasq's longest-match semantics."""
        if domain_matches(self.canary_domain, domain):
            return Action.ALLOW

        best: tuple[int, Action] | None = None
        for pattern in self.allowed:
            if domain_matches(pattern, domain):
                candidate = (specificity(pattern), Action.ALLOW)
                if best is None or candidate[0] > best[0]:
                    best = candidate
        for pattern in self.blocked:
            if domain_matches(pattern, domain):
                # Ties go to the block rule
                candidate = (specificity(pattern), Action.DENY)
                if best is None or candidate[0] >= best[0]:
                    best = candidate

        return best[1] if best else self.default_action


def render_config(
    container_id: str,
    profile: Profile,
    user_allowed: list[str],
    user_blocked: list[str],
    settings: SidecarSettings,
) -> SidecarConfig:
    """Render the dnsmasq configuration for a filtering profile."""
    if not profile.is_filtering or profile.default_action is None:
        raise ValueError(f"Profile '{profile.name}' does not use a DNS sidecar")

    allowed, blocked = merge_rules(profile, user_allowed, user_blocked)
    default = profile.default_action

    lines = [
        f"# Generated by devbox-egress for {container_id} (profile: {profile.name}).",
        "# Regenerated on every provision and reconfigure; edits are overwritten.",
        "# Precedence: most specific domain wins; the catch-all below never",
        "# overrides a listed domain.",
        "no-resolv",
        "domain-needed",
        "bogus-priv",
        f"cache-size={settings.cache_size}",
    ]
    if settings.log_queries:
        lines.append("log-queries")

    lines.append("")
    lines.append(f"# Catch-all: default {default}")
    if default == Action.DENY:
        lines.append("address=/#/")
    else:
        lines.extend(f"server={upstream}" for upstream in settings.upstream_dns)

    lines.append("")
    lines.append("# Readiness probe")
    lines.append(f"address=/{settings.canary_domain}/127.0.0.1")

    if allowed:
        lines.append("")
        lines.append("# Allowed domains")
        for domain in allowed:
            base = strip_wildcard(domain)
            lines.extend(f"server=/{base}/{upstream}" for upstream in settings.upstream_dns)

    if blocked:
        lines.append("")
        lines.append("# Blocked domains (NXDOMAIN)")
        lines.extend(f"address=/{strip_wildcard(domain)}/" for domain in blocked)

    return SidecarConfig(
        container_id=container_id,
        profile=profile.name,
        default_action=default,
        allowed=tuple(allowed),
        blocked=tuple(blocked),
        canary_domain=settings.canary_domain,
        text="\n".join(lines) + "\n",
    )


def _answered(output: bytes | str | None) -> bool:
    # Both busybox and bind nslookup print "Name:" only for answer records
    if output is None:
        return False
    if isinstance(output, bytes):
        output = output.decode("utf-8", errors="replace")
    return "Name:" in output


class DNSFilterSidecar:
    """Lifecycle of the dnsmasq sidecar container for each identity."""

    def __init__(self, client: Any, state_root: Path, settings: SidecarSettings | None = None):
        """Initialize the sidecar manager.

        Args:
            client: docker.DockerClient
            state_root: Directory holding one subdirectory per identity
            settings: Image, upstreams and readiness polling settings
        """
        self.client = client
        self.state_root = state_root
        self.settings = settings or SidecarSettings()

    @staticmethod
    def container_name(container_id: str) -> str:
        return f"{container_id}-dns"

    @staticmethod
    def staging_name(container_id: str) -> str:
        return f"{container_id}-dns-next"

    def config_path(self, container_id: str) -> Path:
        return self.state_root / validate_container_id(container_id) / CONFIG_FILE

    def write_config(self, config: SidecarConfig) -> Path:
        path = self.config_path(config.container_id)
        atomic_write(path, config.text)
        return path

    def read_config(self, container_id: str) -> str | None:
        """Return the last config that a ready sidecar was started with."""
        path = self.config_path(container_id)
        return path.read_text() if path.exists() else None

    async def _get(self, name: str) -> Any | None:
        try:
            return await asyncio.to_thread(self.client.containers.get, name)
        except NotFound:
            return None

    async def _remove(self, container: Any) -> None:
        try:
            await asyncio.to_thread(container.remove, force=True)
        except NotFound:
            pass

    async def _remove_named(self, name: str) -> None:
        container = await self._get(name)
        if container is not None:
            await self._remove(container)

    async def _start(self, handle: NetworkHandle, name: str, ip: str, config: SidecarConfig) -> Any:
        endpoint = self.client.api.create_endpoint_config(ipv4_address=ip)
        try:
            container = await asyncio.to_thread(
                self.client.containers.create,
                self.settings.image,
                command=["sh", "-c", SIDECAR_SCRIPT],
                name=name,
                detach=True,
                environment={CONFIG_ENV: config.text},
                labels={
                    LABEL_CONTAINER: handle.container_id,
                    LABEL_TYPE: TYPE_DNS_PROXY,
                    LABEL_DNS_MODE: str(config.default_action),
                    LABEL_DIGEST: config.digest,
                },
                network=handle.network_name,
                networking_config={handle.network_name: endpoint},
                restart_policy={"Name": "unless-stopped"},
            )
        except APIError as e:
            logger.error(f"Failed to create DNS sidecar {name}: {e}")
            raise SidecarStartTimeout(f"Could not create DNS sidecar {name}: {e}") from e

        try:
            await asyncio.to_thread(container.start)
        except APIError as e:
            logger.error(f"Failed to start DNS sidecar {name}: {e}")
            await self._remove(container)
            raise SidecarStartTimeout(f"Could not start DNS sidecar {name} at {ip}: {e}") from e

        logger.info(f"Started DNS sidecar {name} at {ip} for {handle.container_id}")
        return container

    async def _query(self, container: Any, domain: str, server: str) -> bool:
        """Ask the dnsmasq in ``container`` for ``domain`` via its address ``server``."""
        try:
            result = await asyncio.to_thread(container.exec_run, ["nslookup", domain, server])
        except APIError as e:
            logger.debug(f"DNS query in {container.name} failed: {e}")
            return False
        return _answered(result.output)

    async def _wait_ready(self, container: Any, server: str) -> None:
        """Poll the canary name at ``server`` with exponential backoff until it resolves.

        Querying the network address instead of loopback proves the sidecar is
        reachable where the main container will look for it.

        Raises:
            SidecarStartTimeout: If the sidecar exits or never answers
        """
        delay = self.settings.initial_backoff
        attempts = self.settings.readiness_attempts

        for attempt in range(1, attempts + 1):
            await asyncio.sleep(delay)
            await asyncio.to_thread(container.reload)
            if container.status in ("exited", "dead"):
                raise SidecarStartTimeout(
                    f"DNS sidecar {container.name} exited during startup (status={container.status})"
                )
            if await self._query(container, self.settings.canary_domain, server):
                logger.debug(f"DNS sidecar {container.name} ready after {attempt} attempt(s)")
                return
            delay = min(max(delay * 2, 0.05), self.settings.max_backoff)

        raise SidecarStartTimeout(
            f"DNS sidecar {container.name} did not answer after {attempts} attempts"
        )

    async def _start_verified(
        self, handle: NetworkHandle, name: str, ip: str, config: SidecarConfig
    ) -> Any:
        container = await self._start(handle, name, ip, config)
        try:
            await self._wait_ready(container, ip)
        except SidecarStartTimeout:
            await self._remove(container)
            raise
        return container

    async def launch(self, handle: NetworkHandle, config: SidecarConfig) -> NetworkHandle:
        """Start the sidecar at the handle's fixed address and wait until it answers.

        Returns:
            The handle with ``sidecar_container_id`` set

        Raises:
            SidecarStartTimeout: If the sidecar never became ready
        """
        await self._remove_named(self.staging_name(handle.container_id))
        await self._remove_named(self.container_name(handle.container_id))

        container = await self._start_verified(
            handle, self.container_name(handle.container_id), handle.sidecar_ip, config
        )
        self.write_config(config)
        return handle.model_copy(update={"sidecar_container_id": container.id})

    async def reload(self, handle: NetworkHandle, config: SidecarConfig) -> NetworkHandle:
        """Replace the sidecar with one running ``config``, at the same address.

        The replacement is started and verified at the staging address first.
        Only then is the old sidecar removed and the replacement moved onto
        the fixed address. If the replacement never becomes ready, the old
        sidecar and the previous rendered config stay as they were.

        Raises:
            SidecarStartTimeout: If the replacement never became ready
        """
        name = self.container_name(handle.container_id)
        old = await self._get(name)
        if old is None:
            logger.warning(
                f"DNS sidecar for {handle.container_id} is missing; relaunching at {handle.sidecar_ip}"
            )
            return await self.launch(handle, config)

        staging = self.staging_name(handle.container_id)
        await self._remove_named(staging)
        candidate = await self._start_verified(handle, staging, handle.staging_ip, config)

        try:
            await self._remove(old)
            network = await asyncio.to_thread(self.client.networks.get, handle.network_id)
            await asyncio.to_thread(network.disconnect, candidate, force=True)
            await asyncio.to_thread(network.connect, candidate, ipv4_address=handle.sidecar_ip)
            await asyncio.to_thread(candidate.rename, name)
            await self._wait_ready(candidate, handle.sidecar_ip)
        except (APIError, SidecarStartTimeout) as e:
            logger.error(
                f"Moving DNS sidecar for {handle.container_id} to {handle.sidecar_ip} failed ({e}); "
                "starting a fresh one"
            )
            await self._remove(candidate)
            return await self.launch(handle, config)

        self.write_config(config)
        logger.info(f"Reloaded DNS sidecar for {handle.container_id} at {handle.sidecar_ip}")
        return handle.model_copy(update={"sidecar_container_id": candidate.id})

    async def resolve(self, handle: NetworkHandle, domain: str) -> bool:
        """Resolve a name through the sidecar, as the main container would.

        Raises:
            ContainerNotFoundError: If the sidecar is not running
        """
        container = await self._get(self.container_name(handle.container_id))
        if container is None:
            raise ContainerNotFoundError(f"No DNS sidecar for {handle.container_id}")
        return await self._query(container, domain, handle.sidecar_ip)

    async def is_running(self, container_id: str) -> bool:
        container = await self._get(self.container_name(container_id))
        if container is None:
            return False
        await asyncio.to_thread(container.reload)
        return container.status == "running"

    async def stop(self, container_id: str) -> None:
        """Remove the sidecar (and any staging leftover). Absent is fine."""
        await self._remove_named(self.staging_name(container_id))
        await self._remove_named(self.container_name(container_id))
        logger.info(f"Stopped DNS sidecar for {container_id}")
