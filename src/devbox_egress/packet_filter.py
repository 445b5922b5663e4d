"""Optional iptables layer for egress networks.

DNS filtering alone can be sidestepped by a container that talks to a public
resolver directly or connects to a literal IP. When enabled, this layer
installs one chain per egress network, jumped to from FORWARD for traffic
entering from the network's bridge:

- traffic from the sidecar (fixed and staging address) returns untouched
- DNS (53/udp, 53/tcp) and DNS-over-TLS (853/tcp) to anything but the sidecar
  is dropped
- destinations on the container's blocked-ips list are dropped
- destinations on the container's allowed-ips list return untouched, so a
  user entry overrides the profile below it
- destinations in the profile's ``@block-ip`` CIDRs are dropped

IP rules never re-open the DNS ports, and a block beats an allow for the
same destination.

Requires root on the container host. Failures are reported as warnings
instead of errors because the layer is optional hardening on top of DNS
filtering.
"""

import asyncio
import hashlib
import logging
import subprocess
from collections.abc import Sequence

from devbox_egress.config.schema import PacketFilterConfig
from devbox_egress.network import NetworkHandle
from devbox_egress.profiles import Profile
from devbox_egress.results import EgressWarning, WarningCode

logger = logging.getLogger(__name__)


def chain_name_for(container_id: str) -> str:
    # iptables chain names are limited to 28 characters
    return "DEVBOX-" + hashlib.sha256(container_id.encode()).hexdigest()[:12].upper()


class PacketFilter:
    """Install and remove the per-network iptables chain."""

    def __init__(self, settings: PacketFilterConfig | None = None):
        self.settings = settings or PacketFilterConfig()

    @property
    def enabled(self) -> bool:
        return self.settings.enabled

    def _iptables(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        return subprocess.run(
            [self.settings.iptables_path, *args],
            check=check,
            capture_output=True,
        )

    def build_rules(
        self,
        handle: NetworkHandle,
        profile: Profile,
        allowed_ips: Sequence[str] = (),
        blocked_ips: Sequence[str] = (),
    ) -> list[list[str]]:
        """Rule specs (without ``-A <chain>``) in evaluation order."""
        rules = [
            ["-s", handle.sidecar_ip, "-j", "RETURN"],
            ["-s", handle.staging_ip, "-j", "RETURN"],
            ["-d", handle.sidecar_ip, "-j", "RETURN"],
            ["-p", "udp", "--dport", "53", "-j", "DROP"],
            ["-p", "tcp", "--dport", "53", "-j", "DROP"],
            ["-p", "tcp", "--dport", "853", "-j", "DROP"],
        ]
        rules.extend(["-d", cidr, "-j", "DROP"] for cidr in blocked_ips)
        rules.extend(["-d", cidr, "-j", "RETURN"] for cidr in allowed_ips)
        rules.extend(["-d", cidr, "-j", "DROP"] for cidr in profile.blocked_cidrs)
        return rules

    def _apply(
        self,
        handle: NetworkHandle,
        profile: Profile,
        allowed_ips: Sequence[str],
        blocked_ips: Sequence[str],
    ) -> None:
        chain = chain_name_for(handle.container_id)

        # Chain may already exist from an earlier provision
        self._iptables("-N", chain, check=False)
        self._iptables("-F", chain)

        for rule in self.build_rules(handle, profile, allowed_ips, blocked_ips):
            self._iptables("-A", chain, *rule)

        jump = ["FORWARD", "-i", handle.bridge_name, "-j", chain]
        if self._iptables("-C", *jump, check=False).returncode != 0:
            self._iptables("-I", *jump)

        logger.info(f"Applied packet filter {chain} on {handle.bridge_name}")

    async def apply(
        self,
        handle: NetworkHandle,
        profile: Profile,
        allowed_ips: Sequence[str] = (),
        blocked_ips: Sequence[str] = (),
    ) -> list[EgressWarning]:
        """Install or refresh the chain for a network.

        Args:
            handle: Network to filter
            profile: Profile supplying the ``@block-ip`` CIDRs
            allowed_ips: The container's allowed-ips list
            blocked_ips: The container's blocked-ips list

        Returns:
            Empty list on success, otherwise a ``packet_filter_unavailable`` warning.
            A disabled filter only warns when IP rules exist that it cannot enforce.
        """
        if not self.enabled:
            if allowed_ips or blocked_ips:
                return [
                    EgressWarning(
                        WarningCode.PACKET_FILTER_UNAVAILABLE,
                        f"IP rules for {handle.container_id} are stored but not enforced; "
                        "enable packet_filter to apply them",
                    )
                ]
            return []

        try:
            await asyncio.to_thread(self._apply, handle, profile, allowed_ips, blocked_ips)
        except subprocess.CalledProcessError as e:
            stderr = e.stderr.decode(errors="replace").strip() if e.stderr else str(e)
            logger.warning(f"Failed to apply packet filter for {handle.container_id}: {stderr}")
            return [
                EgressWarning(
                    WarningCode.PACKET_FILTER_UNAVAILABLE,
                    f"iptables rules not applied ({stderr}); only DNS filtering is active",
                )
            ]
        except OSError as e:
            logger.warning(f"Cannot run {self.settings.iptables_path}: {e}")
            return [
                EgressWarning(
                    WarningCode.PACKET_FILTER_UNAVAILABLE,
                    f"{self.settings.iptables_path} unavailable ({e}); only DNS filtering is active",
                )
            ]
        return []

    def _remove(self, handle: NetworkHandle) -> None:
        chain = chain_name_for(handle.container_id)
        self._iptables("-D", "FORWARD", "-i", handle.bridge_name, "-j", chain, check=False)
        self._iptables("-F", chain, check=False)
        self._iptables("-X", chain, check=False)

    async def remove(self, handle: NetworkHandle) -> None:
        """Remove the chain. Missing chains and rules are ignored."""
        if not self.enabled:
            return
        try:
            await asyncio.to_thread(self._remove, handle)
        except OSError as e:
            logger.warning(f"Cannot run {self.settings.iptables_path}: {e}")
            return
        logger.info(f"Removed packet filter for {handle.container_id}")
