"""Per-container mutable allow/block lists.

Rules live outside any container configuration, so they can change after the
container was created. Each identity gets a directory under the rules root::

    <data_dir>/egress/<container_id>/allowed-domains
    <data_dir>/egress/<container_id>/blocked-domains
    <data_dir>/egress/<container_id>/allowed-ips
    <data_dir>/egress/<container_id>/blocked-ips

Domain lists feed the DNS sidecar. IP lists hold IPv4 CIDR blocks and feed
the optional packet filter only.

The files are newline-delimited, in insertion order. Blank lines and ``#``
comments are ignored when reading. The same directory also holds the
provision record, the network handle and the last rendered sidecar config;
:meth:`RuleStore.purge` removes all of it.
"""

import ipaddress
import logging
import os
import re
import shutil
import tempfile
from enum import StrEnum
from pathlib import Path

from devbox_egress.domains import normalize_domain
from devbox_egress.errors import InvalidAddressError

logger = logging.getLogger(__name__)

_CONTAINER_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]{0,127}$")


class RuleList(StrEnum):
    """The two sides of each user-editable list."""

    ALLOW = "allow"
    BLOCK = "block"

    @property
    def filename(self) -> str:
        return "allowed-domains" if self is RuleList.ALLOW else "blocked-domains"

    @property
    def ip_filename(self) -> str:
        return "allowed-ips" if self is RuleList.ALLOW else "blocked-ips"


def validate_container_id(container_id: str) -> str:
    """Reject identities that are not safe to use as a directory name."""
    if not _CONTAINER_ID.match(container_id) or container_id in {".", ".."}:
        raise ValueError(f"Invalid container identity: {container_id!r}")
    return container_id


def normalize_cidr(value: str) -> str:
    """Normalize an IPv4 address or CIDR block (``10.0.0.1`` -> ``10.0.0.1/32``).

    Raises:
        InvalidAddressError: If the value is not an IPv4 address or network
    """
    try:
        network = ipaddress.ip_network(value.strip(), strict=False)
    except ValueError as e:
        raise InvalidAddressError(f"Invalid IP address or CIDR block: {value!r}") from e
    if network.version != 4:
        raise InvalidAddressError(f"Only IPv4 rules are supported: {value!r}")
    return str(network)


def atomic_write(path: Path, content: str) -> None:
    """Replace ``path`` with ``content`` without exposing a partial file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class RuleStore:
    """File-backed allow/block lists keyed by container identity."""

    def __init__(self, root: Path):
        """Initialize the store.

        Args:
            root: Directory holding one subdirectory per container identity
        """
        self.root = root

    def container_dir(self, container_id: str) -> Path:
        return self.root / validate_container_id(container_id)

    def _path(self, container_id: str, rule_list: RuleList) -> Path:
        return self.container_dir(container_id) / RuleList(rule_list).filename

    def _ip_path(self, container_id: str, rule_list: RuleList) -> Path:
        return self.container_dir(container_id) / RuleList(rule_list).ip_filename

    def _read(self, path: Path) -> list[str]:
        if not path.exists():
            return []
        entries = []
        for line in path.read_text().splitlines():
            line = line.strip()
            if line and not line.startswith("#"):
                entries.append(line)
        return entries

    def _write(self, path: Path, entries: list[str]) -> None:
        atomic_write(path, "".join(f"{e}\n" for e in entries))

    def _add(self, path: Path, entry: str) -> bool:
        entries = self._read(path)
        if entry in entries:
            return False
        entries.append(entry)
        self._write(path, entries)
        return True

    def _remove(self, path: Path, entry: str) -> bool:
        entries = self._read(path)
        if entry not in entries:
            return False
        self._write(path, [e for e in entries if e != entry])
        return True

    def list_domains(self, container_id: str, rule_list: RuleList) -> list[str]:
        """Return the list's domains in insertion order."""
        return list(dict.fromkeys(self._read(self._path(container_id, rule_list))))

    def add_domain(self, container_id: str, rule_list: RuleList, domain: str) -> bool:
        """Append a domain to a list.

        Returns:
            True if the domain was added, False if it was already present

        Raises:
            InvalidDomainError: If the domain pattern is invalid
        """
        domain = normalize_domain(domain)
        if not self._add(self._path(container_id, rule_list), domain):
            return False
        logger.info(f"Added {domain} to {rule_list} list for {container_id}")
        return True

    def remove_domain(self, container_id: str, rule_list: RuleList, domain: str) -> bool:
        """Remove a domain from a list.

        Returns:
            True if the domain was removed, False if it was not present
        """
        domain = domain.strip().lower().rstrip(".")
        if not self._remove(self._path(container_id, rule_list), domain):
            return False
        logger.info(f"Removed {domain} from {rule_list} list for {container_id}")
        return True

    def list_ips(self, container_id: str, rule_list: RuleList) -> list[str]:
        """Return the list's CIDR blocks in insertion order."""
        return list(dict.fromkeys(self._read(self._ip_path(container_id, rule_list))))

    def add_ip(self, container_id: str, rule_list: RuleList, cidr: str) -> bool:
        """Append an IPv4 address or CIDR block to an IP list.

        Returns:
            True if the block was added, False if it was already present

        Raises:
            InvalidAddressError: If the value is not an IPv4 address or network
        """
        cidr = normalize_cidr(cidr)
        if not self._add(self._ip_path(container_id, rule_list), cidr):
            return False
        logger.info(f"Added {cidr} to {rule_list} IP list for {container_id}")
        return True

    def remove_ip(self, container_id: str, rule_list: RuleList, cidr: str) -> bool:
        """Remove a CIDR block from an IP list.

        Returns:
            True if the block was removed, False if it was not present
        """
        cidr = normalize_cidr(cidr)
        if not self._remove(self._ip_path(container_id, rule_list), cidr):
            return False
        logger.info(f"Removed {cidr} from {rule_list} IP list for {container_id}")
        return True

    def exists(self, container_id: str) -> bool:
        return self.container_dir(container_id).is_dir()

    def purge(self, container_id: str) -> None:
        """Delete everything persisted for an identity. Absent is fine."""
        path = self.container_dir(container_id)
        if path.exists():
            shutil.rmtree(path)
            logger.info(f"Removed persisted egress rules for {container_id}")
