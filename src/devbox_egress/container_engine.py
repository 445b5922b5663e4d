"""Container engine detection and client factory.

Egress networks and DNS sidecars are managed through the ``docker`` Python
SDK for both Docker and Podman. Podman exposes a Docker-compatible API socket,
so the same client works once it is pointed at the right socket.

Detection order:
1. Explicit ``engine`` argument (config ``container_engine``)
2. CONTAINER_HOST / DOCKER_HOST environment variable
3. Docker default socket (/var/run/docker.sock)
4. Podman user or system socket

The engine matters for isolation: Podman's netavark backend ignores the
bridge driver's ``enable_icc`` option, so egress networks on Podman are
created in the degraded mode from the start.
"""

import logging
import os
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


@dataclass
class EngineInfo:
    """Information about the detected container engine."""

    name: str  # "docker" or "podman"
    network_backend: str  # "bridge" (Docker) or "netavark" (Podman)

    @property
    def supports_icc_option(self) -> bool:
        """Whether the bridge driver honours ``enable_icc=false``."""
        return self.network_backend == "bridge"


DOCKER = EngineInfo(name="docker", network_backend="bridge")
PODMAN = EngineInfo(name="podman", network_backend="netavark")


def _podman_socket_candidates() -> list[Path]:
    candidates: list[Path] = []
    home = Path.home()

    if platform.system() == "Darwin":
        machine_dir = home / ".local/share/containers/podman/machine"
        if machine_dir.exists():
            candidates.extend(sorted(machine_dir.glob("*/podman.sock")))
        candidates.append(machine_dir / "podman.sock")

    uid = os.getuid() if hasattr(os, "getuid") else None
    if uid is not None:
        candidates.append(Path(f"/run/user/{uid}/podman/podman.sock"))

    candidates.append(Path("/run/podman/podman.sock"))
    return candidates


def _find_podman_socket() -> str | None:
    """Find the Podman API socket.

    Returns:
        Socket URI (unix://<path>) or None if not found.
    """
    for sock in _podman_socket_candidates():
        if sock.exists():
            logger.debug("Found Podman socket: %s", sock)
            return f"unix://{sock}"
    return None


def detect_engine(client: Any) -> EngineInfo:
    """Detect whether a docker client is connected to Docker or Podman.

    Args:
        client: A docker.DockerClient instance.

    Returns:
        EngineInfo describing the engine.
    """
    try:
        version_info = client.version()
    except Exception:
        # Version endpoint unavailable; Docker is the common case
        return DOCKER

    for component in version_info.get("Components", []):
        if "podman" in component.get("Name", "").lower():
            return PODMAN

    platform_name = version_info.get("Platform", {}).get("Name", "")
    if "podman" in platform_name.lower():
        return PODMAN

    return DOCKER


def get_container_client(engine: str | None = None) -> tuple[Any, EngineInfo]:
    """Get a container client and engine info.

    Args:
        engine: "docker", "podman", or "auto"/None for auto-detection.

    Returns:
        Tuple of (DockerClient, EngineInfo).

    Raises:
        ConnectionError: If no container engine is reachable.
    """
    import docker

    if engine == "podman":
        return _connect_podman(docker)
    if engine == "docker":
        return _connect_docker(docker)

    container_host = os.environ.get("CONTAINER_HOST") or os.environ.get("DOCKER_HOST")
    if container_host:
        client = docker.DockerClient(base_url=container_host)
        info = detect_engine(client)
        logger.info("Connected to %s via environment variable (%s)", info.name, container_host)
        return client, info

    try:
        return _connect_docker(docker)
    except ConnectionError:
        logger.debug("Docker default socket not available, trying Podman")

    return _connect_podman(docker)


def _connect_docker(docker_module: Any) -> tuple[Any, EngineInfo]:
    try:
        client = docker_module.from_env()
        client.ping()
    except Exception as e:
        msg = f"Failed to connect to Docker daemon: {e}"
        raise ConnectionError(msg) from e

    info = detect_engine(client)
    logger.info("Connected to %s (default socket)", info.name)
    return client, info


def _connect_podman(docker_module: Any) -> tuple[Any, EngineInfo]:
    socket_uri = _find_podman_socket()
    if socket_uri is None:
        msg = (
            "No container engine found. Install Docker or Podman, "
            "or set CONTAINER_HOST / DOCKER_HOST environment variable."
        )
        raise ConnectionError(msg)

    try:
        client = docker_module.DockerClient(base_url=socket_uri)
        client.ping()
    except Exception as e:
        msg = f"Failed to connect to Podman at {socket_uri}: {e}"
        raise ConnectionError(msg) from e

    logger.info("Connected to Podman at %s", socket_uri)
    return client, PODMAN
