"""Pytest configuration and shared fixtures.

The ``fake_docker`` fixture is an in-memory stand-in for ``docker.DockerClient``
covering the calls the egress engine makes. Sidecar containers answer
``nslookup`` by evaluating the dnsmasq config they were started with, so DNS
behaviour can be asserted end to end without a daemon.
"""

import ipaddress
import os
import threading
import uuid
from collections import namedtuple
from pathlib import Path

import pytest
import yaml
from docker.errors import APIError, NotFound

from devbox_egress.config.schema import EgressConfig
from devbox_egress.controller import EgressController, create_controller
from devbox_egress.sidecar import CONFIG_ENV

ExecResult = namedtuple("ExecResult", "exit_code,output")


def evaluate_dnsmasq(conf: str, domain: str) -> bool:
    """Decide whether dnsmasq running ``conf`` answers a query for ``domain``."""
    domain = domain.lower().rstrip(".")
    catch_all: bool | None = None
    has_upstream = False
    best: tuple[int, int, bool] | None = None

    for line in conf.splitlines():
        line = line.strip()
        if line.startswith("address=/") or line.startswith("server=/"):
            kind, pattern, target = line.split("/", 2)
            answers = bool(target)
            if pattern == "#":
                catch_all = answers
                continue
            if domain == pattern or domain.endswith("." + pattern):
                # Longer match wins; on a tie address= beats server=
                rank = (len(pattern.split(".")), int(kind == "address="), answers)
                if best is None or rank[:2] > best[:2]:
                    best = rank
        elif line.startswith("server="):
            has_upstream = True

    if best is not None:
        return best[2]
    if catch_all is not None:
        return catch_all
    return has_upstream


class FakeNetwork:
    def __init__(self, client, name, options, ipam, labels):
        self.client = client
        self.id = uuid.uuid4().hex
        self.name = name
        self.members: dict[str, str] = {}
        pools = (ipam or {}).get("Config") or []
        self.attrs = {
            "Id": self.id,
            "Name": name,
            "Driver": "bridge",
            "Labels": dict(labels or {}),
            "Options": dict(options or {}),
            "IPAM": {"Config": [{"Subnet": p["Subnet"], "Gateway": p.get("Gateway")} for p in pools]},
        }

    @property
    def subnet(self) -> ipaddress.IPv4Network | None:
        config = self.attrs["IPAM"]["Config"]
        return ipaddress.IPv4Network(config[0]["Subnet"]) if config else None

    def remove(self):
        with self.client.lock:
            if self.id not in self.client.network_store:
                raise NotFound(f"network {self.name} not found")
            if self.members:
                raise APIError(f"error while removing network: network {self.name} has active endpoints")
            del self.client.network_store[self.id]

    def connect(self, container, ipv4_address=None, **kwargs):
        container = self.client.containers.get(getattr(container, "id", container))
        with self.client.lock:
            if ipv4_address in self.members.values():
                raise APIError(f"Address already in use: {ipv4_address}")
            self.members[container.id] = ipv4_address
            container.ips[self.name] = ipv4_address

    def disconnect(self, container, force=False):
        container = self.client.containers.get(getattr(container, "id", container))
        with self.client.lock:
            if container.id not in self.members:
                raise APIError(f"container {container.name} is not connected to {self.name}")
            del self.members[container.id]
            container.ips.pop(self.name, None)

    def reload(self):
        pass


class FakeContainer:
    def __init__(self, client, image, name, environment, labels, network, ip, command):
        self.client = client
        self.id = uuid.uuid4().hex
        self.name = name
        self.image = image
        self.command = command
        self.environment = dict(environment or {})
        self.labels = dict(labels or {})
        self.status = "created"
        self.network = network
        self.ips: dict[str, str] = {}
        self._requested_ip = ip
        self.attrs = {"Id": self.id, "Name": f"/{name}", "Config": {"Labels": self.labels}}

    def start(self):
        net = self.client.networks.get(self.network)
        with self.client.lock:
            if self._requested_ip in net.members.values():
                raise APIError(f"Address already in use: {self._requested_ip}")
            if self._requested_ip and ipaddress.IPv4Address(self._requested_ip) not in net.subnet:
                raise APIError(f"Invalid address {self._requested_ip}: not in subnet {net.subnet}")
            net.members[self.id] = self._requested_ip
            self.ips[net.name] = self._requested_ip
            self.status = "exited" if self.image in self.client.crashing_images else "running"
        self.client.starts += 1

    def reload(self):
        pass

    def exec_run(self, cmd, **kwargs):
        if self.status != "running":
            raise APIError(f"Container {self.id} is not running")
        ip = next(iter(self.ips.values()), None)
        domain, server = cmd[1], cmd[2]
        self.client.queries.append((self.name, server))
        if ip in self.client.unresponsive_ips or server not in ("127.0.0.1", *self.ips.values()):
            return ExecResult(1, b";; connection timed out; no servers could be reached\n")

        conf = self.environment.get(CONFIG_ENV, "")
        if evaluate_dnsmasq(conf, domain):
            out = f"Server:\t\t127.0.0.1\nAddress:\t127.0.0.1:53\n\nName:\t{domain}\nAddress: 203.0.113.7\n"
            return ExecResult(0, out.encode())
        return ExecResult(1, f"** server can't find {domain}: NXDOMAIN\n".encode())

    def rename(self, name):
        with self.client.lock:
            if any(c.name == name for c in self.client.container_store.values() if c is not self):
                raise APIError(f"Conflict. The container name {name} is already in use")
            self.name = name

    def remove(self, force=False):
        with self.client.lock:
            if self.id not in self.client.container_store:
                raise NotFound(f"No such container: {self.name}")
            if self.status == "running" and not force:
                raise APIError(f"cannot remove running container {self.name}")
            for net in self.client.network_store.values():
                net.members.pop(self.id, None)
            del self.client.container_store[self.id]


class FakeNetworks:
    def __init__(self, client):
        self.client = client

    def create(self, name, driver=None, options=None, ipam=None, labels=None, **kwargs):
        options = options or {}
        if self.client.fail_network_create:
            raise APIError("failed to create network: operation not permitted")
        if self.client.reject_icc and options.get("com.docker.network.bridge.enable_icc") == "false":
            raise APIError("failed to set bridge option: br_netfilter module not loaded")

        with self.client.lock:
            if any(n.name == name for n in self.client.network_store.values()):
                raise APIError(f"network with name {name} already exists")
            net = FakeNetwork(self.client, name, options, ipam, labels)
            if any(
                other.subnet and net.subnet and other.subnet.overlaps(net.subnet)
                for other in self.client.network_store.values()
            ):
                raise APIError("Pool overlaps with other one on this address space")
            self.client.network_store[net.id] = net
        return net

    def get(self, network_id):
        with self.client.lock:
            for net in self.client.network_store.values():
                if network_id in (net.id, net.name):
                    return net
        raise NotFound(f"network {network_id} not found")

    def list(self, **kwargs):
        with self.client.lock:
            return list(self.client.network_store.values())


class FakeContainers:
    def __init__(self, client):
        self.client = client

    def create(
        self,
        image,
        command=None,
        name=None,
        environment=None,
        labels=None,
        network=None,
        networking_config=None,
        **kwargs,
    ):
        if image in self.client.missing_images:
            raise APIError(f"No such image: {image}")
        endpoint = (networking_config or {}).get(network) or {}
        ip = (endpoint.get("IPAMConfig") or {}).get("IPv4Address")
        self.client.networks.get(network)

        with self.client.lock:
            if any(c.name == name for c in self.client.container_store.values()):
                raise APIError(f"Conflict. The container name /{name} is already in use")
            container = FakeContainer(self.client, image, name, environment, labels, network, ip, command)
            self.client.container_store[container.id] = container
        return container

    def get(self, container_id):
        with self.client.lock:
            for container in self.client.container_store.values():
                if container_id in (container.id, container.name):
                    return container
        raise NotFound(f"No such container: {container_id}")

    def list(self, all=False, filters=None):
        wanted = dict(item.split("=", 1) for item in (filters or {}).get("label", []))
        with self.client.lock:
            containers = list(self.client.container_store.values())
        return [
            c
            for c in containers
            if (all or c.status == "running") and all_labels_match(c.labels, wanted)
        ]


def all_labels_match(labels: dict, wanted: dict) -> bool:
    return all(labels.get(k) == v for k, v in wanted.items())


class FakeAPI:
    def create_endpoint_config(self, ipv4_address=None, **kwargs):
        return {"IPAMConfig": {"IPv4Address": ipv4_address}}


class FakeDockerClient:
    """In-memory docker client.

    Knobs:
        reject_icc: Refuse networks created with ``enable_icc=false``
        fail_network_create: Refuse every network create
        crashing_images: Images whose containers exit right after start
        missing_images: Images that cannot be created
        unresponsive_ips: Sidecar addresses whose dnsmasq never answers

    ``queries`` records ``(container name, server)`` for every nslookup.
    """

    def __init__(self):
        self.lock = threading.RLock()
        self.network_store: dict[str, FakeNetwork] = {}
        self.container_store: dict[str, FakeContainer] = {}
        self.networks = FakeNetworks(self)
        self.containers = FakeContainers(self)
        self.api = FakeAPI()
        self.reject_icc = False
        self.fail_network_create = False
        self.crashing_images: set[str] = set()
        self.missing_images: set[str] = set()
        self.unresponsive_ips: set[str] = set()
        self.starts = 0
        self.queries: list[tuple[str, str]] = []

    def ping(self):
        return True

    def version(self):
        return {"Platform": {"Name": "Docker Engine - Community"}, "Components": []}

    def resources(self, container_id: str) -> tuple[list, list]:
        """Networks and containers labelled for an identity."""
        networks = [
            n for n in self.network_store.values() if n.attrs["Labels"].get("devbox.container") == container_id
        ]
        containers = [
            c for c in self.container_store.values() if c.labels.get("devbox.container") == container_id
        ]
        return networks, containers


@pytest.fixture
def fake_docker() -> FakeDockerClient:
    """Provide an empty in-memory docker client."""
    return FakeDockerClient()


@pytest.fixture
def egress_config(tmp_path) -> EgressConfig:
    """Provide a config rooted in a temporary directory with fast readiness polling."""
    return EgressConfig(
        data_dir=str(tmp_path / "data"),
        sidecar={"initial_backoff": 0.0, "max_backoff": 0.0, "readiness_attempts": 3},
    )


@pytest.fixture
def controller(egress_config, fake_docker) -> EgressController:
    """Provide a controller wired to the fake docker client."""
    return create_controller(egress_config, client=fake_docker)


@pytest.fixture
def profiles_dir(egress_config) -> Path:
    """Provide the user profile directory of ``egress_config``."""
    path = egress_config.profiles_path
    path.mkdir(parents=True, exist_ok=True)
    return path


@pytest.fixture
def config_file(tmp_path, monkeypatch) -> Path:
    """Write a YAML config for CLI tests and clear the data dir override."""
    monkeypatch.delenv("DEVBOX_DATA_DIR", raising=False)
    path = tmp_path / "egress.yaml"
    data = {
        "data_dir": str(tmp_path / "data"),
        "sidecar": {"initial_backoff": 0.0, "max_backoff": 0.0, "readiness_attempts": 3},
    }
    path.write_text(yaml.safe_dump(data))
    return path


def docker_available() -> bool:
    if os.environ.get("DEVBOX_EGRESS_DOCKER_TESTS") != "1":
        return False
    try:
        import docker

        docker.from_env().ping()
    except Exception:
        return False
    return True


def pytest_collection_modifyitems(config, items):
    if docker_available():
        return
    skip = pytest.mark.skip(reason="Requires Docker daemon (set DEVBOX_EGRESS_DOCKER_TESTS=1)")
    for item in items:
        if item.get_closest_marker("docker"):
            item.add_marker(skip)
