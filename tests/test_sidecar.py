"""Tests for dnsmasq config rendering and the DNS sidecar lifecycle."""

import pytest
import pytest_asyncio
from docker.errors import APIError

from devbox_egress.config.schema import SidecarSettings
from devbox_egress.errors import ContainerNotFoundError, SidecarStartTimeout
from devbox_egress.network import NetworkNamespaceManager
from devbox_egress.profiles import Action, NetworkMode, Profile
from devbox_egress.sidecar import (
    CONFIG_ENV,
    LABEL_DIGEST,
    LABEL_DNS_MODE,
    DNSFilterSidecar,
    merge_rules,
    render_config,
)

FAST = SidecarSettings(initial_backoff=0.0, max_backoff=0.0, readiness_attempts=3)

DENY_PROFILE = Profile(
    name="strict",
    mode=NetworkMode.FILTERING,
    default_action=Action.DENY,
    allowed_domains=("github.com", "*.npmjs.org"),
    blocked_domains=("gist.github.com",),
)

ALLOW_PROFILE = Profile(
    name="standard",
    mode=NetworkMode.FILTERING,
    default_action=Action.ALLOW,
    blocked_domains=("pastebin.com", "*.ngrok.io"),
)


def render(profile, allowed=(), blocked=(), settings=FAST):
    return render_config("c1", profile, list(allowed), list(blocked), settings)


# ============================================================================
# Rendering
# ============================================================================


def test_render_deny_profile():
    config = render(DENY_PROFILE)
    lines = [line for line in config.text.splitlines() if line and not line.startswith("#")]

    assert lines == [
        "no-resolv",
        "domain-needed",
        "bogus-priv",
        "cache-size=1000",
        "log-queries",
        "address=/#/",
        "address=/canary.devbox-egress.internal/127.0.0.1",
        "server=/github.com/8.8.8.8",
        "server=/github.com/1.1.1.1",
        "server=/npmjs.org/8.8.8.8",
        "server=/npmjs.org/1.1.1.1",
        "address=/gist.github.com/",
    ]


def test_render_allow_profile_catch_all_first():
    config = render(ALLOW_PROFILE)
    directives = [line for line in config.text.splitlines() if "=" in line and not line.startswith("#")]

    catch_all = directives.index("server=8.8.8.8")
    assert catch_all < directives.index("address=/pastebin.com/")
    assert "address=/ngrok.io/" in directives
    assert "address=/#/" not in directives


def test_render_is_deterministic():
    first = render(DENY_PROFILE, allowed=["pkg.example.com"])
    second = render(DENY_PROFILE, allowed=["pkg.example.com"])

    assert first.text == second.text
    assert first.digest == second.digest
    assert first.digest != render(DENY_PROFILE).digest


def test_render_rejects_non_filtering_profile():
    airgapped = Profile(name="airgapped", mode=NetworkMode.NONE, default_action=Action.DENY)

    with pytest.raises(ValueError):
        render(airgapped)


def test_render_without_query_log():
    settings = FAST.model_copy(update={"log_queries": False, "cache_size": 0})
    config = render(DENY_PROFILE, settings=settings)

    assert "log-queries" not in config.text
    assert "cache-size=0" in config.text


def test_merge_user_rules_override_profile():
    allowed, blocked = merge_rules(DENY_PROFILE, ["gist.github.com"], ["github.com"])

    assert "gist.github.com" in allowed
    assert "github.com" not in allowed
    assert blocked == ["github.com"]


def test_merge_domain_on_both_user_lists_is_blocked():
    allowed, blocked = merge_rules(DENY_PROFILE, ["x.example.com"], ["x.example.com"])

    assert "x.example.com" not in allowed
    assert "x.example.com" in blocked


def test_merge_treats_wildcard_as_same_domain():
    allowed, blocked = merge_rules(DENY_PROFILE, ["npmjs.org"], [])
    assert allowed.count("npmjs.org") + allowed.count("*.npmjs.org") == 1


# ============================================================================
# Decisions (most specific wins)
# ============================================================================


def test_decide_deny_default():
    config = render(DENY_PROFILE, allowed=["pkg.example.com"])

    assert config.decide("pkg.example.com") == Action.ALLOW
    assert config.decide("mirror.pkg.example.com") == Action.ALLOW
    assert config.decide("evil.example.com") == Action.DENY
    assert config.decide("api.github.com") == Action.ALLOW
    assert config.decide("gist.github.com") == Action.DENY
    assert config.decide("registry.npmjs.org") == Action.ALLOW


def test_decide_allow_default():
    config = render(ALLOW_PROFILE)

    assert config.decide("example.com") == Action.ALLOW
    assert config.decide("pastebin.com") == Action.DENY
    assert config.decide("abc.ngrok.io") == Action.DENY


def test_decide_more_specific_allow_beats_broader_block():
    config = render(ALLOW_PROFILE, allowed=["docs.pastebin.com"])

    assert config.decide("docs.pastebin.com") == Action.ALLOW
    assert config.decide("pastebin.com") == Action.DENY


def test_decide_canary_always_resolves():
    config = render(DENY_PROFILE)
    assert config.decide("canary.devbox-egress.internal") == Action.ALLOW


# ============================================================================
# Lifecycle
# ============================================================================


@pytest_asyncio.fixture
async def network(fake_docker, tmp_path):
    manager = NetworkNamespaceManager(fake_docker, tmp_path)
    handle, _ = await manager.create_network("c1")
    return handle


@pytest.fixture
def sidecar(fake_docker, tmp_path):
    return DNSFilterSidecar(fake_docker, tmp_path, FAST)


@pytest.mark.asyncio
async def test_launch_starts_sidecar_at_fixed_address(sidecar, network, fake_docker, tmp_path):
    config = render(DENY_PROFILE, allowed=["pkg.example.com"])

    handle = await sidecar.launch(network, config)

    container = fake_docker.containers.get("c1-dns")
    assert handle.sidecar_container_id == container.id
    assert container.ips == {"c1-net": network.sidecar_ip}
    assert container.environment[CONFIG_ENV] == config.text
    assert container.labels[LABEL_DNS_MODE] == "deny"
    assert container.labels[LABEL_DIGEST] == config.digest
    assert container.command[:2] == ["sh", "-c"]

    assert (tmp_path / "c1" / "dnsmasq.conf").read_text() == config.text
    assert sidecar.read_config("c1") == config.text


@pytest.mark.asyncio
async def test_resolve_through_sidecar(sidecar, network):
    handle = await sidecar.launch(network, render(DENY_PROFILE, allowed=["pkg.example.com"]))

    assert await sidecar.resolve(handle, "pkg.example.com") is True
    assert await sidecar.resolve(handle, "evil.example.com") is False


@pytest.mark.asyncio
async def test_launch_timeout(sidecar, network, fake_docker):
    fake_docker.unresponsive_ips.add(network.sidecar_ip)

    with pytest.raises(SidecarStartTimeout, match="did not answer"):
        await sidecar.launch(network, render(DENY_PROFILE))

    assert fake_docker.containers.list(all=True) == []
    assert sidecar.read_config("c1") is None


@pytest.mark.asyncio
async def test_launch_sidecar_exits(sidecar, network, fake_docker):
    fake_docker.crashing_images.add(FAST.image)

    with pytest.raises(SidecarStartTimeout, match="exited"):
        await sidecar.launch(network, render(DENY_PROFILE))

    assert fake_docker.containers.list(all=True) == []


@pytest.mark.asyncio
async def test_launch_missing_image(sidecar, network, fake_docker):
    fake_docker.missing_images.add(FAST.image)

    with pytest.raises(SidecarStartTimeout, match="Could not create"):
        await sidecar.launch(network, render(DENY_PROFILE))


@pytest.mark.asyncio
async def test_reload_keeps_address(sidecar, network, fake_docker):
    handle = await sidecar.launch(network, render(DENY_PROFILE))
    assert await sidecar.resolve(handle, "pkg.example.com") is False

    for _ in range(3):
        new_config = render(DENY_PROFILE, allowed=["pkg.example.com"])
        handle = await sidecar.reload(handle, new_config)

        assert handle.sidecar_ip == network.sidecar_ip
        containers = fake_docker.containers.list(all=True)
        assert [c.name for c in containers] == ["c1-dns"]
        assert containers[0].ips == {"c1-net": network.sidecar_ip}

    assert await sidecar.resolve(handle, "pkg.example.com") is True
    assert sidecar.read_config("c1") == new_config.text


@pytest.mark.asyncio
async def test_failed_reload_leaves_old_sidecar(sidecar, network, fake_docker):
    old_config = render(DENY_PROFILE)
    handle = await sidecar.launch(network, old_config)
    old_id = handle.sidecar_container_id

    # Replacement never answers at the staging address
    fake_docker.unresponsive_ips.add(network.staging_ip)

    with pytest.raises(SidecarStartTimeout):
        await sidecar.reload(handle, render(DENY_PROFILE, allowed=["pkg.example.com"]))

    containers = fake_docker.containers.list(all=True)
    assert [c.id for c in containers] == [old_id]
    assert containers[0].ips == {"c1-net": network.sidecar_ip}
    assert sidecar.read_config("c1") == old_config.text
    assert await sidecar.resolve(handle, "github.com") is True


@pytest.mark.asyncio
async def test_reload_relaunches_missing_sidecar(sidecar, network, fake_docker):
    handle = await sidecar.launch(network, render(DENY_PROFILE))
    fake_docker.containers.get("c1-dns").remove(force=True)

    handle = await sidecar.reload(handle, render(DENY_PROFILE))

    assert fake_docker.containers.get("c1-dns").id == handle.sidecar_container_id


@pytest.mark.asyncio
async def test_reload_falls_back_to_fresh_launch_when_move_fails(sidecar, network, fake_docker):
    handle = await sidecar.launch(network, render(DENY_PROFILE))
    net = fake_docker.networks.get(network.network_id)
    real_connect = net.connect
    attempts = []

    def flaky_connect(container, ipv4_address=None, **kwargs):
        attempts.append(ipv4_address)
        if len(attempts) == 1:
            raise APIError("endpoint join failed")
        return real_connect(container, ipv4_address=ipv4_address, **kwargs)

    net.connect = flaky_connect

    handle = await sidecar.reload(handle, render(DENY_PROFILE, allowed=["pkg.example.com"]))

    container = fake_docker.containers.get("c1-dns")
    assert container.ips == {"c1-net": network.sidecar_ip}
    assert len(fake_docker.containers.list(all=True)) == 1
    assert await sidecar.resolve(handle, "pkg.example.com") is True


@pytest.mark.asyncio
async def test_resolve_without_sidecar(sidecar, network):
    with pytest.raises(ContainerNotFoundError):
        await sidecar.resolve(network, "github.com")


@pytest.mark.asyncio
async def test_stop_is_idempotent(sidecar, network, fake_docker):
    await sidecar.launch(network, render(DENY_PROFILE))
    assert await sidecar.is_running("c1") is True

    await sidecar.stop("c1")
    await sidecar.stop("c1")

    assert fake_docker.containers.list(all=True) == []
    assert await sidecar.is_running("c1") is False


@pytest.mark.asyncio
async def test_reload_verifies_at_fixed_address(sidecar, network, fake_docker):
    handle = await sidecar.launch(network, render(DENY_PROFILE))
    fake_docker.queries.clear()

    await sidecar.reload(handle, render(DENY_PROFILE, allowed=["pkg.example.com"]))

    assert ("c1-dns-next", network.staging_ip) in fake_docker.queries
    assert fake_docker.queries[-1] == ("c1-dns", network.sidecar_ip)


@pytest.mark.asyncio
async def test_reload_relaunches_when_moved_sidecar_is_unreachable(sidecar, network, fake_docker):
    handle = await sidecar.launch(network, render(DENY_PROFILE))
    net = fake_docker.networks.get(network.network_id)
    real_connect = net.connect

    def misplaced_connect(container, ipv4_address=None, **kwargs):
        # Engine accepts the move but leaves the sidecar on the staging address
        return real_connect(container, ipv4_address=network.staging_ip, **kwargs)

    net.connect = misplaced_connect

    handle = await sidecar.reload(handle, render(DENY_PROFILE, allowed=["pkg.example.com"]))

    containers = fake_docker.containers.list(all=True)
    assert [c.name for c in containers] == ["c1-dns"]
    assert containers[0].ips == {"c1-net": network.sidecar_ip}
    assert await sidecar.resolve(handle, "pkg.example.com") is True
