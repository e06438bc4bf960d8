"""Unit tests for container_engine domain entities."""

import pytest

from container_engine.domain.entities import (
    Container,
    ContainerConfig,
    ContainerState,
    Endpoint,
    HealthCheckSpec,
    HealthStatus,
    MountSpec,
    Network,
    ResourceLimits,
    RestartPolicy,
    RestartPolicyKind,
    ServiceSpec,
    UpdateConfig,
    Volume,
)
from container_engine.domain.entities.volume import Mount
from container_engine.domain.errors import InvalidStateError
from container_engine.domain.value_objects.identifiers import (
    create_container_id,
    generate_id,
    is_valid_name,
    short_id,
)
from container_engine.ports.outbound import SignalKind


@pytest.mark.unit
class TestIdentifiers:
    """Test value object creation."""

    def test_generate_id(self):
        """Test that IDs are 64 hex characters and unique."""
        first = generate_id()
        assert len(first) == 64
        int(first, 16)
        assert first != create_container_id()

    def test_short_id(self):
        assert short_id("0123456789abcdef") == "0123456789ab"

    @pytest.mark.parametrize("name", ["web", "web-1", "db_primary", "a.b", "9lives"])
    def test_valid_names(self, name):
        assert is_valid_name(name)

    @pytest.mark.parametrize("name", ["", "-web", ".hidden", "has space", "a/b"])
    def test_invalid_names(self, name):
        assert not is_valid_name(name)


@pytest.mark.unit
class TestRestartPolicy:
    """Test restart policy parsing and decisions."""

    def test_parse(self):
        assert RestartPolicy.parse("no") == RestartPolicy.never()
        assert RestartPolicy.parse("") == RestartPolicy.never()
        assert RestartPolicy.parse("always") == RestartPolicy.always()
        assert RestartPolicy.parse("unless-stopped") == RestartPolicy.unless_stopped()
        assert RestartPolicy.parse("on-failure:3") == RestartPolicy.on_failure(3)

    def test_parse_errors(self):
        with pytest.raises(ValueError):
            RestartPolicy.parse("sometimes")
        with pytest.raises(ValueError):
            RestartPolicy.parse("on-failure:x")
        with pytest.raises(ValueError):
            RestartPolicy.parse("always:2")

    def test_str(self):
        assert str(RestartPolicy.on_failure(5)) == "on-failure:5"
        assert str(RestartPolicy.on_failure()) == "on-failure"
        assert str(RestartPolicy.unless_stopped()) == "unless-stopped"

    def test_negative_retries(self):
        with pytest.raises(ValueError):
            RestartPolicy(RestartPolicyKind.ON_FAILURE, -1)

    def test_never(self):
        assert not RestartPolicy.never().should_restart(1, False, 1)

    def test_always_ignores_stop(self):
        """Test that Always restarts even after an explicit stop."""
        policy = RestartPolicy.always()
        assert policy.should_restart(0, False, 0)
        assert policy.should_restart(143, True, 1)

    def test_unless_stopped(self):
        policy = RestartPolicy.unless_stopped()
        assert policy.should_restart(0, False, 0)
        assert not policy.should_restart(143, True, 1)

    def test_on_failure_ceiling(self):
        """Test that OnFailure(2) allows two restarts after the first crash."""
        policy = RestartPolicy.on_failure(2)
        assert not policy.should_restart(0, False, 0)
        assert policy.should_restart(1, False, 1)
        assert policy.should_restart(1, False, 2)
        assert not policy.should_restart(1, False, 3)


@pytest.mark.unit
class TestHealthCheckSpec:
    """Test health check validation."""

    @pytest.mark.parametrize(
        "kwargs",
        [{"interval": 0}, {"timeout": -1}, {"retries": 0}, {"start_period": -0.5}],
    )
    def test_invalid(self, kwargs):
        with pytest.raises(ValueError):
            HealthCheckSpec(command=("true",), **kwargs)

    def test_ready_deadline(self):
        check = HealthCheckSpec(command=("true",), interval=2.0, timeout=1.0, retries=3, start_period=4.0)
        assert check.ready_deadline() == 11.0


@pytest.mark.unit
class TestResourceLimits:
    """Test resource limits validation."""

    def test_valid_limits(self):
        assert ResourceLimits(cpu_shares=512, memory_limit=512_000_000, pids_limit=100).is_valid()

    def test_invalid_memory(self):
        """Test invalid memory limit (too small)."""
        assert not ResourceLimits(memory_limit=1_000_000).is_valid()

    def test_invalid_cpu_shares(self):
        assert not ResourceLimits(cpu_shares=1).is_valid()

    def test_invalid_pids(self):
        assert not ResourceLimits(pids_limit=0).is_valid()


@pytest.mark.unit
class TestContainerConfig:
    """Test container configuration validation."""

    def test_valid(self):
        config = ContainerConfig(image="app:1", name="web", mounts=[MountSpec("/data", "data")])
        assert config.validate()

    def test_collects_every_problem(self):
        config = ContainerConfig(
            image="",
            name="-bad",
            env={"A=B": "x"},
            mounts=[MountSpec("relative"), MountSpec("/data"), MountSpec("/data")],
        )
        errors = config.validation_errors()
        assert "image is required" in errors
        assert "invalid container name: '-bad'" in errors
        assert "invalid environment key: 'A=B'" in errors
        assert "mount target must be absolute: 'relative'" in errors
        assert "duplicate mount target" in errors


@pytest.mark.unit
class TestContainer:
    """Test container state transitions."""

    def test_lifecycle(self):
        container = Container(container_id=generate_id(), image="app:1")
        assert container.state == ContainerState.CREATED

        container.mark_running(pid=100, run_id=1, start_sequence=1)
        assert container.is_running()
        assert container.is_ready()

        container.mark_paused()
        assert container.is_running()
        assert not container.is_ready()
        container.mark_unpaused()

        container.mark_exited(1)
        assert container.state == ContainerState.STOPPED
        assert container.exit_code == 1
        assert container.failure_count == 1
        assert container.pid is None

        container.mark_removed()
        assert container.state == ContainerState.REMOVED

    def test_clean_exit_resets_failures(self):
        container = Container(container_id="c1", image="app:1", failure_count=2)
        container.mark_running(1, 1, 1)
        container.mark_exited(0)
        assert container.failure_count == 0

    def test_health_starts_when_checked(self):
        container = Container(container_id="c1", image="app:1", health_check=HealthCheckSpec(command=("true",)))
        container.mark_running(1, 1, 1)
        assert container.health == HealthStatus.STARTING
        assert not container.is_ready()
        container.health = HealthStatus.HEALTHY
        assert container.is_ready()

    def test_invalid_transitions(self):
        """Test that the state machine rejects illegal moves."""
        container = Container(container_id="c1", image="app:1")
        with pytest.raises(InvalidStateError):
            container.mark_paused()
        with pytest.raises(InvalidStateError):
            container.mark_exited(0)
        container.mark_running(1, 1, 1)
        with pytest.raises(InvalidStateError):
            container.mark_running(2, 2, 2)
        with pytest.raises(InvalidStateError):
            container.mark_removed()

    def test_display_name(self):
        assert Container(container_id="f" * 64, image="a").display_name == "f" * 12
        assert Container(container_id="f" * 64, image="a", name="web").display_name == "web"


@pytest.mark.unit
class TestNetwork:
    """Test endpoint lookup."""

    @pytest.fixture
    def network(self) -> Network:
        return Network(
            network_id="n1",
            name="net",
            members={
                "aaaa1111": Endpoint("aaaa1111", "10.0.0.2", ["db"], "db-1", attached_at=1.0),
                "bbbb2222": Endpoint("bbbb2222", "10.0.0.3", ["db"], "db-2", attached_at=2.0),
                "cccc3333": Endpoint("cccc3333", "10.0.0.4", ["db-1"], "cache", attached_at=3.0),
            },
        )

    def test_alias_in_attach_order(self, network: Network):
        assert [e.address for e in network.endpoints_for("db")] == ["10.0.0.2", "10.0.0.3"]

    def test_name_wins_over_alias(self, network: Network):
        assert [e.container_id for e in network.endpoints_for("db-1")] == ["aaaa1111"]

    def test_id_and_prefix(self, network: Network):
        assert network.endpoints_for("bbbb2222")[0].address == "10.0.0.3"
        assert network.endpoints_for("cccc")[0].container_name == "cache"
        assert network.endpoints_for("missing") == []

    def test_allocated_addresses(self, network: Network):
        assert network.allocated_addresses() == {"10.0.0.2", "10.0.0.3", "10.0.0.4"}


@pytest.mark.unit
class TestVolume:
    """Test volume reference counting."""

    def test_holders(self):
        volume = Volume(
            volume_id="v1",
            name="data",
            mounts=[Mount("c1", "/a"), Mount("c2", "/b"), Mount("c1", "/c")],
        )
        assert volume.ref_count == 3
        assert volume.holders() == ["c1", "c2"]
        assert volume.is_bound_by("c2")
        assert not volume.is_bound_by("c3")


@pytest.mark.unit
class TestServiceSpec:
    """Test ServiceSpec helpers."""

    def test_validation(self):
        spec = ServiceSpec(name="web", image="", replicas=-1, depends_on=["web"])
        errors = spec.validation_errors()
        assert "image is required" in errors
        assert "replicas must be non-negative" in errors
        assert "service web depends on itself" in errors

    def test_required_ready(self):
        assert ServiceSpec(name="web", image="a", replicas=3).required_ready() == 1
        assert ServiceSpec(name="web", image="a", replicas=3, min_ready=5).required_ready() == 3
        assert ServiceSpec(name="web", image="a", replicas=0).required_ready() == 0

    def test_template_key_ignores_scale(self):
        """Test that replica count and rollout settings do not change the template."""
        base = ServiceSpec(name="web", image="web:1", replicas=2)
        scaled = ServiceSpec(name="web", image="web:1", replicas=5, update_config=UpdateConfig(parallelism=3))
        changed = ServiceSpec(name="web", image="web:2", replicas=2)
        assert base.template_key() == scaled.template_key()
        assert base.template_key() != changed.template_key()

    @pytest.mark.parametrize("kwargs", [{"parallelism": 0}, {"delay": -1}, {"monitor_window": 0}])
    def test_update_config_invalid(self, kwargs):
        with pytest.raises(ValueError):
            UpdateConfig(**kwargs)


@pytest.mark.unit
class TestSignalKind:
    """Test signal parsing."""

    @pytest.mark.parametrize("value", ["SIGTERM", "term", "15", 15, SignalKind.TERM])
    def test_parse(self, value):
        assert SignalKind.parse(value) is SignalKind.TERM

    def test_unknown(self):
        with pytest.raises(ValueError):
            SignalKind.parse("SIGWHAT")

    def test_forceful(self):
        assert SignalKind.KILL.is_forceful
        assert not SignalKind.INT.is_forceful
