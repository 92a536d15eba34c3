# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Unit tests for the lifecycle controller, driven by an in-memory engine client.
"""
import pytest

from composeenv.MANAGERS.environment_exposer import TargetProcessConfig
from composeenv.MANAGERS.lifecycle_controller import (
    ComposeLifecycleController,
    LifecycleState,
    controllers_for,
)
from composeenv.MANAGERS.readiness_waiter import ReadinessWaiter
from composeenv.MODELS.errors import (
    ComposeError,
    ContainerUnhealthy,
    EngineError,
    ManifestError,
    ParseError,
    ReadinessTimeout,
    ServicesNotSettled,
    UnsupportedNetworkMode,
    UnsupportedOperation,
)
from composeenv.MODELS.manifest_config import ComposeSettings, ServiceManifestConfig
from conftest import FakeEngineClient, make_record


def make_config(compose_dir, **overrides):
    values = dict(
        working_directory=str(compose_dir),
        project_name="proj",
        wait_for_tcp_ports=False,
        wait_for_healthy_state=False,
    )
    values.update(overrides)
    return ServiceManifestConfig(**values)


def never_ready(host, port, timeout, disconnection_timeout):
    return False


def always_ready(host, port, timeout, disconnection_timeout):
    return True


class TestBringUp:
    """Tests for ComposeLifecycleController.up."""

    def test_up_resolves_services(self, compose_dir, fake_client):
        controller = ComposeLifecycleController(make_config(compose_dir), fake_client)
        services = controller.up()
        assert controller.state is LifecycleState.READY
        assert 80 in services.web.first_container.tcp_ports
        assert controller.services_info is services
        assert fake_client.calls == ["up", "inspect"]

    def test_up_waits_for_tcp_ports(self, compose_dir, fake_client):
        waiter = ReadinessWaiter(timeout=1, probe=always_ready)
        controller = ComposeLifecycleController(make_config(compose_dir, wait_for_tcp_ports=True), fake_client, waiter)
        controller.up()
        assert controller.state is LifecycleState.READY

    def test_up_is_idempotent(self, compose_dir, fake_client):
        """Test that a second bring-up reuses the cached snapshot without engine calls."""
        controller = ComposeLifecycleController(make_config(compose_dir), fake_client)
        first = controller.up()
        calls = list(fake_client.calls)
        second = controller.up()
        assert second is first
        assert fake_client.calls == calls
        assert [i.id for i in second.containers()] == [i.id for i in first.containers()]

    def test_changed_config_brings_up_again(self, compose_dir, fake_client):
        controller = ComposeLifecycleController(make_config(compose_dir), fake_client)
        controller.up()
        controller.reconfigure(make_config(compose_dir, force_recreate=True))
        controller.up()
        assert fake_client.calls.count("up") == 2

    def test_scale_on_old_engine_fails_before_up(self, compose_dir):
        """Test that unsupported scaling fails before any container starts."""
        client = FakeEngineClient([make_record()], version="1.12.0")
        controller = ComposeLifecycleController(make_config(compose_dir, scale={"web": 2}), client)
        with pytest.raises(UnsupportedOperation):
            controller.up()
        assert "up" not in client.calls
        assert controller.state is LifecycleState.FAILED

    def test_scale_threshold_is_configurable(self, compose_dir):
        client = FakeEngineClient([make_record(number=1), make_record(number=2)], version="1.12.0")
        config = make_config(compose_dir, scale={"web": 2}, scale_support_threshold="1.10.0")
        services = ComposeLifecycleController(config, client).up()
        assert set(services.web.container_infos) == {"web_1", "web_2"}

    def test_scaled_bring_up(self, compose_dir):
        client = FakeEngineClient([make_record(number=1), make_record(number=2)])
        controller = ComposeLifecycleController(make_config(compose_dir, scale={"web": 2}), client)
        services = controller.up()
        assert list(services.web.container_infos) == ["web_1", "web_2"]
        assert services.web.first_container is services.web.container_infos["web_1"]

    def test_disabled_port_wait_never_times_out(self, compose_dir, fake_client):
        """Test that bring-up succeeds at once when port waiting is off, even if ports never open."""
        waiter = ReadinessWaiter(timeout=0.1, probe=never_ready)
        controller = ComposeLifecycleController(make_config(compose_dir), fake_client, waiter)
        controller.up()
        assert controller.state is LifecycleState.READY

    def test_readiness_timeout_leaves_environment_running(self, compose_dir, fake_client):
        waiter = ReadinessWaiter(timeout=0.1, initial_backoff=0.01, probe=never_ready)
        controller = ComposeLifecycleController(make_config(compose_dir, wait_for_tcp_ports=True), fake_client, waiter)
        with pytest.raises(ReadinessTimeout) as exc:
            controller.up()
        assert exc.value.unreachable == ["web_1:80 (localhost:32769)"]
        assert controller.state is LifecycleState.TIMED_OUT
        assert "down" not in fake_client.calls
        assert len(controller.services_info) == 0

        controller.down()
        assert controller.state is LifecycleState.IDLE
        assert fake_client.calls[-1] == "down"

    def test_engine_error_is_surfaced(self, compose_dir, fake_client):
        error = EngineError(["docker", "compose", "up"], 1, "pull access denied")
        fake_client.fail_on["up"] = error
        controller = ComposeLifecycleController(make_config(compose_dir), fake_client)
        with pytest.raises(EngineError) as exc:
            controller.up()
        assert exc.value is error
        assert controller.state is LifecycleState.FAILED
        assert controller.session.error is error

    def test_resolution_retries_until_settled(self, compose_dir, fake_client):
        """Test that an empty inspection right after up is retried."""
        fake_client.queue([], [make_record()])
        controller = ComposeLifecycleController(make_config(compose_dir, resolve_attempts=3), fake_client)
        services = controller.up()
        assert "web" in services
        assert fake_client.calls.count("inspect") == 2

    def test_parse_errors_escalate_after_attempts(self, compose_dir):
        broken = make_record()
        del broken["Config"]["Hostname"]
        client = FakeEngineClient([broken])
        controller = ComposeLifecycleController(make_config(compose_dir, resolve_attempts=2), client)
        with pytest.raises(ParseError):
            controller.up()
        assert client.calls.count("inspect") == 2
        assert controller.state is LifecycleState.FAILED

    def test_exited_container_is_not_ready(self, compose_dir):
        """Test that a container which exited never passes readiness, even with port waiting on."""
        stopped = make_record(ports={}, exposed=["80/tcp"], running=False)
        client = FakeEngineClient([stopped])
        waiter = ReadinessWaiter(timeout=0.2, initial_backoff=0.01, probe=never_ready)
        config = make_config(compose_dir, wait_for_tcp_ports=True, resolve_attempts=2)
        controller = ComposeLifecycleController(config, client, waiter)
        with pytest.raises(ServicesNotSettled) as exc:
            controller.up()
        assert exc.value.stopped == ["proj-web-1"]
        assert controller.state is LifecycleState.FAILED
        assert client.calls.count("inspect") == 2
        assert len(controller.services_info) == 0

    def test_restarted_container_is_resolved(self, compose_dir):
        client = FakeEngineClient()
        client.queue([make_record(ports={}, running=False)], [make_record()])
        controller = ComposeLifecycleController(make_config(compose_dir, resolve_attempts=3), client)
        assert controller.up().web.tcp_ports == {80: 32769}

    def test_manifest_replicas_on_old_engine_fail_before_up(self, compose_dir):
        """Test that replicas declared in the compose file are checked like configured ones."""
        (compose_dir / "docker-compose.yml").write_text(
            "services:\n  web:\n    image: nginx\n    deploy:\n      replicas: 2\n"
        )
        client = FakeEngineClient([make_record(number=1), make_record(number=2)], version="1.12.0")
        controller = ComposeLifecycleController(make_config(compose_dir), client)
        with pytest.raises(UnsupportedOperation):
            controller.up()
        assert "up" not in client.calls
        assert controller.state is LifecycleState.FAILED

    def test_malformed_manifest_fails(self, compose_dir):
        (compose_dir / "docker-compose.yml").write_text(
            "services:\n  web:\n    image: nginx\n    deploy:\n      replicas: many\n"
        )
        controller = ComposeLifecycleController(make_config(compose_dir), FakeEngineClient([make_record()]))
        with pytest.raises(ManifestError):
            controller.up()
        assert controller.state is LifecycleState.FAILED

    def test_host_network_on_remote_daemon(self, compose_dir):
        client = FakeEngineClient([make_record(network_mode="host", ports={}, exposed=["80/tcp"])],
                                  daemon_is_local=False)
        controller = ComposeLifecycleController(make_config(compose_dir), client)
        with pytest.raises(UnsupportedNetworkMode):
            controller.up()
        assert controller.state is LifecycleState.FAILED

    def test_host_network_on_local_daemon(self, compose_dir):
        client = FakeEngineClient([make_record(network_mode="host", ports={}, exposed=["80/tcp"])])
        services = ComposeLifecycleController(make_config(compose_dir), client).up()
        assert services.web.host == "localhost"
        assert services.web.tcp_ports == {80: 80}

    def test_daemon_locality_override(self, compose_dir):
        client = FakeEngineClient([make_record(network_mode="host", ports={}, exposed=["80/tcp"])],
                                  daemon_is_local=False)
        config = make_config(compose_dir, daemon_is_local=True)
        assert ComposeLifecycleController(config, client).up().web.host == "localhost"


class TestResolveRunning:
    """Tests for resolving an already running project."""

    def test_resolve_does_not_start_anything(self, compose_dir, fake_client):
        controller = ComposeLifecycleController(make_config(compose_dir, force_recreate=True), fake_client)
        services = controller.resolve()
        assert services.web.first_container.tcp_ports == {80: 32769}
        assert fake_client.calls == ["inspect"]
        assert controller.state is LifecycleState.IDLE

    def test_resolve_reuses_ready_snapshot(self, compose_dir, fake_client):
        controller = ComposeLifecycleController(make_config(compose_dir), fake_client)
        services = controller.up()
        assert controller.resolve() is services
        assert fake_client.calls == ["up", "inspect"]

    def test_resolve_stopped_project(self, compose_dir):
        client = FakeEngineClient([])
        controller = ComposeLifecycleController(make_config(compose_dir, resolve_attempts=1), client)
        with pytest.raises(ServicesNotSettled):
            controller.resolve()
        assert "up" not in client.calls


class TestHealthWaiting:
    """Tests for waiting on engine health checks."""

    def test_waits_until_healthy(self, compose_dir):
        client = FakeEngineClient()
        client.queue([make_record(health="starting")], [make_record(health="starting")],
                     [make_record(health="healthy")])
        config = make_config(compose_dir, wait_for_healthy_state=True, wait_after_healthy_state_probe_failure=0.01)
        controller = ComposeLifecycleController(config, client)
        controller.up()
        assert controller.state is LifecycleState.READY
        assert client.calls.count("inspect") == 3

    def test_unhealthy_container_fails(self, compose_dir):
        client = FakeEngineClient([make_record(health="unhealthy")])
        config = make_config(compose_dir, wait_for_healthy_state=True)
        controller = ComposeLifecycleController(config, client)
        with pytest.raises(ContainerUnhealthy):
            controller.up()
        assert controller.state is LifecycleState.FAILED


class TestTearDown:
    """Tests for tear-down and the running() context."""

    def test_down_resets_session_even_if_engine_fails(self, compose_dir, fake_client):
        controller = ComposeLifecycleController(make_config(compose_dir), fake_client)
        controller.up()
        fake_client.fail_on["down"] = EngineError(["docker", "compose", "down"], 1)
        with pytest.raises(EngineError):
            controller.down()
        assert controller.state is LifecycleState.IDLE
        assert len(controller.services_info) == 0

    def test_down_from_idle_still_calls_engine(self, compose_dir, fake_client):
        ComposeLifecycleController(make_config(compose_dir), fake_client).down()
        assert fake_client.calls == ["down"]

    def test_stop_containers_disabled(self, compose_dir, fake_client):
        controller = ComposeLifecycleController(make_config(compose_dir, stop_containers=False), fake_client)
        controller.up()
        controller.down()
        assert "down" not in fake_client.calls
        assert controller.state is LifecycleState.IDLE

    def test_up_after_down_calls_engine_again(self, compose_dir, fake_client):
        controller = ComposeLifecycleController(make_config(compose_dir), fake_client)
        controller.up()
        controller.down()
        controller.up()
        assert fake_client.calls.count("up") == 2

    def test_running_context(self, compose_dir, fake_client):
        controller = ComposeLifecycleController(make_config(compose_dir), fake_client)
        with controller.running() as services:
            assert "web" in services
            assert controller.state is LifecycleState.READY
        assert controller.state is LifecycleState.IDLE
        assert fake_client.calls[-1] == "down"

    def test_running_context_tears_down_after_failure(self, compose_dir, fake_client):
        fake_client.fail_on["up"] = EngineError(["up"], 1)
        controller = ComposeLifecycleController(make_config(compose_dir), fake_client)
        with pytest.raises(EngineError):
            with controller.running():
                pass
        assert fake_client.calls[-1] == "down"


class TestOtherOperations:
    """Tests for exposure, pull, rescale and nested controllers."""

    def test_expose_requires_ready(self, compose_dir, fake_client):
        controller = ComposeLifecycleController(make_config(compose_dir), fake_client)
        with pytest.raises(ComposeError):
            controller.expose_as_environment(TargetProcessConfig())

    def test_expose(self, compose_dir, fake_client):
        controller = ComposeLifecycleController(make_config(compose_dir), fake_client)
        controller.up()
        target = TargetProcessConfig()
        controller.expose_as_environment(target)
        controller.expose_as_system_properties(target)
        assert {"WEB_HOST", "WEB_CONTAINER_HOSTNAME", "WEB_TCP_80"} <= set(target.environment)
        assert {"web.host", "web.containerHostname", "web.tcp.80"} <= set(target.system_properties)

    def test_pull(self, compose_dir, fake_client):
        ComposeLifecycleController(make_config(compose_dir), fake_client).pull()
        assert fake_client.calls == ["pull"]

    def test_rescale(self, compose_dir, fake_client):
        controller = ComposeLifecycleController(make_config(compose_dir), fake_client)
        controller.up()
        fake_client.queue([make_record(number=1), make_record(number=2)])
        services = controller.rescale("web", 2)
        assert "scale" in fake_client.calls
        assert list(services.web.container_infos) == ["web_1", "web_2"]
        assert controller.config.scale == {"web": 2}

    def test_controllers_for_nested_settings(self, compose_dir, fake_client):
        settings = ComposeSettings(
            default=make_config(compose_dir),
            nested={"db": ServiceManifestConfig(compose_files=["db.yml"])},
        )
        controllers = controllers_for(settings, fake_client)
        assert list(controllers) == ["default", "db"]
        assert controllers["db"].config.resolved_project_name == "proj_db"
        assert controllers["db"].session is not controllers["default"].session
