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
Coordination of a compose environment's lifecycle: bring-up, resolution, readiness and tear-down.
"""
import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, Iterator, Optional

from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, wait_exponential

from ..MODELS.container_info import ServicesInfo
from ..MODELS.errors import ComposeError, ParseError, ReadinessTimeout, ServicesNotSettled
from ..MODELS.manifest_config import ComposeSettings, ServiceManifestConfig
from ..PARSERS.inspection_parser import ContainerInfoParser
from ..PARSERS.manifest_parser import DeclaredService, ManifestParser
from ..PARSERS.settings_parser import substitution_environment
from ..RUNNERS.engine_client import ContainerEngineClient, DockerComposeClient
from .environment_exposer import EnvironmentExposer, TargetProcessConfig
from .network_extractor import NetworkInfoExtractor
from .readiness_waiter import ReadinessWaiter
from .service_resolver import ServiceStateResolver

logger = logging.getLogger(__name__)


class LifecycleState(str, Enum):
    """States of a compose environment."""

    IDLE = "idle"
    BRINGING_UP = "bringing_up"
    RESOLVING = "resolving"
    WAITING = "waiting"
    READY = "ready"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


@dataclass
class ComposeSession:
    """
    State of one orchestration session. services_info is replaced as a whole,
    only after bring-up and readiness succeeded, and emptied on tear-down.
    """
    state: LifecycleState = LifecycleState.IDLE
    services_info: ServicesInfo = field(default_factory=ServicesInfo)
    fingerprint: Optional[str] = None
    error: Optional[Exception] = None


class ComposeLifecycleController:
    """
    Brings a compose project up, resolves its containers, waits for them and tears them down.
    Failures never tear the environment down; that is always an explicit down().
    """
    def __init__(
        self,
        config: ServiceManifestConfig,
        client: Optional[ContainerEngineClient] = None,
        waiter: Optional[ReadinessWaiter] = None,
    ):
        """
        Initializes the controller.

        :param config: Configuration of the compose project.
        :param client: Engine client; defaults to the docker command line tools.
        :param waiter: Readiness waiter; defaults to one built from the configuration.
        """
        self.config = config
        self.client = client or DockerComposeClient()
        self.parser = ContainerInfoParser()
        self.session = ComposeSession()
        self._waiter = waiter

    @property
    def state(self) -> LifecycleState:
        return self.session.state

    @property
    def services_info(self) -> ServicesInfo:
        return self.session.services_info

    def reconfigure(self, config: ServiceManifestConfig) -> None:
        """Replaces the configuration; the next up() brings the project up again if it changed."""
        self.config = config

    def up(self) -> ServicesInfo:
        """
        Starts the project and waits until it is ready. Calling it again without
        a tear-down returns the cached snapshot unless the configuration changed.

        :return: The resolved services.
        """
        config = self.config
        if self.session.state is LifecycleState.READY and self.session.fingerprint == config.fingerprint():
            logger.info("Project %s is already up, reusing resolved services", config.resolved_project_name)
            return self.session.services_info

        return self._bring_up(config, lambda: self.client.up(config))

    def rescale(self, service: str, count: int) -> ServicesInfo:
        """
        Changes the replica count of one service and resolves the project again.
        """
        config = self.config.model_copy(update={"scale": {**self.config.scale, service: count}})
        self.config = config
        return self._bring_up(config, lambda: self.client.scale(config, service, count))

    def down(self) -> None:
        """
        Tears the project down. Always attempted, whatever state bring-up ended in;
        the session is reset to idle even if the engine fails.
        """
        config = self.config
        try:
            if config.stop_containers:
                logger.info("Stopping project %s", config.resolved_project_name)
                self.client.down(config)
            else:
                logger.info("Leaving containers of project %s running", config.resolved_project_name)
        finally:
            self.session = ComposeSession()

    def resolve(self) -> ServicesInfo:
        """
        Resolves the services of a project that is already running, without
        starting, recreating or waiting for anything. The session is left untouched.
        """
        config = self.config
        if self.session.state is LifecycleState.READY and self.session.fingerprint == config.fingerprint():
            return self.session.services_info
        resolver = self._resolver(config)
        declared = ManifestParser(substitution_environment(config)).parse(config)
        return self._resolve(config, resolver, declared, resolver.expected_counts(config, declared))

    def pull(self) -> None:
        """Pulls the images of the project's services."""
        logger.info("Pulling images for project %s", self.config.resolved_project_name)
        self.client.pull(self.config)

    @contextmanager
    def running(self) -> Iterator[ServicesInfo]:
        """Brings the project up for the duration of a with-block and always tears it down."""
        try:
            yield self.up()
        finally:
            self.down()

    def expose_as_environment(self, target: TargetProcessConfig) -> None:
        self._exposer().expose_as_environment(target)

    def expose_as_system_properties(self, target: TargetProcessConfig) -> None:
        self._exposer().expose_as_system_properties(target)

    def _exposer(self) -> EnvironmentExposer:
        if self.session.state is not LifecycleState.READY:
            raise ComposeError(
                f"Project {self.config.resolved_project_name} is not up (state: {self.session.state.value})"
            )
        return EnvironmentExposer(self.session.services_info)

    def _transition(self, state: LifecycleState) -> None:
        logger.info("Project %s: %s -> %s", self.config.resolved_project_name, self.session.state.value, state.value)
        self.session.state = state

    def _fail(self, state: LifecycleState, error: Exception) -> None:
        self._transition(state)
        self.session.error = error

    def _resolver(self, config: ServiceManifestConfig) -> ServiceStateResolver:
        daemon_is_local = config.daemon_is_local
        if daemon_is_local is None:
            daemon_is_local = self.client.daemon_is_local()
        return ServiceStateResolver(NetworkInfoExtractor(self.client.daemon_host(), daemon_is_local), self.parser)

    def _check_scale(self, config: ServiceManifestConfig, expected: Dict[str, int]) -> None:
        """Fails before any engine side effect if scaling is requested but unsupported."""
        if any(count > 1 for count in expected.values()):
            ServiceStateResolver.check_scale_supported(
                expected, self.client.version(config), config.scale_support_threshold
            )

    def _bring_up(
        self,
        config: ServiceManifestConfig,
        start: Callable[[], object],
    ) -> ServicesInfo:
        self.session.error = None
        self._transition(LifecycleState.BRINGING_UP)
        try:
            resolver = self._resolver(config)
            declared = ManifestParser(substitution_environment(config)).parse(config)
            expected = resolver.expected_counts(config, declared)
            self._check_scale(config, expected)
            start()
        except ComposeError as e:
            self._fail(LifecycleState.FAILED, e)
            raise

        self._transition(LifecycleState.RESOLVING)
        try:
            services_info = self._resolve(config, resolver, declared, expected)
        except ComposeError as e:
            self._fail(LifecycleState.FAILED, e)
            raise

        self._transition(LifecycleState.WAITING)
        try:
            self._wait(config, services_info)
        except ReadinessTimeout as e:
            self._fail(LifecycleState.TIMED_OUT, e)
            raise
        except ComposeError as e:
            self._fail(LifecycleState.FAILED, e)
            raise

        self.session.services_info = services_info
        self.session.fingerprint = config.fingerprint()
        self._transition(LifecycleState.READY)
        return services_info

    def _resolve(
        self,
        config: ServiceManifestConfig,
        resolver: ServiceStateResolver,
        declared: Dict[str, DeclaredService],
        expected: Dict[str, int],
    ) -> ServicesInfo:
        """
        Inspects and resolves the project, retrying while containers are
        malformed or not all running yet.
        """
        retrying = Retrying(
            stop=stop_after_attempt(config.resolve_attempts),
            wait=wait_exponential(multiplier=0.5, max=5),
            retry=retry_if_exception_type((ParseError, ServicesNotSettled)),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        return retrying(
            lambda: resolver.resolve(
                self.client.inspect(config), expected, declared, config.resolved_project_name
            )
        )

    def _wait(self, config: ServiceManifestConfig, services_info: ServicesInfo) -> None:
        waiter = self._waiter or ReadinessWaiter(
            timeout=config.readiness_timeout,
            connect_timeout=config.tcp_connect_timeout,
            initial_backoff=config.wait_after_tcp_probe_failure,
            disconnection_timeout=config.disconnection_probe_timeout,
        )
        if config.wait_for_healthy_state:
            ids = {info.id for info in services_info.containers()}

            def health() -> Dict[str, Optional[str]]:
                parsed, _ = self.parser.parse_many(self.client.inspect(config))
                return {c.name: c.health_status for c in parsed if c.id in ids}

            waiter.wait_for_healthy(
                health, config.healthy_state_timeout, config.wait_after_healthy_state_probe_failure
            )
        if config.wait_for_tcp_ports:
            waiter.wait_for_tcp_ports(waiter.endpoints_for(services_info))


def controllers_for(
    settings: ComposeSettings,
    client: Optional[ContainerEngineClient] = None,
) -> Dict[str, ComposeLifecycleController]:
    """
    Builds one controller per named configuration. Controllers share no
    mutable state, so differently named projects can run side by side.
    """
    client = client or DockerComposeClient()
    return {name: ComposeLifecycleController(config, client) for name, config in settings.named_configs().items()}
