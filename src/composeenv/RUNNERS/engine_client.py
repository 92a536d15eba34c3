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
Invocation of the container engine and compose tool.
"""
import json
import logging
import os
import subprocess
import sys
from typing import Any, Dict, List, Mapping, Optional, Protocol
from urllib.parse import urlparse

from ..MODELS.errors import EngineError, ParseError
from ..MODELS.manifest_config import ServiceManifestConfig
from ..PARSERS.settings_parser import substitution_environment

logger = logging.getLogger(__name__)

LOCAL_HOSTS = ("localhost", "127.0.0.1", "::1")


class ContainerEngineClient(Protocol):
    """
    Lifecycle commands the orchestration needs from a container engine.
    Every method raises EngineError when the engine reports a failure.
    """

    def version(self, config: ServiceManifestConfig) -> str: ...

    def up(self, config: ServiceManifestConfig) -> str: ...

    def down(self, config: ServiceManifestConfig) -> None: ...

    def pull(self, config: ServiceManifestConfig) -> None: ...

    def scale(self, config: ServiceManifestConfig, service: str, count: int) -> None: ...

    def inspect(self, config: ServiceManifestConfig) -> List[Dict[str, Any]]: ...

    def daemon_host(self) -> str: ...

    def daemon_is_local(self) -> bool: ...


class DockerComposeClient:
    """
    ContainerEngineClient backed by the docker and compose command line tools.
    """
    def __init__(self, environ: Optional[Mapping[str, str]] = None, platform: Optional[str] = None):
        """
        Initializes the client.

        :param environ: Process environment; defaults to os.environ.
        :param platform: Platform name as in sys.platform; defaults to the current one.
        """
        self.environ = dict(os.environ if environ is None else environ)
        self.platform = platform or sys.platform

    def _compose(self, config: ServiceManifestConfig, *args: str) -> List[str]:
        cmd = list(config.compose_executable)
        for compose_file in config.compose_files:
            cmd.extend(["-f", config.resolve_path(compose_file)])
        cmd.extend(["-p", config.resolved_project_name])
        cmd.extend(args)
        return cmd

    def _run(self, cmd: List[str], config: ServiceManifestConfig) -> str:
        """
        Runs a command to completion in the configuration's working directory.

        :raises EngineError: If the command cannot be started or exits non-zero.
        """
        logger.debug("Running %s", " ".join(cmd))
        try:
            result = subprocess.run(
                cmd,
                cwd=config.base_dir,
                env=substitution_environment(config, self.environ),
                capture_output=True,
                text=True,
            )
        except OSError as e:
            raise EngineError(cmd, 127, str(e))
        if result.returncode != 0:
            raise EngineError(cmd, result.returncode, result.stderr)
        return result.stdout

    def version(self, config: ServiceManifestConfig) -> str:
        return self._run(list(config.compose_executable) + ["version", "--short"], config).strip()

    def up(self, config: ServiceManifestConfig) -> str:
        args = ["up", "-d"]
        if config.build_before_up:
            args.append("--build")
        if config.force_recreate:
            args.append("--force-recreate")
        for service, count in config.scale.items():
            args.extend(["--scale", f"{service}={count}"])
        args.extend(config.started_services)
        return self._run(self._compose(config, *args), config)

    def down(self, config: ServiceManifestConfig) -> None:
        if config.remove_containers:
            args = ["down"]
            if config.remove_volumes:
                args.append("--volumes")
            if config.remove_orphans:
                args.append("--remove-orphans")
        else:
            args = ["stop"]
        if config.stop_timeout is not None:
            args.extend(["-t", str(config.stop_timeout)])
        self._run(self._compose(config, *args), config)

    def pull(self, config: ServiceManifestConfig) -> None:
        self._run(self._compose(config, "pull", *config.started_services), config)

    def scale(self, config: ServiceManifestConfig, service: str, count: int) -> None:
        self._run(self._compose(config, "up", "-d", "--no-recreate", "--scale", f"{service}={count}", service), config)

    def inspect(self, config: ServiceManifestConfig) -> List[Dict[str, Any]]:
        """
        Lists the project's containers and returns their inspection records.

        :raises ParseError: If the engine output is not valid JSON.
        """
        ids = self._run(self._compose(config, "ps", "-a", "-q"), config).split()
        if not ids:
            return []
        output = self._run([config.docker_executable, "inspect", *ids], config)
        try:
            records = json.loads(output)
        except ValueError as e:
            raise ParseError(f"Engine returned invalid inspection JSON: {e}")
        if not isinstance(records, list):
            raise ParseError("Engine inspection output is not a list")
        return records

    def _docker_host(self) -> Optional[str]:
        value = self.environ.get("DOCKER_HOST")
        if not value:
            return None
        parsed = urlparse(value)
        if parsed.scheme in ("tcp", "http", "https", "ssh"):
            return parsed.hostname
        return None

    def daemon_host(self) -> str:
        """Address of the daemon machine: the host of a tcp:// DOCKER_HOST, otherwise localhost."""
        return self._docker_host() or "localhost"

    def daemon_is_local(self) -> bool:
        """
        Whether the daemon shares this machine's network namespace. Docker
        Desktop on macOS and Windows runs the daemon inside a VM.
        """
        remote = self._docker_host()
        if remote and remote not in LOCAL_HOSTS:
            return False
        return self.platform.startswith("linux")
