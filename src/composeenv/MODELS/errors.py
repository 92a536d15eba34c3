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
Exception classes raised while bringing a compose environment up and down.
"""
from typing import List, Optional


class ComposeError(Exception):
    """Base exception for compose environment failures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ParseError(ComposeError):
    """
    Raised when an engine inspection record is malformed or incomplete.
    Resolution treats the container as unresolved and retries.
    """

    def __init__(self, message: str, container_id: Optional[str] = None):
        self.container_id = container_id
        super().__init__(message)


class ServicesNotSettled(ComposeError):
    """Raised when a started service has fewer running containers than expected."""

    def __init__(self, services: List[str], stopped: Optional[List[str]] = None):
        self.services = services
        self.stopped = stopped or []
        message = f"Not enough running containers yet for services: {', '.join(services)}"
        if self.stopped:
            message = f"{message} (not running: {', '.join(self.stopped)})"
        super().__init__(message)


class UnsupportedNetworkMode(ComposeError):
    """
    Raised when a container's network mode cannot be reached from this process,
    e.g. host networking while the engine daemon runs inside a VM.
    """

    def __init__(self, message: str, container: Optional[str] = None):
        self.container = container
        super().__init__(message)


class UnsupportedOperation(ComposeError):
    """Raised when the engine lacks an operation, such as scaling, before anything starts."""


class ReadinessTimeout(ComposeError):
    """
    Raised when some endpoints never became reachable within the timeout.
    The environment is left running for inspection.
    """

    def __init__(self, unreachable: List[str], timeout: float):
        self.unreachable = unreachable
        self.timeout = timeout
        super().__init__(
            f"Not ready after {timeout:g}s: {', '.join(unreachable)}"
        )


class ContainerUnhealthy(ComposeError):
    """Raised when the engine reports a container health check as failing."""

    def __init__(self, container: str, status: str):
        self.container = container
        self.status = status
        super().__init__(f"Container {container} reported health status '{status}'")


class EngineError(ComposeError):
    """Opaque failure of a container engine command, surfaced verbatim."""

    def __init__(self, command: List[str], returncode: int, stderr: str = ""):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        message = f"Command {' '.join(command)!r} exited with code {returncode}"
        if stderr:
            message = f"{message}: {stderr.strip()}"
        super().__init__(message)


class ManifestError(ComposeError):
    """Raised when a compose file cannot be read."""
