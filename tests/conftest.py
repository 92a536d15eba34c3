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
Shared fixtures: inspection record builders and an in-memory engine client.
"""
from typing import Any, Dict, List, Optional

import pytest

from composeenv.MODELS.errors import EngineError


def make_record(
    service: str = "web",
    number: Optional[int] = 1,
    project: str = "proj",
    name: Optional[str] = None,
    ports: Optional[Dict[str, Optional[int]]] = None,
    exposed: Optional[List[str]] = None,
    network_mode: str = "proj_default",
    health: Optional[str] = None,
    container_id: Optional[str] = None,
    created: str = "2024-01-01T00:00:00Z",
    running: bool = True,
) -> Dict[str, Any]:
    """Builds a docker inspect record shaped like the engine's output."""
    if ports is None:
        ports = {"80/tcp": 32768 + (number or 1)}
    labels = {
        "com.docker.compose.service": service,
        "com.docker.compose.project": project,
    }
    if number is not None:
        labels["com.docker.compose.container-number"] = str(number)
    record = {
        "Id": container_id or f"{service}{number}".ljust(12, "0"),
        "Created": created,
        "Name": "/" + (name or f"{project}-{service}-{number}"),
        "Config": {
            "Hostname": f"host-{service}-{number}",
            "Labels": labels,
            "ExposedPorts": {key: {} for key in (exposed if exposed is not None else list(ports))},
        },
        "HostConfig": {"NetworkMode": network_mode},
        "NetworkSettings": {
            "Ports": {
                key: None if host_port is None else [
                    {"HostIp": "0.0.0.0", "HostPort": str(host_port)},
                    {"HostIp": "::", "HostPort": str(host_port)},
                ]
                for key, host_port in ports.items()
            }
        },
        "State": {"Status": "running" if running else "exited", "Running": running},
    }
    if health is not None:
        record["State"]["Health"] = {"Status": health}
    return record


class FakeEngineClient:
    """
    In-memory ContainerEngineClient. inspect() returns the queued record
    lists one after another, repeating the last one.
    """

    def __init__(self, records=None, version="2.24.5", daemon_host="localhost", daemon_is_local=True):
        self.inspections = [list(records or [])]
        self.version_string = version
        self._daemon_host = daemon_host
        self._daemon_is_local = daemon_is_local
        self.calls: List[str] = []
        self.fail_on: Dict[str, EngineError] = {}

    def queue(self, *record_lists):
        self.inspections = [list(records) for records in record_lists]

    def _call(self, name):
        self.calls.append(name)
        if name in self.fail_on:
            raise self.fail_on[name]

    def version(self, config):
        self._call("version")
        return self.version_string

    def up(self, config):
        self._call("up")
        return ""

    def down(self, config):
        self._call("down")

    def pull(self, config):
        self._call("pull")

    def scale(self, config, service, count):
        self._call("scale")

    def inspect(self, config):
        self._call("inspect")
        if len(self.inspections) > 1:
            return self.inspections.pop(0)
        return self.inspections[0]

    def daemon_host(self):
        return self._daemon_host

    def daemon_is_local(self):
        return self._daemon_is_local


@pytest.fixture
def compose_dir(tmp_path):
    """A working directory holding a single-service compose file."""
    (tmp_path / "docker-compose.yml").write_text(
        "services:\n"
        "  web:\n"
        "    image: nginx\n"
        "    ports:\n"
        "      - 80\n"
    )
    return tmp_path


@pytest.fixture
def fake_client():
    return FakeEngineClient([make_record()])
