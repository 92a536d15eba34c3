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
Models describing running containers and the services they belong to.
"""
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Optional

from pydantic import BaseModel, ConfigDict, model_validator


class NetworkMode(str, Enum):
    """
    Networking variants a container can run in, as far as reachability is concerned.
    """
    BRIDGE = "bridge"
    HOST = "host"
    UNSUPPORTED = "unsupported"

    @classmethod
    def from_engine_value(cls, value: Optional[str]) -> "NetworkMode":
        """
        Classifies the engine's HostConfig.NetworkMode value. Default, bridge,
        user-defined networks and 'none' all publish ports through the port table.
        """
        if value == "host":
            return cls.HOST
        if value and value.startswith("container:"):
            return cls.UNSUPPORTED
        return cls.BRIDGE


class PortBinding(BaseModel):
    """A container port, its protocol, and the host port it is published on (if any)."""
    model_config = ConfigDict(frozen=True)

    container_port: int
    protocol: str = "tcp"
    host_port: Optional[int] = None


class ParsedContainer(BaseModel):
    """
    Structured view of one engine inspection record, before host resolution.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    hostname: str
    service: str
    project: Optional[str] = None
    number: Optional[int] = None
    created: str = ""
    network_mode: NetworkMode = NetworkMode.BRIDGE
    network_mode_value: str = "default"
    published: List[PortBinding] = []
    exposed: List[PortBinding] = []
    health_status: Optional[str] = None
    running: bool = True
    inspection: Dict[str, Any] = {}


class ContainerInfo(BaseModel):
    """
    Connection metadata for one running container, as reachable from this process.
    """
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    service_name: str
    container_hostname: str
    host: str
    ports: Dict[int, int] = {}
    tcp_ports: Dict[int, int] = {}
    other_ports: Dict[str, Dict[int, int]] = {}
    inspection: Dict[str, Any] = {}
    # Set during service resolution
    index: Optional[int] = None
    custom_name: Optional[str] = None

    @property
    def udp_ports(self) -> Dict[int, int]:
        return self.other_ports.get("udp", {})

    @model_validator(mode="after")
    def _tcp_ports_subset(self) -> "ContainerInfo":
        for port, host_port in self.tcp_ports.items():
            if self.ports.get(port) != host_port:
                raise ValueError(f"tcp port {port} -> {host_port} missing from ports of {self.name}")
        return self


class ServiceInfo(BaseModel):
    """
    All containers backing one service, keyed by container key
    ('web_1', 'web_2', ... or a custom container name).
    """
    model_config = ConfigDict(frozen=True)

    name: str
    container_infos: Dict[str, ContainerInfo]

    @model_validator(mode="after")
    def _not_empty(self) -> "ServiceInfo":
        if not self.container_infos:
            raise ValueError(f"service {self.name} has no containers")
        return self

    @property
    def first_container(self) -> ContainerInfo:
        return next(iter(self.container_infos.values()))

    @property
    def is_scaled(self) -> bool:
        return len(self.container_infos) > 1

    def get(self, key: str) -> ContainerInfo:
        """
        Looks a container up by key. A singleton service is also
        addressable by the bare service name.
        """
        if key in self.container_infos:
            return self.container_infos[key]
        if key == self.name and not self.is_scaled:
            return self.first_container
        raise KeyError(key)

    @property
    def host(self) -> str:
        return self.first_container.host

    @property
    def container_hostname(self) -> str:
        return self.first_container.container_hostname

    @property
    def ports(self) -> Dict[int, int]:
        return self.first_container.ports

    @property
    def tcp_ports(self) -> Dict[int, int]:
        return self.first_container.tcp_ports


class ServicesInfo(Mapping):
    """
    Read-only snapshot of service name -> ServiceInfo. A new snapshot is built
    for every bring-up; an existing one is never modified.
    """

    def __init__(self, services: Optional[Dict[str, ServiceInfo]] = None):
        self._services = MappingProxyType(dict(services or {}))

    def __getitem__(self, name: str) -> ServiceInfo:
        return self._services[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._services)

    def __len__(self) -> int:
        return len(self._services)

    def __getattr__(self, name: str) -> ServiceInfo:
        if name.startswith("_"):
            raise AttributeError(name)
        try:
            return self._services[name]
        except KeyError:
            raise AttributeError(f"No service named '{name}'") from None

    def __eq__(self, other: object) -> bool:
        if isinstance(other, ServicesInfo):
            return dict(self._services) == dict(other._services)
        return NotImplemented

    def __repr__(self) -> str:
        return f"ServicesInfo({list(self._services)})"

    def containers(self) -> Iterator[ContainerInfo]:
        for service in self._services.values():
            yield from service.container_infos.values()


@dataclass(frozen=True)
class Endpoint:
    """A host/port pair that must accept TCP connections before the environment is ready."""
    label: str
    host: str
    port: int

    def __str__(self) -> str:
        return f"{self.label} ({self.host}:{self.port})"
