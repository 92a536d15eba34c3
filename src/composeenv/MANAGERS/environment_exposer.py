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
Exposure of resolved container metadata to a dependent process as
environment variables and system properties.
"""
import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from ..MODELS.container_info import ContainerInfo, ServiceInfo, ServicesInfo


def naming_stem(service: str, index: Optional[int] = None, custom_name: Optional[str] = None) -> str:
    """
    Name prefix for a container's variables: the custom container name if it
    has one, '<service>_<index>' for a scaled replica, otherwise the service name.
    """
    if custom_name:
        return custom_name
    if index is not None:
        return f"{service}_{index}"
    return service


def environment_stem(stem: str) -> str:
    return re.sub(r"[^A-Za-z0-9]", "_", stem).upper()


def property_stem(stem: str) -> str:
    return stem.lower()


@dataclass
class TargetProcessConfig:
    """
    Environment and system property tables of a process that has not started yet.
    """
    command: List[str] = field(default_factory=list)
    environment: Dict[str, str] = field(default_factory=dict)
    system_properties: Dict[str, str] = field(default_factory=dict)


class EnvironmentExposer:
    """
    Maps a ServicesInfo snapshot to flat variable names. The result is a
    one-time snapshot; later bring-ups do not update a target already exposed to.
    """
    def __init__(self, services_info: ServicesInfo):
        self.services_info = services_info

    def _containers(self):
        for service in self.services_info.values():
            for info in service.container_infos.values():
                yield self._stem(service, info), info

    @staticmethod
    def _stem(service: ServiceInfo, info: ContainerInfo) -> str:
        index = info.index if service.is_scaled else None
        return naming_stem(service.name, index, info.custom_name)

    def environment(self) -> Dict[str, str]:
        """
        Returns e.g. WEB_HOST, WEB_CONTAINER_HOSTNAME, WEB_TCP_80 and WEB_UDP_53.
        """
        env = {}
        for stem, info in self._containers():
            prefix = environment_stem(stem)
            env[f"{prefix}_HOST"] = info.host
            env[f"{prefix}_CONTAINER_HOSTNAME"] = info.container_hostname
            for port, host_port in info.tcp_ports.items():
                env[f"{prefix}_TCP_{port}"] = str(host_port)
            for protocol, ports in info.other_ports.items():
                for port, host_port in ports.items():
                    env[f"{prefix}_{protocol.upper()}_{port}"] = str(host_port)
        return env

    def system_properties(self) -> Dict[str, str]:
        """
        Returns e.g. web.host, web.containerHostname, web.tcp.80 and web.udp.53.
        """
        props = {}
        for stem, info in self._containers():
            prefix = property_stem(stem)
            props[f"{prefix}.host"] = info.host
            props[f"{prefix}.containerHostname"] = info.container_hostname
            for port, host_port in info.tcp_ports.items():
                props[f"{prefix}.tcp.{port}"] = str(host_port)
            for protocol, ports in info.other_ports.items():
                for port, host_port in ports.items():
                    props[f"{prefix}.{protocol.lower()}.{port}"] = str(host_port)
        return props

    def expose_as_environment(self, target: TargetProcessConfig) -> None:
        target.environment.update(self.environment())

    def expose_as_system_properties(self, target: TargetProcessConfig) -> None:
        target.system_properties.update(self.system_properties())
