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
Resolution of the address and ports a container is reachable on from this process.
"""
import logging
from typing import Dict, List

from ..MODELS.container_info import ContainerInfo, NetworkMode, ParsedContainer, PortBinding
from ..MODELS.errors import UnsupportedNetworkMode

logger = logging.getLogger(__name__)

LOOPBACK_HOST = "localhost"


class NetworkInfoExtractor:
    """
    Derives host-reachable addresses and port mappings, branching on network mode.

    Host networking is only reachable through loopback when the engine daemon
    shares this machine's network namespace. That is a precondition supplied
    by the caller (daemon_is_local), not something detected here.
    """
    def __init__(self, daemon_host: str = LOOPBACK_HOST, daemon_is_local: bool = True):
        """
        Initializes the extractor.

        :param daemon_host: Address of the machine running the engine daemon.
        :param daemon_is_local: Whether the daemon runs in this machine's network namespace.
        """
        self.daemon_host = daemon_host
        self.daemon_is_local = daemon_is_local

    def extract(self, container: ParsedContainer) -> ContainerInfo:
        """
        Builds the ContainerInfo for a parsed container.

        :raises UnsupportedNetworkMode: If the container cannot be reached in its network mode.
        """
        mode = container.network_mode
        if mode is NetworkMode.BRIDGE:
            host = self.daemon_host
            bindings = container.published
        elif mode is NetworkMode.HOST:
            if not self.daemon_is_local:
                raise UnsupportedNetworkMode(
                    f"Container {container.name} uses host networking, but the engine daemon "
                    f"does not share this machine's network, so it is not reachable on {LOOPBACK_HOST}",
                    container.name,
                )
            host = LOOPBACK_HOST
            bindings = self._identity(container.exposed + container.published)
        elif mode is NetworkMode.UNSUPPORTED:
            raise UnsupportedNetworkMode(
                f"Container {container.name} uses network mode '{container.network_mode_value}', "
                f"which has no reachable address of its own",
                container.name,
            )
        else:
            raise UnsupportedNetworkMode(f"Unknown network mode {mode!r}", container.name)

        ports: Dict[int, int] = {}
        tcp_ports: Dict[int, int] = {}
        other_ports: Dict[str, Dict[int, int]] = {}
        for binding in bindings:
            if binding.protocol == "tcp":
                tcp_ports[binding.container_port] = binding.host_port
            else:
                other_ports.setdefault(binding.protocol, {})[binding.container_port] = binding.host_port
            ports.setdefault(binding.container_port, binding.host_port)
        # TCP wins when the same port number is bound for several protocols
        ports.update(tcp_ports)

        logger.debug("Container %s reachable on %s with ports %s", container.name, host, ports)
        return ContainerInfo(
            id=container.id,
            name=container.name,
            service_name=container.service,
            container_hostname=container.hostname,
            host=host,
            ports=ports,
            tcp_ports=tcp_ports,
            other_ports=other_ports,
            inspection=container.inspection,
        )

    def _identity(self, bindings: List[PortBinding]) -> List[PortBinding]:
        """In host mode every declared port is its own host port."""
        seen = {}
        for binding in bindings:
            key = (binding.container_port, binding.protocol)
            seen[key] = PortBinding(
                container_port=binding.container_port,
                protocol=binding.protocol,
                host_port=binding.container_port,
            )
        return list(seen.values())
