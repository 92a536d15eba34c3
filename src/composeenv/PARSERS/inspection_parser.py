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
Parsers for container engine inspection records.
"""
import logging
from typing import Any, Dict, List, Optional, Tuple

from ..MODELS.container_info import NetworkMode, ParsedContainer, PortBinding
from ..MODELS.errors import ParseError

logger = logging.getLogger(__name__)

SERVICE_LABEL = "com.docker.compose.service"
PROJECT_LABEL = "com.docker.compose.project"
NUMBER_LABEL = "com.docker.compose.container-number"


class ContainerInfoParser:
    """
    Converts the engine's describe-container output into ParsedContainer records.
    """

    def parse(self, record: Dict[str, Any]) -> ParsedContainer:
        """
        Parses a single inspection record.

        :param record: One element of the engine's inspect output.
        :return: The parsed container.
        :raises ParseError: If a required field is missing or malformed.
        """
        if not isinstance(record, dict):
            raise ParseError(f"Inspection record must be an object, got {type(record).__name__}")

        container_id = record.get("Id")
        if not container_id:
            raise ParseError("Inspection record has no Id")

        config = self._section(record, "Config", container_id)
        labels = config.get("Labels") or {}
        hostname = config.get("Hostname")
        if not hostname:
            raise ParseError(f"Container {container_id} has no Config.Hostname", container_id)

        service = labels.get(SERVICE_LABEL)
        if not service:
            raise ParseError(f"Container {container_id} has no {SERVICE_LABEL} label", container_id)

        name = (record.get("Name") or "").lstrip("/")
        if not name:
            raise ParseError(f"Container {container_id} has no Name", container_id)

        host_config = record.get("HostConfig") or {}
        network_mode_value = host_config.get("NetworkMode") or "default"
        network_settings = record.get("NetworkSettings") or {}
        state = record.get("State") or {}

        return ParsedContainer(
            id=container_id,
            name=name,
            hostname=hostname,
            service=service,
            project=labels.get(PROJECT_LABEL),
            number=self._number(labels.get(NUMBER_LABEL), container_id),
            created=record.get("Created") or "",
            network_mode=NetworkMode.from_engine_value(network_mode_value),
            network_mode_value=network_mode_value,
            published=self._published(network_settings.get("Ports") or {}, container_id),
            exposed=[
                PortBinding(container_port=port, protocol=protocol)
                for port, protocol in (
                    self._port_key(key, container_id) for key in (config.get("ExposedPorts") or {})
                )
            ],
            health_status=(state.get("Health") or {}).get("Status"),
            running=self._running(state),
            inspection=record,
        )

    def parse_many(self, records: List[Dict[str, Any]]) -> Tuple[List[ParsedContainer], List[ParseError]]:
        """
        Parses every record, collecting failures instead of stopping at the first one.
        """
        parsed, failures = [], []
        for record in records:
            try:
                parsed.append(self.parse(record))
            except ParseError as e:
                logger.debug("Skipping unparseable inspection record: %s", e)
                failures.append(e)
        return parsed, failures

    def _section(self, record: Dict[str, Any], key: str, container_id: str) -> Dict[str, Any]:
        section = record.get(key)
        if not isinstance(section, dict):
            raise ParseError(f"Container {container_id} has no {key} section", container_id)
        return section

    def _number(self, value: Optional[str], container_id: str) -> Optional[int]:
        if value is None:
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            raise ParseError(f"Container {container_id} has invalid number label {value!r}", container_id)

    def _port_key(self, key: str, container_id: str) -> Tuple[int, str]:
        """Splits '80/tcp' into (80, 'tcp'). A bare port number is TCP."""
        port, _, protocol = str(key).partition("/")
        try:
            return int(port), (protocol or "tcp").lower()
        except ValueError:
            raise ParseError(f"Container {container_id} has invalid port {key!r}", container_id)

    def _published(self, ports: Dict[str, Any], container_id: str) -> List[PortBinding]:
        """
        Reads NetworkSettings.Ports. Unpublished ports map to null; a published
        port may list one binding per address family, which share the host port.
        """
        bindings = []
        for key, host_bindings in ports.items():
            container_port, protocol = self._port_key(key, container_id)
            if not host_bindings:
                continue
            host_port = next((b.get("HostPort") for b in host_bindings if b.get("HostPort")), None)
            if host_port is None:
                continue
            try:
                host_port = int(host_port)
            except (TypeError, ValueError):
                raise ParseError(f"Container {container_id} has invalid host port {host_port!r}", container_id)
            bindings.append(PortBinding(container_port=container_port, protocol=protocol, host_port=host_port))
        return bindings

    def _running(self, state: Dict[str, Any]) -> bool:
        """A record without State, as some engines emit, is taken as running."""
        if "Running" in state:
            return bool(state["Running"])
        if "Status" in state:
            return state["Status"] == "running"
        return True
