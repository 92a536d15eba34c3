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
Grouping of inspected containers into services, handling scaled replicas and custom container names.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from ..MODELS.container_info import ContainerInfo, ParsedContainer, ServiceInfo, ServicesInfo
from ..MODELS.errors import ParseError, ServicesNotSettled, UnsupportedOperation
from ..MODELS.manifest_config import ServiceManifestConfig
from ..PARSERS.inspection_parser import ContainerInfoParser
from ..PARSERS.manifest_parser import DeclaredService
from ..UTILS.versioning import version_at_least
from .network_extractor import NetworkInfoExtractor

logger = logging.getLogger(__name__)


class ServiceStateResolver:
    """
    Builds a ServicesInfo snapshot from the engine's inspection records.

    Container keys follow these rules:
      * replicas of a service are numbered 1..N by engine container number,
        then creation time, and keyed '<service>_<n>'
      * a container with a custom (not engine generated) name is keyed by that name
    """
    def __init__(self, extractor: NetworkInfoExtractor, parser: Optional[ContainerInfoParser] = None):
        self.extractor = extractor
        self.parser = parser or ContainerInfoParser()

    @staticmethod
    def check_scale_supported(scale: Dict[str, int], version: str, threshold: str) -> None:
        """
        Fails before bring-up when replicas are requested from a tool too old to scale.

        :raises UnsupportedOperation: If any service asks for more than one replica.
        """
        scaled = sorted(name for name, count in scale.items() if count > 1)
        if not scaled:
            return
        try:
            supported = version_at_least(version, threshold)
        except ValueError:
            raise UnsupportedOperation(f"Cannot tell whether compose version {version!r} supports scaling")
        if not supported:
            raise UnsupportedOperation(
                f"Scaling ({', '.join(scaled)}) requires compose {threshold} or newer, found {version}"
            )

    @staticmethod
    def expected_counts(config: ServiceManifestConfig, declared: Dict[str, DeclaredService]) -> Dict[str, int]:
        """
        Number of containers each started service should have once bring-up settles.
        Services behind a profile are only expected when started explicitly.
        """
        if config.started_services:
            names = list(config.started_services)
        else:
            names = [name for name, service in declared.items() if not service.profiles]

        counts = {}
        for name in names:
            service = declared.get(name)
            default = service.replicas if service and service.replicas is not None else 1
            count = config.scale.get(name, default)
            if count > 0:
                counts[name] = count
        return counts

    def resolve(
        self,
        records: List[Dict[str, Any]],
        expected: Dict[str, int],
        declared: Optional[Dict[str, DeclaredService]] = None,
        project: Optional[str] = None,
    ) -> ServicesInfo:
        """
        Groups inspection records by service.

        :param records: Raw inspection records for the project's containers.
        :param expected: Minimum running container count per started service.
        :param declared: Declared services, used to recognise custom container names.
        :param project: Compose project name, used to recognise generated container names.
        :raises ParseError: If some records could not be parsed.
        :raises ServicesNotSettled: If a started service has fewer running containers than expected.
        """
        declared = declared or {}
        parsed, failures = self.parser.parse_many(records)
        if failures:
            raise ParseError(
                f"{len(failures)} of {len(records)} containers could not be parsed: {failures[0].message}",
                failures[0].container_id,
            )

        groups: Dict[str, List[ParsedContainer]] = {}
        stopped: Dict[str, List[str]] = {}
        for container in parsed:
            if project and container.project and container.project != project:
                continue
            if not container.running:
                # Only running containers count towards a settled service
                logger.debug("Ignoring container %s of service %s, it is not running", container.name, container.service)
                stopped.setdefault(container.service, []).append(container.name)
                continue
            groups.setdefault(container.service, []).append(container)

        unsettled = [name for name, count in expected.items() if len(groups.get(name, [])) < count]
        if unsettled:
            raise ServicesNotSettled(unsettled, [n for name in unsettled for n in stopped.get(name, [])])

        order = list(expected) + sorted(name for name in groups if name not in expected)
        services = {}
        for name in order:
            containers = sorted(
                groups[name],
                key=lambda c: (c.number if c.number is not None else float("inf"), c.created, c.id),
            )
            services[name] = self._service(name, containers, declared.get(name), project)
            logger.debug("Resolved service %s: %s", name, list(services[name].container_infos))
        return ServicesInfo(services)

    def _service(
        self,
        name: str,
        containers: List[ParsedContainer],
        declared: Optional[DeclaredService],
        project: Optional[str],
    ) -> ServiceInfo:
        container_infos: Dict[str, ContainerInfo] = {}
        for index, container in enumerate(containers, start=1):
            info = self.extractor.extract(container)
            custom_name = container.name if self._is_custom_name(container, declared, project) else None
            key = custom_name or f"{name}_{index}"
            container_infos[key] = info.model_copy(update={"index": index, "custom_name": custom_name})
        return ServiceInfo(name=name, container_infos=container_infos)

    def _is_custom_name(
        self,
        container: ParsedContainer,
        declared: Optional[DeclaredService],
        project: Optional[str],
    ) -> bool:
        if declared and declared.container_name:
            return declared.container_name == container.name
        project = container.project or project
        if not project:
            return False
        # Generated names: <project>_<service>_<n> (v1, optionally with a run suffix) or <project>-<service>-<n>
        generated = re.compile(
            rf"^{re.escape(project)}([-_]){re.escape(container.service)}\1\d+(_[0-9a-f]+)?$"
        )
        return not generated.match(container.name)
