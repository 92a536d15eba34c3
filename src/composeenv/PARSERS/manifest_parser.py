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
Parsers for the service declarations of compose files.
"""
import os
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError

from ..MODELS.errors import ManifestError
from ..MODELS.manifest_config import ServiceManifestConfig
from ..UTILS.string_interpolation import EnvironmentInterpolator


class DeclaredService(BaseModel):
    """
    The parts of a service declaration that affect how its containers are identified.
    """
    model_config = ConfigDict(frozen=True)

    name: str
    container_name: Optional[str] = None
    network_mode: Optional[str] = None
    replicas: Optional[int] = None
    profiles: List[str] = []


class ManifestParser:
    """
    Reads the ordered compose files of a configuration. Later files override
    keys of services declared by earlier ones.
    """
    def __init__(self, context: Optional[Dict[str, str]] = None):
        """
        Initializes the parser with the variables used for interpolation.

        :param context: Substitution variables; defaults to the process environment.
        """
        self.context = context if context is not None else dict(os.environ)

    def parse(self, config: ServiceManifestConfig) -> Dict[str, DeclaredService]:
        """
        Parses every compose file of a configuration.

        :param config: The configuration naming the compose files.
        :return: Declared services by name, in declaration order.
        :raises ManifestError: If a compose file is missing, not valid YAML, or declares a malformed service.
        """
        merged: Dict[str, Dict[str, Any]] = {}
        for compose_file in config.compose_files:
            path = config.resolve_path(compose_file)
            if not os.path.exists(path):
                raise ManifestError(f"Compose file {path} not found")
            with open(path, 'r') as f:
                content = f.read()
            for name, spec in self.parse_services(content, path).items():
                merged.setdefault(name, {}).update(spec)

        return {name: self._declared(name, spec) for name, spec in merged.items()}

    def parse_services(self, content: str, source: str = "<string>") -> Dict[str, Dict[str, Any]]:
        """
        Returns the raw service mappings of one compose file. Files without a
        'services' key use the legacy layout with services at the top level.
        """
        try:
            content = EnvironmentInterpolator.interpolate(content, self.context)
        except KeyError as e:
            raise ManifestError(f"Interpolation failed in {source}: {e}")

        try:
            data = yaml.safe_load(content) or {}
        except yaml.YAMLError as e:
            raise ManifestError(f"Invalid YAML in {source}: {e}")
        if not isinstance(data, dict):
            raise ManifestError(f"Compose file {source} must be a mapping")

        if 'services' in data:
            services = data.get('services') or {}
        elif 'version' in data:
            services = {}
        else:
            services = data
        if not isinstance(services, dict):
            raise ManifestError(f"Services in {source} must be a mapping")
        return {name: spec or {} for name, spec in services.items() if isinstance(spec or {}, dict)}

    def _declared(self, name: str, spec: Dict[str, Any]) -> DeclaredService:
        deploy = spec.get('deploy') or {}
        if not isinstance(deploy, dict):
            raise ManifestError(f"Service {name} has a 'deploy' section that is not a mapping")
        try:
            return DeclaredService(
                name=name,
                container_name=spec.get('container_name'),
                network_mode=spec.get('network_mode'),
                replicas=deploy.get('replicas', spec.get('scale')),
                profiles=spec.get('profiles') or [],
            )
        except ValidationError as e:
            raise ManifestError(f"Invalid declaration of service {name}: {e}")
