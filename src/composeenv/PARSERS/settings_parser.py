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
Parsers for composeenv settings files and the variable substitutions they declare.
"""
import os
from typing import Any, Dict, Optional

import yaml
from dotenv import dotenv_values

from ..MODELS.errors import ManifestError
from ..MODELS.manifest_config import ComposeSettings, ServiceManifestConfig


class SettingsParser:
    """
    Parser for YAML settings files. Top-level keys configure the default
    environment; the optional 'nested' section declares further named ones.
    """

    def parse(self, settings_path: str) -> ComposeSettings:
        """
        Parses a settings file from a path. Relative working directories are
        resolved against the directory holding the settings file.

        :param settings_path: Path to the settings file.
        :return: Parsed settings.
        """
        with open(settings_path, 'r') as f:
            content = f.read()
        return self.parse_from_string(content, base_dir=os.path.dirname(os.path.abspath(settings_path)))

    def parse_from_string(self, content: str, base_dir: Optional[str] = None) -> ComposeSettings:
        """
        Parses settings from a YAML string.

        :param content: YAML content.
        :param base_dir: Directory that relative working directories refer to.
        :return: Parsed settings.
        """
        data = yaml.safe_load(content) or {}
        if not isinstance(data, dict):
            raise ValueError("Settings must be a mapping")

        nested = data.pop('nested', None) or {}
        return ComposeSettings(
            default=self._config(data, base_dir),
            nested={name: self._config(spec or {}, base_dir) for name, spec in nested.items()},
        )

    def _config(self, spec: Dict[str, Any], base_dir: Optional[str]) -> ServiceManifestConfig:
        spec = dict(spec)
        if base_dir:
            working_directory = spec.get('working_directory') or '.'
            if not os.path.isabs(working_directory):
                spec['working_directory'] = os.path.normpath(os.path.join(base_dir, working_directory))
        if isinstance(spec.get('compose_files'), str):
            spec['compose_files'] = [spec['compose_files']]
        return ServiceManifestConfig(**spec)


def substitution_environment(config: ServiceManifestConfig, base: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Builds the variables the compose tool sees: the process environment,
    then env_files in order, then the explicit environment map.

    :raises ManifestError: If an env file does not exist.
    """
    merged = dict(os.environ if base is None else base)
    for env_file in config.env_files:
        path = config.resolve_path(env_file)
        if not os.path.exists(path):
            raise ManifestError(f"Env file {path} not found")
        merged.update({k: v for k, v in dotenv_values(path).items() if v is not None})
    merged.update({k: str(v) for k, v in config.environment.items()})
    return merged
