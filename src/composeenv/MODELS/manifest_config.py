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
Models for the configuration of one compose environment and its nested siblings.
"""
import os
import re
from typing import Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

DEFAULT_CONFIG_NAME = "default"


def default_project_name(working_directory: Optional[str] = None) -> str:
    """
    Derives a project name from a directory basename the way compose does:
    lower-cased, with anything outside [a-z0-9_-] removed.
    """
    base = os.path.basename(os.path.abspath(working_directory or os.getcwd()).rstrip(os.sep))
    return re.sub(r"[^a-z0-9_-]", "", base.lower()) or "default"


class ServiceManifestConfig(BaseModel):
    """
    Everything needed to bring up, wait for, and tear down one compose project.
    Frozen: a controller reads it once and never sees it change.
    """
    model_config = ConfigDict(frozen=True, extra="forbid")

    # Manifest
    compose_files: List[str] = Field(default_factory=lambda: ["docker-compose.yml"])
    project_name: Optional[str] = None
    working_directory: Optional[str] = None
    environment: Dict[str, Union[str, int, float]] = {}
    env_files: List[str] = []
    started_services: List[str] = []
    scale: Dict[str, int] = {}

    # Bring-up
    build_before_up: bool = False
    force_recreate: bool = False

    # Readiness
    wait_for_tcp_ports: bool = True
    readiness_timeout: float = 900.0
    tcp_connect_timeout: float = 1.0
    wait_after_tcp_probe_failure: float = 1.0
    disconnection_probe_timeout: float = 1.0
    wait_for_healthy_state: bool = True
    healthy_state_timeout: float = 900.0
    wait_after_healthy_state_probe_failure: float = 5.0
    resolve_attempts: int = 5

    # Tear-down
    stop_containers: bool = True
    remove_containers: bool = True
    remove_volumes: bool = True
    remove_orphans: bool = False
    stop_timeout: Optional[int] = None

    # Engine
    compose_executable: List[str] = Field(default_factory=lambda: ["docker", "compose"])
    docker_executable: str = "docker"
    scale_support_threshold: str = "1.13.0"
    daemon_is_local: Optional[bool] = None

    @field_validator("compose_files", "compose_executable")
    @classmethod
    def _not_empty(cls, value: List[str]) -> List[str]:
        if not value:
            raise ValueError("must contain at least one entry")
        return value

    @field_validator("scale")
    @classmethod
    def _non_negative_scale(cls, value: Dict[str, int]) -> Dict[str, int]:
        for service, count in value.items():
            if count < 0:
                raise ValueError(f"scale for {service} must not be negative")
        return value

    @field_validator("resolve_attempts")
    @classmethod
    def _at_least_one_attempt(cls, value: int) -> int:
        if value < 1:
            raise ValueError("resolve_attempts must be at least 1")
        return value

    @property
    def resolved_project_name(self) -> str:
        """Project name, falling back to one derived from the working directory."""
        return self.project_name or default_project_name(self.working_directory)

    @property
    def base_dir(self) -> str:
        return os.path.abspath(self.working_directory or os.getcwd())

    def resolve_path(self, path: str) -> str:
        """Resolves a manifest or env file path against the working directory."""
        return path if os.path.isabs(path) else os.path.join(self.base_dir, path)

    def fingerprint(self) -> str:
        """Stable serialization used to detect a changed manifest or scale between bring-ups."""
        return self.model_dump_json()


class ComposeSettings(BaseModel):
    """
    A top-level configuration plus named nested configurations, each of which
    drives its own isolated compose project.
    """
    model_config = ConfigDict(frozen=True)

    default: ServiceManifestConfig = Field(default_factory=ServiceManifestConfig)
    nested: Dict[str, ServiceManifestConfig] = {}

    @model_validator(mode="after")
    def _reserved_name(self) -> "ComposeSettings":
        if DEFAULT_CONFIG_NAME in self.nested:
            raise ValueError(f"'{DEFAULT_CONFIG_NAME}' cannot be used as a nested configuration name")
        return self

    def named_configs(self) -> Dict[str, ServiceManifestConfig]:
        """
        Returns every configuration keyed by name. Nested configurations without
        a project name get '<parent project>_<name>' so they never collide with the parent.
        """
        configs = {DEFAULT_CONFIG_NAME: self.default}
        parent = self.default.resolved_project_name
        for name, config in self.nested.items():
            if config.project_name is None:
                config = config.model_copy(update={"project_name": f"{parent}_{name}"})
            configs[name] = config
        return configs

    def get(self, name: Optional[str] = None) -> ServiceManifestConfig:
        configs = self.named_configs()
        key = name or DEFAULT_CONFIG_NAME
        if key not in configs:
            raise KeyError(f"Unknown configuration '{key}'")
        return configs[key]
