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
Utilities for comparing tool version strings such as '1.29.2' or 'v2.24.5-desktop.1'.
"""
import re
from typing import Tuple

_NUMBER = re.compile(r"\d+")


def parse_version(version: str) -> Tuple[int, ...]:
    """
    Extracts the leading numeric components of a version string.

    :raises ValueError: If the string holds no version number.
    """
    core = version.strip().lstrip("vV").split("-", 1)[0].split("+", 1)[0]
    parts = tuple(int(n) for n in _NUMBER.findall(core))
    if not parts:
        raise ValueError(f"Not a version: {version!r}")
    return parts


def version_at_least(version: str, threshold: str) -> bool:
    current, required = parse_version(version), parse_version(threshold)
    width = max(len(current), len(required))
    current += (0,) * (width - len(current))
    required += (0,) * (width - len(required))
    return current >= required
