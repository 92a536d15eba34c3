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
Utilities for compose-style variable substitution in manifest files.
"""
import logging
import re
from typing import Dict

logger = logging.getLogger(__name__)

# $$ | $VAR | ${VAR} | ${VAR:-default} | ${VAR-default} | ${VAR:?message} | ${VAR?message}
_PATTERN = re.compile(
    r"\$(?:(?P<escaped>\$)"
    r"|(?P<named>[A-Za-z_][A-Za-z0-9_]*)"
    r"|\{(?P<braced>[A-Za-z_][A-Za-z0-9_]*)(?:(?P<modifier>:?[-?])(?P<argument>[^}]*))?\})"
)


class EnvironmentInterpolator:
    """
    Substitutes variables in manifest text the way the compose tool does.
    Unset variables without a default resolve to an empty string.
    """

    @staticmethod
    def interpolate(template: str, context: Dict[str, str]) -> str:
        """
        Interpolates variables in the template using the provided context.

        :param template: Text containing $VAR or ${VAR...} placeholders.
        :param context: Variables available for substitution.
        :return: The interpolated text.
        :raises KeyError: For ${VAR?message} when VAR is unset.
        """

        def replace(match: "re.Match[str]") -> str:
            if match.group("escaped"):
                return "$"

            name = match.group("named") or match.group("braced")
            modifier = match.group("modifier")
            argument = match.group("argument") or ""
            value = context.get(name)

            if modifier in (":-", ":?"):
                missing = not value
            else:
                missing = value is None

            if not missing:
                return value
            if modifier in (":-", "-"):
                return argument
            if modifier in (":?", "?"):
                raise KeyError(f"Variable {name} is required: {argument or 'not set'}")

            logger.warning("Variable %s is not set, substituting an empty string", name)
            return ""

        return _PATTERN.sub(replace, template)
