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
Utilities for checking whether a network port accepts connections.
"""
import socket


def can_connect(host: str, port: int, timeout: float = 1.0, disconnection_timeout: float = 0.0) -> bool:
    """
    Checks that host:port accepts a TCP connection.

    When disconnection_timeout is positive, the connection must also stay open
    for that long: port proxies accept connections even when nothing listens
    behind them and then close them right away.
    """
    try:
        with socket.create_connection((host, port), timeout=timeout) as s:
            if disconnection_timeout <= 0:
                return True
            s.settimeout(disconnection_timeout)
            try:
                return s.recv(1) != b""
            except socket.timeout:
                return True
    except OSError:
        return False
