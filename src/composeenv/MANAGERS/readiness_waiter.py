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
Readiness detection for started containers: TCP port probing and engine health checks.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_result,
    stop_after_delay,
    stop_when_event_set,
    wait_exponential,
    wait_fixed,
)

from ..MODELS.container_info import Endpoint, ServicesInfo
from ..MODELS.errors import ContainerUnhealthy, ReadinessTimeout
from ..UTILS.port_probe import can_connect

logger = logging.getLogger(__name__)

HEALTHY = "healthy"
UNHEALTHY = "unhealthy"

HealthProbe = Callable[[], Dict[str, Optional[str]]]


class ReadinessWaiter:
    """
    Blocks until every endpoint accepts TCP connections, or until the timeout.
    Each endpoint is probed on its own worker with its own backoff, so a slow
    service does not hold up probing of the others.
    """

    def __init__(
        self,
        timeout: float = 900.0,
        connect_timeout: float = 1.0,
        initial_backoff: float = 1.0,
        max_backoff: float = 10.0,
        disconnection_timeout: float = 1.0,
        probe: Callable[..., bool] = can_connect,
    ):
        """
        Initializes the waiter.

        :param timeout: Overall seconds to wait for all endpoints.
        :param connect_timeout: Seconds allowed for a single connection attempt.
        :param initial_backoff: Seconds to wait after the first failed attempt; doubles per failure.
        :param max_backoff: Upper bound for the wait between attempts.
        :param disconnection_timeout: Seconds a fresh connection must stay open to count.
        :param probe: Function (host, port, timeout, disconnection_timeout) -> bool.
        """
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.disconnection_timeout = disconnection_timeout
        self.probe = probe

    @staticmethod
    def endpoints_for(services_info: ServicesInfo) -> List[Endpoint]:
        """Lists one endpoint per TCP port of every resolved container."""
        endpoints = []
        for service in services_info.values():
            for key, info in service.container_infos.items():
                for container_port, host_port in info.tcp_ports.items():
                    endpoints.append(Endpoint(label=f"{key}:{container_port}", host=info.host, port=host_port))
        return endpoints

    def wait_for_tcp_ports(self, endpoints: List[Endpoint]) -> None:
        """
        Probes all endpoints concurrently.

        :raises ReadinessTimeout: Listing the endpoints that never became reachable.
        """
        if not endpoints:
            return

        logger.info("Waiting up to %gs for %d TCP endpoints", self.timeout, len(endpoints))
        stop = threading.Event()
        with ThreadPoolExecutor(max_workers=len(endpoints), thread_name_prefix="readiness") as pool:
            futures = {pool.submit(self._probe_until_ready, endpoint, stop): endpoint for endpoint in endpoints}
            done, not_done = wait(futures, timeout=self.timeout)
            # Wakes every worker still sleeping between attempts
            stop.set()

        unreachable = [futures[f] for f in not_done]
        unreachable += [futures[f] for f in done if f.exception() is not None or not f.result()]
        if unreachable:
            ordered = [str(e) for e in endpoints if e in unreachable]
            raise ReadinessTimeout(ordered, self.timeout)
        logger.info("All %d TCP endpoints are reachable", len(endpoints))

    def _probe_until_ready(self, endpoint: Endpoint, stop: threading.Event) -> bool:
        retrying = Retrying(
            stop=stop_when_event_set(stop),
            wait=wait_exponential(multiplier=self.initial_backoff, max=self.max_backoff),
            retry=retry_if_result(lambda reachable: not reachable),
            sleep=stop.wait,
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            retry_error_callback=lambda state: False,
        )
        reachable = retrying(self.probe, endpoint.host, endpoint.port, self.connect_timeout, self.disconnection_timeout)
        if reachable:
            logger.debug("Endpoint %s is reachable", endpoint)
        return reachable

    def wait_for_healthy(self, probe: HealthProbe, timeout: float, interval: float = 5.0) -> None:
        """
        Polls engine health states until every container with a health check is healthy.

        :param probe: Returns {container: health status}; None means no health check.
        :param timeout: Seconds to wait.
        :param interval: Seconds between polls.
        :raises ContainerUnhealthy: As soon as a container reports 'unhealthy'.
        :raises ReadinessTimeout: If some containers are still starting after the timeout.
        """

        def pending() -> List[str]:
            waiting = []
            for container, status in probe().items():
                if status == UNHEALTHY:
                    raise ContainerUnhealthy(container, status)
                if status is not None and status != HEALTHY:
                    waiting.append(container)
            return waiting

        retrying = Retrying(
            stop=stop_after_delay(timeout),
            wait=wait_fixed(interval),
            retry=retry_if_result(bool),
            before_sleep=before_sleep_log(logger, logging.DEBUG),
            retry_error_callback=lambda state: state.outcome.result(),
        )
        still_waiting = retrying(pending)
        if still_waiting:
            raise ReadinessTimeout(still_waiting, timeout)
