#
# Copyright (c) 2019 Matthias Tafelmeier.
#
# This file is part of godon
#
# godon is free software: you can redistribute it and/or modify
# it under the terms of the GNU Affero General Public License as
# published by the Free Software Foundation, either version 3 of the
# License, or (at your option) any later version.
#
# godon is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU Affero General Public License for more details.
#
# You should have received a copy of the GNU Affero General Public License
# along with this godon. If not, see <http://www.gnu.org/licenses/>.
#

import os
import logging
from typing import Optional
from prometheus_client import CollectorRegistry, Gauge, Counter, push_to_gateway

logger = logging.getLogger(__name__)


class TuningMetricsClient:
    """
    Prometheus metrics client for tcp autotune runs.

    Wraps prometheus_client to record what a run computed and changed and
    push it to a Prometheus Push Gateway once the run is over.
    """

    def __init__(self, hostname: str, mode: str, pushgateway_url: Optional[str] = None):
        """
        Initialize metrics client for one run.

        Args:
            hostname: Host being tuned (used as grouping label)
            mode: Execution mode of the run ('dry-run' or 'apply')
            pushgateway_url: Push Gateway URL (default from env or http://pushgateway:9091)
        """
        self.hostname = hostname
        self.mode = mode

        # Opt-in: a one-shot CLI must not reach out to the network by default
        self.enabled = os.getenv("PUSH_METRICS_ENABLED", "false").lower() == "true"
        self.pushgateway_url = pushgateway_url or os.getenv("PUSH_GATEWAY_URL", "http://pushgateway:9091")

        if not self.enabled:
            logger.debug("Prometheus metrics pushing disabled (PUSH_METRICS_ENABLED is not true)")
            return

        self.registry = CollectorRegistry()
        self._init_metrics()

        logger.debug(f"Initialized {self.__class__.__name__} for {hostname}")

    def _init_metrics(self):
        """Initialize Prometheus metrics"""
        self._bdp_bytes = Gauge(
            'godon_autotune_bdp_bytes',
            'Bandwidth-delay product used for sizing',
            ['hostname', 'mode'],
            registry=self.registry
        )

        self._bucket_mb = Gauge(
            'godon_autotune_buffer_bucket_megabytes',
            'Selected socket buffer bucket',
            ['hostname', 'mode'],
            registry=self.registry
        )

        self._max_bytes = Gauge(
            'godon_autotune_buffer_max_bytes',
            'Maximum socket buffer written to rmem_max/wmem_max',
            ['hostname', 'mode'],
            registry=self.registry
        )

        # location: sysctl.conf / sysctl.d / advisory, action: commented / quarantined / reported
        self._conflicts = Counter(
            'godon_autotune_conflicts_total',
            'Conflicting configuration lines handled',
            ['hostname', 'mode', 'location', 'action'],
            registry=self.registry
        )

        self._backups = Counter(
            'godon_autotune_backups_total',
            'Backups created before mutating configuration',
            ['hostname', 'mode'],
            registry=self.registry
        )

        self._external_calls = Counter(
            'godon_autotune_external_calls_total',
            'Best-effort external command invocations',
            ['hostname', 'mode', 'command', 'status'],
            registry=self.registry
        )

    def push(self) -> bool:
        """
        Push all metrics to Push Gateway.

        Returns:
            True if push succeeded, False otherwise
        """
        if not self.enabled:
            return False

        try:
            push_to_gateway(
                self.pushgateway_url,
                job='tcp_autotune',
                grouping_key={'instance': self.hostname},
                registry=self.registry
            )
            logger.debug(f"Pushed metrics to {self.pushgateway_url}")
            return True
        except Exception as e:
            logger.warning(f"Failed to push metrics to {self.pushgateway_url}: {e}")
            return False

    def set_sizing(self, bdp_bytes: int, bucket_mb: int, max_bytes: int):
        """Record the computed sizing"""
        if not self.enabled:
            return
        self._bdp_bytes.labels(hostname=self.hostname, mode=self.mode).set(bdp_bytes)
        self._bucket_mb.labels(hostname=self.hostname, mode=self.mode).set(bucket_mb)
        self._max_bytes.labels(hostname=self.hostname, mode=self.mode).set(max_bytes)

    def inc_conflicts(self, location: str, action: str, count: int = 1):
        if not self.enabled or count <= 0:
            return
        self._conflicts.labels(
            hostname=self.hostname,
            mode=self.mode,
            location=location,
            action=action
        ).inc(count)

    def inc_backup(self):
        if not self.enabled:
            return
        self._backups.labels(hostname=self.hostname, mode=self.mode).inc()

    def inc_external_call(self, command: str, success: bool):
        """
        Increment external call counter.

        Args:
            command: Command name ('sysctl', 'tc', 'modprobe')
            success: Whether the command exited successfully
        """
        if not self.enabled:
            return
        self._external_calls.labels(
            hostname=self.hostname,
            mode=self.mode,
            command=command,
            status='success' if success else 'failure'
        ).inc()
