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

"""
Run settings, built once at startup from the command line and environment
and passed explicitly to every step. Nothing reads the mode from anywhere
else.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional, Tuple

from effectuation.controller import ExecutionMode
from linux_network_stack.preflight import env_value, parse_positive_int, parse_rtt_ms
from reconnaissance.probes import FALLBACK_RTT_MS, PUBLIC_PING_TARGET

DEFAULT_SYSCTL_TARGET = "/etc/sysctl.d/999-net-bbr-fq.conf"
DEFAULT_SYSCTL_CONF = "/etc/sysctl.conf"
DEFAULT_SYSCTL_DIR = "/etc/sysctl.d"
DEFAULT_ADVISORY_DIRS = (
    "/usr/local/lib/sysctl.d",
    "/usr/lib/sysctl.d",
    "/lib/sysctl.d",
    "/run/sysctl.d",
)
DEFAULT_BANDWIDTH_MBPS = 1000
DEFAULT_LOG_LEVEL = "INFO"


@dataclass(frozen=True)
class RunSettings:
    mode: ExecutionMode = ExecutionMode.PREVIEW
    assume_yes: bool = False
    target_path: str = DEFAULT_SYSCTL_TARGET
    sysctl_conf: str = DEFAULT_SYSCTL_CONF
    sysctl_dir: str = DEFAULT_SYSCTL_DIR
    advisory_dirs: Tuple[str, ...] = DEFAULT_ADVISORY_DIRS
    default_bandwidth_mbps: int = DEFAULT_BANDWIDTH_MBPS
    fallback_rtt_ms: int = FALLBACK_RTT_MS
    ping_target: str = PUBLIC_PING_TARGET
    log_level: str = DEFAULT_LOG_LEVEL

    @property
    def preview(self) -> bool:
        return self.mode is ExecutionMode.PREVIEW


def load_settings(mode: ExecutionMode, assume_yes: bool,
                  environ: Optional[Mapping[str, str]] = None) -> RunSettings:
    environ = os.environ if environ is None else environ

    advisory = environ.get("AUTOTUNE_ADVISORY_DIRS")
    advisory_dirs = tuple(d for d in advisory.split(":") if d) if advisory is not None else DEFAULT_ADVISORY_DIRS

    return RunSettings(
        mode=mode,
        assume_yes=assume_yes,
        target_path=environ.get("AUTOTUNE_SYSCTL_TARGET", DEFAULT_SYSCTL_TARGET),
        sysctl_conf=environ.get("AUTOTUNE_SYSCTL_CONF", DEFAULT_SYSCTL_CONF),
        sysctl_dir=environ.get("AUTOTUNE_SYSCTL_DIR", DEFAULT_SYSCTL_DIR),
        advisory_dirs=advisory_dirs,
        default_bandwidth_mbps=env_value(environ, "AUTOTUNE_DEFAULT_BANDWIDTH_MBPS",
                                         parse_positive_int, DEFAULT_BANDWIDTH_MBPS),
        fallback_rtt_ms=env_value(environ, "AUTOTUNE_FALLBACK_RTT_MS", parse_rtt_ms, FALLBACK_RTT_MS),
        ping_target=environ.get("AUTOTUNE_PING_TARGET", PUBLIC_PING_TARGET),
        log_level=environ.get("AUTOTUNE_LOG_LEVEL", DEFAULT_LOG_LEVEL).upper(),
    )
