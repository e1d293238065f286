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
Local reconnaissance: privilege, memory and round-trip time probes.

RTT target selection order:
    1. client address of the current SSH session (SSH_CONNECTION)
    2. an address typed by the operator
    3. a well-known public address

Any probe failure yields the fixed fallback RTT instead of an error.
"""

import logging
import os
import re
from typing import Callable, Dict, Mapping, Optional, Tuple

import psutil

from effectuation.sysctl import run_command

logger = logging.getLogger(__name__)

FALLBACK_RTT_MS = 150
PUBLIC_PING_TARGET = "1.1.1.1"
PING_COUNT = 4
PING_WAIT_SECONDS = 2

# iputils prints "rtt min/avg/max/mdev = ...", busybox and BSD "round-trip min/avg/max = ..."
PING_SUMMARY = re.compile(r"(?:rtt|round-trip)[^=]*=\s*([\d.]+)/([\d.]+)/([\d.]+)")


def is_privileged() -> bool:
    return os.geteuid() == 0


def memory_gib() -> float:
    """Total physical memory in GiB, rounded to two decimals."""
    total = psutil.virtual_memory().total
    return round(total / 1024 ** 3, 2)


def ssh_client_address(environ: Mapping[str, str]) -> Optional[str]:
    connection = environ.get("SSH_CONNECTION", "").split()
    return connection[0] if connection else None


def select_ping_target(environ: Mapping[str, str], ask: Callable[[str], str],
                       public_target: str = PUBLIC_PING_TARGET) -> Tuple[str, str]:
    """
    Choose what to ping.

    Returns:
        (address, human readable description of where it came from)
    """
    address = ssh_client_address(environ)
    if address:
        logger.info(f"Detected SSH client address: {address}")
        return address, f"SSH client {address}"

    logger.info("No SSH connection detected, a representative client address is needed")
    try:
        answer = ask(f"Client IP to ping (Enter for {public_target}): ").strip()
    except EOFError:
        answer = ""
    if answer:
        return answer, f"client address {answer}"

    logger.info(f"No address given, using public address {public_target}")
    return public_target, f"public address {public_target}"


def parse_ping_average(output: str) -> Optional[float]:
    """Average RTT from ping's summary line, or None if there is none."""
    match = PING_SUMMARY.search(output)
    if not match:
        return None
    try:
        return float(match.group(2))
    except ValueError:
        return None


def measure_rtt_ms(target: str, fallback_ms: int = FALLBACK_RTT_MS, count: int = PING_COUNT,
                   wait_seconds: int = PING_WAIT_SECONDS) -> Dict[str, object]:
    """
    Ping target and return the average RTT rounded to whole milliseconds
    (at least 1).

    Returns:
        Dictionary with 'rtt_ms', 'target' and 'measured' (False when the
        fallback was used)
    """
    logger.info(f"Measuring latency to {target} with ping")
    result = run_command(["ping", "-c", str(count), "-W", str(wait_seconds), target],
                         timeout=count * wait_seconds + 10)

    average = parse_ping_average(result['output']) if result['output'] else None
    if average is None:
        logger.warning(f"Ping to {target} failed or RTT unparseable, using default {fallback_ms} ms")
        return {'target': target, 'rtt_ms': fallback_ms, 'measured': False}

    logger.info(f"Average RTT: {average} ms")
    return {'target': target, 'rtt_ms': max(1, int(round(average))), 'measured': True}


def probe_rtt_ms(environ: Mapping[str, str], ask: Callable[[str], str],
                 public_target: str = PUBLIC_PING_TARGET, fallback_ms: int = FALLBACK_RTT_MS) -> int:
    target, description = select_ping_target(environ, ask, public_target)
    logger.info(f"Testing network latency against {description}")
    return measure_rtt_ms(target, fallback_ms=fallback_ms)['rtt_ms']
