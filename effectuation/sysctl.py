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
Local effectuation: installing the drop-in file and invoking the host's
sysctl/tc/modprobe utilities.

External calls are best-effort. They report a result dict instead of
raising, so a failing reload or qdisc change never aborts the remaining
steps. Every call that changes kernel state goes through the Executor and
is only described in a preview run.
"""

import logging
import os
import re
import shutil
import subprocess
import tempfile
from typing import Any, Dict, List, Optional

from effectuation.controller import Executor

logger = logging.getLogger(__name__)

SYSCTL_ERROR_EXCERPT_LINES = 120

REVIEW_PATTERN = re.compile(
    r"Applying|net\.core\.(rmem|wmem)|net\.core\.default_qdisc|net\.ipv4\.tcp_(rmem|wmem)|tcp_congestion_control"
)


def run_command(cmd: List[str], timeout: int = 60) -> Dict[str, Any]:
    """
    Run a command, capturing stdout and stderr together.

    Returns:
        Dictionary with success flag, return code and combined output
    """
    logger.debug(f"Running: {' '.join(cmd)}")
    try:
        proc = subprocess.run(
            cmd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            timeout=timeout
        )
    except FileNotFoundError:
        return {'command': cmd, 'success': False, 'returncode': 127, 'output': f"Command not found: {cmd[0]}"}
    except subprocess.TimeoutExpired:
        return {'command': cmd, 'success': False, 'returncode': None, 'output': f"Command timed out after {timeout}s"}

    return {
        'command': cmd,
        'success': proc.returncode == 0,
        'returncode': proc.returncode,
        'output': proc.stdout or ''
    }


def excerpt(output: str, limit: int = SYSCTL_ERROR_EXCERPT_LINES) -> str:
    return "\n".join(output.splitlines()[:limit])


def install_file(content: str, target: str, mode: int = 0o644) -> None:
    """
    Atomically install content at target.

    The content is staged in a temporary file next to the target and then
    renamed over it, so readers never see a partially written file. Text read
    with surrogateescape is written back byte for byte.
    """
    directory = os.path.dirname(os.path.abspath(target)) or "."
    fd, staged = tempfile.mkstemp(prefix=".tcp-autotune.", dir=directory)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(staged, mode)
        os.replace(staged, target)
    except BaseException:
        if os.path.exists(staged):
            os.unlink(staged)
        raise


def load_bbr_module(executor: Executor) -> Optional[Dict[str, Any]]:
    """Load tcp_bbr; no effect when BBR is built into the kernel."""
    if shutil.which("modprobe") is None:
        logger.debug("modprobe not available, skipping tcp_bbr module load")
        return None

    result = executor.perform("modprobe tcp_bbr", run_command, ["modprobe", "tcp_bbr"])
    if result is not None and not result['success']:
        logger.debug(f"modprobe tcp_bbr failed: {result['output'].strip()}")
    return result


def reload_sysctl(executor: Executor) -> Optional[Dict[str, Any]]:
    result = executor.perform("sysctl --system", run_command, ["sysctl", "--system"])
    if result is None:
        return None

    if result['success']:
        logger.info("sysctl --system applied")
    else:
        logger.warning(
            "sysctl --system reported errors (unsupported parameters or stale files?), "
            f"first {SYSCTL_ERROR_EXCERPT_LINES} lines of output:\n{excerpt(result['output'])}"
        )
    return result


def default_interface() -> Optional[str]:
    """Interface of the default IPv4 route, or None if there is none."""
    result = run_command(["ip", "-o", "-4", "route", "show", "to", "default"])
    if not result['success']:
        return None

    for line in result['output'].splitlines():
        parts = line.split()
        if "dev" in parts and parts.index("dev") + 1 < len(parts):
            return parts[parts.index("dev") + 1]
    return None


def set_fq_qdisc(executor: Executor, iface: Optional[str]) -> Optional[Dict[str, Any]]:
    if not iface or shutil.which("tc") is None:
        logger.debug("tc or default interface unavailable, skipping qdisc change")
        return None

    result = executor.perform(
        f"tc qdisc replace dev {iface} root fq",
        run_command, ["tc", "qdisc", "replace", "dev", iface, "root", "fq"]
    )
    if result is not None and not result['success']:
        logger.warning(f"Setting fq on {iface} failed (container/kernel/permission limits?), skipped: "
                       f"{result['output'].strip()}")
    return result


def read_back(keys) -> Dict[str, str]:
    """Current kernel values for keys ("ERROR" where sysctl could not read one)."""
    current = {}
    for key in keys:
        result = run_command(["sysctl", "-n", key])
        current[key] = result['output'].strip() if result['success'] else "ERROR"
    return current


def show_qdisc(iface: str) -> str:
    result = run_command(["tc", "qdisc", "show", "dev", iface])
    return result['output'].strip()


def review_lines(output: str) -> List[str]:
    """Lines of sysctl --system output showing load order and final value sources."""
    return [f"{number}:{line}" for number, line in enumerate(output.splitlines(), start=1)
            if REVIEW_PATTERN.search(line)]


def summarize(results: List[Optional[Dict[str, Any]]]) -> Dict[str, Any]:
    """Aggregate best-effort call results, skipping calls that did not run."""
    ran = [r for r in results if r is not None]
    success_count = sum(1 for r in ran if r.get('success', False))

    summary = {
        'status': 'completed',
        'calls_count': len(ran),
        'successful_calls': success_count,
        'failed_calls': len(ran) - success_count,
        'results': ran
    }

    logger.info(f"External calls completed: {success_count}/{len(ran)} successful")
    return summary
