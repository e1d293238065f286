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
tcp-autotune: BBR + fq TCP buffer tuning with conflict cleanup.

Computes socket buffer limits from memory, bandwidth and RTT, writes them to
a sysctl drop-in and clears conflicting settings from the rest of the
sysctl configuration. Runs as a preview unless --apply is given.
"""

import argparse
import logging
import os
import shutil
import socket
import sys
from typing import Callable, List, Mapping, Optional

from effectuation import sysctl as effect
from effectuation.controller import ExecutionMode, Executor, confirm_apply
from linux_network_stack import capacity
from linux_network_stack.capacity import DerivedParameters, TuningInputs
from linux_network_stack.conflicts import (ConflictResolutionError, advisory_scan, backup_stamp,
                                           comment_conflicts, quarantine_conflicting_files)
from linux_network_stack.parameter_registry import REPORTED_KEYS
from linux_network_stack.preflight import resolve_inputs
from linux_network_stack.settings import RunSettings, load_settings
from linux_network_stack.sysctl_render import planned_settings, render_sysctl_conf
from linux_network_stack.tuning_metrics_client import TuningMetricsClient
from reconnaissance import probes

logger = logging.getLogger(__name__)

EXAMPLES = """\
examples:
  tcp-autotune
  tcp-autotune --dry-run
  tcp-autotune --apply
  tcp-autotune --apply --yes
"""


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tcp-autotune",
        description="Size TCP buffers from the bandwidth-delay product, enable BBR + fq "
                    "and clean up conflicting sysctl settings.",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        allow_abbrev=False,
    )
    parser.add_argument("--dry-run", dest="mode", action="store_const", const=ExecutionMode.PREVIEW,
                        help="preview (default): only print what would be done, change nothing")
    parser.add_argument("--apply", dest="mode", action="store_const", const=ExecutionMode.COMMIT,
                        help="apply: write/back up/move files, run sysctl and tc")
    parser.add_argument("-y", "--yes", dest="assume_yes", action="store_true",
                        help="skip the confirmation prompt with --apply")
    parser.set_defaults(mode=ExecutionMode.PREVIEW)
    return parser


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(levelname)s] %(message)s",
        stream=sys.stderr,
    )


def _ask(ask: Callable[[str], str], prompt: str) -> str:
    try:
        return ask(prompt)
    except EOFError:
        return ""


def gather_inputs(settings: RunSettings, ask: Callable[[str], str], environ: Mapping[str, str]) -> TuningInputs:
    """Probe memory and RTT, then let the operator override every value."""
    detected_mem = probes.memory_gib()
    detected_rtt = probes.probe_rtt_ms(environ, ask, public_target=settings.ping_target,
                                       fallback_ms=settings.fallback_rtt_ms)
    defaults = TuningInputs(memory_gib=detected_mem,
                            bandwidth_mbps=settings.default_bandwidth_mbps,
                            rtt_ms=detected_rtt)

    memory_raw = _ask(ask, f"Memory (GiB) [detected: {defaults.memory_gib:.2f}] : ")
    bandwidth_raw = _ask(ask, f"Bandwidth (Mbps) [default: {defaults.bandwidth_mbps}] : ")
    rtt_raw = _ask(ask, f"Round-trip time (ms) [detected: {defaults.rtt_ms}] : ")

    inputs, fallbacks = resolve_inputs(memory_raw, bandwidth_raw, rtt_raw, defaults)
    if fallbacks:
        logger.debug(f"Using defaults for: {', '.join(fallbacks)}")
    return inputs


def format_plan(settings: RunSettings, params: DerivedParameters) -> str:
    inputs = params.inputs
    return "\n".join([
        "==== PLAN ====",
        f"Using -> memory: {inputs.memory_gib:.2f} GiB, bandwidth: {inputs.bandwidth_mbps} Mbps, "
        f"RTT: {inputs.rtt_ms} ms",
        f"BDP: {params.bdp_bytes} bytes (~{params.bdp_mb:.2f} MB)",
        f"Bucket: {params.bucket_mb} MB (max buffer = {params.max_bytes} bytes)",
        f"Target: {settings.target_path}",
        f"Mode: {settings.mode.value}",
        "==============",
    ])


def format_result(settings: RunSettings, params: DerivedParameters, iface: Optional[str]) -> str:
    inputs = params.inputs
    lines = [
        "==== RESULT ====",
        f"Final values -> memory: {inputs.memory_gib:.2f} GiB, bandwidth: {inputs.bandwidth_mbps} Mbps, "
        f"RTT: {inputs.rtt_ms} ms",
        f"Computed bucket: {params.bucket_mb} MB",
    ]

    if settings.preview:
        lines.append("(DRY-RUN: sysctl was not applied, these are planned values, not live kernel values)")
        planned = planned_settings(params)
        lines.extend(f"{key} = {planned[key]}" for key in REPORTED_KEYS)
    else:
        current = effect.read_back(REPORTED_KEYS)
        lines.extend(f"{key} = {current[key]}" for key in REPORTED_KEYS)
        if iface and shutil.which("tc") is not None:
            lines.append(f"qdisc on {iface}:")
            lines.append(effect.show_qdisc(iface))

    lines.append("===============")
    return "\n".join(lines)


def record_conflict_metrics(metrics: TuningMetricsClient, conf: dict, quarantine: dict, advisory: dict) -> None:
    if conf['backup'] is not None:
        metrics.inc_backup()
    metrics.inc_conflicts('sysctl.conf', 'commented', len(conf['matches']))

    for moved in quarantine['files']:
        metrics.inc_backup()
        metrics.inc_conflicts('sysctl.d', 'quarantined', len(moved['matches']))

    metrics.inc_conflicts('advisory', 'reported', advisory['active_count'])


def run(settings: RunSettings, ask: Callable[[str], str] = input, write: Callable[[str], None] = print,
        environ: Optional[Mapping[str, str]] = None) -> int:
    """
    Execute one tuning run.

    Returns:
        Process exit code: 0 on success, 1 on a fatal precondition or a
        failed mutation step
    """
    environ = os.environ if environ is None else environ

    if not probes.is_privileged():
        logger.error("Must be run as root")
        return 1

    if settings.preview:
        logger.warning("DRY-RUN mode: nothing on the system will be changed. Use --apply to make changes")
        if settings.assume_yes:
            logger.warning("--yes has no effect without --apply")
    else:
        logger.info("APPLY mode: the system will be modified")

    params = capacity.derive(gather_inputs(settings, ask, environ))
    content = render_sysctl_conf(params)

    metrics = TuningMetricsClient(hostname=socket.gethostname(), mode=settings.mode.value)
    metrics.set_sizing(params.bdp_bytes, params.bucket_mb, params.max_bytes)

    write(format_plan(settings, params))

    if not confirm_apply(settings, read=ask, write=write):
        return 1

    executor = Executor(settings.mode)
    stamp = backup_stamp()

    try:
        logger.info(f"Step A: back up and comment out conflicting keys in {settings.sysctl_conf}")
        conf = comment_conflicts(settings.sysctl_conf, executor, stamp=stamp)

        logger.info(f"Step B: back up and move conflicting files out of {settings.sysctl_dir}")
        quarantine = quarantine_conflicting_files(settings.sysctl_dir, executor,
                                                  exclude=[settings.target_path], stamp=stamp)
    except ConflictResolutionError as e:
        logger.error(f"{e}; stopping before any further change")
        return 1

    logger.info("Step C: scan other sysctl directories (report only)")
    advisory = advisory_scan(settings.advisory_dirs)
    record_conflict_metrics(metrics, conf, quarantine, advisory)

    calls: List[Optional[dict]] = [effect.load_bbr_module(executor)]

    if executor.preview:
        write(f"DRY-RUN: {settings.target_path} would be written with:")
        write(content.rstrip("\n"))
    try:
        executor.perform(f"install -m 0644 <staged> {settings.target_path}",
                         effect.install_file, content, settings.target_path)
    except OSError as e:
        logger.error(f"Writing {settings.target_path} failed: {e}", exc_info=True)
        return 1

    reload_result = effect.reload_sysctl(executor)
    calls.append(reload_result)

    iface = effect.default_interface()
    calls.append(effect.set_fq_qdisc(executor, iface))

    summary = effect.summarize(calls)
    for result in summary['results']:
        metrics.inc_external_call(result['command'][0], result['success'])

    write(format_result(settings, params, iface))

    logger.info("Review: load order and final value sources (read-only)")
    if executor.preview:
        logger.info("DRY-RUN: would filter sysctl --system output for Applying / rmem/wmem / qdisc / "
                    "congestion_control lines")
    elif reload_result is not None:
        for line in effect.review_lines(reload_result['output']):
            write(line)

    if not settings.preview:
        metrics.push()

    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = load_settings(args.mode, args.assume_yes)
    configure_logging(settings.log_level)
    return run(settings)


if __name__ == "__main__":
    sys.exit(main())
