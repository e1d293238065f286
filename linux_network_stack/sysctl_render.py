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
Rendering of the sysctl drop-in written by the tool.

The file body is built from a structured record (provenance header plus
groups of key/value directives) and turned into text by a single routine,
so identical parameters always produce byte-identical files.
"""

from dataclasses import dataclass
from typing import Dict, List, Tuple

from linux_network_stack.capacity import DerivedParameters
from linux_network_stack.parameter_registry import fixed_value

GENERATOR = "godon tcp-autotune (smart-detect + backup-conflicts)"


@dataclass(frozen=True)
class SysctlDocument:
    header: Tuple[str, ...]
    groups: Tuple[Tuple[Tuple[str, str], ...], ...]


def format_triple(triple: Tuple[int, int, int]) -> str:
    return " ".join(str(v) for v in triple)


def directive_groups(params: DerivedParameters) -> Tuple[Tuple[Tuple[str, str], ...], ...]:
    """Directives in file order, grouped as they are separated by blank lines."""
    return (
        (
            ("net.core.default_qdisc", fixed_value("net.core.default_qdisc")),
            ("net.ipv4.tcp_congestion_control", fixed_value("net.ipv4.tcp_congestion_control")),
        ),
        (
            ("net.core.rmem_default", str(params.rmem_default)),
            ("net.core.wmem_default", str(params.wmem_default)),
            ("net.core.rmem_max", str(params.max_bytes)),
            ("net.core.wmem_max", str(params.max_bytes)),
        ),
        (
            ("net.ipv4.tcp_rmem", format_triple(params.tcp_rmem)),
            ("net.ipv4.tcp_wmem", format_triple(params.tcp_wmem)),
        ),
        (
            ("net.ipv4.tcp_mtu_probing", fixed_value("net.ipv4.tcp_mtu_probing")),
            ("net.ipv4.tcp_fastopen", fixed_value("net.ipv4.tcp_fastopen")),
        ),
    )


def provenance_header(params: DerivedParameters) -> Tuple[str, ...]:
    inputs = params.inputs
    return (
        f"Auto-generated by {GENERATOR}",
        f"Inputs: MEM_G={inputs.memory_gib:.2f}GiB, BW={inputs.bandwidth_mbps}Mbps, RTT={inputs.rtt_ms}ms",
        f"BDP: {params.bdp_bytes} bytes (~{params.bdp_mb:.2f} MB)",
        f"Caps: min(2*BDP, 3%RAM, 64MB) -> Bucket {params.bucket_mb} MB",
    )


def build_document(params: DerivedParameters) -> SysctlDocument:
    return SysctlDocument(header=provenance_header(params), groups=directive_groups(params))


def render_document(document: SysctlDocument) -> str:
    lines: List[str] = [f"# {line}" for line in document.header]
    for group in document.groups:
        lines.append("")
        lines.extend(f"{key} = {value}" for key, value in group)
    return "\n".join(lines) + "\n"


def render_sysctl_conf(params: DerivedParameters) -> str:
    return render_document(build_document(params))


def planned_settings(params: DerivedParameters) -> Dict[str, str]:
    """Flat key -> value view of everything the file sets."""
    return {key: value for group in directive_groups(params) for key, value in group}
