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
Parameter registry for the tcp autotune tool.

Lists every sysctl the tool writes to its own drop-in file. Entries marked
"managed" are the keys whose presence anywhere else on the system is treated
as a conflict: the tool comments them out of /etc/sysctl.conf and moves
conflicting drop-ins out of /etc/sysctl.d so its own values win.

The remaining entries are fixed directives the tool always emits but does not
hunt down elsewhere.
"""

import re
from typing import List, Pattern

PARAMETER_REGISTRY = {
    # =========================================================================
    # QUEUEING / CONGESTION CONTROL
    # =========================================================================

    "net.core.default_qdisc": {
        "type": "categorical",
        "category": "sysctl",
        "managed": True,
        "description": "Default queueing discipline for new interfaces",
        "fixed_value": "fq",
    },
    "net.ipv4.tcp_congestion_control": {
        "type": "categorical",
        "category": "sysctl",
        "managed": True,
        "description": "TCP congestion control algorithm",
        "fixed_value": "bbr",
    },

    # =========================================================================
    # SOCKET BUFFERS (derived from the bandwidth-delay product)
    # =========================================================================

    "net.core.rmem_default": {
        "type": "int",
        "category": "sysctl",
        "managed": True,
        "description": "Default receive socket buffer (bytes)",
    },
    "net.core.wmem_default": {
        "type": "int",
        "category": "sysctl",
        "managed": True,
        "description": "Default send socket buffer (bytes)",
    },
    "net.core.rmem_max": {
        "type": "int",
        "category": "sysctl",
        "managed": True,
        "description": "Maximum receive socket buffer (bytes)",
    },
    "net.core.wmem_max": {
        "type": "int",
        "category": "sysctl",
        "managed": True,
        "description": "Maximum send socket buffer (bytes)",
    },
    "net.ipv4.tcp_rmem": {
        "type": "triple",
        "category": "sysctl",
        "managed": True,
        "description": "TCP read buffer (min, default, max)",
    },
    "net.ipv4.tcp_wmem": {
        "type": "triple",
        "category": "sysctl",
        "managed": True,
        "description": "TCP write buffer (min, default, max)",
    },

    # =========================================================================
    # FIXED DIRECTIVES (always written, never treated as conflicts)
    # =========================================================================

    "net.ipv4.tcp_mtu_probing": {
        "type": "categorical",
        "category": "sysctl",
        "managed": False,
        "description": "Packetization layer path MTU discovery",
        "fixed_value": "1",
    },
    "net.ipv4.tcp_fastopen": {
        "type": "categorical",
        "category": "sysctl",
        "managed": False,
        "description": "TCP Fast Open for client and server",
        "fixed_value": "3",
    },
}

MANAGED_KEYS = tuple(k for k, v in PARAMETER_REGISTRY.items() if v["managed"])

# Keys read back from the kernel after a commit run
REPORTED_KEYS = (
    "net.ipv4.tcp_congestion_control",
    "net.core.default_qdisc",
    "net.core.rmem_max",
    "net.core.wmem_max",
    "net.ipv4.tcp_rmem",
    "net.ipv4.tcp_wmem",
)


def fixed_value(key: str) -> str:
    return PARAMETER_REGISTRY[key]["fixed_value"]


def key_pattern(keys: List[str] = MANAGED_KEYS, include_comments: bool = False) -> Pattern:
    """
    Build the line matcher for conflict candidates.

    A line matches when, after leading whitespace, it starts with one of
    the keys followed by optional whitespace and '='. With include_comments
    the key may also be preceded by '#' markers, so commented-out
    assignments are reported too; the 'commented' group is set for those.
    """
    alternation = "|".join(re.escape(k) for k in keys)
    prefix = r"(?P<commented>#[#\s]*)?" if include_comments else ""
    return re.compile(rf"^\s*{prefix}(?P<key>{alternation})\s*=")
