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
Preflight parsing of tuning inputs.

Every raw value (operator answer, probe result, environment variable) goes
through an explicit parse step that returns a result dict:

    {"result": "SUCCESS", "value": <number>}
    {"result": "FAILURE", "error": <reason>}

Falling back to a default is a separate, explicit policy step
(resolve_value / resolve_inputs). Invalid input is never an error for the
run as a whole: the default simply takes its place.
"""

import logging
import math
from typing import Any, Dict, List, Tuple

from linux_network_stack.capacity import TuningInputs

logger = logging.getLogger(__name__)


def _failure(error: str) -> Dict[str, Any]:
    return {"result": "FAILURE", "error": error}


def _success(value) -> Dict[str, Any]:
    return {"result": "SUCCESS", "value": value}


def parse_positive_number(raw: Any) -> Dict[str, Any]:
    """Parse a positive, finite decimal number (memory in GiB, RTT in ms)."""
    if raw is None:
        return _failure("no value supplied")
    if isinstance(raw, bool):
        return _failure(f"not a number: {raw!r}")

    if isinstance(raw, (int, float)):
        value = float(raw)
    else:
        text = str(raw).strip()
        if not text:
            return _failure("no value supplied")
        try:
            value = float(text)
        except ValueError:
            return _failure(f"not a number: {text!r}")

    if math.isnan(value) or math.isinf(value):
        return _failure(f"not a finite number: {raw!r}")
    if value <= 0:
        return _failure(f"must be positive, got {raw!r}")

    return _success(value)


def parse_positive_int(raw: Any) -> Dict[str, Any]:
    """Parse a positive whole number (bandwidth in Mbps). Decimals are rejected."""
    if raw is None:
        return _failure("no value supplied")
    if isinstance(raw, bool):
        return _failure(f"not an integer: {raw!r}")

    if isinstance(raw, int):
        value = raw
    elif isinstance(raw, float):
        if not raw.is_integer():
            return _failure(f"not an integer: {raw!r}")
        value = int(raw)
    else:
        text = str(raw).strip()
        if not text:
            return _failure("no value supplied")
        try:
            value = int(text, 10)
        except ValueError:
            return _failure(f"not an integer: {text!r}")

    if value <= 0:
        return _failure(f"must be positive, got {raw!r}")

    return _success(value)


def parse_rtt_ms(raw: Any) -> Dict[str, Any]:
    """Parse a round-trip time; decimals are rounded to whole ms, sub-millisecond values to 1."""
    parsed = parse_positive_number(raw)
    if parsed["result"] != "SUCCESS":
        return parsed

    return _success(max(1, int(round(parsed["value"]))))


def resolve_value(name: str, raw: Any, parser, default):
    """
    Apply the fallback policy for a single value.

    Returns (value, fell_back). An absent value falls back silently; an
    unparseable one is logged before the default takes its place.
    """
    parsed = parser(raw)
    if parsed["result"] == "SUCCESS":
        return parsed["value"], False

    if raw is not None and str(raw).strip():
        logger.warning(f"Ignoring {name}={raw!r} ({parsed['error']}), using default {default}")
    else:
        logger.debug(f"No {name} supplied, using default {default}")

    return default, True


def resolve_inputs(memory_gib: Any, bandwidth_mbps: Any, rtt_ms: Any,
                   defaults: TuningInputs) -> Tuple[TuningInputs, List[str]]:
    """
    Turn raw values into validated TuningInputs.

    Args:
        memory_gib: Raw memory value (GiB), or None to use the default
        bandwidth_mbps: Raw bandwidth value (Mbps), or None
        rtt_ms: Raw round-trip time (ms), or None
        defaults: Precomputed defaults, themselves already valid

    Returns:
        (inputs, names of fields that fell back to their default)
    """
    memory, mem_fallback = resolve_value("memory_gib", memory_gib, parse_positive_number, defaults.memory_gib)
    bandwidth, bw_fallback = resolve_value("bandwidth_mbps", bandwidth_mbps, parse_positive_int, defaults.bandwidth_mbps)
    rtt, rtt_fallback = resolve_value("rtt_ms", rtt_ms, parse_rtt_ms, defaults.rtt_ms)

    fallbacks = [name for name, used in (("memory_gib", mem_fallback),
                                         ("bandwidth_mbps", bw_fallback),
                                         ("rtt_ms", rtt_fallback)) if used]

    return TuningInputs(memory_gib=memory, bandwidth_mbps=bandwidth, rtt_ms=rtt), fallbacks


def env_value(environ, name: str, parser, default) -> Any:
    """Read a numeric setting from the environment under the same fallback policy."""
    value, _ = resolve_value(name, environ.get(name), parser, default)
    return value

