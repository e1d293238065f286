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
Socket buffer sizing from the bandwidth-delay product.

    bdp     = Mbps * 125 * ms                  (bytes in flight)
    cap     = min(2 * bdp, 3% of RAM, 64 MiB)
    bucket  = largest of {4, 8, 16, 32, 64} MiB not above cap (4 at minimum)

Every byte conversion truncates, and bucketing only ever rounds down, so the
emitted maximum never exceeds the computed cap unless the cap is below the
4 MiB floor bucket.
"""

from dataclasses import dataclass
from fractions import Fraction
from typing import Tuple

MIB = 1024 * 1024
GIB = 1024 * MIB

# bytes per (Mbit/s * ms)
BDP_BYTES_PER_MBPS_MS = 125

# 3% of physical memory, expressed as an exact fraction
MEMORY_CAP_NUMERATOR = 3
MEMORY_CAP_DENOMINATOR = 100

HARD_CAP_BYTES = 64 * MIB

BUCKETS_MB = (64, 32, 16, 8, 4)
FLOOR_BUCKET_MB = 4

# (minimum bucket, rmem_default, wmem_default), checked top-down
DEFAULT_TIERS = (
    (32, 262144, 524288),
    (8, 131072, 262144),
    (0, 131072, 131072),
)

TCP_RMEM_MIN = 4096
TCP_RMEM_DEFAULT = 87380
TCP_WMEM_MIN = 4096
TCP_WMEM_DEFAULT = 65536


@dataclass(frozen=True)
class TuningInputs:
    memory_gib: float
    bandwidth_mbps: int
    rtt_ms: int


@dataclass(frozen=True)
class DerivedParameters:
    inputs: TuningInputs
    bdp_bytes: int
    mem_bytes: int
    cap_bytes: int
    bucket_mb: int
    max_bytes: int
    rmem_default: int
    wmem_default: int
    tcp_rmem: Tuple[int, int, int]
    tcp_wmem: Tuple[int, int, int]

    @property
    def bdp_mb(self) -> float:
        return self.bdp_bytes / MIB


def bdp_bytes(bandwidth_mbps, rtt_ms) -> int:
    return int(Fraction(bandwidth_mbps) * BDP_BYTES_PER_MBPS_MS * Fraction(rtt_ms))


def memory_bytes(memory_gib) -> int:
    # exact rational product, a float product overflows for very large inputs
    return int(Fraction(memory_gib) * GIB)


def cap_bytes(bdp: int, mem: int) -> int:
    memory_cap = mem * MEMORY_CAP_NUMERATOR // MEMORY_CAP_DENOMINATOR
    return min(2 * bdp, memory_cap, HARD_CAP_BYTES)


def bucket_le_mb(mb: int) -> int:
    """Largest bucket not above mb; the smallest bucket is also the floor."""
    for bucket in BUCKETS_MB:
        if mb >= bucket:
            return bucket
    return FLOOR_BUCKET_MB


def socket_defaults(bucket_mb: int) -> Tuple[int, int]:
    for threshold, rmem_default, wmem_default in DEFAULT_TIERS:
        if bucket_mb >= threshold:
            return rmem_default, wmem_default
    # unreachable, the last tier starts at 0
    raise ValueError(f"Invalid bucket: {bucket_mb}")


def derive(inputs: TuningInputs) -> DerivedParameters:
    bdp = bdp_bytes(inputs.bandwidth_mbps, inputs.rtt_ms)
    mem = memory_bytes(inputs.memory_gib)
    cap = cap_bytes(bdp, mem)

    bucket = bucket_le_mb(cap // MIB)
    max_bytes = bucket * MIB
    rmem_default, wmem_default = socket_defaults(bucket)

    return DerivedParameters(
        inputs=inputs,
        bdp_bytes=bdp,
        mem_bytes=mem,
        cap_bytes=cap,
        bucket_mb=bucket,
        max_bytes=max_bytes,
        rmem_default=rmem_default,
        wmem_default=wmem_default,
        tcp_rmem=(TCP_RMEM_MIN, TCP_RMEM_DEFAULT, max_bytes),
        tcp_wmem=(TCP_WMEM_MIN, TCP_WMEM_DEFAULT, max_bytes),
    )
