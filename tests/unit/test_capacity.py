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

import pytest
import sys
import os

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../..'))

from linux_network_stack.capacity import (
    MIB, GIB, TuningInputs, derive, bdp_bytes, memory_bytes, cap_bytes, bucket_le_mb, socket_defaults
)

BANDWIDTHS = [1, 10, 100, 250, 1000, 2500, 10000]
RTTS = [1, 5, 20, 50, 150, 300, 800]
MEMORIES = [0.25, 0.5, 1, 2, 4, 16, 64, 512]


class TestReferenceExamples:
    """Known input/output pairs"""

    def test_gigabit_long_haul(self):
        """1000 Mbps, 150 ms, 16 GiB lands in the 32 MB bucket"""
        params = derive(TuningInputs(memory_gib=16, bandwidth_mbps=1000, rtt_ms=150))

        assert params.bdp_bytes == 18750000
        assert params.cap_bytes == 37500000
        assert params.bucket_mb == 32
        assert params.max_bytes == 33554432
        assert params.rmem_default == 262144
        assert params.wmem_default == 524288
        assert params.tcp_rmem == (4096, 87380, 33554432)
        assert params.tcp_wmem == (4096, 65536, 33554432)

    def test_small_link_uses_floor_bucket(self):
        """10 Mbps, 20 ms, 1 GiB is far below 4 MB and falls to the floor"""
        params = derive(TuningInputs(memory_gib=1, bandwidth_mbps=10, rtt_ms=20))

        assert params.bdp_bytes == 25000
        assert params.cap_bytes == 50000
        assert params.bucket_mb == 4
        assert params.max_bytes == 4 * MIB
        assert (params.rmem_default, params.wmem_default) == (131072, 131072)

    def test_memory_is_the_binding_constraint(self):
        """3% of 1 GiB (~30.7 MB) caps a big BDP down to 16 MB"""
        params = derive(TuningInputs(memory_gib=1, bandwidth_mbps=1000, rtt_ms=150))

        assert params.cap_bytes == GIB * 3 // 100
        assert params.bucket_mb == 16
        assert (params.rmem_default, params.wmem_default) == (131072, 262144)

    def test_hard_cap_is_64_mib(self):
        """Nothing goes above 64 MiB however large the inputs"""
        params = derive(TuningInputs(memory_gib=1024, bandwidth_mbps=100000, rtt_ms=1000))

        assert params.cap_bytes == 64 * MIB
        assert params.bucket_mb == 64
        assert params.max_bytes == 64 * MIB


class TestArithmetic:
    """Conversion and capping steps"""

    def test_bdp_truncates(self):
        assert bdp_bytes(1000, 150) == 18750000
        assert bdp_bytes(3, 1.5) == 562
        assert bdp_bytes(1, 0.004) == 0

    def test_memory_truncates(self):
        assert memory_bytes(16) == 16 * GIB
        assert memory_bytes(0.5) == 536870912
        assert memory_bytes(15.52) == int(15.52 * GIB)

    def test_huge_memory_does_not_overflow(self):
        assert memory_bytes(1e300) == int(1e300) * GIB

        params = derive(TuningInputs(memory_gib=1e300, bandwidth_mbps=1000, rtt_ms=150))

        assert params.cap_bytes == 37500000
        assert params.bucket_mb == 32

    def test_huge_bandwidth_and_rtt_hit_the_hard_cap(self):
        params = derive(TuningInputs(memory_gib=1e300, bandwidth_mbps=10 ** 300, rtt_ms=1e300))

        assert params.cap_bytes == 64 * MIB
        assert params.max_bytes == 64 * MIB

    def test_memory_cap_truncates(self):
        # 3% of 16 GiB is 515396075.52
        assert cap_bytes(10 ** 12, 16 * GIB) == 64 * MIB
        assert cap_bytes(10 ** 12, GIB) == 32212254

    def test_cap_is_minimum_of_three(self):
        assert cap_bytes(1000, 16 * GIB) == 2000
        assert cap_bytes(10 ** 9, 100) == 3
        assert cap_bytes(10 ** 9, 10 ** 12) == 64 * MIB


class TestBucketing:
    """Downward selection from the fixed bucket set"""

    @pytest.mark.parametrize("mb,expected", [
        (0, 4), (3, 4), (4, 4), (7, 4),
        (8, 8), (15, 8),
        (16, 16), (31, 16),
        (32, 32), (63, 32),
        (64, 64), (1000, 64),
    ])
    def test_bucket_le_mb(self, mb, expected):
        assert bucket_le_mb(mb) == expected

    @pytest.mark.parametrize("bucket,expected", [
        (4, (131072, 131072)),
        (8, (131072, 262144)),
        (16, (131072, 262144)),
        (32, (262144, 524288)),
        (64, (262144, 524288)),
    ])
    def test_socket_default_tiers(self, bucket, expected):
        assert socket_defaults(bucket) == expected

    def test_cap_just_below_and_above_bucket_boundary(self):
        """Bucketing only moves up once the cap reaches the next bucket"""
        # 2 * bdp = 8388500, just under 8 MiB
        params = derive(TuningInputs(memory_gib=64, bandwidth_mbps=33554, rtt_ms=1))
        assert params.cap_bytes == 8388500
        assert params.bucket_mb == 4

        # 2 * bdp = 8388750, just over 8 MiB
        params = derive(TuningInputs(memory_gib=64, bandwidth_mbps=33555, rtt_ms=1))
        assert params.cap_bytes == 8388750
        assert params.bucket_mb == 8

class TestInvariants:
    """Properties that must hold for every input"""

    def test_max_is_a_bucket_and_never_above_cap(self):
        for bw in BANDWIDTHS:
            for rtt in RTTS:
                for mem in MEMORIES:
                    params = derive(TuningInputs(memory_gib=mem, bandwidth_mbps=bw, rtt_ms=rtt))

                    assert params.bucket_mb in (4, 8, 16, 32, 64)
                    assert params.max_bytes == params.bucket_mb * MIB
                    assert params.max_bytes <= 64 * MIB

                    if params.cap_bytes >= 4 * MIB:
                        assert params.max_bytes <= params.cap_bytes
                        assert params.max_bytes <= 2 * params.bdp_bytes
                        assert params.max_bytes * 100 <= params.mem_bytes * 3
                    else:
                        assert params.bucket_mb == 4

    def test_monotonic_in_every_input(self):
        def bucket(mem, bw, rtt):
            return derive(TuningInputs(memory_gib=mem, bandwidth_mbps=bw, rtt_ms=rtt)).bucket_mb

        for mem in MEMORIES:
            for rtt in RTTS:
                buckets = [bucket(mem, bw, rtt) for bw in BANDWIDTHS]
                assert buckets == sorted(buckets)

        for mem in MEMORIES:
            for bw in BANDWIDTHS:
                buckets = [bucket(mem, bw, rtt) for rtt in RTTS]
                assert buckets == sorted(buckets)

        for bw in BANDWIDTHS:
            for rtt in RTTS:
                buckets = [bucket(mem, bw, rtt) for mem in MEMORIES]
                assert buckets == sorted(buckets)

    def test_derived_parameters_are_immutable(self):
        params = derive(TuningInputs(memory_gib=16, bandwidth_mbps=1000, rtt_ms=150))

        with pytest.raises(AttributeError):
            params.max_bytes = 1
