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
Pytest configuration for tcp autotune unit tests.

Provides a throwaway sysctl configuration tree so resolver and CLI tests
never touch the real /etc.
"""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from effectuation.controller import ExecutionMode
from linux_network_stack.settings import RunSettings


def snapshot(root) -> dict:
    """Relative path -> bytes for every file below root"""
    files = {}
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            path = os.path.join(dirpath, name)
            with open(path, 'rb') as f:
                files[os.path.relpath(path, root)] = f.read()
    return files


@pytest.fixture
def sysctl_tree(tmp_path):
    """An etc/usr/run layout with one conflicting line in each interesting place"""
    etc = tmp_path / 'etc'
    sysctl_d = etc / 'sysctl.d'
    usr_lib = tmp_path / 'usr' / 'lib' / 'sysctl.d'
    run_dir = tmp_path / 'run' / 'sysctl.d'
    for d in (sysctl_d, usr_lib, run_dir):
        d.mkdir(parents=True)

    (etc / 'sysctl.conf').write_text(
        "# /etc/sysctl.conf\n"
        "kernel.panic = 10\n"
        "net.core.rmem_max = 16777216\n"
        "  net.ipv4.tcp_congestion_control=cubic\n"
        "# net.core.wmem_max = 1\n"
    )
    (sysctl_d / '10-network.conf').write_text("net.core.default_qdisc = fq_codel\n")
    (sysctl_d / '20-unrelated.conf').write_text("vm.swappiness = 10\n")
    (sysctl_d / 'README').write_text("net.core.rmem_max = 1\n")
    (usr_lib / '50-default.conf').write_text(
        "net.core.default_qdisc = fq_codel\n"
        "#net.ipv4.tcp_rmem = 4096 87380 6291456\n"
    )

    return tmp_path


@pytest.fixture
def make_settings(sysctl_tree):
    """Build RunSettings pointing into sysctl_tree"""
    def _make(mode=ExecutionMode.PREVIEW, assume_yes=False):
        return RunSettings(
            mode=mode,
            assume_yes=assume_yes,
            target_path=str(sysctl_tree / 'etc' / 'sysctl.d' / '999-net-bbr-fq.conf'),
            sysctl_conf=str(sysctl_tree / 'etc' / 'sysctl.conf'),
            sysctl_dir=str(sysctl_tree / 'etc' / 'sysctl.d'),
            advisory_dirs=(
                str(sysctl_tree / 'usr' / 'local' / 'lib' / 'sysctl.d'),
                str(sysctl_tree / 'usr' / 'lib' / 'sysctl.d'),
                str(sysctl_tree / 'run' / 'sysctl.d'),
            ),
        )
    return _make


@pytest.fixture
def take_snapshot():
    return snapshot
