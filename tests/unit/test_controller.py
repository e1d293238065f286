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
from unittest.mock import MagicMock

# Add parent directory to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../..'))

from effectuation.controller import Executor, ExecutionMode, confirm_apply, CONFIRMATION_TOKEN
from linux_network_stack.settings import RunSettings


def reader(*answers):
    """Prompt function returning answers in order, EOF once exhausted"""
    remaining = list(answers)
    prompts = []

    def _read(prompt):
        prompts.append(prompt)
        if not remaining:
            raise EOFError
        return remaining.pop(0)

    _read.prompts = prompts
    return _read


class TestExecutor:
    """Execute-or-describe gating"""

    def test_preview_never_calls_action(self):
        action = MagicMock()
        executor = Executor(ExecutionMode.PREVIEW)

        result = executor.perform("rm -rf /", action, "/")

        assert result is None
        action.assert_not_called()
        assert executor.planned == ["rm -rf /"]
        assert executor.executed == []

    def test_commit_calls_action_with_arguments(self):
        action = MagicMock(return_value={'success': True})
        executor = Executor(ExecutionMode.COMMIT)

        result = executor.perform("write file", action, "a", mode=0o644)

        assert result == {'success': True}
        action.assert_called_once_with("a", mode=0o644)
        assert executor.executed == ["write file"]
        assert executor.planned == []

    def test_commit_propagates_action_errors(self):
        executor = Executor(ExecutionMode.COMMIT)

        with pytest.raises(OSError):
            executor.perform("fail", MagicMock(side_effect=OSError("boom")))

        assert executor.executed == []

    def test_mode_is_fixed(self):
        executor = Executor(ExecutionMode.PREVIEW)

        assert executor.preview is True
        assert Executor(ExecutionMode.COMMIT).preview is False


class TestConfirmApply:
    """Confirmation token before a commit run"""

    def test_preview_needs_no_confirmation(self):
        read = reader()

        assert confirm_apply(RunSettings(mode=ExecutionMode.PREVIEW), read=read, write=MagicMock()) is True
        assert read.prompts == []

    def test_assume_yes_skips_prompt(self):
        read = reader()

        assert confirm_apply(RunSettings(mode=ExecutionMode.COMMIT, assume_yes=True), read=read) is True
        assert read.prompts == []

    def test_token_confirms(self):
        write = MagicMock()

        assert confirm_apply(RunSettings(mode=ExecutionMode.COMMIT), read=reader("APPLY"), write=write) is True

        notice = write.call_args[0][0]
        assert "/etc/sysctl.d/999-net-bbr-fq.conf" in notice
        assert f"type: {CONFIRMATION_TOKEN}" in notice

    def test_surrounding_whitespace_is_ignored(self):
        assert confirm_apply(RunSettings(mode=ExecutionMode.COMMIT), read=reader("  APPLY \n"),
                             write=MagicMock()) is True

    @pytest.mark.parametrize("answer", ["", "apply", "yes", "y", "APPLY!"])
    def test_anything_else_aborts(self, answer):
        assert confirm_apply(RunSettings(mode=ExecutionMode.COMMIT), read=reader(answer),
                             write=MagicMock()) is False

    def test_eof_aborts(self):
        assert confirm_apply(RunSettings(mode=ExecutionMode.COMMIT), read=reader(), write=MagicMock()) is False
