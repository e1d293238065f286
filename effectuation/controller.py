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
Plan/apply gating for every mutating step.

A run is either a PREVIEW (default) or a COMMIT, decided once from the
command line. Mutating steps are routed through an Executor: in PREVIEW the
step is only described and recorded, in COMMIT it is executed. Before the
first mutation of a COMMIT run the operator has to type the confirmation
token, unless --yes was given.
"""

import logging
from enum import Enum
from typing import Any, Callable, List

logger = logging.getLogger(__name__)

CONFIRMATION_TOKEN = "APPLY"


class ExecutionMode(Enum):
    PREVIEW = "dry-run"
    COMMIT = "apply"


class Executor:
    """Executes or describes mutating actions depending on the run mode"""

    def __init__(self, mode: ExecutionMode):
        self.mode = mode
        self.planned: List[str] = []
        self.executed: List[str] = []

    @property
    def preview(self) -> bool:
        return self.mode is ExecutionMode.PREVIEW

    def perform(self, description: str, action: Callable[..., Any], *args, **kwargs) -> Any:
        """
        Run action(*args, **kwargs) in COMMIT mode, otherwise only record it.

        Returns:
            The action's return value, or None when previewing
        """
        if self.preview:
            logger.info(f"DRY-RUN: {description}")
            self.planned.append(description)
            return None

        logger.debug(f"Executing: {description}")
        result = action(*args, **kwargs)
        self.executed.append(description)
        return result


def confirmation_notice(target_path: str) -> str:
    return "\n".join([
        "About to modify the system:",
        "- back up and comment out conflicting keys in /etc/sysctl.conf (if any)",
        "- back up and move /etc/sysctl.d/*.conf files that set conflicting keys (if any)",
        f"- write {target_path}",
        "- run sysctl --system to apply kernel parameters",
        "- try to set the fq qdisc on the default interface",
        "",
        f"To continue type: {CONFIRMATION_TOKEN}",
    ])


def confirm_apply(settings, read: Callable[[str], str] = input, write: Callable[[str], None] = print) -> bool:
    """
    Gate a COMMIT run on the operator typing the confirmation token.

    Args:
        settings: RunSettings of this run
        read: Prompt function, input() by default
        write: Output function for the notice

    Returns:
        True if the run may proceed
    """
    if settings.mode is ExecutionMode.PREVIEW:
        return True

    if settings.assume_yes:
        logger.info("Confirmation skipped (--yes)")
        return True

    write(confirmation_notice(settings.target_path))
    try:
        answer = read("> ")
    except EOFError:
        answer = ""

    if answer.strip() != CONFIRMATION_TOKEN:
        logger.error("Cancelled, no changes were made")
        return False

    return True
