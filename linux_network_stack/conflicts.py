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
Conflict scanning and resolution for sysctl configuration sources.

Scanning is pure line-level key matching (see parameter_registry.key_pattern)
in one of two modes:

- exclusive: commented lines never match. Used to pick mutation targets.
- inclusive: commented-out assignments match too and are flagged. Used for
  the advisory report over directories the tool never touches.

Resolution always backs up before it mutates. /etc/sysctl.conf gets its
conflicting lines commented out; drop-ins in /etc/sysctl.d that set managed
keys are moved aside whole. Backups are never overwritten and never removed.
"""

import fnmatch
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from effectuation.controller import Executor
from effectuation.sysctl import install_file
from linux_network_stack.parameter_registry import MANAGED_KEYS, key_pattern

logger = logging.getLogger(__name__)

BACKUP_STAMP_FORMAT = "%Y%m%d-%H%M%S"
CONF_GLOB = "*.conf"

# Round-trips arbitrary bytes, so rewriting a file never alters lines we do not touch
FILE_ENCODING = "utf-8"
FILE_ERRORS = "surrogateescape"


class ConflictResolutionError(RuntimeError):
    """A backup, move or rewrite failed; the mutation must not go ahead."""


@dataclass(frozen=True)
class ConflictMatch:
    line_number: int
    text: str
    commented: bool = False

    def __str__(self) -> str:
        suffix = "  (commented)" if self.commented else ""
        return f"{self.line_number}:{self.text}{suffix}"


@dataclass(frozen=True)
class BackupRecord:
    original_path: str
    backup_path: str
    timestamp: str


def backup_stamp(now: Optional[datetime] = None) -> str:
    return (now or datetime.now()).strftime(BACKUP_STAMP_FORMAT)


def backup_path_for(path: str, stamp: str) -> str:
    """<path>.bak.<stamp>, with a numeric suffix if that name is already taken."""
    candidate = f"{path}.bak.{stamp}"
    counter = 1
    while os.path.lexists(candidate):
        candidate = f"{path}.bak.{stamp}.{counter}"
        counter += 1
    return candidate


def read_text(path: str) -> str:
    with open(path, "r", encoding=FILE_ENCODING, errors=FILE_ERRORS, newline="") as f:
        return f.read()


# -----------------------------------------------------------------------------
# Scanner
# -----------------------------------------------------------------------------

def scan_text(text: str, keys: Iterable[str] = MANAGED_KEYS, include_comments: bool = False) -> List[ConflictMatch]:
    """
    Find conflict candidates in a file body.

    Returns:
        Matches in file order, line numbers starting at 1
    """
    pattern = key_pattern(list(keys), include_comments=include_comments)
    matches = []
    for number, line in enumerate(text.splitlines(), start=1):
        m = pattern.match(line)
        if m:
            commented = include_comments and m.group("commented") is not None
            matches.append(ConflictMatch(line_number=number, text=line, commented=commented))
    return matches


def scan_file(path: str, keys: Iterable[str] = MANAGED_KEYS, include_comments: bool = False) -> List[ConflictMatch]:
    """Scan one file; a missing file has no conflicts."""
    if not os.path.isfile(path):
        return []
    return scan_text(read_text(path), keys, include_comments)


def _is_binary(text: str) -> bool:
    return "\0" in text


def scan_directory(directory: str, keys: Iterable[str] = MANAGED_KEYS, include_comments: bool = False,
                   recursive: bool = False, pattern: Optional[str] = CONF_GLOB) -> Dict[str, List[ConflictMatch]]:
    """
    Scan the files of a directory.

    Args:
        directory: Directory to scan; a missing directory has no conflicts
        keys: Keys to look for
        include_comments: Also report commented-out assignments
        recursive: Descend into subdirectories
        pattern: Only scan file names matching this glob (None for all files)

    Returns:
        Path -> matches, for files with at least one match, in path order
    """
    if not os.path.isdir(directory):
        return {}

    if recursive:
        paths = []
        for root, dirs, files in os.walk(directory):
            dirs.sort()
            paths.extend(os.path.join(root, name) for name in sorted(files))
    else:
        paths = [os.path.join(directory, name) for name in sorted(os.listdir(directory))]

    findings = {}
    for path in paths:
        name = os.path.basename(path)
        if pattern is not None and (name.startswith(".") or not fnmatch.fnmatch(name, pattern)):
            continue
        if not os.path.isfile(path):
            continue

        try:
            text = read_text(path)
        except OSError as e:
            logger.debug(f"Skipping unreadable {path}: {e}")
            continue
        if _is_binary(text):
            continue

        matches = scan_text(text, keys, include_comments)
        if matches:
            findings[path] = matches

    return findings


# -----------------------------------------------------------------------------
# Resolver
# -----------------------------------------------------------------------------

def comment_out(text: str, keys: Iterable[str] = MANAGED_KEYS) -> str:
    """Prefix every active conflicting line with '# ', leaving all other bytes as they are."""
    pattern = key_pattern(list(keys))
    lines = []
    for line in text.splitlines(keepends=True):
        if pattern.match(line.rstrip("\r\n")):
            line = "# " + line
        lines.append(line)
    return "".join(lines)


def _copy_backup(source: str, backup: str) -> None:
    try:
        shutil.copy2(source, backup, follow_symlinks=True)
    except OSError as e:
        raise ConflictResolutionError(f"Backup of {source} to {backup} failed: {e}") from e


def _rewrite_commented(path: str, keys: Iterable[str]) -> None:
    try:
        original = read_text(path)
        install_file(comment_out(original, keys), path)
    except (OSError, UnicodeError) as e:
        raise ConflictResolutionError(f"Rewriting {path} failed: {e}") from e


def _move_aside(source: str, backup: str) -> None:
    try:
        os.rename(source, backup)
    except OSError as e:
        raise ConflictResolutionError(f"Moving {source} to {backup} failed: {e}") from e


def comment_conflicts(path: str, executor: Executor, keys: Iterable[str] = MANAGED_KEYS,
                      stamp: Optional[str] = None) -> Dict[str, Any]:
    """
    Back up path and comment out its conflicting lines.

    Files without an active conflicting line are left untouched and get no
    backup, which makes repeated runs a no-op.

    Returns:
        Dictionary with status ('missing', 'clean', 'planned' or 'commented'),
        the matched lines and the backup record

    Raises:
        ConflictResolutionError: if the backup or the rewrite fails
    """
    keys = list(keys)
    result = {'path': path, 'matches': [], 'backup': None}

    if not os.path.isfile(path):
        logger.info(f"{path} does not exist")
        return {**result, 'status': 'missing'}

    matches = scan_file(path, keys)
    if not matches:
        logger.info(f"{path} has no conflicting keys")
        return {**result, 'status': 'clean'}

    stamp = stamp or backup_stamp()
    backup = BackupRecord(original_path=path, backup_path=backup_path_for(path, stamp), timestamp=stamp)

    logger.info(f"Conflicts found, backing up {path} to {backup.backup_path}")
    executor.perform(f"cp -a {path} {backup.backup_path}", _copy_backup, path, backup.backup_path)

    if executor.preview:
        logger.info(f"DRY-RUN: would comment out these lines of {path}:")
    else:
        logger.info(f"Commenting out conflicting keys in {path}:")
    for match in matches:
        logger.info(f"  {match}")

    executor.perform(f"comment out {len(matches)} line(s) in {path}", _rewrite_commented, path, keys)

    return {
        **result,
        'status': 'planned' if executor.preview else 'commented',
        'matches': matches,
        'backup': backup
    }


def quarantine_conflicting_files(directory: str, executor: Executor, exclude: Iterable[str] = (),
                                 keys: Iterable[str] = MANAGED_KEYS, stamp: Optional[str] = None) -> Dict[str, Any]:
    """
    Move every *.conf in directory that sets a managed key to a backup path.

    Only the top level of directory is considered. Paths in exclude (the
    tool's own target) are never moved, also when reached through a symlink.

    Returns:
        Dictionary with status ('missing', 'clean', 'planned' or 'quarantined')
        and one entry per moved file

    Raises:
        ConflictResolutionError: if a move fails; files moved before it stay moved
    """
    keys = list(keys)

    if not os.path.isdir(directory):
        logger.info(f"{directory} does not exist")
        return {'directory': directory, 'status': 'missing', 'files': []}

    excluded = {os.path.realpath(p) for p in exclude}
    stamp = stamp or backup_stamp()
    files = []

    for path, matches in scan_directory(directory, keys).items():
        if os.path.realpath(path) in excluded:
            continue

        logger.info(f"Conflicting keys in {path} (will back up and move):")
        for match in matches:
            logger.info(f"  {match}")

        backup = BackupRecord(original_path=path, backup_path=backup_path_for(path, stamp), timestamp=stamp)
        executor.perform(f"mv -- {path} {backup.backup_path}", _move_aside, path, backup.backup_path)
        logger.info(f"Backed up and removed conflicting file: {path} -> {backup.backup_path}")

        files.append({'path': path, 'matches': matches, 'backup': backup})

    if not files:
        logger.info(f"{directory} needs no changes")
        status = 'clean'
    else:
        logger.info(f"Conflicting files in {directory} handled")
        status = 'planned' if executor.preview else 'quarantined'

    return {'directory': directory, 'status': status, 'files': files}


def advisory_scan(directories: Iterable[str], keys: Iterable[str] = MANAGED_KEYS) -> Dict[str, Any]:
    """
    Report managed keys found in directories the tool must not modify.

    Commented-out assignments are reported as well but counted separately,
    since they do not take effect.
    """
    keys = list(keys)
    report = {}
    active_count = 0
    commented_count = 0

    for directory in directories:
        if not os.path.isdir(directory):
            logger.info(f"{directory} does not exist")
            continue

        findings = scan_directory(directory, keys, include_comments=True, recursive=True, pattern=None)
        report[directory] = findings

        if not findings:
            logger.info(f"{directory}: no conflicts found")
            continue

        logger.warning(f"Potential conflicts (report only, not modified): {directory}")
        for path, matches in findings.items():
            for match in matches:
                logger.warning(f"  {path}:{match}")
                if match.commented:
                    commented_count += 1
                else:
                    active_count += 1

    return {
        'status': 'completed',
        'directories': report,
        'active_count': active_count,
        'commented_count': commented_count
    }
