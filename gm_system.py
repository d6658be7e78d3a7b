# Module: gm_system.py
# Part of Groupmatic
#
# Host plumbing: run pinned binaries, turn command names into absolute
# paths, ask the group database about groups. Nothing here writes to disk.

import functools
import logging
import os
import re
import shutil
import subprocess
from collections.abc import Callable

from gm_config import BIN, is_safe_command_path
from gm_errors import UnresolvedCommand

# (cmdkey, args, input) -> (returncode, stdout, stderr)
Runner = Callable[..., tuple[int, str, str]]

#====================#
# Pinned binaries    #
#====================#

# Function: fncRun
# Purpose : Execute a pinned binary by logical key; capture rc/stdout/stderr.
# Notes   : Returns (returncode, stdout, stderr). 127 when the binary is missing.
def fncRun(cmdkey: str, args: list[str] | None = None, input: str | None = None,
           bins: dict[str, str] | None = None) -> tuple[int, str, str]:
    exe = (bins or BIN).get(cmdkey)
    if not exe or not os.path.exists(exe):
        return 127, "", f"binary not found: {cmdkey} -> {exe}"
    try:
        p = subprocess.run([exe] + (args or []), input=input, capture_output=True, text=True, check=False)
        return p.returncode, p.stdout.strip(), p.stderr.strip()
    except FileNotFoundError as e:
        return 127, "", str(e)


def make_runner(bins: dict[str, str]) -> Runner:
    """fncRun bound to a specific BIN map (Settings.bins)."""
    return functools.partial(fncRun, bins=bins)


# Function: fncMissingBinaries
# Purpose : List pinned binaries (by key) that are not on disk.
# Notes   : Used by the preflight; callers decide if it's fatal.
def fncMissingBinaries(keys: list[str], bins: dict[str, str] | None = None) -> list[str]:
    table = bins or BIN
    return [k for k in keys if not os.path.exists(table.get(k, ""))]

#====================#
# Command resolver   #
#====================#

# Function: fncResolveCommand
# Purpose : Map an operator-entered command name to an absolute path.
# Notes   : Absolute paths pass through untouched (caller asked for exactly that).
#           Returns None when nothing on the search path matches.
def fncResolveCommand(name: str, search_path: str | None = None) -> str | None:
    name = (name or "").strip()
    if not name:
        return None
    if name.startswith("/"):
        return name if is_safe_command_path(name) else None
    found = shutil.which(name, path=search_path)
    if not found:
        return None
    found = os.path.abspath(found)
    return found if is_safe_command_path(found) else None


def _split_names(names: list[str] | str) -> list[str]:
    if isinstance(names, str):
        names = [names]
    out = []
    for item in names:
        out.extend(p.strip() for p in re.split(r",", item or "") if p.strip())
    return out


# Function: fncResolveCommands
# Purpose : Resolve a batch of names (comma-separated allowed) keeping order.
# Notes   : Raises UnresolvedCommand listing every miss, unless skip_unresolved,
#           in which case misses are logged and dropped.
def fncResolveCommands(names: list[str] | str, search_path: str | None = None,
                       skip_unresolved: bool = False) -> list[str]:
    resolved: list[str] = []
    missing: list[str] = []
    for n in _split_names(names):
        p = fncResolveCommand(n, search_path)
        if p:
            resolved.append(p)
        else:
            missing.append(n)

    if missing and not skip_unresolved:
        raise UnresolvedCommand(missing)
    for n in missing:
        logging.warning("Could not resolve command: '%s' - skipping", n)
    return resolved


# Function: fncBuildCandidates
# Purpose : Resolve the predefined command list against this host.
# Notes   : Names not installed here are just left out.
def fncBuildCandidates(names: list[str], search_path: str | None = None) -> list[str]:
    out: list[str] = []
    for n in names:
        p = fncResolveCommand(n, search_path)
        if p and p not in out:
            out.append(p)
    return out

#====================#
# Group database     #
#====================#

# Function: fncGroupExists
# Purpose : Ask getent whether a group exists right now.
# Notes   : Deliberately uncached; re-checked before every decision.
def fncGroupExists(name: str, run: Runner = fncRun) -> bool:
    if not name:
        return False
    rc, _, _ = run("getent", ["group", name])
    return rc == 0
