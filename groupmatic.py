#!/usr/bin/env python3
# Script: groupmatic.py
# Groups, shared folders and scoped sudo for the multi-tenant lab boxes
#
# What this does (for my future self):
# - Make sure the standard lab groups exist, each with /srv/groups/<group>
#   (root:<group>, 2770, default ACL so new files stay group-writable)
# - Give staff-admin the full ALL=(ALL:ALL) ALL line
# - Grant a group a short list of commands via /etc/sudoers.d/grp-<group>
#   (visudo'd on its own, backed up, swapped in atomically, whole tree
#    re-checked, rolled back if sudo would choke on it)
# - Logs to /var/log/groupmatic/groupmatic.log

# ==============================
# Imports
# ==============================

# Standard library
import argparse
import fcntl
import logging
import os
import sys

# Local
from gm_config import ADMIN_REQUIRED, MIN_PYTHON_VERSION, REQUIRED_BINS, Settings
from gm_console import fncAskYesNo, fncColor, fncHeading, fncPrintMessage, fncSetColorMode
from gm_errors import GroupmaticError, PolicySyntaxError, RollbackFailure, UnknownGroup
from gm_groups import GroupProvisioner
from gm_sudoers import SudoersInstaller, summary_line
from gm_system import fncBuildCandidates, fncMissingBinaries, fncResolveCommands

VERSION = "2.1.0"

EXIT_OK = 0
EXIT_FAIL = 1
EXIT_ROLLBACK_FAILED = 3   # sudoers tree may be broken: go look at it now

#===================#
# Utility / Logging #
#===================#

# Lockfile so two runs don't stampede each other
_LOCK_FH = None

def fncAcquireLock(settings: Settings):
    """Acquire an exclusive lock to prevent concurrent runs."""
    global _LOCK_FH
    try:
        settings.lock_path.parent.mkdir(parents=True, exist_ok=True)
        _LOCK_FH = open(settings.lock_path, "w")
        os.chmod(settings.lock_path, 0o600)
        fcntl.lockf(_LOCK_FH, fcntl.LOCK_EX | fcntl.LOCK_NB)
        logging.debug("Acquired lock: %s", settings.lock_path)
    except BlockingIOError:
        fncPrintMessage("Another instance of groupmatic is already running.", "warning")
        sys.exit(EXIT_FAIL)
    except OSError as e:
        fncPrintMessage(f"Failed to acquire lock ({settings.lock_path}): {e}", "error")
        sys.exit(EXIT_FAIL)

# Function: fncBootstrapPaths
# Purpose : Create the log directory with conservative permissions.
# Notes   : Safe to call multiple times.
def fncBootstrapPaths(settings: Settings):
    logdir = settings.log_file.parent
    logdir.mkdir(parents=True, exist_ok=True)
    os.chmod(logdir, 0o750)

# Function: fncEnsureLogrotate
# Purpose : Drop a logrotate file so the log doesn't grow forever.
# Notes   : Creates once; warns only on failure.
def fncEnsureLogrotate(settings: Settings, path: str = "/etc/logrotate.d/groupmatic"):
    content = f"""{settings.log_file} {{
  weekly
  rotate 8
  compress
  missingok
  notifempty
  create 0640 root root
}}
"""
    try:
        if os.path.isdir(os.path.dirname(path)) and not os.path.exists(path):
            with open(path, "w") as f:
                f.write(content)
            os.chmod(path, 0o644)
    except OSError as e:
        logging.warning("Couldn't write logrotate file (%s): %s", path, e)

# Function: fncSetupLogging
# Purpose : Log to file and stdout; ensure paths & logrotate exist.
# Notes   : INFO for changes; DEBUG (--debug) for visudo chatter.
def fncSetupLogging(settings: Settings, debug: bool = False):
    fncBootstrapPaths(settings)
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s %(levelname)s %(message)s",
        handlers=[logging.FileHandler(settings.log_file), logging.StreamHandler(sys.stdout)],
    )
    logging.info("---- Groupmatic %s start ----", VERSION)
    fncEnsureLogrotate(settings)

# Function: fncCheckPyVersion
# Purpose : Fail fast on unsupported Python versions.
def fncCheckPyVersion():
    if sys.version_info < MIN_PYTHON_VERSION:
        want = ".".join(str(x) for x in MIN_PYTHON_VERSION)
        fncPrintMessage(f"This script requires Python {want} or higher. Please upgrade.", "error")
        sys.exit(EXIT_FAIL)

# Function: fncAdminCheck
# Purpose : Ensure the process runs as root when ADMIN_REQUIRED is True.
def fncAdminCheck():
    if ADMIN_REQUIRED and os.geteuid() != 0:
        fncPrintMessage("This needs root. Try sudo.", "error")
        sys.exit(EXIT_FAIL)

# Function: fncCheckBinaries
# Purpose : Bail out early if getent/groupadd/visudo/chgrp aren't where we pinned them.
def fncCheckBinaries(settings: Settings):
    missing = fncMissingBinaries(REQUIRED_BINS, settings.bins)
    if missing:
        for key in missing:
            logging.error("Missing required binary: %s -> %s", key, settings.bins.get(key))
        fncPrintMessage("Missing required system utilities: " + ", ".join(missing), "error")
        sys.exit(EXIT_FAIL)
    if fncMissingBinaries(["setfacl"], settings.bins):
        logging.info("setfacl not found; shared directories get mode bits only (no default ACLs)")

#====================#
# Flows              #
#====================#

# Function: fncDefaultsFlow
# Purpose : Default groups + folders, staff-admin full sudo, audit other grants.
def fncDefaultsFlow(args, settings: Settings, prov: GroupProvisioner, inst: SudoersInstaller) -> int:
    fncHeading("== Checking default groups ==")
    missing = prov.missing_default_groups()
    create = False
    if missing and not args.no_create:
        fncPrintMessage("Missing default groups: " + ", ".join(missing), "warning")
        create = args.yes or fncAskYesNo("Create missing groups now?", default_yes=True)
    result = prov.ensure_defaults(create=create)
    for g in result["created"]:
        fncPrintMessage(f"Created group: {g}", "success")
    fncPrintMessage(f"Shared directories secured: {len(result['secured'])}", "success")

    fncHeading("== Administrative group ==")
    admin = settings.admin_group
    if not prov.group_exists(admin):
        fncPrintMessage(f"{admin} group doesn't exist. Creating it now.", "warning")
        prov.ensure_group(admin)
    tx = inst.ensure_full_admin(admin)
    if tx is None:
        fncPrintMessage(f"{admin} already has full administrative privileges", "success")
    else:
        fncPrintMessage(f"Granted full administrative privileges to {admin} ({tx.target})", "success")

    others = [(g, p) for g, p in inst.list_managed_grants() if g != admin]
    if others:
        fncPrintMessage(f"Found sudoers files for non-{admin} groups:", "warning")
        for g, p in others:
            print(f"  - {g} ({p})")
    return EXIT_OK


def fncCreateGroupFlow(args, settings: Settings, prov: GroupProvisioner, inst: SudoersInstaller) -> int:
    grp = (args.group or "").strip()
    if prov.ensure_group(grp):
        fncPrintMessage(f"Created new group: {grp}", "success")
    else:
        fncPrintMessage(f"Group already exists: {grp}", "info")
    d = prov.ensure_shared_directory(grp)
    fncPrintMessage(f"Secured directory: {d} (root:{grp}, 2770)", "success")
    return EXIT_OK


def _fncPickCandidates(picks: str, candidates: list[str]) -> list[str]:
    chosen = []
    for n in picks.split(","):
        n = n.strip()
        if not n:
            continue
        if n.isdigit() and 1 <= int(n) <= len(candidates):
            chosen.append(candidates[int(n) - 1])
        else:
            fncPrintMessage(f"Skipping invalid selection: {n}", "warning")
    return chosen


# Function: fncGrantFlow
# Purpose : Resolve commands, show the rule, confirm, run the sudoers transaction.
# Notes   : The group must already exist (checked right now, not cached).
def fncGrantFlow(args, settings: Settings, prov: GroupProvisioner, inst: SudoersInstaller) -> int:
    grp = (args.group or "").strip()
    prov.check_name(grp, "sudoers grant")
    if not prov.group_exists(grp):
        raise UnknownGroup(grp)

    commands = fncResolveCommands(args.commands or [], settings.search_path,
                                  skip_unresolved=args.skip_unresolved)
    if args.pick:
        commands += _fncPickCandidates(args.pick, fncBuildCandidates(settings.candidate_commands,
                                                                     settings.search_path))

    require_password = settings.require_password
    if args.nopasswd:
        require_password = False
    elif args.passwd:
        require_password = True

    line = summary_line(grp, commands, require_password)
    fncHeading("Ready to grant the following sudo privileges:")
    print("  " + fncColor(line, "white", "bold"))
    if not (args.yes or fncAskYesNo("Proceed with these changes?", default_yes=False)):
        fncPrintMessage("Operation cancelled by user", "warning")
        return EXIT_FAIL

    tx = inst.install_grant(grp, commands, require_password)
    if tx.backup_path:
        fncPrintMessage(f"Backed up previous grant to: {tx.backup_path}", "info")
    fncPrintMessage(f"Sudoers updated successfully: {tx.target}", "success")
    return EXIT_OK


def fncAdminFlow(args, settings: Settings, prov: GroupProvisioner, inst: SudoersInstaller) -> int:
    grp = (args.group or settings.admin_group).strip()
    prov.ensure_group(grp)
    tx = inst.ensure_full_admin(grp)
    if tx is None:
        fncPrintMessage(f"{grp} already has full administrative privileges", "success")
    else:
        fncPrintMessage(f"Granted full administrative privileges to {grp}", "success")
    return EXIT_OK


def fncCandidatesFlow(args, settings: Settings, prov: GroupProvisioner, inst: SudoersInstaller) -> int:
    candidates = fncBuildCandidates(settings.candidate_commands, settings.search_path)
    if not candidates:
        fncPrintMessage("No predefined commands found on this system", "error")
        return EXIT_FAIL
    fncHeading("Available system commands:")
    for i, c in enumerate(candidates, 1):
        print(f"  {i:2d}) {c}")
    return EXIT_OK


def fncListFlow(args, settings: Settings, prov: GroupProvisioner, inst: SudoersInstaller) -> int:
    grants = inst.list_managed_grants()
    if not grants:
        fncPrintMessage(f"No managed grants in {settings.sudoers_dir}", "info")
        return EXIT_OK
    for g, p in grants:
        print(f"  - {fncColor(g, 'cyan')} ({p})")
    return EXIT_OK

#=================#
# Script harness  #
#=================#

def fncBuildParser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Groupmatic - lab groups, shared folders and scoped sudo")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    parser.add_argument("--mono", action="store_true", help="No colours")
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    sub = parser.add_subparsers(dest="action", required=True)

    p = sub.add_parser("defaults", help="Check & configure default groups, directories and staff-admin sudo")
    p.add_argument("--yes", "-y", action="store_true", help="Create missing groups without asking")
    p.add_argument("--no-create", action="store_true", help="Report missing groups but don't create them")
    p.set_defaults(func=fncDefaultsFlow)

    p = sub.add_parser("create-group", help="Create a group and its shared directory")
    p.add_argument("group")
    p.set_defaults(func=fncCreateGroupFlow)

    p = sub.add_parser("grant", help="Grant a group a list of commands via sudoers.d")
    p.add_argument("group")
    p.add_argument("commands", nargs="*", help="Command names or absolute paths (commas ok)")
    p.add_argument("--pick", help="Comma-separated numbers from `candidates`")
    pw = p.add_mutually_exclusive_group()
    pw.add_argument("--nopasswd", action="store_true", help="Don't ask for a password")
    pw.add_argument("--passwd", action="store_true", help="Require the user's password")
    p.add_argument("--skip-unresolved", action="store_true", help="Drop names that don't resolve instead of failing")
    p.add_argument("--yes", "-y", action="store_true", help="Don't ask for confirmation")
    p.set_defaults(func=fncGrantFlow)

    p = sub.add_parser("admin", help="Ensure the admin group has full sudo")
    p.add_argument("group", nargs="?", help="Defaults to the configured admin group")
    p.set_defaults(func=fncAdminFlow)

    p = sub.add_parser("candidates", help="List predefined commands present on this host")
    p.set_defaults(func=fncCandidatesFlow)

    p = sub.add_parser("list", help="List managed sudoers grants")
    p.set_defaults(func=fncListFlow)
    return parser


# Function: fncMain
# Purpose : Program entrypoint; preflight, logging, lock, run the chosen flow.
# Notes   : Returns the exit code. RollbackFailure gets its own code (3).
def fncMain(argv: list[str] | None = None, settings: Settings | None = None) -> int:
    args = fncBuildParser().parse_args(argv)
    fncSetColorMode(args.mono)
    fncCheckPyVersion()
    settings = settings or Settings.from_env()
    try:
        os.umask(0o077)
        fncAdminCheck()
        fncSetupLogging(settings, debug=args.debug)
        fncCheckBinaries(settings)
        fncAcquireLock(settings)
        prov = GroupProvisioner(settings)
        inst = SudoersInstaller(settings, run=prov.run)
        return args.func(args, settings, prov, inst)
    except RollbackFailure as e:
        logging.critical("%s", e)
        fncPrintMessage(str(e), "error")
        if e.diagnostics:
            print(e.diagnostics, file=sys.stderr)
        fncPrintMessage("Check the sudoers tree NOW (visudo -c) before logging out.", "error")
        return EXIT_ROLLBACK_FAILED
    except PolicySyntaxError as e:
        fncPrintMessage(f"Sudoers {e.scope} validation failed:", "error")
        print("\n----- Validation Error -----\n" + e.diagnostics, file=sys.stderr)
        if getattr(e, "rolled_back", False):
            fncPrintMessage("Previous sudoers state restored.", "warning")
        return EXIT_FAIL
    except GroupmaticError as e:
        logging.error("%s", e)
        fncPrintMessage(str(e), "error")
        return EXIT_FAIL
    except KeyboardInterrupt:
        fncPrintMessage("Bye then...", "error")
        return EXIT_OK
    except Exception as e:
        logging.exception("Unhandled exception: %s", e)
        return EXIT_FAIL


if __name__ == "__main__":
    sys.exit(fncMain())
