# Module: gm_sudoers.py
# Part of Groupmatic
#
# The bit that can lock everyone out of the box if it gets it wrong:
#   render a grant -> visudo the fragment on its own -> back up the old file
#   -> write temp + os.replace into /etc/sudoers.d -> visudo the whole tree
#   -> put the old file back (or remove ours) if the whole tree is unhappy.
#
# Every step is tracked on a GrantTransaction so there is exactly one
# rollback routine no matter where we bail out.

import enum
import logging
import os
import re
import shutil
import stat
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from gm_config import GRANT_FILE_MODE, MANAGED_HEADER, Settings, is_safe_command_path, is_valid_group_name
from gm_errors import (
    CompositeSyntaxError,
    EmptyCommandSet,
    FilesystemFailure,
    InvalidIdentity,
    IsolatedSyntaxError,
    MissingGroupName,
    RollbackFailure,
    UnresolvedCommand,
)
from gm_system import Runner, make_runner

BACKUP_TS_FORMAT = "%Y%m%d-%H%M%S"
TEMP_PREFIX = ".groupmatic-"   # leading dot: sudo's #includedir skips it

#====================#
# Renderer           #
#====================#

def _check_group(group: str, what: str = "sudoers grant"):
    if not group:
        raise MissingGroupName(what)
    if not is_valid_group_name(group):
        raise InvalidIdentity(group)


def _unique(items) -> list[str]:
    """Drop repeats, keep the order they were given in."""
    seen: set[str] = set()
    out: list[str] = []
    for item in items:
        if item not in seen:
            seen.add(item)
            out.append(item)
    return out


# Function: summary_line
# Purpose : The single sudoers rule for a group grant, no header.
# Notes   : Shown to the operator before confirming; render_grant builds on it.
def summary_line(group: str, commands: list[str], require_password: bool) -> str:
    _check_group(group)
    cmds = _unique(c.strip() for c in commands if c and c.strip())
    if not cmds:
        raise EmptyCommandSet(group)
    # one rule, one line: no relative names, no list separators or newlines
    bad = [c for c in cmds if not is_safe_command_path(c)]
    if bad:
        raise UnresolvedCommand(bad)
    npfx = "" if require_password else "NOPASSWD: "
    return f"%{group} ALL=(root) {npfx}{', '.join(cmds)}"


# Function: render_grant
# Purpose : Full grant file text for one group.
# Notes   : Pure; same inputs -> same bytes, so re-runs are stable.
def render_grant(group: str, commands: list[str], require_password: bool,
                 header: str = MANAGED_HEADER) -> str:
    line = summary_line(group, commands, require_password)
    return f"{header}\n# Grant limited commands to group: {group}\n{line}\n"


def render_full_admin(group: str, header: str = MANAGED_HEADER) -> str:
    _check_group(group)
    return f"{header}\n# Full administrative privileges for {group}\n%{group} ALL=(ALL:ALL) ALL\n"


def has_full_admin_line(text: str, group: str) -> bool:
    pat = re.compile(rf"^%{re.escape(group)}\s+ALL=\(ALL(:ALL)?\)\s+ALL\s*$", re.MULTILINE)
    return pat.search(text or "") is not None

#====================#
# File helpers       #
#====================#

def _assert_regular_or_missing(p: str | os.PathLike):
    try:
        st = os.lstat(p)
    except FileNotFoundError:
        return
    if not stat.S_ISREG(st.st_mode):
        raise FilesystemFailure(p, "use non-regular file (symlink?) as grant file")


def _write_temp(directory: str | os.PathLike, data: bytes, mode: int) -> Path:
    fd, tmp = tempfile.mkstemp(prefix=TEMP_PREFIX, dir=directory)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, mode)
    except OSError:
        os.remove(tmp)
        raise
    return Path(tmp)

#====================#
# Validator          #
#====================#

def _diagnostics(out: str, err: str) -> str:
    return "\n".join(x for x in (out, err) if x)


class PolicyValidator:
    """Thin wrapper around `visudo -c`. Never touches the live sudoers files."""

    def __init__(self, settings: Settings, run: Runner | None = None):
        self.settings = settings
        self.run = run or make_runner(settings.bins)

    def validate_fragment(self, text: str) -> None:
        """Check a candidate fragment on its own, from a private temp file."""
        try:
            fd, tmp = tempfile.mkstemp(prefix="groupmatic-check-", suffix=".sudoers")
        except OSError as e:
            raise FilesystemFailure(tempfile.gettempdir(), "stage fragment for validation", e) from e
        try:
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(text.encode())
                os.chmod(tmp, GRANT_FILE_MODE)
            except OSError as e:
                raise FilesystemFailure(tmp, "stage fragment for validation", e) from e
            rc, out, err = self.run("visudo", ["-c", "-f", tmp])
        finally:
            os.remove(tmp)
        if rc != 0:
            raise IsolatedSyntaxError(_diagnostics(out, err))
        logging.debug("visudo accepted fragment: %s", out)

    def validate_composite(self) -> None:
        """Re-parse the whole effective tree (main file plus every include)."""
        rc, out, err = self.run("visudo", ["-c", "-f", str(self.settings.sudoers_main)])
        if rc != 0:
            raise CompositeSyntaxError(_diagnostics(out, err))
        logging.debug("visudo accepted %s: %s", self.settings.sudoers_main, out)

#====================#
# Transaction        #
#====================#

class TxState(enum.Enum):
    PROPOSED = "proposed"
    ISOLATED_VALIDATED = "isolated-validated"
    BACKED_UP = "backed-up"
    INSTALLED = "installed"
    COMPOSITE_VALIDATED = "composite-validated"
    ABORTED = "aborted"                # failed before anything on disk changed
    ROLLED_BACK = "rolled-back"
    ROLLBACK_FAILED = "rollback-failed"


@dataclass
class GrantTransaction:
    group: str
    target: Path
    text: str
    state: TxState = TxState.PROPOSED
    prior_content: bytes | None = None   # None = there was no grant file before
    backup_path: Path | None = None
    temp_path: Path | None = None
    diagnostics: str = ""

    @property
    def succeeded(self) -> bool:
        return self.state is TxState.COMPOSITE_VALIDATED


class SudoersInstaller:
    """Installs one grant file per group, all-or-nothing.

    Proposed -> IsolatedValidated -> BackedUp -> Installed -> CompositeValidated.
    Isolated failures abort with nothing touched; anything going wrong after
    the backup goes through _rollback().
    """

    def __init__(self, settings: Settings, run: Runner | None = None,
                 validator: PolicyValidator | None = None, clock=datetime.now):
        self.settings = settings
        self.run = run or make_runner(settings.bins)
        self.validator = validator or PolicyValidator(settings, self.run)
        self.clock = clock

    # ---- entry points ----

    def propose(self, group: str, text: str) -> GrantTransaction:
        _check_group(group)
        return GrantTransaction(group=group, target=self.settings.grant_path(group), text=text)

    def install_grant(self, group: str, commands: list[str],
                      require_password: bool | None = None) -> GrantTransaction:
        if require_password is None:
            require_password = self.settings.require_password
        text = render_grant(group, commands, require_password)
        return self.commit(self.propose(group, text))

    def install_text(self, group: str, text: str) -> GrantTransaction:
        return self.commit(self.propose(group, text))

    def ensure_full_admin(self, group: str | None = None) -> GrantTransaction | None:
        """Make sure `group` has %group ALL=(ALL:ALL) ALL. None if it already did."""
        group = group or self.settings.admin_group
        _check_group(group, "administrative grant")
        target = self.settings.grant_path(group)
        try:
            _assert_regular_or_missing(target)
            current = target.read_text() if target.exists() else ""
        except OSError as e:
            raise FilesystemFailure(target, "read grant file", e) from e
        if has_full_admin_line(current, group):
            logging.info("%s already has full administrative privileges", group)
            return None
        return self.install_text(group, render_full_admin(group))

    def list_managed_grants(self) -> list[tuple[str, Path]]:
        """(group, path) for every grant file we manage. Backups/temps skipped."""
        d = self.settings.sudoers_dir
        prefix = self.settings.sudoers_prefix
        if not d.is_dir():
            return []
        found = []
        for p in d.iterdir():
            if not p.name.startswith(prefix):
                continue
            group = p.name[len(prefix):]
            # .bak.<ts> names contain dots, so they never pass this
            if is_valid_group_name(group):
                found.append((group, p))
        return sorted(found)

    # ---- the state machine ----

    def commit(self, tx: GrantTransaction) -> GrantTransaction:
        if tx.state is not TxState.PROPOSED:
            raise ValueError(f"transaction for {tx.group} already {tx.state.value}")

        try:
            self.validator.validate_fragment(tx.text)
        except (IsolatedSyntaxError, FilesystemFailure) as e:
            tx.state = TxState.ABORTED
            tx.diagnostics = getattr(e, "diagnostics", "")
            e.transaction = tx
            logging.error("Sudoers fragment for %s rejected; nothing changed", tx.group)
            raise
        tx.state = TxState.ISOLATED_VALIDATED

        self._backup(tx)

        try:
            self._install(tx)
        except FilesystemFailure as e:
            logging.error("%s", e)
            self._rollback(tx)
            raise

        try:
            self.validator.validate_composite()
        except CompositeSyntaxError as e:
            tx.diagnostics = e.diagnostics
            e.transaction = tx
            logging.error("Global sudoers validation failed after installing %s", tx.target)
            self._rollback(tx)
            e.rolled_back = True
            raise

        tx.state = TxState.COMPOSITE_VALIDATED
        logging.info("Sudoers updated successfully: %s", tx.target)
        return tx

    def _backup_path(self, target: Path) -> Path:
        ts = self.clock().strftime(BACKUP_TS_FORMAT)
        p = target.with_name(f"{target.name}.bak.{ts}")
        n = 1
        while os.path.lexists(p):
            p = target.with_name(f"{target.name}.bak.{ts}-{n}")
            n += 1
        return p

    def _backup(self, tx: GrantTransaction):
        path = tx.target
        try:
            _assert_regular_or_missing(tx.target)
            if tx.target.exists():
                tx.prior_content = tx.target.read_bytes()
                path = self._backup_path(tx.target)
                shutil.copy2(tx.target, path)
                tx.backup_path = path
                logging.info("Backed up existing sudoers file to: %s", path)
            else:
                logging.debug("No existing grant at %s; backup absent", tx.target)
        except FilesystemFailure as e:
            tx.state = TxState.ABORTED
            e.transaction = tx
            raise
        except OSError as e:
            tx.state = TxState.ABORTED
            raise FilesystemFailure(path, "back up grant file", e, tx) from e
        tx.state = TxState.BACKED_UP

    def _replace_target(self, tx: GrantTransaction, data: bytes):
        tx.temp_path = _write_temp(tx.target.parent, data, GRANT_FILE_MODE)
        _assert_regular_or_missing(tx.target)
        os.replace(tx.temp_path, tx.target)
        tx.temp_path = None

    def _install(self, tx: GrantTransaction):
        try:
            self._replace_target(tx, tx.text.encode())
        except FilesystemFailure as e:
            e.transaction = tx
            raise
        except OSError as e:
            raise FilesystemFailure(tx.temp_path or tx.target, "install grant file", e, tx) from e
        tx.state = TxState.INSTALLED
        logging.info("Installed sudoers grant: %s (mode %o)", tx.target, GRANT_FILE_MODE)

    def _rollback(self, tx: GrantTransaction):
        """Put the target back how it was before this transaction started."""
        path = tx.temp_path or tx.target
        try:
            if tx.temp_path is not None:
                tx.temp_path.unlink(missing_ok=True)
                tx.temp_path = None
            if tx.state is TxState.INSTALLED:
                path = tx.target
                if tx.prior_content is not None:
                    self._replace_target(tx, tx.prior_content)
                    logging.info("Rolled back %s from backup %s", tx.target, tx.backup_path)
                else:
                    tx.target.unlink(missing_ok=True)
                    logging.info("Rolled back: removed %s (no previous grant)", tx.target)
        except (OSError, FilesystemFailure) as e:
            tx.state = TxState.ROLLBACK_FAILED
            action = "roll back grant file"
            if tx.temp_path is not None and os.path.lexists(tx.temp_path):
                action += f" (remove leftover temp file {tx.temp_path})"
            logging.critical("ROLLBACK FAILED for %s (%s); sudoers tree may be broken, fix by hand. Backup: %s, temp: %s",
                             path, e, tx.backup_path or "none", tx.temp_path or "none")
            raise RollbackFailure(path, action, e, tx, tx.diagnostics) from e
        tx.state = TxState.ROLLED_BACK
