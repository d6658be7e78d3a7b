# Module: gm_groups.py
# Part of Groupmatic
#
# Groups and their shared folders under BASE_DIR. Everything here is safe to
# run over and over: create if missing, then re-apply owner/mode/ACL anyway
# so hand-tweaked perms get put right on the next run.

import logging
import os
from pathlib import Path

from gm_config import BASE_DIR_MODE, SHARED_DIR_MODE, Settings, is_valid_group_name
from gm_errors import CommandFailure, FilesystemFailure, InvalidIdentity, MissingGroupName, UnknownGroup
from gm_system import Runner, fncGroupExists, make_runner

GROUPADD_EXISTS_RC = 9   # groupadd: "group already exists"


class GroupProvisioner:
    def __init__(self, settings: Settings, run: Runner | None = None):
        self.settings = settings
        self.run = run or make_runner(settings.bins)

    def check_name(self, name: str, what: str):
        if not name:
            raise MissingGroupName(what)
        if not is_valid_group_name(name):
            raise InvalidIdentity(name)

    def group_exists(self, name: str) -> bool:
        return fncGroupExists(name, self.run)

    # Function: ensure_group
    # Purpose : Create the group if getent doesn't know it.
    # Notes   : True if we created it, False if it was already there.
    def ensure_group(self, name: str) -> bool:
        self.check_name(name, "group creation")
        if self.group_exists(name):
            logging.info("Group already exists: %s", name)
            return False
        rc, _, err = self.run("groupadd", [name])
        if rc == GROUPADD_EXISTS_RC:
            # someone else made it between getent and groupadd
            logging.info("Group already exists: %s", name)
            return False
        if rc != 0:
            logging.error("Failed to create group %s: %s", name, err)
            raise CommandFailure(f"groupadd {name}", rc, err)
        logging.info("Created group: %s", name)
        return True

    def ensure_base_dir(self) -> Path:
        base = self.settings.base_dir
        if base.is_dir():
            return base
        # parents too; the CLI runs under umask 077
        missing = [p for p in (base, *base.parents) if not p.exists()]
        try:
            for p in reversed(missing):
                p.mkdir(exist_ok=True)
                os.chmod(p, BASE_DIR_MODE)
        except OSError as e:
            raise FilesystemFailure(base, "create base directory", e) from e
        logging.info("Created base directory: %s", base)
        return base

    # Function: ensure_shared_directory
    # Purpose : <base>/<group>, root:<group>, 2770, default ACL g:<group>:rwx.
    # Notes   : Perms/ACLs re-applied every call, not just on create.
    def ensure_shared_directory(self, group: str) -> Path:
        self.check_name(group, "shared directory")
        if not self.group_exists(group):
            raise UnknownGroup(group)

        self.ensure_base_dir()
        d = self.settings.shared_dir(group)
        if not d.is_dir():
            try:
                d.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                raise FilesystemFailure(d, "create shared directory", e) from e
            logging.info("Created shared directory: %s", d)

        rc, _, err = self.run("chgrp", [group, str(d)])
        if rc != 0:
            raise CommandFailure(f"chgrp {group} {d}", rc, err)
        try:
            # after chgrp: chgrp by a non-root owner clears setgid
            os.chmod(d, SHARED_DIR_MODE)
        except OSError as e:
            raise FilesystemFailure(d, "chmod 2770", e) from e

        self._apply_acl(group, d)
        logging.info("Secured directory: %s (root:%s, %o)", d, group, SHARED_DIR_MODE)
        return d

    def _apply_acl(self, group: str, d: Path):
        for args in (["-d", "-m", f"g:{group}:rwx", str(d)],
                     ["-m", f"g:{group}:rwx", str(d)]):
            rc, _, err = self.run("setfacl", args)
            if rc == 127:
                logging.debug("setfacl not available; skipping ACLs on %s", d)
                return
            if rc != 0:
                # filesystem without ACL support; mode bits still apply
                logging.warning("setfacl %s failed on %s: %s", " ".join(args[:-1]), d, err)
                return

    # ---- default layout ----

    def missing_default_groups(self) -> list[str]:
        return [g for g in self.settings.default_groups if not self.group_exists(g)]

    def ensure_defaults(self, create: bool = True) -> dict[str, list[str]]:
        """Check/create the predefined groups and give each one its folder."""
        self.ensure_base_dir()
        missing = self.missing_default_groups()
        for g in self.settings.default_groups:
            if g in missing:
                logging.warning("Missing default group: %s", g)
            else:
                logging.info("Group present: %s", g)

        created: list[str] = []
        if missing and create:
            for g in missing:
                if self.ensure_group(g):
                    created.append(g)
        elif missing:
            logging.warning("Skipped creation of missing groups: %s", ", ".join(missing))

        secured: list[str] = []
        for g in self.settings.default_groups:
            # re-check; creation above may have been skipped or failed
            if self.group_exists(g):
                self.ensure_shared_directory(g)
                secured.append(g)
        return {"missing": missing, "created": created, "secured": secured}
