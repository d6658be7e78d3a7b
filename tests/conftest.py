"""
Shared fixtures: Settings pointed at tmp dirs and a fake host that answers
for getent / groupadd / visudo / chgrp / setfacl.
"""

from pathlib import Path

import pytest

from gm_config import Settings


class FakeHost:
    """Stands in for fncRun. Records every call as (cmdkey, args)."""

    def __init__(self, sudoers_main: Path, groups=()):
        self.sudoers_main = str(sudoers_main)
        self.groups = set(groups)
        self.calls: list[tuple[str, list[str]]] = []
        self.fragments: list[tuple[str, str]] = []   # (path, text) seen by visudo
        self.fragment_ok = lambda text: True
        self.composite_ok = lambda: True
        self.acl = True
        self.acl_rc = 0
        self.groupadd_rc = None

    def __call__(self, cmdkey, args=None, input=None):
        args = list(args or [])
        self.calls.append((cmdkey, args))
        handler = getattr(self, "_" + cmdkey)
        return handler(args)

    def called(self, cmdkey):
        return [a for k, a in self.calls if k == cmdkey]

    def _getent(self, args):
        name = args[1]
        if name in self.groups:
            return 0, f"{name}:x:1234:", ""
        return 2, "", ""

    def _groupadd(self, args):
        name = args[-1]
        if self.groupadd_rc is not None:
            return self.groupadd_rc, "", f"groupadd: cannot add {name}"
        if name in self.groups:
            return 9, "", f"groupadd: group '{name}' already exists"
        self.groups.add(name)
        return 0, "", ""

    def _visudo(self, args):
        path = args[-1]
        if path == self.sudoers_main:
            if self.composite_ok():
                return 0, f"{path}: parsed OK", ""
            return 1, "", f"{path}:3:1: syntax error"
        text = Path(path).read_text()
        self.fragments.append((path, text))
        if self.fragment_ok(text):
            return 0, f"{path}: parsed OK", ""
        last = text.splitlines()[-1]
        return 1, "", f"{path}:3:12: syntax error\n{last}\n           ^"

    def _chgrp(self, args):
        if args[0] in self.groups:
            return 0, "", ""
        return 1, "", f"chgrp: invalid group: '{args[0]}'"

    def _setfacl(self, args):
        if not self.acl:
            return 127, "", "binary not found: setfacl -> /usr/bin/setfacl"
        return self.acl_rc, "", "" if self.acl_rc == 0 else "setfacl: Operation not supported"


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    sudoers_dir = tmp_path / "sudoers.d"
    sudoers_dir.mkdir()
    main = tmp_path / "sudoers"
    main.write_text("#includedir {}\n".format(sudoers_dir))
    return Settings(
        base_dir=tmp_path / "srv" / "groups",
        sudoers_dir=sudoers_dir,
        sudoers_main=main,
        log_file=tmp_path / "log" / "groupmatic.log",
        lock_path=tmp_path / "groupmatic.lock",
        default_groups=["staff-admin", "blue-team", "project-1"],
    )


@pytest.fixture
def host(settings: Settings) -> FakeHost:
    return FakeHost(settings.sudoers_main, groups={"blue-team", "staff-admin"})


@pytest.fixture
def bin_dir(tmp_path: Path) -> Path:
    """A private PATH with a couple of fake executables in it."""
    d = tmp_path / "bin"
    d.mkdir()
    for name in ("systemctl", "journalctl"):
        p = d / name
        p.write_text("#!/bin/sh\nexit 0\n")
        p.chmod(0o755)
    return d
