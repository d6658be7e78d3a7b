"""
Tests for the group / shared directory provisioner.
"""

import os
import stat

import pytest

from gm_errors import CommandFailure, InvalidIdentity, MissingGroupName, UnknownGroup
from gm_groups import GroupProvisioner


@pytest.fixture
def prov(settings, host):
    return GroupProvisioner(settings, run=host)


def _mode(p):
    return stat.S_IMODE(p.stat().st_mode)


class TestEnsureGroup:
    def test_creates_missing_group(self, prov, host):
        assert prov.ensure_group("team-x") is True
        assert "team-x" in host.groups
        assert host.called("groupadd") == [["team-x"]]

    def test_existing_group_is_noop(self, prov, host):
        assert prov.ensure_group("blue-team") is False
        assert host.called("groupadd") == []

    def test_second_call_is_noop(self, prov, host):
        prov.ensure_group("team-x")
        assert prov.ensure_group("team-x") is False
        assert len(host.called("groupadd")) == 1

    def test_groupadd_exists_race_is_noop(self, prov, host, monkeypatch):
        # getent says missing, groupadd says it exists
        monkeypatch.setattr(host, "_getent", lambda args: (2, "", ""))
        host.groups.add("team-x")
        assert prov.ensure_group("team-x") is False

    def test_groupadd_failure_raises(self, prov, host):
        host.groupadd_rc = 10
        with pytest.raises(CommandFailure) as exc:
            prov.ensure_group("team-x")
        assert exc.value.returncode == 10

    def test_empty_name(self, prov):
        with pytest.raises(MissingGroupName):
            prov.ensure_group("")

    def test_bad_name(self, prov, host):
        with pytest.raises(InvalidIdentity):
            prov.ensure_group("Team X")
        assert host.calls == []


class TestSharedDirectory:
    def test_creates_with_mode_and_group(self, prov, host, settings):
        host.groups.add("team-x")
        d = prov.ensure_shared_directory("team-x")

        assert d == settings.base_dir / "team-x"
        assert d.is_dir()
        assert _mode(d) == 0o2770
        assert _mode(settings.base_dir) == 0o755
        assert host.called("chgrp") == [["team-x", str(d)]]
        assert host.called("setfacl") == [
            ["-d", "-m", "g:team-x:rwx", str(d)],
            ["-m", "g:team-x:rwx", str(d)],
        ]

    def test_missing_parents_traversable_under_tight_umask(self, prov, host, settings, tmp_path):
        settings.base_dir = tmp_path / "data" / "lab" / "groups"
        old = os.umask(0o077)
        try:
            prov.ensure_shared_directory("blue-team")
        finally:
            os.umask(old)

        for d in (tmp_path / "data", tmp_path / "data" / "lab", settings.base_dir):
            assert _mode(d) == 0o755
        assert _mode(settings.base_dir / "blue-team") == 0o2770

    def test_idempotent(self, prov, host, settings):
        host.groups.add("team-x")
        first = prov.ensure_shared_directory("team-x")
        st1 = first.stat()
        second = prov.ensure_shared_directory("team-x")
        st2 = second.stat()

        assert first == second
        assert [p.name for p in settings.base_dir.iterdir()] == ["team-x"]
        assert (st1.st_mode, st1.st_uid, st1.st_gid) == (st2.st_mode, st2.st_uid, st2.st_gid)

    def test_reapplies_permissions(self, prov, host):
        host.groups.add("team-x")
        d = prov.ensure_shared_directory("team-x")
        d.chmod(0o777)

        prov.ensure_shared_directory("team-x")

        assert _mode(d) == 0o2770
        assert len(host.called("chgrp")) == 2

    def test_missing_group_name(self, prov):
        with pytest.raises(MissingGroupName):
            prov.ensure_shared_directory("")

    def test_unknown_group(self, prov, settings):
        with pytest.raises(UnknownGroup):
            prov.ensure_shared_directory("ghost")
        assert not (settings.base_dir / "ghost").exists()

    def test_no_setfacl_still_secured(self, prov, host):
        host.acl = False
        d = prov.ensure_shared_directory("blue-team")
        assert _mode(d) == 0o2770
        assert len(host.called("setfacl")) == 1

    def test_acl_unsupported_only_warns(self, prov, host, caplog):
        host.acl_rc = 1
        d = prov.ensure_shared_directory("blue-team")
        assert _mode(d) == 0o2770
        assert "setfacl" in caplog.text

    def test_chgrp_failure_raises(self, prov, host, monkeypatch):
        monkeypatch.setattr(host, "_chgrp", lambda args: (1, "", "chgrp: nope"))
        with pytest.raises(CommandFailure):
            prov.ensure_shared_directory("blue-team")


class TestDefaults:
    def test_missing_default_groups(self, prov):
        assert prov.missing_default_groups() == ["project-1"]

    def test_creates_and_secures_everything(self, prov, host, settings):
        result = prov.ensure_defaults(create=True)

        assert result["missing"] == ["project-1"]
        assert result["created"] == ["project-1"]
        assert result["secured"] == ["staff-admin", "blue-team", "project-1"]
        for g in settings.default_groups:
            assert _mode(settings.base_dir / g) == 0o2770

    def test_without_create_only_existing_get_folders(self, prov, host, settings):
        result = prov.ensure_defaults(create=False)

        assert result["created"] == []
        assert "project-1" not in host.groups
        assert not (settings.base_dir / "project-1").exists()
        assert (settings.base_dir / "blue-team").is_dir()
