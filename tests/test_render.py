"""
Tests for grant rendering — the exact sudoers text we write.
"""

import pytest

from gm_errors import EmptyCommandSet, InvalidIdentity, MissingGroupName, UnresolvedCommand
from gm_sudoers import has_full_admin_line, render_full_admin, render_grant, summary_line

CMDS = ["/usr/bin/systemctl", "/usr/bin/journalctl"]


class TestRenderGrant:
    def test_password_required_line(self):
        text = render_grant("blue-team", CMDS, require_password=True)
        assert text.splitlines()[-1] == "%blue-team ALL=(root) /usr/bin/systemctl, /usr/bin/journalctl"

    def test_nopasswd_marker_before_commands(self):
        text = render_grant("blue-team", CMDS, require_password=False)
        assert text.splitlines()[-1] == (
            "%blue-team ALL=(root) NOPASSWD: /usr/bin/systemctl, /usr/bin/journalctl"
        )

    def test_full_file_layout(self):
        text = render_grant("blue-team", CMDS, require_password=True)
        assert text == (
            "# Managed by Groupmatic\n"
            "# Grant limited commands to group: blue-team\n"
            "%blue-team ALL=(root) /usr/bin/systemctl, /usr/bin/journalctl\n"
        )

    def test_deterministic(self):
        a = render_grant("blue-team", list(CMDS), False)
        b = render_grant("blue-team", list(CMDS), False)
        assert a.encode() == b.encode()

    def test_duplicates_dropped_order_kept(self):
        line = summary_line(
            "secdevops",
            ["/usr/bin/tail", "/usr/bin/cat", "/usr/bin/tail", "/usr/bin/less", "/usr/bin/cat"],
            True,
        )
        assert line == "%secdevops ALL=(root) /usr/bin/tail, /usr/bin/cat, /usr/bin/less"

    def test_blank_entries_ignored(self):
        line = summary_line("project-1", ["", "  ", "/usr/bin/ss"], True)
        assert line == "%project-1 ALL=(root) /usr/bin/ss"

    def test_empty_command_set_rejected(self):
        with pytest.raises(EmptyCommandSet):
            render_grant("blue-team", [], True)

    def test_only_blank_commands_is_empty(self):
        with pytest.raises(EmptyCommandSet):
            render_grant("blue-team", ["", " "], True)

    def test_relative_command_rejected(self):
        with pytest.raises(UnresolvedCommand) as exc:
            render_grant("blue-team", ["/usr/bin/ip", "docker"], True)
        assert exc.value.names == ["docker"]

    @pytest.mark.parametrize("cmd", [
        "/usr/bin/true\n%blue-team ALL=(ALL:ALL) NOPASSWD: ALL",
        "/bin/sh, ALL",
        "/usr/bin/env PATH=/tmp sh",
        "/usr/bin/ls NOPASSWD: ALL",
        "/usr/bin/ls \\\n ALL",
        "/usr/bin/ls # trailing",
        "/usr/bin/ls\tALL",
        "/usr/bin/ls\rALL",
        "/usr/bin/ls\x00",
        "/usr/bin/ls\x7f",
    ])
    def test_command_with_sudoers_syntax_rejected(self, cmd):
        with pytest.raises(UnresolvedCommand) as exc:
            render_grant("blue-team", ["/usr/bin/ip", cmd], True)
        assert exc.value.names == [cmd.strip()]

    def test_arguments_after_command_allowed(self):
        line = summary_line("blue-team", ["/usr/bin/systemctl restart nginx"], True)
        assert line == "%blue-team ALL=(root) /usr/bin/systemctl restart nginx"

    @pytest.mark.parametrize("name", ["Blue-Team", "1team", "-team", "team x", "team.bak", "%team"])
    def test_invalid_group_rejected(self, name):
        with pytest.raises(InvalidIdentity):
            render_grant(name, CMDS, True)

    def test_missing_group_rejected(self):
        with pytest.raises(MissingGroupName):
            render_grant("", CMDS, True)


class TestFullAdmin:
    def test_render(self):
        text = render_full_admin("staff-admin")
        assert text.splitlines()[-1] == "%staff-admin ALL=(ALL:ALL) ALL"
        assert text.endswith("\n")

    @pytest.mark.parametrize("line", [
        "%staff-admin ALL=(ALL:ALL) ALL",
        "%staff-admin   ALL=(ALL) ALL",
        "%staff-admin ALL=(ALL:ALL) ALL   ",
    ])
    def test_detects_existing_line(self, line):
        assert has_full_admin_line(f"# header\n{line}\n", "staff-admin")

    @pytest.mark.parametrize("text", [
        "",
        "%staff-admin ALL=(root) /usr/bin/systemctl\n",
        "%staff-user ALL=(ALL:ALL) ALL\n",
        "# %staff-admin ALL=(ALL:ALL) ALL\n",
        "%staff-admin ALL=(ALL:ALL) NOPASSWD: ALL\n",
    ])
    def test_other_lines_do_not_count(self, text):
        assert not has_full_admin_line(text, "staff-admin")
