# Module: gm_config.py
# Part of Groupmatic
#
# One Settings object, built once by the CLI and handed to the provisioner
# and the sudoers installer. Defaults below, env vars (GROUPMATIC_*) on top.
# Tests just build Settings(...) pointing at tmp dirs.

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

#=================#
# Global Settings #
#=================#

MIN_PYTHON_VERSION = (3, 11)
ADMIN_REQUIRED = True   # Script requires root

ENV_PREFIX = "GROUPMATIC_"

#-----------------------------#
# Defaults (env-overridable)  #
#-----------------------------#
BASE_DIR = "/srv/groups"            # Shared group folders live under here
SUDOERS_DIR = "/etc/sudoers.d"
SUDOERS_MAIN = "/etc/sudoers"       # Parsed for the global (composite) check
SUDOERS_PREFIX = "grp-"             # /etc/sudoers.d/grp-<group>
REQUIRE_PASSWORD = True             # False = NOPASSWD grants by default
ADMIN_GROUP = "staff-admin"         # Gets the full ALL=(ALL:ALL) ALL line

LOG_FILE = "/var/log/groupmatic/groupmatic.log"
LOCK_PATH = "/run/groupmatic.lock"

# Groups every lab box should have (ASD E8 ML1 layout)
DEFAULT_GROUPS = [
    "staff-admin", "staff-user",
    "type-junior", "type-senior",
    "blue-team", "infrastructure", "secdevops", "data-warehouse",
    "project-1", "project-2", "project-3", "project-4", "project-5",
]

# Offered when picking commands for a grant; only the ones present get shown
CANDIDATE_COMMANDS = [
    "systemctl", "service", "journalctl", "tail", "less", "cat",
    "dmesg", "ip", "ss", "ufw", "docker", "podman",
]

#------------------------------#
# Pinned binaries for exec     #
#------------------------------#
BIN = {
  "getent":   "/usr/bin/getent",
  "groupadd": "/usr/sbin/groupadd",
  "visudo":   "/usr/sbin/visudo",
  "chgrp":    "/usr/bin/chgrp",
  "setfacl":  "/usr/bin/setfacl",
}

# Must have these; setfacl is optional (no ACL support -> plain perms only)
REQUIRED_BINS = ["getent", "groupadd", "visudo", "chgrp"]

GROUP_NAME_RE = re.compile(r"^[a-z_][a-z0-9_-]*$")
# sudoers list separators, tag/alias punctuation, escapes, comments, control chars
UNSAFE_COMMAND_RE = re.compile(r"[\x00-\x1f\x7f,:=\\#]")

GRANT_FILE_MODE = 0o440
SHARED_DIR_MODE = 0o2770
BASE_DIR_MODE = 0o755

MANAGED_HEADER = "# Managed by Groupmatic"

#===========================#
# Environment Overlay Utils #
#===========================#

# Function: _env_bool
# Purpose : Read boolean-like env vars with a default.
# Notes   : Accepts 1/true/yes/y/on (case-insensitive).
def _env_bool(name: str, default: bool) -> bool:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return v.strip().lower() in ("1", "true", "yes", "y", "on")

# Function: _env_list
# Purpose : Parse a list from env using commas/spaces as separators.
# Notes   : Returns default when env missing/blank. Order is kept.
def _env_list(name: str, default: list[str]) -> list[str]:
    v = os.getenv(name, "")
    if not v.strip():
        return list(default)
    parts = [p.strip() for p in re.split(r"[,\s]+", v) if p.strip()]
    return parts or list(default)

# Function: _env_str
# Purpose : Return stripped string from env with default fallback.
# Notes   : Empty -> default.
def _env_str(name: str, default: str) -> str:
    v = os.getenv(name)
    if v is None or not v.strip():
        return default
    return v.strip()


def is_valid_group_name(name: str) -> bool:
    return bool(name) and GROUP_NAME_RE.match(name) is not None


def is_safe_command_path(path: str) -> bool:
    """Absolute, and nothing in it that sudoers would read as more than one command."""
    return bool(path) and path.startswith("/") and UNSAFE_COMMAND_RE.search(path) is None


@dataclass
class Settings:
    """Everything the provisioner and installer need to know about the host."""

    base_dir: Path = Path(BASE_DIR)
    sudoers_dir: Path = Path(SUDOERS_DIR)
    sudoers_main: Path = Path(SUDOERS_MAIN)
    sudoers_prefix: str = SUDOERS_PREFIX
    require_password: bool = REQUIRE_PASSWORD
    admin_group: str = ADMIN_GROUP
    default_groups: list[str] = field(default_factory=lambda: list(DEFAULT_GROUPS))
    candidate_commands: list[str] = field(default_factory=lambda: list(CANDIDATE_COMMANDS))
    log_file: Path = Path(LOG_FILE)
    lock_path: Path = Path(LOCK_PATH)
    search_path: str | None = None      # None = use $PATH when resolving commands
    bins: dict[str, str] = field(default_factory=lambda: dict(BIN))

    def __post_init__(self):
        # accept plain strings from callers/tests
        for attr in ("base_dir", "sudoers_dir", "sudoers_main", "log_file", "lock_path"):
            setattr(self, attr, Path(getattr(self, attr)))

    def grant_path(self, group: str) -> Path:
        """/etc/sudoers.d/grp-<group> - one grant file per group, always."""
        return self.sudoers_dir / f"{self.sudoers_prefix}{group}"

    def shared_dir(self, group: str) -> Path:
        return self.base_dir / group

    @classmethod
    def from_env(cls) -> "Settings":
        p = ENV_PREFIX
        bins = dict(BIN)
        for key in bins:
            bins[key] = _env_str(f"{p}BIN_{key.upper()}", bins[key])
        return cls(
            base_dir=Path(_env_str(f"{p}BASE_DIR", BASE_DIR)),
            sudoers_dir=Path(_env_str(f"{p}SUDOERS_DIR", SUDOERS_DIR)),
            sudoers_main=Path(_env_str(f"{p}SUDOERS_MAIN", SUDOERS_MAIN)),
            sudoers_prefix=_env_str(f"{p}SUDOERS_PREFIX", SUDOERS_PREFIX),
            require_password=_env_bool(f"{p}REQUIRE_PASSWORD", REQUIRE_PASSWORD),
            admin_group=_env_str(f"{p}ADMIN_GROUP", ADMIN_GROUP),
            default_groups=_env_list(f"{p}DEFAULT_GROUPS", DEFAULT_GROUPS),
            candidate_commands=_env_list(f"{p}CANDIDATE_COMMANDS", CANDIDATE_COMMANDS),
            log_file=Path(_env_str(f"{p}LOG_FILE", LOG_FILE)),
            lock_path=Path(_env_str(f"{p}LOCK_PATH", LOCK_PATH)),
            search_path=os.getenv(f"{p}SEARCH_PATH") or None,
            bins=bins,
        )
