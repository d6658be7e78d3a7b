# Module: gm_errors.py
# Part of Groupmatic - groups, shared dirs and scoped sudo for the lab boxes
#
# Everything we raise on purpose lives here so the CLI can map it to a
# sensible message + exit code. Caller-input errors touch nothing on disk.


class GroupmaticError(RuntimeError):
    """Base for every error Groupmatic raises deliberately."""


#=====================#
# Caller input errors #
#=====================#

class InvalidIdentity(GroupmaticError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(
            f"Invalid group name: {name!r} (must start with a-z or _, then only a-z, 0-9, _ or -)"
        )


class MissingGroupName(GroupmaticError):
    def __init__(self, what: str = "operation"):
        super().__init__(f"Missing group name for {what}")


class UnknownGroup(GroupmaticError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Group does not exist: {name}")


class EmptyCommandSet(GroupmaticError):
    def __init__(self, group: str):
        self.group = group
        super().__init__(f"No commands selected for group {group}; refusing to render an empty grant")


class UnresolvedCommand(GroupmaticError):
    def __init__(self, names: list[str]):
        self.names = list(names)
        super().__init__("Could not resolve command(s) to an absolute path: " + ", ".join(self.names))


#=====================#
# Policy syntax       #
#=====================#

class PolicySyntaxError(GroupmaticError):
    """visudo said no. `diagnostics` is its output, verbatim."""

    scope = "policy"

    def __init__(self, diagnostics: str, transaction=None):
        self.diagnostics = diagnostics
        self.transaction = transaction
        super().__init__(f"Sudoers {self.scope} validation failed:\n{diagnostics}")


class IsolatedSyntaxError(PolicySyntaxError):
    scope = "fragment"


class CompositeSyntaxError(PolicySyntaxError):
    scope = "global"

    def __init__(self, diagnostics: str, transaction=None, rolled_back: bool = True):
        self.rolled_back = rolled_back
        super().__init__(diagnostics, transaction)


#=====================#
# Host side failures  #
#=====================#

class FilesystemFailure(GroupmaticError):
    def __init__(self, path, action: str, cause: BaseException | None = None, transaction=None):
        self.path = str(path)
        self.action = action
        self.cause = cause
        self.transaction = transaction
        msg = f"Failed to {action}: {self.path}"
        if cause is not None:
            msg += f" ({cause})"
        super().__init__(msg)


class RollbackFailure(FilesystemFailure):
    """Rollback itself broke. The live sudoers tree is in an unknown state."""

    def __init__(self, path, action: str, cause: BaseException | None = None,
                 transaction=None, diagnostics: str = ""):
        self.diagnostics = diagnostics
        super().__init__(path, action, cause, transaction)

    def __str__(self):
        return super().__str__() + " - ROLLBACK FAILED, manual intervention required"


class CommandFailure(GroupmaticError):
    def __init__(self, command: str, returncode: int, stderr: str):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(f"{command} failed (rc={returncode}): {stderr}")
