"""Custom exceptions for Shipyard."""

from typing import Optional


class ShipyardError(Exception):
    """Base exception for all pipeline errors."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.code = code


class InvalidInputError(ShipyardError):
    """Branch or revision input cannot produce a tag."""
    pass


class ConfigurationError(ShipyardError):
    """Configuration error."""
    pass


class CommandError(ShipyardError):
    """A local command exited non-zero, timed out, or could not be started."""

    def __init__(
        self,
        message: str,
        command: Optional[list] = None,
        exit_code: Optional[int] = None,
        output: str = "",
        code: Optional[str] = None,
    ):
        super().__init__(message, code=code)
        self.command = command or []
        self.exit_code = exit_code
        self.output = output


class RemoteCommandError(ShipyardError):
    """A command on the remote host exited non-zero."""

    def __init__(self, message: str, command: str = "", exit_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message, code="remote_command")
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class BuildFailure(ShipyardError):
    """The build tool failed or produced no single artifact."""
    pass


class PackagingFailure(ShipyardError):
    """Image construction or export failed."""
    pass


class TransferFailure(ShipyardError):
    """Moving the image archive to the remote host failed."""
    pass


class AuthenticationFailure(TransferFailure):
    """SSH authentication was rejected."""
    pass


class NetworkUnreachable(TransferFailure):
    """Remote host could not be reached."""
    pass


class RemotePathNotWritable(TransferFailure):
    """Remote deployment directory cannot be written."""
    pass


class RemoteApplyFailure(ShipyardError):
    """A remote apply step failed."""
    pass


class DeployLockError(RemoteApplyFailure):
    """Remote deploy lock is held by another run."""
    pass
