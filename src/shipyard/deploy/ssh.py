"""SSH session to the deployment host."""

from __future__ import annotations

import io
import os
import shlex
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Union

import paramiko
import structlog

from shipyard.core.config import Settings
from shipyard.core.exceptions import (
    AuthenticationFailure,
    NetworkUnreachable,
    RemoteCommandError,
    TransferFailure,
)

logger = structlog.get_logger()

KEY_CLASSES = (paramiko.RSAKey, paramiko.Ed25519Key, paramiko.ECDSAKey)


def quote(value: str) -> str:
    return shlex.quote(str(value))


def join_command(args: List[str]) -> str:
    return " ".join(quote(a) for a in args)


@dataclass
class CommandResult:
    command: str
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def load_private_key(material: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Parse key material (PEM/OpenSSH text or a path to a key file)."""
    text = material
    if "PRIVATE KEY" not in material:
        key_path = Path(os.path.expanduser(material.strip()))
        if key_path.is_file():
            text = key_path.read_text()

    last_error: Optional[Exception] = None
    for key_class in KEY_CLASSES:
        try:
            return key_class.from_private_key(io.StringIO(text), password=passphrase)
        except paramiko.PasswordRequiredException as exc:
            raise AuthenticationFailure("Private key is encrypted and no passphrase was given", code="key_passphrase") from exc
        except (paramiko.SSHException, ValueError) as exc:
            last_error = exc
    raise AuthenticationFailure(
        f"Unsupported or invalid private key: {last_error}",
        code="key_invalid",
    )


class RemoteHost:
    """Thin wrapper over a paramiko client: commands and SFTP."""

    def __init__(
        self,
        host: str,
        username: str,
        *,
        port: int = 22,
        password: Optional[str] = None,
        private_key: Optional[str] = None,
        key_passphrase: Optional[str] = None,
        timeout: float = 30.0,
        strict_host_keys: bool = False,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.private_key = private_key
        self.key_passphrase = key_passphrase
        self.timeout = timeout
        self.strict_host_keys = strict_host_keys
        self._client: Optional[paramiko.SSHClient] = None
        self._sftp: Optional[paramiko.SFTPClient] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "RemoteHost":
        settings.require_remote()
        return cls(
            settings.remote_host,
            settings.remote_user,
            port=settings.remote_port,
            password=settings.remote_password,
            private_key=settings.remote_private_key,
            key_passphrase=settings.remote_key_passphrase,
            timeout=settings.ssh_timeout_seconds,
            strict_host_keys=settings.ssh_strict_host_keys,
        )

    @property
    def address(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"

    def connect(self) -> "RemoteHost":
        if self._client is not None:
            return self

        client = paramiko.SSHClient()
        if self.strict_host_keys:
            client.load_system_host_keys()
            client.set_missing_host_key_policy(paramiko.RejectPolicy())
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        kwargs = {
            "hostname": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.timeout,
            "banner_timeout": self.timeout,
            "auth_timeout": self.timeout,
            "allow_agent": False,
            "look_for_keys": False,
        }
        if self.private_key:
            kwargs["pkey"] = load_private_key(self.private_key, self.key_passphrase)
        elif self.password:
            kwargs["password"] = self.password
        else:
            raise AuthenticationFailure("No SSH credential configured", code="no_credential")

        logger.info("Connecting to remote host", address=self.address)
        try:
            client.connect(**kwargs)
        except paramiko.AuthenticationException as exc:
            client.close()
            raise AuthenticationFailure(f"SSH authentication failed for {self.address}: {exc}", code="auth_failed") from exc
        except paramiko.BadHostKeyException as exc:
            client.close()
            raise AuthenticationFailure(f"Host key mismatch for {self.host}: {exc}", code="bad_host_key") from exc
        except (paramiko.ssh_exception.NoValidConnectionsError, socket.timeout, socket.gaierror, OSError) as exc:
            client.close()
            raise NetworkUnreachable(f"Cannot reach {self.address}: {exc}", code="unreachable") from exc
        except paramiko.SSHException as exc:
            client.close()
            raise TransferFailure(f"SSH negotiation with {self.address} failed: {exc}", code="ssh_error") from exc

        self._client = client
        logger.info("Connected to remote host", address=self.address)
        return self

    def close(self) -> None:
        if self._sftp is not None:
            try:
                self._sftp.close()
            finally:
                self._sftp = None
        if self._client is not None:
            try:
                self._client.close()
            finally:
                self._client = None

    def __enter__(self) -> "RemoteHost":
        return self.connect()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _require_client(self) -> paramiko.SSHClient:
        if self._client is None:
            raise TransferFailure("Remote host is not connected", code="not_connected")
        return self._client

    def sftp(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            self._sftp = self._require_client().open_sftp()
        return self._sftp

    def run(self, command: str, *, check: bool = True, timeout: Optional[float] = None) -> CommandResult:
        """Execute ``command`` and wait for its exit status."""
        client = self._require_client()
        logger.debug("Remote command", command=command)
        try:
            _stdin, stdout, stderr = client.exec_command(command, timeout=timeout)
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            exit_code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, socket.timeout, OSError) as exc:
            raise NetworkUnreachable(f"Lost connection to {self.address}: {exc}", code="connection_lost") from exc

        result = CommandResult(command=command, exit_code=exit_code, stdout=out, stderr=err)
        if check and not result.ok:
            logger.error("Remote command failed", command=command, exit_code=exit_code, stderr=err.strip()[-500:])
            raise RemoteCommandError(
                f"Remote command exited with status {exit_code}: {command}",
                command=command,
                exit_code=exit_code,
                stderr=err,
            )
        return result

    def upload(
        self,
        local_path: Union[str, Path],
        remote_path: str,
        callback: Optional[Callable[[int, int], None]] = None,
    ) -> int:
        """Copy a local file over SFTP; returns the remote size."""
        attrs = self.sftp().put(str(local_path), remote_path, callback=callback, confirm=True)
        return attrs.st_size

    def rename(self, src: str, dst: str) -> None:
        self.sftp().posix_rename(src, dst)

    def remove(self, remote_path: str) -> None:
        try:
            self.sftp().remove(remote_path)
        except FileNotFoundError:
            pass
