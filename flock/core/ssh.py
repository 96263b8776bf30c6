# flock/core/ssh.py
"""
SSH sessions over the OpenSSH client

One session = one multiplexed master connection. Commands and uploads
reuse it through the control socket, so authentication happens once
per session and every action runs against the same host login.
"""

import os
import shlex
import shutil
import subprocess
import tempfile
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, List, Optional

from flock.config import settings
from flock.exceptions import ConfigError, SSHConnectionError
from flock.schemas.connection import SSHConnection

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    exit_code: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class SSHSession:
    """
    Exclusive SSH session to one host

    Usage:
        with connect(connection) as session:
            session.run("systemctl daemon-reload")
            session.upload("...", "/etc/flock/x.json")
    """

    def __init__(
        self,
        connection: SSHConnection,
        runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    ):
        self.connection = SSHConnection.parse(connection)
        self._runner = runner
        self._workdir: Optional[str] = None
        self._control_path: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self._control_path is not None

    def _base(self) -> List[str]:
        cmd = [
            settings.SSH_BINARY,
            "-p",
            str(self.connection.port),
            "-o",
            "StrictHostKeyChecking=accept-new",
            "-o",
            f"ConnectTimeout={settings.SSH_CONNECT_TIMEOUT}",
            "-S",
            self._control_path,
        ]
        return cmd

    def _auth(self) -> List[str]:
        if self.connection.private_key:
            key_path = os.path.join(self._workdir, "identity")
            fd = os.open(key_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                key = self.connection.private_key
                f.write(key if key.endswith("\n") else key + "\n")
            return ["-i", key_path, "-o", "IdentitiesOnly=yes"]
        if self.connection.password:
            return ["-o", "NumberOfPasswordPrompts=1"]
        return ["-o", "BatchMode=yes"]

    def open(self) -> "SSHSession":
        """Start the master connection"""
        if self.is_open:
            return self

        self._workdir = tempfile.mkdtemp(prefix="flock-ssh-")
        self._control_path = os.path.join(self._workdir, "ctl")

        cmd = self._base() + self._auth() + [
            "-o", "ControlMaster=yes",
            "-o", "ControlPersist=yes",
            "-N", "-f",
            self.connection.destination,
        ]
        env = None
        if self.connection.password and not self.connection.private_key:
            if shutil.which(settings.SSHPASS_BINARY) is None:
                self._cleanup()
                raise ConfigError(f"Password authentication requires '{settings.SSHPASS_BINARY}'")
            cmd = [settings.SSHPASS_BINARY, "-e"] + cmd
            env = {**os.environ, "SSHPASS": self.connection.password}

        logger.debug(f"Opening SSH session to {self.connection}")
        # The backgrounded master keeps inherited descriptors open, so
        # stderr goes to a file instead of a pipe
        err_path = os.path.join(self._workdir, "master.err")
        try:
            with open(err_path, "w+") as err:
                result = self._runner(
                    cmd,
                    stdin=subprocess.DEVNULL,
                    stdout=subprocess.DEVNULL,
                    stderr=err,
                    env=env,
                )
                err.seek(0)
                stderr = err.read()
        except FileNotFoundError as e:
            self._cleanup()
            raise ConfigError(f"SSH client not found: {e}") from e

        if result.returncode != 0:
            self._cleanup()
            raise SSHConnectionError(
                f"Could not connect to {self.connection}: {stderr.strip() or 'exit ' + str(result.returncode)}"
            )

        logger.info(f"SSH session established to {self.connection}")
        return self

    def run(self, command: str, input: Optional[str] = None) -> CommandResult:
        """Run a shell command on the remote host"""
        if not self.is_open:
            raise SSHConnectionError(f"Session to {self.connection} is not open")

        logger.debug(f"run on {self.connection.host}: {command}")
        cp = self._runner(
            self._base() + ["-o", "ControlMaster=no", self.connection.destination, command],
            input=input if input is not None else "",
            capture_output=True,
            text=True,
        )
        return CommandResult(cp.returncode, cp.stdout or "", cp.stderr or "")

    def upload(self, content: str, remote_path: str) -> CommandResult:
        """Write content to remote_path, creating parent directories"""
        parent = os.path.dirname(remote_path) or "."
        command = f"mkdir -p {shlex.quote(parent)} && cat > {shlex.quote(remote_path)}"
        return self.run(command, input=content)

    def close(self) -> None:
        """Stop the master connection; never raises"""
        if not self.is_open:
            return
        try:
            self._runner(
                self._base() + ["-O", "exit", self.connection.destination],
                capture_output=True,
                text=True,
            )
        except OSError as e:
            logger.warning(f"Failed to stop SSH master for {self.connection}: {e}")
        finally:
            self._cleanup()
        logger.debug(f"SSH session to {self.connection} closed")

    def _cleanup(self) -> None:
        if self._workdir:
            shutil.rmtree(self._workdir, ignore_errors=True)
        self._workdir = None
        self._control_path = None


@contextmanager
def connect(connection: SSHConnection) -> Iterator[SSHSession]:
    """Open a session and release it on every exit path"""
    session = SSHSession(connection).open()
    try:
        yield session
    finally:
        session.close()
