# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Remote shell sessions over the OpenSSH client.

A session opens one multiplexed master connection (ControlMaster) and runs
every remote command through it, so the host is authenticated once per
reconciliation. Sessions are context managers and always tear the master
connection down on exit.
"""
import os
import shlex
import shutil
import tempfile
from typing import List, Optional

from .command_runner import CommandRunner, CommandResult, CommandTimeout
from ..errors import HostConnectionError

# ssh reserves exit status 255 for its own errors
SSH_ERROR_STATUS = 255


class SSHSession:
    """
    A scoped remote-shell session to a single host.
    """

    def __init__(
        self,
        runner: CommandRunner,
        host: str,
        user: str = "root",
        port: int = 22,
        key_path: Optional[str] = None,
        private_key: Optional[str] = None,
        connect_timeout: int = 15,
        command_timeout: float = 900.0,
    ):
        """
        :param runner: Runner used to invoke the local ``ssh`` binary.
        :param host: Remote host address.
        :param user: Remote login user.
        :param port: Remote SSH port.
        :param key_path: Path of a pre-provisioned private key.
        :param private_key: Inline key material, used instead of ``key_path``.
            Written to a private temporary file for the session's lifetime.
        :param connect_timeout: Seconds allowed to establish the connection.
        :param command_timeout: Default seconds allowed per remote command.
        """
        self.runner = runner
        self.host = host
        self.user = user
        self.port = port
        self.key_path = os.path.expanduser(key_path) if key_path else None
        self.private_key = private_key
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout

        self.connected = False
        self._workdir: Optional[str] = None
        self._identity: Optional[str] = None
        self._control_path: Optional[str] = None

    @property
    def target(self) -> str:
        return f"{self.user}@{self.host}"

    def __enter__(self) -> "SSHSession":
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _base_command(self) -> List[str]:
        command = [
            "ssh",
            "-p", str(self.port),
            "-o", "BatchMode=yes",
            "-o", "StrictHostKeyChecking=accept-new",
            "-o", f"ConnectTimeout={self.connect_timeout}",
            "-o", "ControlMaster=auto",
            "-o", f"ControlPath={self._control_path}",
            "-o", "ControlPersist=120",
        ]
        if self._identity:
            command += ["-i", self._identity, "-o", "IdentitiesOnly=yes"]
        return command

    def open(self) -> None:
        """
        Establishes the master connection.

        :raises HostConnectionError: if the host is unreachable, rejects the
            key, or does not answer within ``connect_timeout``.
        """
        self._workdir = tempfile.mkdtemp(prefix="meanship-ssh-")
        self._control_path = os.path.join(self._workdir, "control")
        if self.private_key:
            self._identity = os.path.join(self._workdir, "id_deploy")
            fd = os.open(self._identity, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
            with os.fdopen(fd, "w") as f:
                f.write(self.private_key.strip() + "\n")
        else:
            self._identity = self.key_path

        print(f"[ssh] Connecting to {self.target}:{self.port}...")
        try:
            result = self.runner.run(
                self._base_command() + [self.target, "true"],
                timeout=self.connect_timeout + 5,
            )
        except CommandTimeout as e:
            self._cleanup()
            raise HostConnectionError(f"Connection to {self.target} timed out: {e}") from e

        if not result.ok:
            self._cleanup()
            raise HostConnectionError(
                f"Cannot connect to {self.target} (exit {result.returncode}): {result.error_tail()}"
            )
        self.connected = True

    def run(self, remote_command: str, input: Optional[str] = None,
            timeout: Optional[float] = None) -> CommandResult:
        """
        Runs a shell command line on the remote host.

        The caller is responsible for quoting; see :func:`quote_command`.

        :raises HostConnectionError: if the session is closed or the
            connection drops while the command runs.
        :raises CommandTimeout: if the command exceeds its timeout.
        """
        if not self.connected:
            raise HostConnectionError(f"No open session to {self.target}")

        result = self.runner.run(
            self._base_command() + [self.target, remote_command],
            input=input,
            timeout=timeout or self.command_timeout,
        )
        if result.returncode == SSH_ERROR_STATUS:
            raise HostConnectionError(f"Connection to {self.target} lost: {result.error_tail()}")
        return result

    def upload(self, path: str, content: str) -> CommandResult:
        """Writes ``content`` to ``path`` on the remote host via stdin."""
        return self.run(f"cat > {shlex.quote(path)}", input=content)

    def close(self) -> None:
        """
        Tears down the master connection and removes local key material.
        Safe to call more than once.
        """
        if self.connected:
            try:
                self.runner.run(
                    self._base_command() + ["-O", "exit", self.target],
                    timeout=self.connect_timeout,
                )
            except CommandTimeout:
                print(f"[ssh] Timed out closing control connection to {self.target}")
            self.connected = False
            print(f"[ssh] Session to {self.target} closed.")
        self._cleanup()

    def _cleanup(self) -> None:
        if self._workdir:
            shutil.rmtree(self._workdir, ignore_errors=True)
            self._workdir = None


def quote_command(*args: str) -> str:
    """Joins arguments into a remote command line with shell quoting."""
    return " ".join(shlex.quote(str(a)) for a in args)
