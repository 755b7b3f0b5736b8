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
Execution of external commands (docker, ssh) with timeouts.
"""
import subprocess
from dataclasses import dataclass
from typing import List, Dict, Optional


class CommandTimeout(Exception):
    """Raised when a command does not finish within its timeout."""

    def __init__(self, command: List[str], timeout: float):
        super().__init__(f"'{command[0]}' timed out after {timeout:g}s")
        self.command = command
        self.timeout = timeout


@dataclass
class CommandResult:
    """Exit status and captured output of a finished command."""

    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def error_tail(self, lines: int = 5) -> str:
        """Last lines of stderr (or stdout), for error messages."""
        text = (self.stderr or self.stdout).strip()
        return "\n".join(text.splitlines()[-lines:])


class CommandRunner:
    """
    Runs a command to completion and captures its output.

    Every component that touches the container engine or the remote host
    goes through this class, so tests can substitute a fake.
    """
    def __init__(self, env: Optional[Dict[str, str]] = None):
        """
        Args:
            env (Optional[Dict[str, str]]): Environment for child processes.
                Defaults to the current environment.
        """
        self.env = env

    def run(self,
            command: List[str],
            input: Optional[str] = None,
            timeout: Optional[float] = None,
            cwd: Optional[str] = None) -> CommandResult:
        """
        Runs ``command`` and waits for it.

        Args:
            command (List[str]): Command and arguments to execute.
            input (Optional[str]): Text written to the command's stdin.
            timeout (Optional[float]): Seconds before the command is killed.
            cwd (Optional[str]): Working directory.

        Returns:
            CommandResult: exit status and output. A missing executable is
            reported as exit status 127 rather than raised.

        Raises:
            CommandTimeout: if the command exceeds ``timeout``.
        """
        try:
            completed = subprocess.run(
                command,
                input=input,
                capture_output=True,
                text=True,
                timeout=timeout,
                cwd=cwd,
                env=self.env,
                # Arguments are never passed through a local shell
                shell=False,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandTimeout(command, timeout) from e
        except OSError as e:
            return CommandResult(command=command, returncode=127, stderr=str(e))

        return CommandResult(
            command=command,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
