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
Registry publisher: authenticates to an image registry and pushes built
artifacts through the local container engine.
"""

import threading
import time
from typing import Callable, Optional, Set
from dataclasses import dataclass, field

from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .image_reference import ImageReference
from ..MODELS.container_image import ImageArtifact, PublishedImage
from ..RUNNERS.command_runner import CommandRunner, CommandResult, CommandTimeout
from ..errors import AuthError, PushError

# Registry responses that mean the credentials, not the network, are at fault
AUTH_FAILURE_MARKERS = ("unauthorized", "denied", "authentication required", "incorrect username or password")


@dataclass
class RegistryAuth:
    """Authentication credentials for a registry."""

    username: Optional[str] = None
    token: Optional[str] = field(default=None, repr=False)


class RegistryPublisher:
    """
    Pushes ImageArtifacts to their registry.

    Logs in once per registry. Pushes that fail for network or quota
    reasons are retried with exponential backoff up to ``attempts`` times;
    authentication failures are surfaced immediately.
    """

    def __init__(
        self,
        auth: RegistryAuth,
        runner: Optional[CommandRunner] = None,
        attempts: int = 3,
        backoff: float = 2.0,
        backoff_max: float = 30.0,
        timeout: float = 600.0,
        publish_latest: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """
        Args:
            auth: Registry credentials.
            runner: Runner used to invoke ``docker``.
            attempts: Total push attempts per reference.
            backoff: Base of the exponential backoff, in seconds.
            backoff_max: Upper bound of a single backoff wait.
            timeout: Seconds allowed for one login or push.
            publish_latest: Also move the ``latest`` tag to each pushed image.
            sleep: Sleep function used between attempts.
        """
        self.auth = auth
        self.runner = runner or CommandRunner()
        self.attempts = attempts
        self.backoff = backoff
        self.backoff_max = backoff_max
        self.timeout = timeout
        self.publish_latest = publish_latest
        self._sleep = sleep

        self._logged_in: Set[str] = set()
        self._login_lock = threading.Lock()

    def login(self, registry: str) -> None:
        """
        Authenticates the local engine against ``registry``.

        Raises:
            AuthError: if credentials are missing, rejected, or login times out.
        """
        with self._login_lock:
            if registry in self._logged_in:
                return
            if not self.auth.username or not self.auth.token:
                raise AuthError(f"No credentials configured for {registry}")

            print(f"[publisher] Logging in to {registry} as {self.auth.username}")
            try:
                result = self.runner.run(
                    ["docker", "login", registry, "--username", self.auth.username, "--password-stdin"],
                    input=self.auth.token,
                    timeout=self.timeout,
                )
            except CommandTimeout as e:
                raise AuthError(f"Login to {registry} timed out: {e}") from e
            if not result.ok:
                raise AuthError(f"Login to {registry} failed: {result.error_tail()}")
            self._logged_in.add(registry)

    def publish(self, artifact: ImageArtifact) -> PublishedImage:
        """
        Pushes ``artifact`` (and the ``latest`` alias when enabled).

        Args:
            artifact: A built image.

        Returns:
            PublishedImage with the pushed reference and its registry digest.

        Raises:
            AuthError: on rejected credentials.
            PushError: once the retry budget is exhausted.
        """
        ref = ImageReference.parse(artifact.reference)
        self.login(ref.registry)

        self._push_with_retry(artifact.reference)

        aliases = []
        if self.publish_latest and artifact.tag != ImageReference.DEFAULT_TAG:
            alias = f"{artifact.repository}:{ImageReference.DEFAULT_TAG}"
            self._tag(artifact.reference, alias)
            self._push_with_retry(alias)
            aliases.append(alias)

        published = PublishedImage(
            artifact=artifact,
            reference=artifact.reference,
            repo_digest=self._repo_digest(artifact.reference),
            aliases=aliases,
        )
        print(f"[publisher] Published {published.reference}")
        return published

    def _push_with_retry(self, reference: str) -> None:
        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.backoff, max=self.backoff_max),
            retry=retry_if_exception_type(PushError),
            sleep=self._sleep,
            before_sleep=lambda state: print(
                f"[publisher] Push of {reference} failed "
                f"(attempt {state.attempt_number}/{self.attempts}), retrying..."
            ),
            reraise=True,
        )
        retrying(self._push, reference)

    def _push(self, reference: str) -> CommandResult:
        print(f"[publisher] Pushing {reference}")
        try:
            result = self.runner.run(["docker", "push", reference], timeout=self.timeout)
        except CommandTimeout as e:
            raise PushError(f"Push of {reference} timed out: {e}") from e
        if not result.ok:
            detail = result.error_tail()
            if any(marker in detail.lower() for marker in AUTH_FAILURE_MARKERS):
                raise AuthError(f"Registry rejected push of {reference}: {detail}")
            raise PushError(f"Push of {reference} failed: {detail}")
        return result

    def _tag(self, source: str, target: str) -> None:
        result = self.runner.run(["docker", "tag", source, target], timeout=60)
        if not result.ok:
            raise PushError(f"Could not tag {source} as {target}: {result.error_tail()}")

    def _repo_digest(self, reference: str) -> Optional[str]:
        """Registry digest recorded by the engine after a push, if any."""
        try:
            result = self.runner.run(
                ["docker", "image", "inspect", "--format", "{{index .RepoDigests 0}}", reference],
                timeout=60,
            )
        except CommandTimeout:
            return None
        digest = result.stdout.strip()
        return digest if result.ok and "@" in digest else None
