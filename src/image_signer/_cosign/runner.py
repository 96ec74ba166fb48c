# Copyright 2025 The Sigstore Authors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#      http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""Runs the cosign binary with a timeout and a cancellation event."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging
import os
import subprocess
import threading
import time

from image_signer import errors


logger = logging.getLogger(__name__)

_REDACTED = "[REDACTED]"


@dataclass(frozen=True)
class CompletedRun:
    """Result of a cosign invocation that ran to completion.

    Attributes:
        args: The arguments passed to cosign (secrets redacted).
        returncode: The process exit code.
        stdout: Decoded standard output.
        stderr: Decoded standard error.
    """

    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


def redact(args: Sequence[str], secrets: Sequence[str]) -> tuple[str, ...]:
    """Replace every secret value in `args` with a placeholder."""
    hidden = {s for s in secrets if s}
    return tuple(_REDACTED if a in hidden else a for a in args)


class Runner:
    """Executes cosign subcommands.

    The process is polled so that a set `cancel` event or an expired timeout
    kills it promptly instead of waiting for cosign's own network timeouts.
    """

    def __init__(
        self,
        binary: str = "cosign",
        *,
        env: dict[str, str] | None = None,
        poll_interval: float = 0.1,
    ):
        self._binary = binary
        self._env = env
        self._poll_interval = poll_interval

    def run(
        self,
        args: Sequence[str],
        *,
        timeout: float | None = None,
        cancel: threading.Event | None = None,
        secrets: Sequence[str] = (),
    ) -> CompletedRun:
        """Run `cosign <args>` and wait for it to finish.

        Args:
            args: The cosign arguments, without the binary itself.
            timeout: Optional number of seconds after which cosign is killed.
            cancel: Optional event; when set, cosign is killed.
            secrets: Values to hide from logs and from the returned args.

        Returns:
            The completed run, whatever its exit code.

        Raises:
            CosignNotFoundError: The binary cannot be executed.
            CosignTimeoutError: The timeout expired.
            CancelledError: The cancel event was set.
        """
        shown = redact(args, secrets)
        logger.debug("Running: %s %s", self._binary, " ".join(shown))

        env = None
        if self._env is not None:
            env = {**os.environ, **self._env}

        deadline = None if timeout is None else time.monotonic() + timeout

        try:
            proc = subprocess.Popen(
                [self._binary, *args],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                env=env,
            )
        except OSError as e:
            raise errors.CosignNotFoundError(
                f"Cannot execute '{self._binary}': {e}. "
                "Make sure cosign is installed and on PATH."
            ) from e

        with proc:
            while True:
                try:
                    stdout, stderr = proc.communicate(
                        timeout=self._poll_interval
                    )
                    break
                except subprocess.TimeoutExpired:
                    if cancel is not None and cancel.is_set():
                        self._kill(proc)
                        raise errors.CancelledError(
                            f"cosign {shown[0] if shown else ''} was "
                            "interrupted"
                        ) from None
                    if deadline is not None and time.monotonic() >= deadline:
                        self._kill(proc)
                        raise errors.CosignTimeoutError(
                            f"cosign {shown[0] if shown else ''} timed out "
                            f"after {timeout:g}s"
                        ) from None

        logger.debug("cosign exited with %d", proc.returncode)
        return CompletedRun(
            args=shown,
            returncode=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
        )

    def _kill(self, proc: subprocess.Popen) -> None:
        proc.kill()
        proc.communicate()
