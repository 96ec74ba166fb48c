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

"""Signature verification backed by `cosign verify`.

The backend never raises for the expected outcomes of a verification query.
It reports one of:

- `Verified`: cosign accepted the signatures; carries the raw payloads and
  whether the bundle (transparency log inclusion) was verified.
- `NotFound`: no signature of the requested format exists.
- `Failed`: cosign rejected the signatures or could not query them.

Only infrastructure problems (cosign missing, cancellation, timeouts) are
raised.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from dataclasses import field
import logging
import threading
from typing import Protocol

from image_signer import trust
from image_signer._cosign import formats
from image_signer._cosign import runner as cosign_runner
from image_signer._oci import registry as oci_registry


logger = logging.getLogger(__name__)

# Printed by cosign on stderr once the signatures' transparency log entries
# have been checked.
_TLOG_VERIFIED_MARKERS = ("transparency log was verified",)


@dataclass(frozen=True)
class Verified:
    payloads: tuple[bytes, ...] = field(default_factory=tuple)
    bundle_verified: bool = True


@dataclass(frozen=True)
class NotFound:
    pass


@dataclass(frozen=True)
class Failed:
    reason: str


VerificationOutcome = Verified | NotFound | Failed


class VerificationBackend(Protocol):
    def verify(
        self,
        image_ref: oci_registry.ImageReference,
        signature_format: formats.SignatureFormat,
        trusted_root: trust.TrustedRoot,
        identities: Sequence[trust.IdentityConstraint],
        cancel: threading.Event | None = None,
    ) -> VerificationOutcome: ...


class CosignVerifier:
    """Queries cosign for the signatures of one format on one image."""

    def __init__(
        self,
        runner: cosign_runner.Runner,
        *,
        timeout: float | None = None,
    ):
        self._runner = runner
        self._timeout = timeout

    def verify(
        self,
        image_ref: oci_registry.ImageReference,
        signature_format: formats.SignatureFormat,
        trusted_root: trust.TrustedRoot,
        identities: Sequence[trust.IdentityConstraint],
        cancel: threading.Event | None = None,
    ) -> VerificationOutcome:
        """Verify the signatures of `signature_format` on `image_ref`.

        Cosign accepts a single identity per invocation, so each identity is
        tried in turn: the first `Verified` wins, and `NotFound` is only
        reported when every identity reported it.
        """
        if not identities:
            raise ValueError("At least one identity constraint is required")

        failure: Failed | None = None
        for identity in identities:
            outcome = self._verify_one(
                image_ref, signature_format, trusted_root, identity, cancel
            )
            match outcome:
                case Verified():
                    return outcome
                case Failed() if failure is None:
                    failure = outcome

        if failure is not None:
            return failure
        return NotFound()

    def _verify_one(
        self,
        image_ref: oci_registry.ImageReference,
        signature_format: formats.SignatureFormat,
        trusted_root: trust.TrustedRoot,
        identity: trust.IdentityConstraint,
        cancel: threading.Event | None,
    ) -> VerificationOutcome:
        args = [
            *signature_format.verify_args,
            *identity.cosign_args(),
            *trusted_root.cosign_args(),
            str(image_ref),
        ]
        result = self._runner.run(args, timeout=self._timeout, cancel=cancel)

        if not result.ok:
            message = result.stderr.strip() or result.stdout.strip()
            if signature_format.is_not_found(message):
                logger.debug(
                    "No %s signature on %s", signature_format.label, image_ref
                )
                return NotFound()
            return Failed(message or f"cosign exited with {result.returncode}")

        stderr = result.stderr.lower()
        bundle_verified = any(m in stderr for m in _TLOG_VERIFIED_MARKERS)
        payloads = tuple(signature_format.split_output(result.stdout))
        logger.debug(
            "Found %d %s signature(s) on %s (bundle verified: %s)",
            len(payloads),
            signature_format.label,
            image_ref,
            bundle_verified,
        )
        return Verified(payloads=payloads, bundle_verified=bundle_verified)
