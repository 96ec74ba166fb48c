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

"""Inspection of the signatures already present on an image.

An image is fully signed when it carries both a legacy cosign signature and a
bundled (Sigstore bundle) signature made by an accepted identity:

```python
inspector = image_signer.verifying.Inspector(
    CosignVerifier(Runner())
)
status = inspector.inspect(
    "ghcr.io/org/app:v1.0.0",
    TrustedRoot.production(),
    [IdentityConstraint("https://accounts.google.com", r"@example\\.com$")],
)
if not status.fully_signed:
    ...
```

A missing format is reported as `False` in the status. Anything else that
goes wrong is raised, so that a signature which exists but cannot be trusted
is never mistaken for a missing one:

- signatures found but their bundle failed verification:
  `VerificationFailedError`;
- signatures verified but their payload is not of the expected type:
  `MalformedSignatureError`;
- cosign rejected or could not query the signatures: `BackendError`.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
import logging
import threading

from image_signer import errors
from image_signer import trust
from image_signer._cosign import formats
from image_signer._cosign import verifier as cosign_verifier
from image_signer._oci import registry as oci_registry


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignatureStatus:
    """The signature formats observed on an image at inspection time."""

    has_legacy: bool
    has_bundle: bool

    def has(self, signature_format: formats.SignatureFormat) -> bool:
        match signature_format:
            case formats.SignatureFormat.LEGACY:
                return self.has_legacy
            case formats.SignatureFormat.BUNDLED:
                return self.has_bundle

    @property
    def fully_signed(self) -> bool:
        return self.has_legacy and self.has_bundle

    @property
    def missing_formats(self) -> tuple[formats.SignatureFormat, ...]:
        """The formats still to be signed, in signing order."""
        return tuple(f for f in formats.SignatureFormat if not self.has(f))


def parse_reference(
    image_ref: str | oci_registry.ImageReference,
) -> oci_registry.ImageReference:
    if isinstance(image_ref, oci_registry.ImageReference):
        return image_ref
    return oci_registry.ImageReference.parse(image_ref)


class Inspector:
    """Classifies the signatures of an image, one format at a time."""

    def __init__(self, backend: cosign_verifier.VerificationBackend):
        self._backend = backend

    def inspect(
        self,
        image_ref: str | oci_registry.ImageReference,
        trusted_root: trust.TrustedRoot,
        identities: Sequence[trust.IdentityConstraint],
        cancel: threading.Event | None = None,
    ) -> SignatureStatus:
        """Inspect both signature formats of an image.

        Args:
            image_ref: The image, as a string or a parsed reference.
            trusted_root: The trusted root material to verify against.
            identities: The signer identities to accept.
            cancel: Optional event aborting in-flight queries when set.

        Returns:
            The observed signature status.

        Raises:
            InvalidImageReferenceError: `image_ref` is malformed.
            VerificationFailedError: Signatures exist but failed verification.
            MalformedSignatureError: A verified payload has the wrong type.
            BackendError: Cosign rejected or could not query the signatures.
        """
        parsed_ref = parse_reference(image_ref)
        found = {
            signature_format: self._inspect_format(
                parsed_ref, signature_format, trusted_root, identities, cancel
            )
            for signature_format in formats.SignatureFormat
        }
        status = SignatureStatus(
            has_legacy=found[formats.SignatureFormat.LEGACY],
            has_bundle=found[formats.SignatureFormat.BUNDLED],
        )
        logger.debug("Signature status of %s: %s", parsed_ref, status)
        return status

    def _inspect_format(
        self,
        image_ref: oci_registry.ImageReference,
        signature_format: formats.SignatureFormat,
        trusted_root: trust.TrustedRoot,
        identities: Sequence[trust.IdentityConstraint],
        cancel: threading.Event | None,
    ) -> bool:
        label = signature_format.label
        outcome = self._backend.verify(
            image_ref, signature_format, trusted_root, identities, cancel
        )

        match outcome:
            case cosign_verifier.NotFound():
                return False
            case cosign_verifier.Failed(reason=reason):
                raise errors.BackendError(
                    f"error verifying {label} signature for image "
                    f"{image_ref}: {reason}"
                )
            case cosign_verifier.Verified(bundle_verified=False):
                raise errors.VerificationFailedError(
                    f"{label} signatures found for image {image_ref} but "
                    "verification failed"
                )
            case cosign_verifier.Verified(payloads=payloads):
                for payload in payloads:
                    try:
                        signature_format.check_payload(payload)
                    except ValueError as e:
                        raise errors.MalformedSignatureError(
                            f"error verifying {label} signature for image "
                            f"{image_ref}: {e}"
                        ) from e
                return True
            case _:
                raise TypeError(f"Unknown verification outcome: {outcome!r}")
