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

"""Signing of the signature formats an image is missing.

The dispatcher only signs what an inspection reported as missing, legacy
first and bundled second, with a single identity token per run:

```python
dispatcher = image_signer.signing.Dispatcher(
    CosignSigner(Runner()), CredentialCache(SigstoreTokenIssuer())
)
dispatcher.sign(
    "ghcr.io/org/app:v1.0.0",
    SignatureStatus(has_legacy=True, has_bundle=False),
    TrustedRoot.production(),
    provider="google",
    device_flow=False,
    timeout=300,
)
```

Signing stops at the first failing format.
"""

from __future__ import annotations

from collections.abc import Callable
import logging
import threading

import click

from image_signer import auth
from image_signer import errors
from image_signer import trust
from image_signer import verifying
from image_signer._cosign import signer as cosign_signer
from image_signer._oci import registry as oci_registry


logger = logging.getLogger(__name__)


class Dispatcher:
    """Invokes the signing backend for each missing signature format."""

    def __init__(
        self,
        backend: cosign_signer.SigningBackend,
        credentials: auth.CredentialCache,
        *,
        echo: Callable[[str], None] = click.echo,
    ):
        self._backend = backend
        self._credentials = credentials
        self._echo = echo

    def sign(
        self,
        image_ref: str | oci_registry.ImageReference,
        status: verifying.SignatureStatus,
        trusted_root: trust.TrustedRoot,
        provider: str,
        device_flow: bool,
        timeout: float,
        cancel: threading.Event | None = None,
    ) -> None:
        """Sign the formats missing from `status`.

        Args:
            image_ref: The image to sign.
            status: The inspected status; must not be fully signed.
            trusted_root: The Sigstore instance to sign against.
            provider: The OIDC provider to authenticate with.
            device_flow: Whether to use the device (out-of-band) flow.
            timeout: Seconds allowed for each signing call.
            cancel: Optional event; when set, signing stops.

        Raises:
            ValueError: `status` is fully signed.
            UnsupportedProviderError: `provider` is not supported.
            AuthenticationError: No identity token could be obtained.
            SigningBackendError: Signing a format failed or timed out.
            CancelledError: `cancel` was set.
        """
        missing = status.missing_formats
        if not missing:
            raise ValueError(
                f"Image {image_ref} is already fully signed, nothing to sign"
            )

        parsed_ref = verifying.parse_reference(image_ref)
        credential = self._credentials.get_token(provider, device_flow)

        for signature_format in missing:
            if cancel is not None and cancel.is_set():
                raise errors.CancelledError(
                    f"Signing of {parsed_ref} was interrupted"
                )

            label = signature_format.label
            self._echo(f"Signing {label} signature for image: {parsed_ref}")
            try:
                self._backend.sign(
                    parsed_ref,
                    signature_format,
                    credential.token,
                    trusted_root=trusted_root,
                    timeout=timeout,
                    cancel=cancel,
                )
            except errors.SigningBackendError as e:
                raise errors.SigningBackendError(
                    f"error signing {label} signature for image "
                    f"{parsed_ref}: {e}"
                ) from e
            logger.debug("Signed %s signature for %s", label, parsed_ref)
