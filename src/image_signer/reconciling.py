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

"""High level API to bring a batch of images to the fully signed state.

Each image is inspected and only the signature formats it is missing are
signed. Images that already carry both formats are skipped without any side
effect. Authentication happens at most once for the whole batch:

```python
image_signer.reconciling.Config().set_identity(
    issuer="https://accounts.google.com", subject_regexp=r"@example\\.com$"
).use_oidc_provider("google").reconcile(
    ["ghcr.io/org/app:v1.0.0", "ghcr.io/org/tool:v1.0.0"]
)
```

Images are processed one at a time, in order. The first image that fails
aborts the batch: later images are not touched and the error is raised.

The same configuration can be used to reconcile several batches; every call
to `reconcile` starts with a fresh credential cache.
"""

from __future__ import annotations

from collections.abc import Callable
from collections.abc import Iterable
from collections.abc import Sequence
import enum
import logging
import pathlib
import sys
import threading

import click

from image_signer import auth
from image_signer import errors
from image_signer import signing
from image_signer import trust
from image_signer import verifying
from image_signer._cosign import runner as cosign_runner
from image_signer._cosign import signer as cosign_signer
from image_signer._cosign import verifier as cosign_verifier
from image_signer._oci import registry as oci_registry


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 300.0


class ImageState(enum.Enum):
    """Where an image is in its reconciliation."""

    PENDING = "pending"
    INSPECTED = "inspected"
    SKIPPED = "skipped"
    DISPATCHED = "dispatched"
    DONE = "done"
    FAILED = "failed"


Resolver = Callable[[oci_registry.ImageReference], oci_registry.ImageReference]


class Reconciler:
    """Drives inspection and signing over a batch, strictly sequentially."""

    def __init__(
        self,
        inspector: verifying.Inspector,
        dispatcher: signing.Dispatcher,
        *,
        resolver: Resolver | None = None,
        echo: Callable[[str], None] = click.echo,
    ):
        self._inspector = inspector
        self._dispatcher = dispatcher
        self._resolver = resolver
        self._echo = echo

    def reconcile(
        self,
        images: Iterable[str | oci_registry.ImageReference],
        identities: Sequence[trust.IdentityConstraint],
        trusted_root: trust.TrustedRoot,
        provider: str,
        device_flow: bool,
        timeout: float,
        cancel: threading.Event | None = None,
    ) -> None:
        """Reconcile every image, stopping at the first failure.

        Raises:
            CancelledError: `cancel` was set before the batch completed.
            ImageSignerError: The first error hit by any image.
        """
        for image in images:
            self.reconcile_image(
                image,
                identities,
                trusted_root,
                provider,
                device_flow,
                timeout,
                cancel,
            )

    def reconcile_image(
        self,
        image: str | oci_registry.ImageReference,
        identities: Sequence[trust.IdentityConstraint],
        trusted_root: trust.TrustedRoot,
        provider: str,
        device_flow: bool,
        timeout: float,
        cancel: threading.Event | None = None,
    ) -> ImageState:
        """Bring one image to the fully signed state.

        Returns:
            `ImageState.SKIPPED` or `ImageState.DONE`.
        """
        state = ImageState.PENDING
        try:
            if cancel is not None and cancel.is_set():
                raise errors.CancelledError("interrupted before processing")

            self._echo(f"Processing image: {image}")
            image_ref = verifying.parse_reference(image)
            if self._resolver is not None:
                image_ref = self._resolver(image_ref)

            status = self._inspector.inspect(
                image_ref, trusted_root, identities, cancel
            )
            state = self._transition(image_ref, state, ImageState.INSPECTED)

            if status.fully_signed:
                self._echo(
                    "Image is already signed with both legacy and bundled "
                    "signatures, skipping signing."
                )
                return self._transition(image_ref, state, ImageState.SKIPPED)

            state = self._transition(image_ref, state, ImageState.DISPATCHED)
            self._dispatcher.sign(
                image_ref,
                status,
                trusted_root,
                provider,
                device_flow,
                timeout,
                cancel,
            )
            self._echo(f"Successfully signed image: {image_ref}")
            return self._transition(image_ref, state, ImageState.DONE)
        except errors.ImageSignerError as e:
            self._transition(image, state, ImageState.FAILED)
            e.image = str(image)
            raise
        except Exception as e:
            self._transition(image, state, ImageState.FAILED)
            wrapped = errors.ImageSignerError(str(e))
            wrapped.image = str(image)
            raise wrapped from e

    def _transition(
        self,
        image: object,
        current: ImageState,
        new: ImageState,
    ) -> ImageState:
        logger.debug("%s: %s -> %s", image, current.value, new.value)
        return new


class Config:
    """Configuration for reconciling a batch of images.

    By default, tokens come from the Sigstore OAuth issuer using the Google
    connector in a browser, cosign is looked up on `PATH`, the Sigstore
    public good trusted root is used and each signing call may take five
    minutes. At least one identity must be configured before reconciling.
    """

    def __init__(self):
        """Initializes the default configuration for reconciling."""
        self._identities: list[trust.IdentityConstraint] = []
        self._trusted_root = trust.TrustedRoot.production()
        self._provider = "google"
        self._device_flow = False
        self._identity_token: str | None = None
        self._timeout = DEFAULT_TIMEOUT
        self._cosign = "cosign"
        self._resolve_digest = False

    def reconcile(
        self,
        images: Iterable[str | oci_registry.ImageReference],
        cancel: threading.Event | None = None,
    ) -> None:
        """Reconcile a batch of images using the current configuration.

        Args:
            images: The images to reconcile, in processing order.
            cancel: Optional event; when set, in-flight cosign processes are
              killed and no further image is processed.

        Raises:
            ValueError: No identity has been configured.
            ImageSignerError: The first error hit by any image.
        """
        if not self._identities:
            raise ValueError(
                "No identity configured. Call set_identity() first."
            )
        self._reconciler().reconcile(
            images,
            self._identities,
            self._trusted_root,
            self._provider,
            self._device_flow,
            self._timeout,
            cancel,
        )

    def _reconciler(self) -> Reconciler:
        runner = cosign_runner.Runner(self._cosign)

        if self._identity_token is not None:
            issuer = auth.StaticTokenIssuer(self._identity_token)
        else:
            issuer = auth.SigstoreTokenIssuer()
        credentials = auth.CredentialCache(issuer)

        resolver = None
        if self._resolve_digest:
            resolver = oci_registry.OrasClient().pin

        return Reconciler(
            verifying.Inspector(cosign_verifier.CosignVerifier(runner)),
            signing.Dispatcher(cosign_signer.CosignSigner(runner), credentials),
            resolver=resolver,
        )

    def set_identity(self, *, issuer: str, subject_regexp: str) -> Self:
        """Sets the only signer identity accepted during inspection.

        Args:
            issuer: The OIDC issuer of the signing certificates.
            subject_regexp: Regular expression for the certificate subject.

        Returns:
            The new configuration.
        """
        self._identities = [trust.IdentityConstraint(issuer, subject_regexp)]
        return self

    def add_identity(self, *, issuer: str, subject_regexp: str) -> Self:
        """Accepts one more signer identity during inspection."""
        identity = trust.IdentityConstraint(issuer, subject_regexp)
        self._identities.append(identity)
        return self

    def set_trusted_root(self, path: str | pathlib.Path | None) -> Self:
        """Uses a custom `trusted_root.json`, or the default one for None."""
        if path is None:
            self._trusted_root = trust.TrustedRoot.production()
        else:
            self._trusted_root = trust.TrustedRoot.from_file(path)
        return self

    def use_oidc_provider(
        self, provider: str = "google", *, device_flow: bool = False
    ) -> Self:
        """Configures how the signing identity token is obtained.

        Args:
            provider: One of "google", "github", "microsoft", or "" to pick
              the provider on the Sigstore login page. Validated when a token
              is first needed.
            device_flow: Show a URL and code instead of opening a browser.
              Always uses the default Sigstore issuer.

        Returns:
            The new configuration.
        """
        self._provider = provider
        self._device_flow = device_flow
        return self

    def use_identity_token(self, token: str | None) -> Self:
        """Signs with a fixed identity token instead of an OAuth flow."""
        self._identity_token = token or None
        return self

    def set_timeout(self, seconds: float) -> Self:
        """Sets the time allowed for each signing call."""
        if seconds <= 0:
            raise ValueError(f"Timeout must be positive, got {seconds}")
        self._timeout = seconds
        return self

    def use_cosign(self, binary: str) -> Self:
        """Sets the cosign binary to run."""
        self._cosign = binary
        return self

    def set_resolve_digest(self, resolve_digest: bool) -> Self:
        """Pins tags to digests before inspecting and signing."""
        self._resolve_digest = resolve_digest
        return self
