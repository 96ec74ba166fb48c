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

"""Keyless image signing backed by `cosign sign`."""

from __future__ import annotations

import threading
from typing import Protocol

from image_signer import duration
from image_signer import errors
from image_signer import trust
from image_signer._cosign import formats
from image_signer._cosign import runner as cosign_runner
from image_signer._oci import registry as oci_registry


class SigningBackend(Protocol):
    def sign(
        self,
        image_ref: oci_registry.ImageReference,
        signature_format: formats.SignatureFormat,
        identity_token: str,
        *,
        trusted_root: trust.TrustedRoot,
        timeout: float,
        cancel: threading.Event | None = None,
    ) -> None: ...


class CosignSigner:
    """Signs one image in one format, uploading the signature and its
    transparency log entry."""

    def __init__(
        self,
        runner: cosign_runner.Runner,
        *,
        oidc_issuer: str = formats.DEFAULT_OIDC_ISSUER_URL,
        client_id: str = formats.SIGSTORE_OIDC_CLIENT_ID,
    ):
        self._runner = runner
        self._oidc_issuer = oidc_issuer
        self._client_id = client_id

    def sign(
        self,
        image_ref: oci_registry.ImageReference,
        signature_format: formats.SignatureFormat,
        identity_token: str,
        *,
        trusted_root: trust.TrustedRoot,
        timeout: float,
        cancel: threading.Event | None = None,
    ) -> None:
        """Sign `image_ref` with the given identity token.

        Raises:
            SigningBackendError: Cosign failed, timed out, or is missing.
            CancelledError: The cancel event was set while signing.
        """
        args = [
            *signature_format.sign_args,
            "--yes",
            "--upload=true",
            f"--oidc-issuer={self._oidc_issuer}",
            f"--oidc-client-id={self._client_id}",
            f"--timeout={duration.format_duration(timeout)}",
            *trusted_root.cosign_args(),
            "--identity-token",
            identity_token,
            str(image_ref),
        ]

        try:
            result = self._runner.run(
                args, timeout=timeout, cancel=cancel, secrets=(identity_token,)
            )
        except errors.CosignTimeoutError as e:
            raise errors.SigningBackendError(str(e)) from e
        except errors.CosignNotFoundError as e:
            raise errors.SigningBackendError(str(e)) from e

        if not result.ok:
            message = result.stderr.strip() or result.stdout.strip()
            raise errors.SigningBackendError(
                message or f"cosign exited with {result.returncode}"
            )
