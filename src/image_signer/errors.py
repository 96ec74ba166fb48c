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

"""Errors raised by the `image_signer` library.

Every error derives from `ImageSignerError`, so callers that only need
pass/fail can catch that. The absence of a signature format is not an error:
it is reported as a `NotFound` outcome by the verification backend and only
drives the signature state.

Input errors (`InputError` subclasses) are raised before any network call is
made for the offending input. All other errors abort the batch.
"""


class ImageSignerError(Exception):
    """Base class for all errors raised by `image_signer`.

    Errors that abort a batch are tagged with the image being processed.
    Messages that do not already name that image are prefixed with it.
    """

    image: str | None = None

    def __str__(self) -> str:
        message = super().__str__()
        if self.image is None or self.image in message:
            return message
        return f"failed to sign image {self.image}: {message}"


class InputError(ImageSignerError):
    """Malformed user input, reported immediately and never retried."""


class InvalidImageReferenceError(InputError, ValueError):
    """The image reference does not follow container reference syntax."""


class InvalidTrustedRootError(InputError, ValueError):
    """The trusted root material could not be loaded."""


class UnsupportedProviderError(InputError):
    """The OIDC provider is not one of the supported providers."""

    def __init__(self, provider: str):
        super().__init__(f"unsupported provider: {provider}")
        self.provider = provider


class AuthenticationError(ImageSignerError):
    """Obtaining an identity token failed or was cancelled by the user."""


class VerificationFailedError(ImageSignerError):
    """Signatures exist but their bundle verification failed."""


class MalformedSignatureError(ImageSignerError):
    """A verified signature has a payload that does not match its format."""


class BackendError(ImageSignerError):
    """The verification backend failed for a reason other than absence."""


class SigningBackendError(ImageSignerError):
    """The signing backend failed or timed out."""


class CosignError(ImageSignerError):
    """Running the cosign binary failed."""


class CosignNotFoundError(CosignError):
    """The cosign binary could not be executed."""


class CosignTimeoutError(CosignError):
    """A cosign invocation exceeded its timeout and was killed."""


class CancelledError(ImageSignerError):
    """The run was interrupted before it could complete."""
