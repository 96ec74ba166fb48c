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

"""Trust inputs shared by every image of a batch."""

from __future__ import annotations

from dataclasses import dataclass
import json
import pathlib
import re

from image_signer import errors


TRUSTED_ROOT_MEDIA_TYPE_PREFIX = "application/vnd.dev.sigstore.trustedroot"


@dataclass(frozen=True)
class IdentityConstraint:
    """A signer identity accepted during verification.

    Attributes:
        issuer: The OIDC issuer that must have issued the signing certificate.
        subject_regexp: A regular expression the certificate subject must
          match.
    """

    issuer: str
    subject_regexp: str

    def __post_init__(self):
        if not self.issuer:
            raise errors.InputError("certificate OIDC issuer must be set")
        try:
            re.compile(self.subject_regexp)
        except re.error as e:
            raise errors.InputError(
                f"Invalid certificate identity regexp "
                f"'{self.subject_regexp}': {e}"
            ) from e

    def cosign_args(self) -> tuple[str, ...]:
        return (
            f"--certificate-identity-regexp={self.subject_regexp}",
            f"--certificate-oidc-issuer={self.issuer}",
        )


@dataclass(frozen=True)
class TrustedRoot:
    """Trusted root material for verification and signing.

    The default instance defers to cosign, which fetches the Sigstore public
    good trusted root through TUF. An instance loaded from a file forwards
    that file to cosign instead.
    """

    path: pathlib.Path | None = None

    @classmethod
    def production(cls) -> TrustedRoot:
        return cls()

    @classmethod
    def from_file(cls, path: str | pathlib.Path) -> TrustedRoot:
        """Load and sanity check a `trusted_root.json` file.

        Raises:
            InvalidTrustedRootError: The file is missing or is not a Sigstore
              trusted root.
        """
        path = pathlib.Path(path)
        try:
            content = json.loads(path.read_text())
        except OSError as e:
            raise errors.InvalidTrustedRootError(
                f"Cannot read trusted root '{path}': {e}"
            ) from e
        except json.JSONDecodeError as e:
            raise errors.InvalidTrustedRootError(
                f"Trusted root '{path}' is not valid JSON: {e}"
            ) from e

        media_type = ""
        if isinstance(content, dict):
            media_type = content.get("mediaType") or ""
        if not media_type.startswith(TRUSTED_ROOT_MEDIA_TYPE_PREFIX):
            raise errors.InvalidTrustedRootError(
                f"'{path}' is not a Sigstore trusted root "
                f"(mediaType: {media_type or 'missing'})"
            )
        return cls(path)

    def cosign_args(self) -> tuple[str, ...]:
        if self.path is None:
            return ()
        return (f"--trusted-root={self.path}",)

    def __str__(self) -> str:
        return "sigstore public good" if self.path is None else str(self.path)
