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

"""The two cosign signature formats an image must carry.

Both formats go through the same verification and signing code paths; what
differs between them is described as data on `SignatureFormat`:

- `LEGACY`: the original cosign image signature. Its payload is a "simple
  container image" JSON document whose `critical.type` is
  `cosign container image signature`.
- `BUNDLED`: the Sigstore bundle format. Cosign stores it as an attestation
  whose DSSE envelope carries an in-toto statement with the
  `https://sigstore.dev/cosign/sign/v1` predicate type.
"""

from __future__ import annotations

import base64
import binascii
from collections.abc import Callable
from dataclasses import dataclass
import enum
import json
from typing import Any


DEFAULT_FULCIO_URL = "https://fulcio.sigstore.dev"
DEFAULT_REKOR_URL = "https://rekor.sigstore.dev"
DEFAULT_OIDC_ISSUER_URL = "https://oauth2.sigstore.dev/auth"
SIGSTORE_OIDC_CLIENT_ID = "sigstore"

COSIGN_SIGNATURE_TYPE = "cosign container image signature"
COSIGN_SIGN_PREDICATE_TYPE = "https://sigstore.dev/cosign/sign/v1"


def _load_json_object(raw: bytes | str, what: str) -> dict[str, Any]:
    try:
        value = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ValueError(f"{what} is not valid JSON: {e}") from e
    if not isinstance(value, dict):
        raise ValueError(f"{what} is not a JSON object")
    return value


def _legacy_payload_type(payload: bytes) -> str:
    info = _load_json_object(payload, "signature payload")
    critical = info.get("critical")
    if not isinstance(critical, dict):
        raise ValueError("signature payload has no 'critical' section")
    sig_type = critical.get("type")
    if not isinstance(sig_type, str):
        raise ValueError("signature payload has no 'critical.type'")
    return sig_type


def _b64decode(data: str) -> bytes:
    # DSSE allows either the standard or the URL-safe alphabet.
    try:
        return base64.b64decode(data, validate=True)
    except binascii.Error:
        return base64.urlsafe_b64decode(data)


def _bundled_payload_type(payload: bytes) -> str:
    envelope = _load_json_object(payload, "DSSE envelope")
    encoded = envelope.get("payload")
    if not isinstance(encoded, str):
        raise ValueError("DSSE envelope has no payload")
    try:
        decoded = _b64decode(encoded)
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"error decoding signature payload: {e}") from e

    statement = _load_json_object(decoded, "in-toto statement")
    predicate_type = statement.get("predicateType")
    if not isinstance(predicate_type, str):
        raise ValueError("in-toto statement has no predicateType")
    return predicate_type


def _split_json_array(stdout: str) -> list[bytes]:
    """Split `cosign verify` output into one payload per signature."""
    text = stdout.strip()
    if not text:
        return []
    try:
        values = json.loads(text)
    except json.JSONDecodeError:
        return _split_lines(text)
    if not isinstance(values, list):
        values = [values]
    return [json.dumps(v).encode() for v in values]


def _split_lines(stdout: str) -> list[bytes]:
    """Split `cosign verify-attestation` output, one envelope per line."""
    return [line.encode() for line in stdout.splitlines() if line.strip()]


@dataclass(frozen=True)
class _FormatSpec:
    label: str
    expected_type: str
    payload_type: Callable[[bytes], str]
    split_output: Callable[[str], list[bytes]]
    verify_args: tuple[str, ...]
    sign_args: tuple[str, ...]
    not_found_markers: tuple[str, ...]


_SPECS: dict[str, _FormatSpec] = {
    "legacy": _FormatSpec(
        label="legacy",
        expected_type=COSIGN_SIGNATURE_TYPE,
        payload_type=_legacy_payload_type,
        split_output=_split_json_array,
        verify_args=("verify", "--new-bundle-format=false", "--output=json"),
        sign_args=(
            "sign",
            "--new-bundle-format=false",
            "--use-signing-config=false",
            f"--fulcio-url={DEFAULT_FULCIO_URL}",
            f"--rekor-url={DEFAULT_REKOR_URL}",
            "--tlog-upload=true",
        ),
        not_found_markers=("no signatures found",),
    ),
    "bundled": _FormatSpec(
        label="bundled",
        expected_type=COSIGN_SIGN_PREDICATE_TYPE,
        payload_type=_bundled_payload_type,
        split_output=_split_lines,
        verify_args=(
            "verify-attestation",
            "--new-bundle-format=true",
            # cosign only reports attestations of this predicate type. Bundles
            # of any other type read as absent and are signed over, so the
            # payload check below only guards against cosign misreporting.
            f"--type={COSIGN_SIGN_PREDICATE_TYPE}",
        ),
        sign_args=(
            "sign",
            "--new-bundle-format=true",
            "--use-signing-config=true",
        ),
        not_found_markers=("no matching attestations",),
    ),
}


class SignatureFormat(enum.Enum):
    """A signature format, in the order formats are signed."""

    LEGACY = "legacy"
    BUNDLED = "bundled"

    @property
    def _spec(self) -> _FormatSpec:
        return _SPECS[self.value]

    @property
    def label(self) -> str:
        return self._spec.label

    @property
    def expected_type(self) -> str:
        """The type tag every verified payload of this format must carry."""
        return self._spec.expected_type

    @property
    def verify_args(self) -> tuple[str, ...]:
        return self._spec.verify_args

    @property
    def sign_args(self) -> tuple[str, ...]:
        return self._spec.sign_args

    def is_not_found(self, message: str) -> bool:
        """Whether a cosign error message reports that no signature exists."""
        lowered = message.lower()
        return any(m in lowered for m in self._spec.not_found_markers)

    def split_output(self, stdout: str) -> list[bytes]:
        """Split verification output into one raw payload per signature."""
        return self._spec.split_output(stdout)

    def payload_type(self, payload: bytes) -> str:
        """Decode a payload and return its type tag.

        Raises:
            ValueError: The payload does not follow the format's schema.
        """
        return self._spec.payload_type(payload)

    def check_payload(self, payload: bytes) -> None:
        """Check that a payload decodes and carries the expected type tag.

        Raises:
            ValueError: On decode failure or type tag mismatch.
        """
        found = self.payload_type(payload)
        if found != self.expected_type:
            raise ValueError(
                f"{self.label} signature found but with unexpected type: "
                f"{found}"
            )
