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


import threading

import pytest

from image_signer import auth
from image_signer import errors
from image_signer import signing
from image_signer import trust
from image_signer import verifying
from image_signer._cosign.formats import SignatureFormat


class FakeSigningBackend:
    """Records signing calls and optionally fails for one format."""

    def __init__(self, fail_on=None):
        self.calls = []
        self._fail_on = fail_on
        self.trusted_roots = []

    def sign(
        self,
        image_ref,
        signature_format,
        identity_token,
        *,
        trusted_root,
        timeout,
        cancel=None,
    ):
        self.calls.append((str(image_ref), signature_format, identity_token))
        self.trusted_roots.append(trusted_root)
        if signature_format == self._fail_on:
            raise errors.SigningBackendError("cosign exited with 1")


class FakeTokenIssuer:
    def __init__(self):
        self.calls = 0

    def identity_token(self, provider, device_flow):
        self.calls += 1
        return f"token-{provider}"


def _dispatcher(backend, issuer=None, echoed=None):
    echo = echoed.append if echoed is not None else (lambda _: None)
    return signing.Dispatcher(
        backend,
        auth.CredentialCache(issuer or FakeTokenIssuer()),
        echo=echo,
    )


class TestDispatcher:
    def test_signs_both_formats_in_order(self):
        backend = FakeSigningBackend()
        echoed = []

        _dispatcher(backend, echoed=echoed).sign(
            "ghcr.io/org/app:v1",
            verifying.SignatureStatus(False, False),
            trust.TrustedRoot(),
            "google",
            False,
            300,
        )

        assert backend.calls == [
            ("ghcr.io/org/app:v1", SignatureFormat.LEGACY, "token-google"),
            ("ghcr.io/org/app:v1", SignatureFormat.BUNDLED, "token-google"),
        ]
        assert echoed == [
            "Signing legacy signature for image: ghcr.io/org/app:v1",
            "Signing bundled signature for image: ghcr.io/org/app:v1",
        ]

    def test_signs_only_missing_bundle(self):
        backend = FakeSigningBackend()

        _dispatcher(backend).sign(
            "ghcr.io/org/app:v1",
            verifying.SignatureStatus(True, False),
            trust.TrustedRoot(),
            "github",
            False,
            300,
        )

        assert [c[1] for c in backend.calls] == [SignatureFormat.BUNDLED]

    def test_signs_only_missing_legacy(self):
        backend = FakeSigningBackend()

        _dispatcher(backend).sign(
            "ghcr.io/org/app:v1",
            verifying.SignatureStatus(False, True),
            trust.TrustedRoot(),
            "",
            True,
            300,
        )

        assert [c[1] for c in backend.calls] == [SignatureFormat.LEGACY]

    def test_rejects_fully_signed(self):
        backend = FakeSigningBackend()
        issuer = FakeTokenIssuer()

        with pytest.raises(ValueError, match="already fully signed"):
            _dispatcher(backend, issuer).sign(
                "ghcr.io/org/app:v1",
                verifying.SignatureStatus(True, True),
                trust.TrustedRoot(),
                "google",
                False,
                300,
            )

        assert backend.calls == []
        assert issuer.calls == 0

    def test_legacy_failure_stops_bundled(self):
        backend = FakeSigningBackend(fail_on=SignatureFormat.LEGACY)

        with pytest.raises(
            errors.SigningBackendError,
            match="error signing legacy signature for image "
            "ghcr.io/org/app:v1: cosign exited with 1",
        ):
            _dispatcher(backend).sign(
                "ghcr.io/org/app:v1",
                verifying.SignatureStatus(False, False),
                trust.TrustedRoot(),
                "google",
                False,
                300,
            )

        assert len(backend.calls) == 1

    def test_unsupported_provider_signs_nothing(self):
        backend = FakeSigningBackend()

        with pytest.raises(errors.UnsupportedProviderError):
            _dispatcher(backend).sign(
                "ghcr.io/org/app:v1",
                verifying.SignatureStatus(False, False),
                trust.TrustedRoot(),
                "yahoo",
                False,
                300,
            )

        assert backend.calls == []

    def test_authenticates_once_across_images(self):
        backend = FakeSigningBackend()
        issuer = FakeTokenIssuer()
        dispatcher = _dispatcher(backend, issuer)

        for image in ("ghcr.io/org/a:v1", "ghcr.io/org/b:v1"):
            dispatcher.sign(
                image,
                verifying.SignatureStatus(False, False),
                trust.TrustedRoot(),
                "google",
                False,
                300,
            )

        assert issuer.calls == 1
        assert len(backend.calls) == 4

    def test_cancelled(self):
        backend = FakeSigningBackend()
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(errors.CancelledError):
            _dispatcher(backend).sign(
                "ghcr.io/org/app:v1",
                verifying.SignatureStatus(False, False),
                trust.TrustedRoot(),
                "google",
                False,
                300,
                cancel,
            )

        assert backend.calls == []

    def test_uses_trusted_root_of_each_call(self):
        backend = FakeSigningBackend()
        dispatcher = _dispatcher(backend)
        first = trust.TrustedRoot()
        second = trust.TrustedRoot()

        for image, root in (
            ("ghcr.io/org/a:v1", first),
            ("ghcr.io/org/b:v1", second),
        ):
            dispatcher.sign(
                image,
                verifying.SignatureStatus(True, False),
                root,
                "google",
                False,
                300,
            )

        assert backend.trusted_roots[0] is first
        assert backend.trusted_roots[1] is second

    def test_invalid_reference(self):
        backend = FakeSigningBackend()
        issuer = FakeTokenIssuer()

        with pytest.raises(errors.InvalidImageReferenceError):
            _dispatcher(backend, issuer).sign(
                "not a reference",
                verifying.SignatureStatus(False, False),
                trust.TrustedRoot(),
                "google",
                False,
                300,
            )

        assert issuer.calls == 0
