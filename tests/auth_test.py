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
import time
from unittest import mock

import pytest

from image_signer import auth
from image_signer import errors


class _CountingIssuer:
    """Token issuer that records calls and can block or fail."""

    def __init__(self, token="token", error=None, delay=0.0):
        self.calls = []
        self._token = token
        self._error = error
        self._delay = delay
        self._lock = threading.Lock()

    def identity_token(self, provider, device_flow):
        with self._lock:
            self.calls.append((provider, device_flow))
        if self._delay:
            time.sleep(self._delay)
        if self._error is not None:
            raise self._error
        return self._token


class TestCredentialCache:
    def test_get_token(self):
        issuer = _CountingIssuer("abc")
        cache = auth.CredentialCache(issuer)

        credential = cache.get_token("google", False)

        assert credential.token == "abc"
        assert credential.provider == "google"
        assert not credential.device_flow
        assert issuer.calls == [("google", False)]

    def test_token_is_not_in_repr(self):
        credential = auth.Credential("secret-token", "google", False)
        assert "secret-token" not in repr(credential)

    def test_memoized(self):
        issuer = _CountingIssuer()
        cache = auth.CredentialCache(issuer)

        first = cache.get_token("github", True)
        second = cache.get_token("github", True)

        assert first is second
        assert len(issuer.calls) == 1

    def test_keyed_by_provider_and_flow(self):
        issuer = _CountingIssuer()
        cache = auth.CredentialCache(issuer)

        cache.get_token("google", False)
        cache.get_token("google", True)
        cache.get_token("", False)

        assert issuer.calls == [
            ("google", False),
            ("google", True),
            ("", False),
        ]

    def test_concurrent_callers_authenticate_once(self):
        issuer = _CountingIssuer(delay=0.05)
        cache = auth.CredentialCache(issuer)
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(cache.get_token("google", False))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(issuer.calls) == 1
        assert len(results) == 8
        assert all(r is results[0] for r in results)

    def test_unsupported_provider(self):
        issuer = _CountingIssuer()
        cache = auth.CredentialCache(issuer)

        with pytest.raises(
            errors.UnsupportedProviderError, match="unsupported provider: yahoo"
        ) as excinfo:
            cache.get_token("yahoo", False)

        assert excinfo.value.provider == "yahoo"
        assert issuer.calls == []

    def test_unsupported_provider_is_cached(self):
        cache = auth.CredentialCache(_CountingIssuer())

        with pytest.raises(errors.UnsupportedProviderError) as first:
            cache.get_token("yahoo", False)
        with pytest.raises(errors.UnsupportedProviderError) as second:
            cache.get_token("yahoo", False)

        assert first.value is second.value

    def test_failure_is_wrapped_and_cached(self):
        issuer = _CountingIssuer(error=RuntimeError("browser closed"))
        cache = auth.CredentialCache(issuer)

        with pytest.raises(
            errors.AuthenticationError,
            match="error getting OIDC token: browser closed",
        ) as excinfo:
            cache.get_token("google", False)
        with pytest.raises(errors.AuthenticationError):
            cache.get_token("google", False)

        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert len(issuer.calls) == 1

    def test_concurrent_callers_observe_failure(self):
        issuer = _CountingIssuer(error=RuntimeError("denied"), delay=0.05)
        cache = auth.CredentialCache(issuer)
        failures = []
        barrier = threading.Barrier(4)

        def worker():
            barrier.wait()
            try:
                cache.get_token("microsoft", False)
            except errors.AuthenticationError as e:
                failures.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(failures) == 4
        assert len(issuer.calls) == 1

    def test_interrupt_is_not_cached(self):
        issuer = _CountingIssuer(error=KeyboardInterrupt())
        cache = auth.CredentialCache(issuer)

        with pytest.raises(KeyboardInterrupt):
            cache.get_token("google", False)

        issuer._error = None
        assert cache.get_token("google", False).token == "token"
        assert len(issuer.calls) == 2


class TestStaticTokenIssuer:
    def test_returns_token(self):
        issuer = auth.StaticTokenIssuer("fixed")
        assert issuer.identity_token("google", True) == "fixed"

    def test_rejects_empty_token(self):
        with pytest.raises(errors.InputError):
            auth.StaticTokenIssuer("")


class TestSigstoreTokenIssuer:
    @mock.patch("sigstore.oidc.Issuer")
    def test_browser_flow(self, mock_issuer_class):
        mock_issuer = mock.MagicMock()
        mock_issuer_class.return_value = mock_issuer
        mock_issuer.identity_token.return_value = "raw-token"

        issuer = auth.SigstoreTokenIssuer("https://issuer.example.com")
        token = issuer.identity_token("github", False)

        assert token == "raw-token"
        mock_issuer_class.assert_called_once_with("https://issuer.example.com")
        mock_issuer.identity_token.assert_called_once_with(
            client_id="sigstore", client_secret="", force_oob=False
        )

    @mock.patch("sigstore.oidc.Issuer")
    def test_device_flow_uses_default_issuer(self, mock_issuer_class):
        mock_issuer = mock.MagicMock()
        mock_issuer_class.return_value = mock_issuer
        mock_issuer.identity_token.return_value = "raw-token"

        issuer = auth.SigstoreTokenIssuer("https://issuer.example.com")
        issuer.identity_token("google", True)

        mock_issuer_class.assert_called_once_with(
            "https://oauth2.sigstore.dev/auth"
        )
        assert mock_issuer.identity_token.call_args.kwargs["force_oob"]
