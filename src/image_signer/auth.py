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

"""Identity tokens for keyless signing, obtained once per run.

Getting a token may open a browser or ask the user to visit a URL and enter a
code, so it must happen at most once no matter how many images are signed.
`CredentialCache` guarantees that per `(provider, device_flow)` pair, even
when several threads ask for the same pair at the same time:

```python
cache = image_signer.auth.CredentialCache(
    image_signer.auth.SigstoreTokenIssuer()
)
credential = cache.get_token("google", device_flow=False)
```

Failures are cached as well: a failed or cancelled authentication is not
retried within the lifetime of the cache.
"""

from __future__ import annotations

import concurrent.futures
from dataclasses import dataclass
from dataclasses import field
import logging
import threading
from typing import Protocol

from image_signer import errors
from image_signer._cosign import formats


logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("", "google", "github", "microsoft")

_PROVIDER_NAMES = {
    "google": "Google",
    "github": "GitHub",
    "microsoft": "Microsoft",
}


@dataclass(frozen=True)
class Credential:
    """A bearer token and the parameters that produced it."""

    token: str = field(repr=False)
    provider: str
    device_flow: bool


class TokenIssuer(Protocol):
    def identity_token(self, provider: str, device_flow: bool) -> str: ...


class SigstoreTokenIssuer:
    """Obtains tokens from the Sigstore OAuth issuer with `sigstore-python`.

    With `device_flow`, the browser is never opened: the user is shown a URL
    and pastes back a code, which works on headless machines. The device flow
    always targets the default Sigstore issuer, whatever the provider.
    """

    def __init__(
        self,
        issuer_url: str = formats.DEFAULT_OIDC_ISSUER_URL,
        *,
        client_id: str = formats.SIGSTORE_OIDC_CLIENT_ID,
        client_secret: str = "",
    ):
        self._issuer_url = issuer_url
        self._client_id = client_id
        self._client_secret = client_secret

    def identity_token(self, provider: str, device_flow: bool) -> str:
        from sigstore import oidc

        if device_flow:
            issuer = oidc.Issuer(formats.DEFAULT_OIDC_ISSUER_URL)
        else:
            issuer = oidc.Issuer(self._issuer_url)
            if provider:
                logger.info(
                    "Log in with %s when the Sigstore login page opens.",
                    _PROVIDER_NAMES[provider],
                )

        token = issuer.identity_token(
            client_id=self._client_id,
            client_secret=self._client_secret,
            force_oob=device_flow,
        )
        return str(token)


class StaticTokenIssuer:
    """Hands out a fixed token, for example one minted by a CI system."""

    def __init__(self, token: str):
        if not token:
            raise errors.InputError("identity token must not be empty")
        self._token = token

    def identity_token(
        self,
        provider: str,  # noqa: ARG002
        device_flow: bool,  # noqa: ARG002
    ) -> str:
        return self._token


class CredentialCache:
    """Memoizes one credential per `(provider, device_flow)` pair."""

    def __init__(self, issuer: TokenIssuer):
        self._issuer = issuer
        self._lock = threading.Lock()
        self._futures: dict[
            tuple[str, bool], concurrent.futures.Future[Credential]
        ] = {}

    def get_token(self, provider: str, device_flow: bool) -> Credential:
        """Return the credential for the pair, authenticating on first use.

        Concurrent first callers for the same pair wait for a single
        authentication and all observe its outcome.

        Raises:
            UnsupportedProviderError: `provider` is not supported. Nothing is
              sent over the network.
            AuthenticationError: Obtaining the token failed.
        """
        key = (provider, device_flow)
        with self._lock:
            future = self._futures.get(key)
            owner = future is None
            if owner:
                future = concurrent.futures.Future()
                self._futures[key] = future

        if owner:
            self._resolve(key, future)
        else:
            logger.debug("Reusing credential for provider %r", provider)
        return future.result()

    def _resolve(
        self,
        key: tuple[str, bool],
        future: concurrent.futures.Future[Credential],
    ) -> None:
        provider, device_flow = key
        try:
            if provider not in SUPPORTED_PROVIDERS:
                raise errors.UnsupportedProviderError(provider)
            token = self._issuer.identity_token(provider, device_flow)
        except errors.ImageSignerError as e:
            future.set_exception(e)
        except Exception as e:
            wrapped = errors.AuthenticationError(
                f"error getting OIDC token: {e}"
            )
            wrapped.__cause__ = e
            future.set_exception(wrapped)
        except BaseException as e:
            # Interrupted: wake waiters but let a later call try again.
            with self._lock:
                self._futures.pop(key, None)
            future.set_exception(e)
            raise
        else:
            future.set_result(Credential(token, provider, device_flow))
