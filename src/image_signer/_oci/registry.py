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

"""Container image references and a minimal registry client."""

from __future__ import annotations

from dataclasses import dataclass
from dataclasses import replace
import hashlib
import logging
import re

import oras.provider
import requests

from image_signer import errors


logger = logging.getLogger(__name__)

DEFAULT_REGISTRY = "index.docker.io"
DEFAULT_TAG = "latest"

# Manifest media types accepted when resolving a digest. Index types come
# first so multi-arch images resolve to the index, which is what cosign signs.
OCI_INDEX_MEDIA_TYPE = "application/vnd.oci.image.index.v1+json"
OCI_MANIFEST_MEDIA_TYPE = "application/vnd.oci.image.manifest.v1+json"
DOCKER_MANIFEST_LIST_MEDIA_TYPE = (
    "application/vnd.docker.distribution.manifest.list.v2+json"
)
DOCKER_MANIFEST_MEDIA_TYPE = (
    "application/vnd.docker.distribution.manifest.v2+json"
)
_MANIFEST_ACCEPT = ", ".join(
    [
        OCI_INDEX_MEDIA_TYPE,
        DOCKER_MANIFEST_LIST_MEDIA_TYPE,
        OCI_MANIFEST_MEDIA_TYPE,
        DOCKER_MANIFEST_MEDIA_TYPE,
    ]
)

_DIGEST_RE = re.compile(r"^sha256:[a-f0-9]{64}$")
_TAG_RE = re.compile(r"^[\w][\w.-]{0,127}$", re.ASCII)
_REPOSITORY_COMPONENT_RE = re.compile(
    r"^[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*$"
)


def _is_registry(component: str) -> bool:
    return "." in component or ":" in component or component == "localhost"


@dataclass(frozen=True)
class ImageReference:
    """Parsed container image reference.

    Format: [registry/]repository[:tag][@sha256:digest]

    A missing registry defaults to Docker Hub (with the `library/` prefix for
    single component repositories) and a reference with neither tag nor
    digest defaults to the `latest` tag.
    """

    registry: str
    repository: str
    tag: str | None
    digest: str | None

    @classmethod
    def parse(cls, reference: str) -> ImageReference:
        """Parse an image reference string.

        Raises:
            InvalidImageReferenceError: If the reference is malformed.
        """
        original = reference
        if not reference or reference != reference.strip():
            raise errors.InvalidImageReferenceError(
                f"Invalid image reference '{original}'"
            )

        digest = None
        if "@" in reference:
            reference, digest = reference.rsplit("@", 1)
            if not _DIGEST_RE.match(digest):
                raise errors.InvalidImageReferenceError(
                    f"Invalid digest format: {digest}"
                )

        tag = None
        if ":" in reference:
            name, candidate = reference.rsplit(":", 1)
            if "/" not in candidate:
                if not _TAG_RE.match(candidate):
                    raise errors.InvalidImageReferenceError(
                        f"Invalid tag '{candidate}' in '{original}'"
                    )
                reference, tag = name, candidate

        parts = reference.split("/", 1)
        if len(parts) == 2 and _is_registry(parts[0]):
            registry, repository = parts
        else:
            registry, repository = DEFAULT_REGISTRY, reference

        if registry in ("docker.io", "registry-1.docker.io"):
            registry = DEFAULT_REGISTRY
        if registry == DEFAULT_REGISTRY and "/" not in repository:
            repository = f"library/{repository}"

        components = repository.split("/")
        if not all(_REPOSITORY_COMPONENT_RE.match(c) for c in components):
            raise errors.InvalidImageReferenceError(
                f"Invalid repository '{repository}' in '{original}'"
            )

        if not tag and not digest:
            tag = DEFAULT_TAG

        return cls(registry, repository, tag, digest)

    def __str__(self) -> str:
        result = f"{self.registry}/{self.repository}"
        if self.digest:
            result += f"@{self.digest}"
        elif self.tag:
            result += f":{self.tag}"
        return result

    @property
    def reference(self) -> str:
        if self.digest:
            return self.digest
        return self.tag or DEFAULT_TAG

    def with_digest(self, digest: str) -> ImageReference:
        return replace(self, tag=None, digest=digest)


class OrasClient:
    """Registry client using oras-py for authentication.

    Only used to pin tags to digests before inspection and signing; all
    signature storage is handled by cosign.
    """

    def __init__(self, *, insecure: bool = False, tls_verify: bool = True):
        self._insecure = insecure
        self._tls_verify = tls_verify
        self._registry_cache: dict[str, oras.provider.Registry] = {}

    def _auth_registry(
        self, image_ref: ImageReference
    ) -> oras.provider.Registry:
        """Get an authenticated oras Registry instance.

        Caches authenticated registries by hostname to avoid repeated
        authentication overhead when resolving several images.
        """
        hostname = image_ref.registry
        if hostname in self._registry_cache:
            return self._registry_cache[hostname]

        reg = oras.provider.Registry(
            hostname=hostname,
            insecure=self._insecure,
            tls_verify=self._tls_verify,
        )
        reg.auth.load_configs(reg.get_container(str(image_ref)))
        self._registry_cache[hostname] = reg
        return reg

    def _base_url(self, image_ref: ImageReference) -> str:
        """Get the base URL for a registry."""
        registry = image_ref.registry
        if registry in ("docker.io", "index.docker.io"):
            registry = "registry-1.docker.io"
        return f"{'http' if self._insecure else 'https'}://{registry}"

    def resolve_digest(self, image_ref: ImageReference) -> str:
        """Resolve an image reference to the digest of its manifest.

        Uses the `Docker-Content-Digest` header of a HEAD request and falls
        back to hashing the manifest body when the registry omits it.
        """
        if image_ref.digest:
            return image_ref.digest

        base = self._base_url(image_ref)
        repo = image_ref.repository
        url = f"{base}/v2/{repo}/manifests/{image_ref.reference}"
        reg = self._auth_registry(image_ref)

        response = self._manifest_request(reg, url, "HEAD", image_ref)

        digest = response.headers.get("Docker-Content-Digest")
        if not digest:
            logger.debug(
                "Registry did not return a digest header for %s", image_ref
            )
            response = self._manifest_request(reg, url, "GET", image_ref)
            digest = f"sha256:{hashlib.sha256(response.content).hexdigest()}"

        if not _DIGEST_RE.match(digest):
            raise errors.BackendError(
                f"Registry returned an invalid digest for '{image_ref}': "
                f"{digest}"
            )
        return digest

    def _manifest_request(
        self,
        reg: oras.provider.Registry,
        url: str,
        method: str,
        image_ref: ImageReference,
    ) -> requests.Response:
        headers = {"Accept": _MANIFEST_ACCEPT}
        try:
            response = reg.do_request(url, method, headers=headers)
        except requests.HTTPError as e:
            raise errors.BackendError(
                f"Failed to resolve digest for '{image_ref}': {e}"
            ) from e
        if response.status_code != 200:
            raise errors.BackendError(
                f"Failed to resolve digest for '{image_ref}': registry "
                f"answered {method} with status {response.status_code}"
            )
        return response

    def pin(self, image_ref: ImageReference) -> ImageReference:
        """Return the reference addressing the image by digest."""
        digest = self.resolve_digest(image_ref)
        logger.debug("Resolved %s to %s", image_ref, digest)
        return image_ref.with_digest(digest)
