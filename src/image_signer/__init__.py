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


"""Sign container images with both legacy and bundled cosign signatures.

The library checks which signature formats an image already carries and only
signs the missing ones, authenticating at most once per batch. The high level
API lives in `image_signer.reconciling`:

```python
import image_signer

image_signer.reconciling.Config().set_identity(
    issuer="https://accounts.google.com",
    subject_regexp=r"@example\\.com$",
).reconcile(["ghcr.io/org/app:v1.0.0"])
```
"""

from image_signer import reconciling


__version__ = "0.1.0"

__all__ = ["reconciling"]
