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

"""The main entry-point for the image_signer package."""

from collections.abc import Iterator
from collections.abc import Sequence
import contextlib
import logging
import pathlib
import signal
import sys
import threading

import click

import image_signer
from image_signer import duration
from image_signer import errors
from image_signer import reconciling


class NoOpTracer:
    def start_as_current_span(self, name):
        @contextlib.contextmanager
        def noop_context():
            class NoOpSpan:
                def set_attribute(self, key, value):
                    pass

            yield NoOpSpan()

        return noop_context()


# Global tracer variable, we will initialized this within the main() function
tracer = None

_EXIT_INTERRUPTED = 130


class _DurationType(click.ParamType):
    """Go-style durations such as `300s`, `5m` or `1h30m`, in seconds."""

    name = "duration"

    def convert(self, value, param, ctx) -> float:
        if isinstance(value, (int, float)):
            return float(value)
        try:
            return duration.parse_duration(value)
        except ValueError as e:
            self.fail(str(e), param, ctx)


@contextlib.contextmanager
def _cancel_on_signals() -> Iterator[threading.Event]:
    """Sets the yielded event on SIGINT/SIGTERM.

    A second signal raises `KeyboardInterrupt`, for the case where the run is
    blocked outside of cosign (for example waiting on the OAuth flow).
    """
    cancel = threading.Event()

    def handler(signum, frame):
        if cancel.is_set():
            raise KeyboardInterrupt
        logging.info("Interrupted, stopping after the current step.")
        cancel.set()

    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    previous = {
        signum: signal.signal(signum, handler)
        for signum in (signal.SIGINT, signal.SIGTERM)
    }
    try:
        yield cancel
    finally:
        for signum, old_handler in previous.items():
            signal.signal(signum, old_handler)


@click.group(
    context_settings=dict(
        help_option_names=["-h", "--help"],
        token_normalize_func=lambda x: x.replace("_", "-"),
    ),
)
@click.version_option(image_signer.__version__, "--version")
@click.option(
    "--log-level",
    type=click.Choice(
        ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"], case_sensitive=False
    ),
    default="INFO",
    show_default=True,
    envvar="IMAGE_SIGNER_LOG_LEVEL",
    metavar="LEVEL",
    help="Set the logging level. This can also be set via the "
    "IMAGE_SIGNER_LOG_LEVEL env var.",
)
def main(log_level: str) -> None:
    """Sign container images with both cosign signature formats.

    Use each subcommand's `--help` option for details.
    """
    global tracer

    logging.basicConfig(
        format="%(message)s", level=getattr(logging, log_level.upper())
    )

    try:
        from opentelemetry import trace  # type: ignore[import-error]
        from opentelemetry.instrumentation import (
            auto_instrumentation,  # type: ignore[import-error]
        )

        auto_instrumentation.initialize()
        tracer = trace.get_tracer(__name__)
    except ImportError:
        logging.debug("OpenTelemetry not installed. Tracing is disabled.")
        tracer = NoOpTracer()
    except Exception as e:
        logging.error(
            f"Failed to initialize OpenTelemetry auto instrumentation: {e}"
        )
        sys.exit(1)


@main.command(name="sign")
@click.argument("images", nargs=-1, required=True, metavar="IMAGE...")
@click.option(
    "-d",
    "--device-flow",
    is_flag=True,
    default=False,
    envvar="IMAGE_SIGNER_DEVICE_FLOW",
    help=(
        "Use the OAuth device flow: print a URL to visit instead of opening "
        "a browser. Always uses the default Sigstore issuer."
    ),
)
@click.option(
    "-i",
    "--certificate-identity-regexp",
    type=str,
    default=r"@siderolabs\.com$",
    show_default=True,
    envvar="IMAGE_SIGNER_CERTIFICATE_IDENTITY_REGEXP",
    metavar="REGEXP",
    help="Accepted signer identities when checking existing signatures.",
)
@click.option(
    "-o",
    "--certificate-oidc-issuer",
    type=str,
    default="https://accounts.google.com",
    show_default=True,
    envvar="IMAGE_SIGNER_CERTIFICATE_OIDC_ISSUER",
    metavar="URL",
    help="Accepted OIDC issuer when checking existing signatures.",
)
@click.option(
    "-p",
    "--oidc-provider",
    type=str,
    default="google",
    show_default=True,
    envvar="IMAGE_SIGNER_OIDC_PROVIDER",
    metavar="PROVIDER",
    help=(
        "OIDC provider to log in with: google, github, microsoft, or an "
        "empty string to choose on the login page."
    ),
)
@click.option(
    "-t",
    "--timeout",
    type=_DurationType(),
    default="5m",
    show_default=True,
    envvar="IMAGE_SIGNER_TIMEOUT",
    help="Time allowed for each signing call, e.g. 90s, 5m or 1h30m.",
)
@click.option(
    "--trusted-root",
    type=pathlib.Path,
    envvar="IMAGE_SIGNER_TRUSTED_ROOT",
    metavar="TRUSTED_ROOT_PATH",
    help="A custom trusted_root.json. Defaults to the Sigstore public good.",
)
@click.option(
    "--identity-token",
    type=str,
    envvar="SIGSTORE_ID_TOKEN",
    metavar="TOKEN",
    help=(
        "Fixed OIDC identity token to use instead of obtaining one through "
        "an OAuth flow."
    ),
)
@click.option(
    "--cosign",
    type=str,
    default="cosign",
    show_default=True,
    envvar="IMAGE_SIGNER_COSIGN",
    metavar="PATH",
    help="The cosign binary to run.",
)
@click.option(
    "--resolve-digest/--no-resolve-digest",
    default=False,
    show_default=True,
    help="Resolve tags to manifest digests before inspecting and signing.",
)
def _sign(
    images: Sequence[str],
    device_flow: bool,
    certificate_identity_regexp: str,
    certificate_oidc_issuer: str,
    oidc_provider: str,
    timeout: float,
    trusted_root: pathlib.Path | None,
    identity_token: str | None,
    cosign: str,
    resolve_digest: bool,
) -> None:
    """Sign container images with legacy and bundled signatures.

    Each IMAGE is checked for an existing legacy cosign signature and an
    existing bundled (Sigstore bundle) signature from the accepted identity.
    Images carrying both are skipped; otherwise only the missing formats are
    signed. You are asked to log in at most once, and only if something needs
    signing.

    Images are processed in order and the first failure stops the run.
    """
    with tracer.start_as_current_span("Sign") as span:
        span.set_attribute("image_signer.image_count", len(images))
        span.set_attribute("image_signer.oidc_provider", oidc_provider)
        span.set_attribute("image_signer.device_flow", device_flow)
        span.set_attribute("image_signer.resolve_digest", resolve_digest)
        span.set_attribute(
            "image_signer.oidc_issuer", certificate_oidc_issuer
        )

        try:
            config = (
                reconciling.Config()
                .set_identity(
                    issuer=certificate_oidc_issuer,
                    subject_regexp=certificate_identity_regexp,
                )
                .set_trusted_root(trusted_root)
                .use_oidc_provider(oidc_provider, device_flow=device_flow)
                .use_identity_token(identity_token)
                .set_timeout(timeout)
                .use_cosign(cosign)
                .set_resolve_digest(resolve_digest)
            )
            with _cancel_on_signals() as cancel:
                config.reconcile(images, cancel)
        except (errors.CancelledError, KeyboardInterrupt):
            click.echo("Signing interrupted.", err=True)
            sys.exit(_EXIT_INTERRUPTED)
        except Exception as err:
            click.echo(f"Signing failed with error: {err}", err=True)
            sys.exit(1)
