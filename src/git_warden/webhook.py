"""Webhook endpoint that turns provider push notifications into pulls.

`WebhookMiddleware` sits in front of any ASGI application. Requests whose path
matches a repository's hook URL are validated by that repository's provider
and, for a push to the tracked branch, trigger an immediate pull. All other
requests pass through untouched.
"""

import hmac
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from starlette.applications import Starlette
from starlette.concurrency import run_in_threadpool
from starlette.middleware import Middleware
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, PlainTextResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp

from .constants import APP_NAME
from .errors import ValidationError, WardenError
from .repo import HookType, Repo

logger = logging.getLogger(APP_NAME)


def _parse_json(body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(body)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ValidationError(f"Invalid JSON payload: {e}") from e
    if not isinstance(payload, dict):
        raise ValidationError("Invalid JSON payload: expected an object")
    return payload


def _branch_from_ref(ref: Any) -> str | None:
    if isinstance(ref, str) and ref.startswith("refs/heads/"):
        return ref.removeprefix("refs/heads/")
    return None


def _check_hmac(
    secret: str, body: bytes, signature: str | None, digest: str, prefix: str = ""
) -> None:
    """Verifies a hex HMAC signature header against the shared secret.

    Raises:
        ValidationError: If the header is missing or does not match.
    """
    if not signature:
        raise ValidationError("Missing signature", status_code=403)
    expected = prefix + hmac.new(secret.encode(), body, digest).hexdigest()
    if not hmac.compare_digest(expected.encode(), signature.strip().encode()):
        raise ValidationError("Invalid signature", status_code=403)


class HookProvider:
    """Base class for webhook providers.

    A provider recognizes its own requests, validates them against the shared
    secret and extracts the pushed branch.
    """

    type: HookType = HookType.GENERIC
    event_header: str = ""

    def does_handle(self, headers: Mapping[str, str]) -> bool:
        """Returns True if the request headers identify this provider."""
        return bool(self.event_header) and self.event_header in headers

    def validate(self, headers: Mapping[str, str], body: bytes, secret: str) -> None:
        """Checks the request authenticity. Does nothing without a secret."""

    def branch(self, headers: Mapping[str, str], body: bytes) -> str | None:
        """Extracts the pushed branch.

        Returns:
            str | None: The branch name, or None if the request is not a branch
            push (e.g. a ping or a tag).

        Raises:
            ValidationError: If the payload is malformed.
        """
        return _branch_from_ref(_parse_json(body).get("ref"))

    def extract_branch(
        self, headers: Mapping[str, str], body: bytes, secret: str
    ) -> str | None:
        """Validates the request and returns the pushed branch, if any."""
        self.validate(headers, body, secret)
        return self.branch(headers, body)


class GithubHook(HookProvider):
    type = HookType.GITHUB
    event_header = "x-github-event"

    def validate(self, headers: Mapping[str, str], body: bytes, secret: str) -> None:
        if not secret:
            return
        if sig := headers.get("x-hub-signature-256"):
            _check_hmac(secret, body, sig, "sha256", prefix="sha256=")
        else:
            _check_hmac(
                secret, body, headers.get("x-hub-signature"), "sha1", prefix="sha1="
            )

    def branch(self, headers: Mapping[str, str], body: bytes) -> str | None:
        event = headers.get(self.event_header, "")
        if event != "push":
            logger.debug(f"Ignoring GitHub event '{event}'.")
            return None
        return super().branch(headers, body)


class GitlabHook(HookProvider):
    type = HookType.GITLAB
    event_header = "x-gitlab-event"

    def validate(self, headers: Mapping[str, str], body: bytes, secret: str) -> None:
        if not secret:
            return
        token = headers.get("x-gitlab-token", "")
        if not hmac.compare_digest(token.encode(), secret.encode()):
            raise ValidationError("Invalid token", status_code=403)

    def branch(self, headers: Mapping[str, str], body: bytes) -> str | None:
        if headers.get(self.event_header) != "Push Hook":
            return None
        return super().branch(headers, body)


class GiteaHook(HookProvider):
    type = HookType.GITEA
    event_header = "x-gitea-event"
    signature_header = "x-gitea-signature"

    def validate(self, headers: Mapping[str, str], body: bytes, secret: str) -> None:
        if secret:
            _check_hmac(secret, body, headers.get(self.signature_header), "sha256")

    def branch(self, headers: Mapping[str, str], body: bytes) -> str | None:
        if headers.get(self.event_header) != "push":
            return None
        return super().branch(headers, body)


class GogsHook(GiteaHook):
    type = HookType.GOGS
    event_header = "x-gogs-event"
    signature_header = "x-gogs-signature"


class BitbucketHook(HookProvider):
    type = HookType.BITBUCKET
    event_header = "x-event-key"

    def validate(self, headers: Mapping[str, str], body: bytes, secret: str) -> None:
        if secret:
            _check_hmac(
                secret, body, headers.get("x-hub-signature"), "sha256", prefix="sha256="
            )

    def branch(self, headers: Mapping[str, str], body: bytes) -> str | None:
        if headers.get(self.event_header) != "repo:push":
            return None

        push = _parse_json(body).get("push")
        changes = push.get("changes") if isinstance(push, dict) else None
        if not isinstance(changes, list):
            raise ValidationError("Invalid Bitbucket payload: missing push.changes")

        branch = None
        for change in changes:
            new = change.get("new") if isinstance(change, dict) else None
            if isinstance(new, dict) and new.get("type") == "branch":
                branch = new.get("name")
        return branch


class GenericHook(HookProvider):
    """Accepts `{"ref": "refs/heads/<branch>"}` from any sender."""

    type = HookType.GENERIC

    def validate(self, headers: Mapping[str, str], body: bytes, secret: str) -> None:
        if not secret:
            return
        token = headers.get("x-webhook-token", "")
        if not hmac.compare_digest(token.encode(), secret.encode()):
            raise ValidationError("Invalid token", status_code=403)


PROVIDERS: dict[HookType, HookProvider] = {
    p.type: p
    for p in (
        GiteaHook(),
        GogsHook(),
        GithubHook(),
        GitlabHook(),
        BitbucketHook(),
        GenericHook(),
    )
}


def get_provider(hook_type: HookType | None, headers: Mapping[str, str]) -> HookProvider:
    """Selects the provider for a request.

    Args:
        hook_type (HookType | None): The configured provider, None to detect.
        headers (Mapping[str, str]): The request headers (lower-case keys).

    Returns:
        HookProvider: The configured provider, else the first one that
        recognizes the headers, else the generic provider.
    """
    if hook_type is not None:
        return PROVIDERS[hook_type]
    # Gitea also sends GitHub and Gogs event headers, so it is checked first.
    for provider in PROVIDERS.values():
        if provider.does_handle(headers):
            return provider
    return PROVIDERS[HookType.GENERIC]


class WebhookMiddleware(BaseHTTPMiddleware):
    """Dispatches webhook requests to the repositories they are meant for.

    Args:
        app: The ASGI application that handles every other request.
        repos: The webhook-driven repositories.
    """

    def __init__(self, app: ASGIApp, repos: list[Repo]) -> None:
        super().__init__(app)
        self.repos = [r for r in repos if r.hook.url]

    def match(self, path: str) -> Repo | None:
        """Returns the first repository whose hook URL equals `path`."""
        for repo in self.repos:
            if repo.hook.url == path:
                return repo
        return None

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        repo = self.match(request.url.path)
        if repo is None:
            return await call_next(request)

        if request.method != "POST":
            return PlainTextResponse("Method not allowed", status_code=405)

        body = await request.body()
        headers = {k.lower(): v for k, v in request.headers.items()}
        provider = get_provider(repo.hook.type, headers)

        try:
            branch = provider.extract_branch(headers, body, repo.hook.secret)
        except ValidationError as e:
            logger.warning(f"WEBHOOK REJECTED {repo.url} ({provider.type.value}): {e}")
            return PlainTextResponse(str(e), status_code=e.status_code)

        if branch is None:
            return PlainTextResponse("Event ignored", status_code=200)

        if branch != repo.branch:
            logger.info(
                f"Ignoring push to '{branch}' for {repo.url} (tracking '{repo.branch}')."
            )
            return PlainTextResponse(
                f"Ignored push to branch '{branch}'", status_code=200
            )

        try:
            await run_in_threadpool(repo.pull)
        except WardenError as e:
            logger.error(f"PULL ERROR {repo.url}: {e}")
            return PlainTextResponse(str(e), status_code=500)

        return PlainTextResponse("Pulled", status_code=200)


async def health(_request: Request) -> JSONResponse:
    return JSONResponse({"status": "ok", "name": APP_NAME})


def create_app(repos: list[Repo]) -> Starlette:
    """Builds the ASGI application serving the webhooks of `repos`."""
    return Starlette(
        routes=[Route("/health", endpoint=health, methods=["GET"])],
        middleware=[Middleware(WebhookMiddleware, repos=repos)],
    )
