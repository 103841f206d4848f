"""Tests for the webhook dispatcher and provider validation."""

import hashlib
import hmac
import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest
from starlette.applications import Starlette
from starlette.middleware import Middleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse
from starlette.routing import Route
from starlette.testclient import TestClient

from git_warden.errors import SyncError
from git_warden.repo import HookConfig, HookType, Repo, RepoURL
from git_warden.webhook import (
    BitbucketHook,
    GenericHook,
    GiteaHook,
    GithubHook,
    GogsHook,
    WebhookMiddleware,
    create_app,
    get_provider,
)

SECRET = "s3cr3t"


def make_repo(
    tmp_path: Path,
    hook_type: HookType | None = HookType.GITHUB,
    secret: str = SECRET,
    branch: str = "main",
    hook_url: str = "/hooks/site",
) -> Repo:
    return Repo(
        url=RepoURL("https://github.com/user/site.git"),
        path=tmp_path / "site",
        branch=branch,
        hook=HookConfig(url=hook_url, secret=secret, type=hook_type),
    )


def push_body(branch: str) -> bytes:
    return json.dumps({"ref": f"refs/heads/{branch}"}).encode()


def sign(body: bytes, digest: str = "sha256", secret: str = SECRET) -> str:
    return hmac.new(secret.encode(), body, digest).hexdigest()


@pytest.fixture
def repo(tmp_path: Path, mocker: MagicMock) -> Repo:
    r = make_repo(tmp_path)
    mocker.patch.object(r, "pull")
    return r


@pytest.fixture
def client(repo: Repo) -> TestClient:
    return TestClient(create_app([repo]))


def github_post(client: TestClient, body: bytes, event: str = "push", **headers: str):
    return client.post(
        "/hooks/site",
        content=body,
        headers={
            "X-GitHub-Event": event,
            "X-Hub-Signature-256": "sha256=" + sign(body),
            "Content-Type": "application/json",
            **headers,
        },
    )


# Dispatch


def test_github_push_triggers_pull(client: TestClient, repo: Repo) -> None:
    """Verifies that a signed push to the tracked branch pulls synchronously."""
    r = github_post(client, push_body("main"))

    assert r.status_code == 200
    assert r.text == "Pulled"
    repo.pull.assert_called_once_with()


def test_push_to_other_branch_is_ignored(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that a validated push to another branch neither pulls nor mutates state."""
    repo = make_repo(tmp_path, branch="main")
    mock_sync = mocker.patch.object(repo, "_sync")
    client = TestClient(create_app([repo]))

    r = github_post(client, push_body("develop"))

    assert r.status_code == 200
    assert "develop" in r.text
    mock_sync.assert_not_called()
    assert repo.last_pull is None
    assert repo.last_commit == ""
    assert not repo.cloned


def test_invalid_signature_is_rejected(client: TestClient, repo: Repo) -> None:
    body = push_body("main")
    r = client.post(
        "/hooks/site",
        content=body,
        headers={"X-GitHub-Event": "push", "X-Hub-Signature-256": "sha256=" + "0" * 64},
    )

    assert r.status_code == 403
    repo.pull.assert_not_called()


def test_missing_signature_is_rejected(client: TestClient, repo: Repo) -> None:
    r = client.post(
        "/hooks/site", content=push_body("main"), headers={"X-GitHub-Event": "push"}
    )

    assert r.status_code == 403
    repo.pull.assert_not_called()


def test_legacy_sha1_signature(client: TestClient, repo: Repo) -> None:
    body = push_body("main")
    r = client.post(
        "/hooks/site",
        content=body,
        headers={
            "X-GitHub-Event": "push",
            "X-Hub-Signature": "sha1=" + sign(body, "sha1"),
        },
    )

    assert r.status_code == 200
    repo.pull.assert_called_once()


def test_ping_is_acknowledged(client: TestClient, repo: Repo) -> None:
    body = json.dumps({"zen": "Keep it logically awesome."}).encode()
    r = github_post(client, body, event="ping")

    assert r.status_code == 200
    repo.pull.assert_not_called()


def test_tag_push_is_ignored(client: TestClient, repo: Repo) -> None:
    body = json.dumps({"ref": "refs/tags/v1.0.0"}).encode()
    r = github_post(client, body)

    assert r.status_code == 200
    repo.pull.assert_not_called()


def test_malformed_payload_is_rejected(client: TestClient, repo: Repo) -> None:
    r = github_post(client, b"not json")

    assert r.status_code == 400
    repo.pull.assert_not_called()


def test_non_post_is_rejected(client: TestClient, repo: Repo) -> None:
    r = client.get("/hooks/site")

    assert r.status_code == 405
    repo.pull.assert_not_called()


def test_pull_failure_is_reported(client: TestClient, repo: Repo) -> None:
    """Verifies that the response reflects a failed pull."""
    repo.pull.side_effect = SyncError("Git error: could not resolve host")

    r = github_post(client, push_body("main"))

    assert r.status_code == 500
    assert "could not resolve host" in r.text


def test_unmatched_paths_pass_through(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that the middleware is transparent to unrelated traffic."""

    async def downstream(_request: Request) -> PlainTextResponse:
        return PlainTextResponse("downstream")

    repo = make_repo(tmp_path)
    mocker.patch.object(repo, "pull")
    app = Starlette(
        routes=[Route("/other", downstream, methods=["GET", "POST"])],
        middleware=[Middleware(WebhookMiddleware, repos=[repo])],
    )
    client = TestClient(app)

    assert client.get("/other").text == "downstream"
    assert client.post("/other", content=push_body("main")).text == "downstream"
    assert client.get("/missing").status_code == 404
    repo.pull.assert_not_called()


def test_health(client: TestClient) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json()["status"] == "ok"


def test_routes_to_matching_repository(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that each request reaches only the repository owning its path."""
    site = make_repo(tmp_path, hook_type=HookType.GENERIC, secret="", hook_url="/a")
    docs = make_repo(tmp_path, hook_type=HookType.GENERIC, secret="", hook_url="/b")
    mocker.patch.object(site, "pull")
    mocker.patch.object(docs, "pull")
    client = TestClient(create_app([site, docs]))

    r = client.post("/b", content=push_body("main"))

    assert r.status_code == 200
    docs.pull.assert_called_once()
    site.pull.assert_not_called()


# Providers


def test_gitlab_token(tmp_path: Path, mocker: MagicMock) -> None:
    repo = make_repo(tmp_path, hook_type=HookType.GITLAB)
    mocker.patch.object(repo, "pull")
    client = TestClient(create_app([repo]))
    headers = {"X-Gitlab-Event": "Push Hook"}

    r = client.post(
        "/hooks/site",
        content=push_body("main"),
        headers={**headers, "X-Gitlab-Token": "wrong"},
    )
    assert r.status_code == 403
    repo.pull.assert_not_called()

    r = client.post(
        "/hooks/site",
        content=push_body("main"),
        headers={**headers, "X-Gitlab-Token": SECRET},
    )
    assert r.status_code == 200
    repo.pull.assert_called_once()


@pytest.mark.parametrize(
    ("hook_type", "event_header", "sig_header"),
    [
        (HookType.GITEA, "X-Gitea-Event", "X-Gitea-Signature"),
        (HookType.GOGS, "X-Gogs-Event", "X-Gogs-Signature"),
    ],
)
def test_gitea_and_gogs_signatures(
    tmp_path: Path,
    mocker: MagicMock,
    hook_type: HookType,
    event_header: str,
    sig_header: str,
) -> None:
    repo = make_repo(tmp_path, hook_type=hook_type)
    mocker.patch.object(repo, "pull")
    client = TestClient(create_app([repo]))
    body = push_body("main")

    r = client.post(
        "/hooks/site", content=body, headers={event_header: "push", sig_header: "bad"}
    )
    assert r.status_code == 403

    r = client.post(
        "/hooks/site",
        content=body,
        headers={event_header: "push", sig_header: sign(body)},
    )
    assert r.status_code == 200
    repo.pull.assert_called_once()


def test_bitbucket_push(tmp_path: Path, mocker: MagicMock) -> None:
    repo = make_repo(tmp_path, hook_type=HookType.BITBUCKET, secret="")
    mocker.patch.object(repo, "pull")
    client = TestClient(create_app([repo]))

    def payload(branch: str) -> bytes:
        return json.dumps(
            {"push": {"changes": [{"new": {"type": "branch", "name": branch}}]}}
        ).encode()

    r = client.post(
        "/hooks/site", content=payload("develop"), headers={"X-Event-Key": "repo:push"}
    )
    assert r.status_code == 200
    repo.pull.assert_not_called()

    r = client.post(
        "/hooks/site", content=payload("main"), headers={"X-Event-Key": "repo:push"}
    )
    assert r.status_code == 200
    repo.pull.assert_called_once()

    r = client.post(
        "/hooks/site", content=b"{}", headers={"X-Event-Key": "repo:push"}
    )
    assert r.status_code == 400


def test_generic_hook_with_token(tmp_path: Path, mocker: MagicMock) -> None:
    repo = make_repo(tmp_path, hook_type=HookType.GENERIC)
    mocker.patch.object(repo, "pull")
    client = TestClient(create_app([repo]))

    r = client.post("/hooks/site", content=push_body("main"))
    assert r.status_code == 403

    r = client.post(
        "/hooks/site", content=push_body("main"), headers={"X-Webhook-Token": SECRET}
    )
    assert r.status_code == 200
    repo.pull.assert_called_once()


def test_auto_detected_provider(tmp_path: Path, mocker: MagicMock) -> None:
    """Verifies that an untyped hook picks the provider from the request headers."""
    repo = make_repo(tmp_path, hook_type=None)
    mocker.patch.object(repo, "pull")
    client = TestClient(create_app([repo]))

    r = github_post(client, push_body("main"))

    assert r.status_code == 200
    repo.pull.assert_called_once()


def test_get_provider_detection() -> None:
    assert isinstance(get_provider(None, {"x-github-event": "push"}), GithubHook)
    assert isinstance(get_provider(None, {"x-gogs-event": "push"}), GogsHook)
    assert isinstance(
        get_provider(
            None,
            {"x-github-event": "push", "x-gogs-event": "push", "x-gitea-event": "push"},
        ),
        GiteaHook,
    )
    assert isinstance(get_provider(None, {"x-event-key": "repo:push"}), BitbucketHook)
    assert isinstance(get_provider(None, {}), GenericHook)
    assert isinstance(get_provider(HookType.GITHUB, {}), GithubHook)


def test_signature_helper_matches_github_format() -> None:
    body = b'{"ref": "refs/heads/main"}'
    expected = "sha256=" + hmac.new(SECRET.encode(), body, hashlib.sha256).hexdigest()
    GithubHook().validate({"x-hub-signature-256": expected}, body, SECRET)
