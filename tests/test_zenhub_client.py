"""
Tests for the GitHub/ZenHub API clients. No live network: requests.Session is mocked.
"""

from unittest.mock import MagicMock

import pytest

from zenhub_client import (
    MASTER_REPO_QUERY,
    GitHubClient,
    ZenHubClient,
    fetch_all_issues,
    workspace_repo_ids,
)


def fake_response(status=200, body=None, text=""):
    r = MagicMock()
    r.status_code = status
    r.json.return_value = body
    r.text = text
    return r


def fake_session(response):
    session = MagicMock()
    session.headers = {}
    session.get.return_value = response
    session.post.return_value = response
    return session


# =============================================================================
# GitHubClient
# =============================================================================


class TestGitHubClient:
    def test_sets_bearer_token(self):
        session = fake_session(fake_response())
        GitHubClient("ghp_secret", session=session)
        assert session.headers["Authorization"] == "Bearer ghp_secret"

    def test_no_token_no_auth_header(self):
        session = fake_session(fake_response())
        GitHubClient(None, session=session)
        assert "Authorization" not in session.headers

    def test_get_repo_database_id(self):
        session = fake_session(fake_response(body={"data": {"repository": {"databaseId": 4242}}}))
        client = GitHubClient("t", url="https://gh.example/graphql", session=session)

        assert client.get_repo_database_id("acme", "main") == 4242
        args, kwargs = session.post.call_args
        assert args[0] == "https://gh.example/graphql"
        assert kwargs["json"] == {"query": MASTER_REPO_QUERY, "variables": {"name": "main", "owner": "acme"}}

    def test_http_error(self):
        session = fake_session(fake_response(status=401, text="Bad credentials"))
        with pytest.raises(RuntimeError, match="401: Bad credentials"):
            GitHubClient("t", session=session).get_repo_database_id("acme", "main")

    def test_graphql_errors(self):
        body = {"data": None, "errors": [{"message": "Could not resolve to a Repository"}]}
        session = fake_session(fake_response(body=body))
        with pytest.raises(RuntimeError, match="Could not resolve"):
            GitHubClient("t", session=session).get_repo_database_id("acme", "nope")

    def test_missing_repository(self):
        session = fake_session(fake_response(body={"data": {"repository": None}}))
        with pytest.raises(RuntimeError, match="acme/main not found"):
            GitHubClient("t", session=session).get_repo_database_id("acme", "main")


# =============================================================================
# ZenHubClient
# =============================================================================


class TestZenHubClient:
    def test_requires_token(self):
        with pytest.raises(RuntimeError, match="ZENHUB_TOKEN"):
            ZenHubClient("")

    def test_headers(self):
        session = fake_session(fake_response(body={}))
        ZenHubClient("zh", session=session)
        assert session.headers["X-Authentication-Token"] == "zh"
        assert session.headers["Content-Type"] == "application/json; charset=utf-8"

    @pytest.mark.parametrize(
        "method, path",
        [
            ("get_workspace", "/v4/repos/77/workspace"),
            ("get_board", "/v3/repos/77/board"),
        ],
    )
    def test_endpoints(self, method, path):
        session = fake_session(fake_response(body={"ok": True}))
        client = ZenHubClient("zh", base="https://zh.example/", session=session)
        assert getattr(client, method)(77) == {"ok": True}
        assert session.get.call_args[0][0] == "https://zh.example" + path

    def test_repo_issues_request_estimates(self):
        session = fake_session(fake_response(body=[]))
        ZenHubClient("zh", session=session).get_repo_issues(5)
        args, kwargs = session.get.call_args
        assert args[0] == "https://api.zenhub.io/v5/repositories/5/issues"
        assert kwargs["params"] == {"epics": 1, "estimates": 1, "connections": 1, "dependencies": 1}

    def test_http_error(self):
        session = fake_session(fake_response(status=404, text="Not Found"))
        with pytest.raises(RuntimeError, match="failed 404"):
            ZenHubClient("zh", session=session).get_board(1)


# =============================================================================
# Fan-out
# =============================================================================


class FakeZenHub:
    def __init__(self, issues_by_repo, fail_on=None):
        self.issues_by_repo = issues_by_repo
        self.fail_on = fail_on

    def get_repo_issues(self, repo_id):
        if repo_id == self.fail_on:
            raise RuntimeError(f"GET repo {repo_id} failed 500")
        return self.issues_by_repo[repo_id]


class TestFetchAllIssues:
    def test_flattens_in_workspace_order(self):
        zh = FakeZenHub({1: [{"number": 1}, {"number": 2}], 2: [], 3: [{"number": 9}]})
        workspace = {"repos": [{"repo_id": 3}, {"repo_id": 1}, {"repo_id": 2}]}
        issues = fetch_all_issues(zh, workspace, max_workers=3)
        assert [i["number"] for i in issues] == [9, 1, 2]

    def test_empty_workspace(self):
        assert fetch_all_issues(FakeZenHub({}), {"repos": []}) == []

    def test_failure_propagates(self):
        zh = FakeZenHub({1: [], 2: []}, fail_on=2)
        with pytest.raises(RuntimeError, match="repo 2"):
            fetch_all_issues(zh, {"repos": [{"repo_id": 1}, {"repo_id": 2}]})

    @pytest.mark.parametrize("body", [None, {"message": "Repository not found"}])
    def test_non_list_response_raises(self, body):
        zh = FakeZenHub({1: [{"number": 1}], 2: body})
        with pytest.raises(RuntimeError, match="repo 2: expected a list"):
            fetch_all_issues(zh, {"repos": [{"repo_id": 1}, {"repo_id": 2}]})

    def test_workers_use_their_own_session(self, monkeypatch):
        main_session = fake_session(fake_response(body=[]))
        worker_sessions = []

        def new_session():
            s = fake_session(fake_response(body=[{"number": len(worker_sessions)}]))
            worker_sessions.append(s)
            return s

        client = ZenHubClient("zh", session=main_session)
        monkeypatch.setattr("zenhub_client.requests.Session", new_session)

        issues = fetch_all_issues(client, {"repos": [{"repo_id": 1}, {"repo_id": 2}]}, max_workers=2)

        assert len(issues) == 2
        main_session.get.assert_not_called()
        assert worker_sessions
        assert all(s.headers["X-Authentication-Token"] == "zh" for s in worker_sessions)

    def test_constructing_thread_uses_given_session(self):
        session = fake_session(fake_response(body={"repos": []}))
        client = ZenHubClient("zh", session=session)
        client.get_workspace(1)
        session.get.assert_called_once()


class TestWorkspaceRepoIds:
    def test_in_order(self):
        assert workspace_repo_ids({"repos": [{"repo_id": 2}, {"repo_id": 1}]}) == [2, 1]

    @pytest.mark.parametrize("entry", [{"name": "x"}, {"repo_id": None}, "x"])
    def test_entry_without_id_raises(self, entry):
        with pytest.raises(RuntimeError, match="entry 1 has no 'repo_id'"):
            workspace_repo_ids({"repos": [{"repo_id": 1}, entry]})

    def test_missing_repos(self):
        with pytest.raises(RuntimeError, match="repos"):
            workspace_repo_ids({"message": "Not found"})
