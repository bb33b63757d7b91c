"""
API clients for the milestone report: GitHub GraphQL (master repo lookup) and
ZenHub REST (workspace, board, per-repo issues).
"""
from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor

import requests

GITHUB_GRAPHQL_URL = "https://api.github.com/graphql"
ZENHUB_API_URL = "https://api.zenhub.io"
DEFAULT_FETCH_WORKERS = 6

MASTER_REPO_QUERY = """
query masterRepo($name: String!, $owner: String!) {
  repository(name: $name, owner: $owner) {
    databaseId
  }
}
"""


# ----------------------------
# GitHub client
# ----------------------------
class GitHubClient:
    def __init__(self, token, url=GITHUB_GRAPHQL_URL, session=None):
        self.url = url
        self.session = session or requests.Session()
        self.session.headers.update({"Accept": "application/json"})
        if token:
            self.session.headers["Authorization"] = f"Bearer {token}"

    def query(self, query, variables=None, timeout=60):
        r = self.session.post(self.url, json={"query": query, "variables": variables or {}}, timeout=timeout)
        if r.status_code >= 400:
            raise RuntimeError(f"POST {self.url} failed {r.status_code}: {r.text[:500]}")
        body = r.json()
        if body.get("errors"):
            messages = "; ".join(e.get("message", "?") for e in body["errors"])
            raise RuntimeError(f"GraphQL query failed: {messages}")
        return body.get("data") or {}

    def get_repo_database_id(self, owner, name):
        data = self.query(MASTER_REPO_QUERY, {"name": name, "owner": owner})
        repo = data.get("repository")
        if not repo or repo.get("databaseId") is None:
            raise RuntimeError(f"Repository {owner}/{name} not found or not accessible.")
        return repo["databaseId"]


# ----------------------------
# ZenHub client
# ----------------------------
class ZenHubClient:
    def __init__(self, token, base=ZENHUB_API_URL, session=None):
        if not token:
            raise RuntimeError("Missing ZenHub token. Set ZENHUB_TOKEN.")
        self.base = base
        self.headers = {
            "X-Authentication-Token": token,
            "Content-Type": "application/json; charset=utf-8",
        }
        self.session = session or requests.Session()
        self.session.headers.update(self.headers)
        self._owner = threading.get_ident()
        self._local = threading.local()

    def _thread_session(self):
        """The constructing thread uses self.session; fetch workers each get their own."""
        if threading.get_ident() == self._owner:
            return self.session
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            session.headers.update(self.headers)
            self._local.session = session
        return session

    def _get(self, path, params=None, timeout=60):
        url = self.base.rstrip("/") + path
        r = self._thread_session().get(url, params=params or {}, timeout=timeout)
        if r.status_code >= 400:
            raise RuntimeError(f"GET {url} failed {r.status_code}: {r.text[:500]}")
        return r.json()

    def get_workspace(self, repo_id):
        return self._get(f"/v4/repos/{repo_id}/workspace")

    def get_board(self, repo_id):
        return self._get(f"/v3/repos/{repo_id}/board")

    def get_repo_issues(self, repo_id):
        """All issues of one repository, with estimates attached."""
        params = {"epics": 1, "estimates": 1, "connections": 1, "dependencies": 1}
        return self._get(f"/v5/repositories/{repo_id}/issues", params=params)


def workspace_repo_ids(workspace: dict) -> list:
    repos = workspace.get("repos") if isinstance(workspace, dict) else None
    if not isinstance(repos, list):
        raise RuntimeError("Workspace response has no 'repos' list.")
    repo_ids = []
    for pos, r in enumerate(repos):
        if not isinstance(r, dict) or r.get("repo_id") is None:
            raise RuntimeError(f"Workspace repo entry {pos} has no 'repo_id': {str(r)[:200]}")
        repo_ids.append(r["repo_id"])
    return repo_ids


def fetch_all_issues(zenhub: ZenHubClient, workspace: dict, max_workers: int = DEFAULT_FETCH_WORKERS) -> list[dict]:
    """
    Fetch every workspace repository's issues in parallel and return them as one
    flat list, in workspace repo order. Returns only after every fetch finished;
    the first failure propagates.
    """
    repo_ids = workspace_repo_ids(workspace)
    if not repo_ids:
        return []
    all_issues = []
    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(repo_ids)))) as pool:
        for repo_id, issues in zip(repo_ids, pool.map(zenhub.get_repo_issues, repo_ids)):
            if not isinstance(issues, list):
                raise RuntimeError(f"Issues for repo {repo_id}: expected a list, got {str(issues)[:200]}")
            all_issues.extend(issues)
    return all_issues
