#!/usr/bin/env python3
"""
Cross-repository milestone report for a ZenHub board.

Pulls the board and every workspace repository's issues, sorts the issues into
board pipelines (closed or unplaced issues go to a final "Closed" section) and
prints the estimate points committed to the current milestone, per pipeline.

Usage:
  python milestone_report.py
  python milestone_report.py --milestone "Sprint 12" --summary
  python milestone_report.py --snapshot board_and_issues.json   # no API calls

Config (env or .env): GITHUB_TOKEN, ZENHUB_TOKEN, GITHUB_MASTER_OWNER,
GITHUB_MASTER_REPO, ZENHUB_CURRENT_MILESTONE.
"""
from __future__ import annotations

import argparse
import json
import os
import sys
from dataclasses import dataclass, replace
from pathlib import Path

import pandas as pd
import requests
from dotenv import load_dotenv

from board_report import BoardDataError, Report, find_duplicate_memberships, render_report, run_report
from zenhub_client import (
    DEFAULT_FETCH_WORKERS,
    GITHUB_GRAPHQL_URL,
    ZENHUB_API_URL,
    GitHubClient,
    ZenHubClient,
    fetch_all_issues,
)

# ----------------------------
# Config
# ----------------------------
REQUIRED_API_ENV = ("GITHUB_TOKEN", "ZENHUB_TOKEN", "GITHUB_MASTER_OWNER", "GITHUB_MASTER_REPO")


@dataclass(frozen=True)
class Settings:
    github_token: str | None = None
    zenhub_token: str | None = None
    master_owner: str | None = None
    master_repo: str | None = None
    milestone: str | None = None
    zenhub_url: str = ZENHUB_API_URL
    github_url: str = GITHUB_GRAPHQL_URL
    workers: int = DEFAULT_FETCH_WORKERS

    @classmethod
    def from_env(cls, env=None) -> "Settings":
        env = os.environ if env is None else env
        workers = env.get("ZENHUB_FETCH_WORKERS")
        try:
            workers = int(workers) if workers else DEFAULT_FETCH_WORKERS
        except ValueError:
            raise RuntimeError(f"ZENHUB_FETCH_WORKERS must be an integer, got {workers!r}.")
        return cls(
            github_token=env.get("GITHUB_TOKEN"),
            zenhub_token=env.get("ZENHUB_TOKEN"),
            master_owner=env.get("GITHUB_MASTER_OWNER"),
            master_repo=env.get("GITHUB_MASTER_REPO"),
            milestone=env.get("ZENHUB_CURRENT_MILESTONE"),
            zenhub_url=env.get("ZENHUB_API_URL") or ZENHUB_API_URL,
            github_url=env.get("GITHUB_GRAPHQL_URL") or GITHUB_GRAPHQL_URL,
            workers=workers,
        )

    def validate(self, need_api: bool = True) -> None:
        missing = []
        if need_api:
            values = (self.github_token, self.zenhub_token, self.master_owner, self.master_repo)
            missing = [name for name, v in zip(REQUIRED_API_ENV, values) if not v]
        if self.milestone is None:
            missing.append("ZENHUB_CURRENT_MILESTONE")
        if missing:
            raise RuntimeError(f"Missing env vars. Set {', '.join(missing)}.")
        if self.workers < 1:
            raise RuntimeError("Fetch workers must be at least 1.")

    def masked(self) -> dict:
        def _mask(tok):
            if not tok:
                return tok
            return tok[:4] + "..." if len(tok) > 8 else "***"
        return {
            "github_token": _mask(self.github_token),
            "zenhub_token": _mask(self.zenhub_token),
            "master_owner": self.master_owner,
            "master_repo": self.master_repo,
            "milestone": self.milestone,
            "workers": self.workers,
        }


def _log(msg: str) -> None:
    print(msg, file=sys.stderr, flush=True)


def _utf8_stdout() -> None:
    """Report text is UTF-8 whatever the console codepage (e.g. cp1252 on Windows, redirected output)."""
    reconfigure = getattr(sys.stdout, "reconfigure", None)
    if reconfigure is not None:
        reconfigure(encoding="utf-8")


# ----------------------------
# Data gathering
# ----------------------------
def load_snapshot(path: Path) -> tuple[dict, list[dict]]:
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict) or "board" not in data or "issues" not in data:
        raise BoardDataError(f"{path}: snapshot must be an object with 'board' and 'issues'")
    return data["board"], data["issues"]


def fetch_board_and_issues(settings: Settings, verbose: bool = False) -> tuple[dict, list[dict]]:
    github = GitHubClient(settings.github_token, url=settings.github_url)
    zenhub = ZenHubClient(settings.zenhub_token, base=settings.zenhub_url)

    if verbose:
        _log(f"Looking up {settings.master_owner}/{settings.master_repo}...")
    master_id = github.get_repo_database_id(settings.master_owner, settings.master_repo)

    if verbose:
        _log(f"Pulling ZenHub workspace and board for repo {master_id}...")
    workspace = zenhub.get_workspace(master_id)
    board = zenhub.get_board(master_id)

    issues = fetch_all_issues(zenhub, workspace, max_workers=settings.workers)
    if verbose:
        _log(f"Fetched {len(issues)} issues from {len(workspace.get('repos') or [])} repositories.")
    return board, issues


# ----------------------------
# Output
# ----------------------------
def summary_frame(report: Report) -> pd.DataFrame:
    rows = [
        {
            "stage": s.name,
            "issues": len(s.issues),
            "points": s.total_points,
            "bucket": "closed" if s.is_closed else "open",
        }
        for s in report.sections
    ]
    return pd.DataFrame(rows, columns=["stage", "issues", "points", "bucket"])


def warn_duplicates(board: dict) -> None:
    for (repo_id, number), names in find_duplicate_memberships(board).items():
        _log(f"Warning: issue {repo_id}#{number} is listed in several pipelines ({', '.join(names)}); using '{names[-1]}'.")


# ----------------------------
# Main
# ----------------------------
def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(
        description="Print milestone points per ZenHub pipeline across all workspace repositories."
    )
    ap.add_argument("--milestone", help="Milestone title to report on (default: ZENHUB_CURRENT_MILESTONE).")
    ap.add_argument("--owner", help="Owner of the master repository (default: GITHUB_MASTER_OWNER).")
    ap.add_argument("--repo", help="Name of the master repository (default: GITHUB_MASTER_REPO).")
    ap.add_argument(
        "--workers",
        type=int,
        metavar="N",
        help=f"Parallel issue fetches (default: ZENHUB_FETCH_WORKERS or {DEFAULT_FETCH_WORKERS}).",
    )
    ap.add_argument(
        "--snapshot",
        type=Path,
        metavar="PATH",
        help="Read board and issues from a JSON file ({\"board\": ..., \"issues\": [...]}) instead of the APIs.",
    )
    ap.add_argument("--summary", action="store_true", help="Also print a per-pipeline summary table.")
    ap.add_argument("--verbose", "-v", action="store_true", help="Progress messages on stderr.")
    return ap


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    load_dotenv()

    try:
        settings = Settings.from_env()
        overrides = {
            "milestone": args.milestone,
            "master_owner": args.owner,
            "master_repo": args.repo,
            "workers": args.workers,
        }
        settings = replace(settings, **{k: v for k, v in overrides.items() if v is not None})
        settings.validate(need_api=args.snapshot is None)
        if args.verbose:
            _log(f"Settings: {settings.masked()}")

        if args.snapshot is not None:
            board, issues = load_snapshot(args.snapshot)
        else:
            board, issues = fetch_board_and_issues(settings, verbose=args.verbose)

        warn_duplicates(board)
        report = run_report(board, issues, settings.milestone)
        lines = render_report(report)
    except (RuntimeError, BoardDataError, requests.RequestException, OSError, json.JSONDecodeError) as e:
        _log(f"Error: {e}")
        return 1

    _utf8_stdout()
    for line in lines:
        print(line)

    if args.summary:
        print()
        print(summary_frame(report).to_string(index=False))
    return 0


if __name__ == "__main__":
    sys.exit(main())
