"""
Milestone board report: classify workspace issues into ZenHub board pipelines
and roll up estimate points for one milestone.

Flow: build_board_index -> classify_issues -> build_report -> render_report.
Everything here works on already-fetched data (see zenhub_client.py) and has no I/O.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

CLOSED_STAGE_NAME = "Closed"
# Stage names whose points count as completed work
CLOSED_STAGE_NAMES = frozenset({"Done", "Closed"})
SECTION_SEPARATOR = " "


class BoardDataError(ValueError):
    """Board or issue payload is missing a field the report needs."""


def _require(obj: Any, key: str, where: str):
    if not isinstance(obj, dict) or key not in obj or obj[key] is None:
        raise BoardDataError(f"{where}: missing required field '{key}'")
    return obj[key]


def _identity(issue: dict) -> tuple:
    return (_require(issue, "repo_id", "issue"), _require(issue, "number", "issue"))


# ----------------------------
# Data model
# ----------------------------
@dataclass
class Stage:
    name: str
    issues: list[dict] = field(default_factory=list)
    synthetic: bool = False


@dataclass
class StageSection:
    name: str
    total_points: float
    issues: list[dict]

    @property
    def is_closed(self) -> bool:
        return self.name in CLOSED_STAGE_NAMES


@dataclass
class PointTotals:
    open: float = 0
    closed: float = 0

    def add(self, stage_name: str, points: float) -> None:
        if stage_name in CLOSED_STAGE_NAMES:
            self.closed += points
        else:
            self.open += points


@dataclass
class Report:
    milestone: str
    sections: list[StageSection]
    totals: PointTotals

    @property
    def open_points(self) -> float:
        return self.totals.open

    @property
    def closed_points(self) -> float:
        return self.totals.closed

    @property
    def total_points(self) -> float:
        return self.totals.open + self.totals.closed

    def to_dict(self) -> dict:
        return {
            "milestone": self.milestone,
            "sections": [
                {
                    "name": s.name,
                    "total_points": s.total_points,
                    "issues": [f"{i.get('repo_name')}#{i.get('number')}" for i in s.issues],
                }
                for s in self.sections
            ],
            "open": self.open_points,
            "closed": self.closed_points,
        }


# ----------------------------
# Board index
# ----------------------------
def pipeline_names(board: dict) -> list[str]:
    return [_require(p, "name", "pipeline") for p in _require(board, "pipelines", "board")]


def _iter_memberships(board: dict):
    for idx, pipeline in enumerate(_require(board, "pipelines", "board")):
        name = _require(pipeline, "name", "pipeline")
        for entry in _require(pipeline, "issues", f"pipeline '{name}'"):
            key = (
                _require(entry, "repo_id", f"pipeline '{name}' issue"),
                _require(entry, "issue_number", f"pipeline '{name}' issue"),
            )
            yield idx, name, key


def build_board_index(board: dict) -> dict[tuple, int]:
    """
    Map (repo_id, issue_number) -> pipeline position (0-based, board order).
    An issue listed in several pipelines keeps the last one.
    """
    index = {}
    for idx, _name, key in _iter_memberships(board):
        index[key] = idx
    return index


def find_duplicate_memberships(board: dict) -> dict[tuple, list[str]]:
    """Issues listed in more than one pipeline -> pipeline names in board order."""
    seen = {}
    for _idx, name, key in _iter_memberships(board):
        seen.setdefault(key, []).append(name)
    return {key: names for key, names in seen.items() if len(names) > 1}


# ----------------------------
# Classification
# ----------------------------
def classify_issues(issues: list[dict], index: dict[tuple, int], stage_names: list[str]) -> list[Stage]:
    """
    Put every non-PR issue in exactly one stage. The last stage is the synthetic
    Closed catch-all: closed issues and issues the board does not place end up there.
    """
    stages = [Stage(name) for name in stage_names]
    closed = Stage(CLOSED_STAGE_NAME, synthetic=True)
    stages.append(closed)

    for issue in issues:
        pr = issue.get("pull_request")
        # the API sends an object (possibly empty) for PRs
        if pr is not None and pr is not False:
            continue
        pos = index.get(_identity(issue))
        state = _require(issue, "state", "issue")
        if pos is not None and state != "closed":
            stages[pos].issues.append(issue)
        else:
            closed.issues.append(issue)
    return stages


# ----------------------------
# Aggregation
# ----------------------------
def in_milestone(issue: dict, milestone: str) -> bool:
    ms = issue.get("milestone")
    return bool(ms) and ms.get("title") == milestone


def get_points(issue: dict) -> float:
    return issue.get("estimate") or 0


def aggregate_stage(stage: Stage, milestone: str) -> tuple[list[dict], float]:
    milestone_issues = [it for it in stage.issues if in_milestone(it, milestone)]
    return milestone_issues, sum(get_points(it) for it in milestone_issues)


def build_report(stages: list[Stage], milestone: str) -> Report:
    totals = PointTotals()
    sections = []
    for stage in stages:
        milestone_issues, points = aggregate_stage(stage, milestone)
        totals.add(stage.name, points)
        sections.append(StageSection(stage.name, points, milestone_issues))
    return Report(milestone, sections, totals)


def run_report(board: dict, issues: list[dict], milestone: str) -> Report:
    index = build_board_index(board)
    stages = classify_issues(issues, index, pipeline_names(board))
    return build_report(stages, milestone)


# ----------------------------
# Rendering
# ----------------------------
def format_points(value) -> str:
    if value is None:
        return "0"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _issue_line(issue: dict) -> str:
    repo_name = _require(issue, "repo_name", "issue")
    number = _require(issue, "number", "issue")
    title = _require(issue, "title", "issue")
    assignee = issue.get("assignee")
    suffix = f" {_require(assignee, 'login', 'assignee')}" if assignee else ""
    return f"{repo_name}#{number}: {title} [{format_points(issue.get('estimate'))} pts]{suffix}"


def render_report(report: Report) -> list[str]:
    lines = []
    for section in report.sections:
        header = f"{section.name} - {format_points(section.total_points)} Points"
        lines.append(header)
        lines.append("-" * len(header))
        if not section.issues:
            lines.append("None")
        for issue in section.issues:
            lines.append(_issue_line(issue))
            lines.append(_require(issue, "html_url", "issue"))
        lines.append(SECTION_SEPARATOR)
    lines.append(f"Total: {format_points(report.open_points)} / {format_points(report.total_points)}")
    return lines


def render_report_text(report: Report) -> str:
    return "\n".join(render_report(report))
