"""
GitHub integration for the PR phase.

Provides utilities for interacting with GitHub via the gh CLI. Every function
returns a result object with an error field instead of raising; PRAdapter
bundles them for the workflow engine.
"""

import json
import logging
import re
import subprocess
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import NamedTuple, Optional

from storyforge.git.branch import get_current_branch, is_default_branch

logger = logging.getLogger(__name__)


# Timeout for GitHub CLI operations (seconds)
GH_TIMEOUT_SECONDS = 30

_URL_PATTERN = re.compile(r"https://\S+")

UNRESOLVED_THREADS_QUERY = """
query($owner: String!, $repo: String!, $number: Int!) {
  repository(owner: $owner, name: $repo) {
    pullRequest(number: $number) {
      reviewThreads(first: 100) {
        nodes {
          id
          isResolved
          path
          line
          comments(first: 10) {
            nodes {
              author { login }
              body
            }
          }
        }
      }
    }
  }
}
"""


class PRInfo(NamedTuple):
    """An open pull request."""
    number: int
    title: str
    url: str
    head: str


class DetectOutcome(Enum):
    FOUND = "found"
    ON_DEFAULT_BRANCH = "on_default_branch"
    NO_PR_FOR_BRANCH = "no_pr_for_branch"
    ERROR = "error"


class PRDetection(NamedTuple):
    outcome: DetectOutcome
    pr: Optional[PRInfo] = None
    error: Optional[str] = None


class CreateOutcome(Enum):
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    ERROR = "error"


class PRCreateResult(NamedTuple):
    outcome: CreateOutcome
    url: Optional[str] = None
    error: Optional[str] = None


class PRUpdateResult(NamedTuple):
    url: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class PRComment:
    """One unresolved review comment."""
    author: str
    body: str
    file_path: Optional[str] = None
    line: Optional[int] = None
    thread_id: Optional[str] = None
    is_review_thread: bool = True


class PRCommentsResult(NamedTuple):
    comments: list[PRComment]
    error: Optional[str] = None


class PRListResult(NamedTuple):
    prs: list[PRInfo]
    error: Optional[str] = None


class PRBodyResult(NamedTuple):
    body: str = ""
    error: Optional[str] = None


def _run_gh(args: list[str], repo_path: Path) -> tuple[Optional[subprocess.CompletedProcess], Optional[str]]:
    """Run gh. Returns (result, None) when gh ran, or (None, error) when it could not."""
    try:
        result = subprocess.run(
            ["gh"] + args,
            capture_output=True,
            text=True,
            cwd=str(repo_path),
            timeout=GH_TIMEOUT_SECONDS,
        )
        return result, None
    except FileNotFoundError:
        return None, "GitHub CLI (gh) not found"
    except subprocess.TimeoutExpired:
        return None, f"gh {args[0]} {args[1] if len(args) > 1 else ''}".rstrip() + " timed out"
    except subprocess.SubprocessError as e:
        return None, f"gh failed: {e}"


def check_gh_available(repo_path: Path) -> tuple[bool, str]:
    """Check gh CLI is installed and authenticated.

    Returns: (ok, error_message)
    """
    result, error = _run_gh(["auth", "status"], repo_path)
    if error:
        return False, error
    if result.returncode != 0:
        return False, "GitHub CLI not authenticated\n  Run: gh auth login"
    return True, ""


def detect_pr_for_branch(repo_path: Path, branch: Optional[str] = None) -> PRDetection:
    """Find the open PR whose head is branch (default: the current branch)."""
    if branch is None:
        branch = get_current_branch(repo_path)
        if branch is None:
            return PRDetection(DetectOutcome.ERROR, error="detached HEAD, no branch to look up")

    if is_default_branch(branch):
        return PRDetection(DetectOutcome.ON_DEFAULT_BRANCH)

    result, error = _run_gh(
        ["pr", "list", "--head", branch, "--state", "open", "--json", "number,title,headRefName,url"],
        repo_path,
    )
    if error:
        return PRDetection(DetectOutcome.ERROR, error=error)
    if result.returncode != 0:
        return PRDetection(DetectOutcome.ERROR, error=result.stderr.strip() or "gh pr list failed")

    try:
        prs = json.loads(result.stdout or "[]")
    except json.JSONDecodeError:
        return PRDetection(DetectOutcome.ERROR, error="Invalid JSON from gh")

    if not prs:
        return PRDetection(DetectOutcome.NO_PR_FOR_BRANCH)

    return PRDetection(DetectOutcome.FOUND, pr=_pr_info(prs[0], branch))


def _pr_info(data: dict, head: str = "") -> PRInfo:
    return PRInfo(
        number=int(data.get("number", 0)),
        title=data.get("title", ""),
        url=data.get("url", ""),
        head=data.get("headRefName", head),
    )


def list_open_prs(repo_path: Path) -> PRListResult:
    """All open PRs in the repository, as gh orders them (newest first)."""
    result, error = _run_gh(
        ["pr", "list", "--state", "open", "--json", "number,title,headRefName,url"],
        repo_path,
    )
    if error:
        return PRListResult([], error=error)
    if result.returncode != 0:
        return PRListResult([], error=result.stderr.strip() or "gh pr list failed")

    try:
        prs = json.loads(result.stdout or "[]")
    except json.JSONDecodeError:
        return PRListResult([], error="Invalid JSON from gh")

    # Entries without a head branch cannot be checked out
    return PRListResult([_pr_info(pr) for pr in prs if pr.get("number") and pr.get("headRefName")])


def pr_body(repo_path: Path, number: int) -> PRBodyResult:
    """The description of PR `number`."""
    result, error = _run_gh(["pr", "view", str(number), "--json", "body"], repo_path)
    if error:
        return PRBodyResult(error=error)
    if result.returncode != 0:
        return PRBodyResult(error=f"Failed to read PR #{number}: {result.stderr.strip()}")
    try:
        return PRBodyResult(body=json.loads(result.stdout).get("body") or "")
    except (json.JSONDecodeError, AttributeError):
        return PRBodyResult(error="Invalid JSON from gh")


def create_pr(
    repo_path: Path,
    title: str,
    body: str,
    draft: bool = False,
    head: Optional[str] = None,
) -> PRCreateResult:
    """Create a PR for the current branch.

    gh refuses when a PR already exists for the head branch; that case is
    reported as ALREADY_EXISTS with the existing URL.
    """
    args = ["pr", "create", "--title", title, "--body", body]
    if head:
        args += ["--head", head]
    if draft:
        args.append("--draft")

    result, error = _run_gh(args, repo_path)
    if error:
        return PRCreateResult(CreateOutcome.ERROR, error=error)

    if result.returncode != 0:
        stderr = result.stderr.strip()
        if "already exists" in stderr:
            match = _URL_PATTERN.search(stderr)
            return PRCreateResult(CreateOutcome.ALREADY_EXISTS, url=match.group(0) if match else None)
        return PRCreateResult(CreateOutcome.ERROR, error=f"Failed to create PR: {stderr}")

    match = _URL_PATTERN.search(result.stdout)
    url = match.group(0) if match else result.stdout.strip()
    return PRCreateResult(CreateOutcome.CREATED, url=url)


def update_pr_body(repo_path: Path, number: int, body: str) -> PRUpdateResult:
    """Replace a PR's description and return its URL."""
    result, error = _run_gh(["pr", "edit", str(number), "--body", body], repo_path)
    if error:
        return PRUpdateResult(error=error)
    if result.returncode != 0:
        return PRUpdateResult(error=f"Failed to update PR #{number}: {result.stderr.strip()}")

    view, error = _run_gh(["pr", "view", str(number), "--json", "url"], repo_path)
    if error is None and view.returncode == 0:
        try:
            url = json.loads(view.stdout).get("url")
            if url:
                return PRUpdateResult(url=url)
        except json.JSONDecodeError:
            pass
    return PRUpdateResult(url=f"PR #{number}")


def parse_review_threads(data: dict) -> list[PRComment]:
    """Turn a reviewThreads GraphQL response into unresolved comments."""
    node = data
    for key in ("data", "repository", "pullRequest", "reviewThreads"):
        node = node.get(key) or {}
    threads = node.get("nodes") or []

    comments = []
    for thread in threads:
        # Missing isResolved counts as resolved
        if thread.get("isResolved", True):
            continue
        for comment in (thread.get("comments") or {}).get("nodes", []) or []:
            body = comment.get("body") or ""
            if not body.strip():
                continue
            comments.append(PRComment(
                author=((comment.get("author") or {}).get("login")) or "unknown",
                body=body,
                file_path=thread.get("path"),
                line=thread.get("line"),
                thread_id=thread.get("id"),
                is_review_thread=True,
            ))
    return comments


def unresolved_comments(repo_path: Path, number: int) -> PRCommentsResult:
    """Fetch comments from review threads that are not yet resolved."""
    result, error = _run_gh(
        [
            "api", "graphql",
            "-f", f"query={UNRESOLVED_THREADS_QUERY}",
            "-F", "owner={owner}",
            "-F", "repo={repo}",
            "-F", f"number={number}",
        ],
        repo_path,
    )
    if error:
        return PRCommentsResult([], error=error)
    if result.returncode != 0:
        return PRCommentsResult([], error=result.stderr.strip() or "gh api graphql failed")

    try:
        data = json.loads(result.stdout)
    except json.JSONDecodeError:
        return PRCommentsResult([], error="Invalid JSON from gh")
    return PRCommentsResult(parse_review_threads(data))


class PRAdapter:
    """gh operations against one repository, for the workflow engine."""

    def __init__(self, repo_path: Path):
        self.repo_path = repo_path

    def detect_pr_for_branch(self, branch: Optional[str] = None) -> PRDetection:
        return detect_pr_for_branch(self.repo_path, branch)

    def create_pr(self, title: str, body: str, draft: bool = False, head: Optional[str] = None) -> PRCreateResult:
        return create_pr(self.repo_path, title, body, draft=draft, head=head)

    def update_pr_body(self, number: int, body: str) -> PRUpdateResult:
        return update_pr_body(self.repo_path, number, body)

    def unresolved_comments(self, number: int) -> PRCommentsResult:
        return unresolved_comments(self.repo_path, number)

    def list_open_prs(self) -> PRListResult:
        return list_open_prs(self.repo_path)

    def pr_body(self, number: int) -> PRBodyResult:
        return pr_body(self.repo_path, number)
