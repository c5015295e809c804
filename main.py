#!/usr/bin/env python3
"""
Merged PR -> release milestone agent
Runs when a pull request merges into main. Links the PR, and the issue it closes, to the
lowest open version milestone unless they already carry one.
Adds per-repo optional config at .github/pr-milestone.yml
"""

import os
import sys
import logging
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
import requests
import yaml
from github import Auth, Github, GithubException, UnknownObjectException
from decision import DEFAULT_MILESTONE_PREFIX, find_linked_issue, select_lowest_milestone, should_apply_milestone

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s: %(message)s")
logger = logging.getLogger("pr-milestone-agent")

REPO_CONFIG_PATH = ".github/pr-milestone.yml"
DEFAULT_API_URL = "https://api.github.com"
MODES = {"apply", "dry-run"}
TRUTHY = {"1", "true", "yes", "on"}
PR_NUMBER = re.compile(r"^[0-9]+$")

def _log(message: str) -> None:
    print(message)

def _elog(message: str) -> None:
    print(message, file=sys.stderr)

class AgentError(Exception):
    pass

class ConfigInvalid(AgentError):
    pass

class NoOpenMilestone(AgentError):
    pass

class TrackerUnavailable(AgentError):
    def __init__(self, context: str, cause: Exception, issue_id: Optional[int] = None):
        super().__init__(f"{context}: {cause}")
        self.context = context
        self.cause = cause
        self.issue_id = issue_id

# PyGithub raises GithubException for API errors; transport failures come through as requests errors.
TRACKER_ERRORS = (GithubException, requests.RequestException)

@dataclass(frozen=True)
class IssueRef:
    owner: str
    repo: str
    id: int

    def __str__(self) -> str:
        return f"{self.owner}/{self.repo}#{self.id}"

@dataclass(frozen=True)
class Config:
    token: str
    owner: str
    repo: str
    pr_number: int
    api_url: str = DEFAULT_API_URL
    mode: str = "apply"
    verbose: bool = False
    local_config_path: Optional[str] = None
    page_size: int = 50

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @property
    def dry_run(self) -> bool:
        return self.mode == "dry-run"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] = os.environ) -> "Config":
        token = (environ.get("GITHUB_TOKEN") or "").strip()
        if not token:
            raise ConfigInvalid("GITHUB_TOKEN required")

        repository = (environ.get("GITHUB_REPOSITORY") or "").strip()
        owner, _, repo = repository.partition("/")
        if not owner or not repo or "/" in repo:
            raise ConfigInvalid(f"GITHUB_REPOSITORY must look like owner/repo, got {repository!r}")

        raw_pr = (environ.get("PR_NUMBER") or "").strip()
        if not PR_NUMBER.match(raw_pr):
            raise ConfigInvalid(f"parsing pr number: {raw_pr!r} is not an integer")
        pr_number = int(raw_pr)
        if pr_number <= 0:
            raise ConfigInvalid(f"parsing pr number: {pr_number} is not a valid PR number")

        mode = environ.get("MODE", "apply").strip().lower()
        if mode not in MODES:
            raise ConfigInvalid(f"MODE must be one of {sorted(MODES)}, got {mode!r}")

        raw_page_size = environ.get("PAGE_SIZE", "50")
        try:
            page_size = int(raw_page_size)
        except ValueError:
            raise ConfigInvalid(f"PAGE_SIZE must be an integer, got {raw_page_size!r}") from None

        return cls(
            token=token,
            owner=owner,
            repo=repo,
            pr_number=pr_number,
            api_url=(environ.get("GITHUB_API_URL") or DEFAULT_API_URL).rstrip("/"),
            mode=mode,
            verbose=environ.get("VERBOSE", "").lower() in TRUTHY,
            local_config_path=environ.get("LOCAL_CONFIG_PATH") or None,
            page_size=page_size,
        )

def connect(cfg: Config) -> Github:
    return Github(auth=Auth.Token(cfg.token), base_url=cfg.api_url, per_page=cfg.page_size)

def load_repo_config(gh_repo, cfg: Config) -> Dict[str, Any]:
    # Defaults apply whenever a repo config omits a key; repo settings override these values.
    defaults = {
        "enabled": True,
        "milestone_prefix": DEFAULT_MILESTONE_PREFIX,
        "link_issues": True,
    }

    def merge_config(raw: Any, source: str) -> Dict[str, Any]:
        if not isinstance(raw, dict):
            logger.debug(f"[CONFIG] Ignoring non-mapping config from {source}")
            return dict(defaults)
        merged = {**defaults, **raw}
        prefix = merged.get("milestone_prefix")
        if not isinstance(prefix, str) or len(prefix) != 1:
            logger.warning(f"[CONFIG] milestone_prefix must be a single character, using {DEFAULT_MILESTONE_PREFIX!r}")
            merged["milestone_prefix"] = DEFAULT_MILESTONE_PREFIX
        for key in ("enabled", "link_issues"):
            if not isinstance(merged.get(key), bool):
                logger.warning(f"[CONFIG] {key} must be true or false, using {defaults[key]}")
                merged[key] = defaults[key]
        logger.debug(f"[CONFIG] Loaded config from {source}")
        return merged

    if cfg.local_config_path:
        if os.path.exists(cfg.local_config_path):
            try:
                with open(cfg.local_config_path, "r") as f:
                    return merge_config(yaml.safe_load(f) or {}, cfg.local_config_path)
            except (OSError, yaml.YAMLError) as e:
                logger.debug(f"[CONFIG] Failed to load local config {cfg.local_config_path}: {e}")
        else:
            logger.debug(f"[CONFIG] Local config path not found: {cfg.local_config_path}")
    try:
        contents = gh_repo.get_contents(REPO_CONFIG_PATH)
    except UnknownObjectException as e:
        logger.debug(f"[CONFIG] Using defaults for {cfg.full_name}: {e}")
        return dict(defaults)
    except TRACKER_ERRORS as e:
        raise TrackerUnavailable(f"loading {REPO_CONFIG_PATH}", e) from e
    # get_contents returns a list when the path is a directory.
    if isinstance(contents, list):
        logger.debug(f"[CONFIG] {REPO_CONFIG_PATH} in {cfg.full_name} is a directory, using defaults")
        return dict(defaults)
    try:
        return merge_config(yaml.safe_load(contents.decoded_content) or {}, f"{REPO_CONFIG_PATH} in {cfg.full_name}")
    except yaml.YAMLError as e:
        logger.debug(f"[CONFIG] Using defaults for {cfg.full_name}: {e}")
        return dict(defaults)

def resolve_milestone(gh_repo, repo_cfg: Dict[str, Any]) -> int:
    try:
        milestones = list(gh_repo.get_milestones(state="open"))
    except TRACKER_ERRORS as e:
        raise TrackerUnavailable("getting milestone id", e) from e

    prefix = repo_cfg.get("milestone_prefix", DEFAULT_MILESTONE_PREFIX)
    milestone = select_lowest_milestone(milestones, prefix)
    if milestone is None:
        raise NoOpenMilestone(f"no open version milestones were found in {gh_repo.full_name}")

    logger.debug(f"[INFO] lowest open version milestone: {milestone.title} (#{milestone.number})")
    return milestone.number

def extract_linked_issue(gh_repo, pr: IssueRef) -> Optional[int]:
    try:
        issue = gh_repo.get_issue(pr.id)
    except TRACKER_ERRORS as e:
        raise TrackerUnavailable(f"getting linked issues for #{pr.id}", e, pr.id) from e

    linked = find_linked_issue(issue.body)
    if linked is None:
        logger.debug(f"[INFO] no closing keywords found in description of #{pr.id}")
    return linked

def apply_milestone(gh_repo, ref: IssueRef, milestone_id: int, cfg: Config) -> bool:
    try:
        issue = gh_repo.get_issue(ref.id)
    except TRACKER_ERRORS as e:
        raise TrackerUnavailable(f"getting issue #{ref.id}", e, ref.id) from e

    apply, reason = should_apply_milestone(issue.state, issue.milestone)
    if not apply:
        _log(f"[SKIP] {ref} {reason}")
        return False

    if cfg.dry_run:
        _log(f"[DRY-RUN] Would set milestone #{milestone_id} on {ref}")
        return False

    try:
        milestone = gh_repo.get_milestone(milestone_id)
        issue.edit(milestone=milestone)
    except TRACKER_ERRORS as e:
        raise TrackerUnavailable(f"updating milestone on issue #{ref.id}", e, ref.id) from e
    _log(f"[INFO] Set milestone {milestone.title} on {ref}")
    return True

def run(cfg: Config) -> List[IssueRef]:
    """Link the merged PR and the issue it closes to the lowest open version milestone.

    Returns the refs that were updated. A repository without open version milestones is
    not an error; nothing is written and the run ends quietly.
    """
    gh = connect(cfg)
    try:
        try:
            gh_repo = gh.get_repo(cfg.full_name)
        except TRACKER_ERRORS as e:
            raise TrackerUnavailable(f"getting repository {cfg.full_name}", e) from e

        repo_cfg = load_repo_config(gh_repo, cfg)
        if not repo_cfg.get("enabled", True):
            _log(f"[SKIP] Disabled by config in {cfg.full_name}")
            return []

        try:
            milestone_id = resolve_milestone(gh_repo, repo_cfg)
        except NoOpenMilestone as e:
            _log(f"[SKIP] {e}")
            return []

        pr = IssueRef(cfg.owner, cfg.repo, cfg.pr_number)
        updated = []
        if apply_milestone(gh_repo, pr, milestone_id, cfg):
            updated.append(pr)

        if repo_cfg.get("link_issues", True):
            linked_id = extract_linked_issue(gh_repo, pr)
            if linked_id is not None:
                linked = IssueRef(cfg.owner, cfg.repo, linked_id)
                if apply_milestone(gh_repo, linked, milestone_id, cfg):
                    updated.append(linked)

        _log(f"Updated {len(updated)} item(s) in {cfg.full_name}: {', '.join(str(r) for r in updated) or 'none'}")
        return updated
    finally:
        gh.close()

def main() -> None:
    try:
        cfg = Config.from_env()
    except ConfigInvalid as e:
        sys.exit(str(e))
    if cfg.verbose:
        logger.setLevel(logging.DEBUG)
    try:
        run(cfg)
    except AgentError as e:
        _elog(f"Error processing PR #{cfg.pr_number} in {cfg.full_name}: {e}")
        sys.exit(1)

if __name__ == "__main__":
    main()
