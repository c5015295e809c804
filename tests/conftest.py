"""Test configuration and fixtures."""

from typing import Dict, List, Optional
from unittest.mock import Mock, patch

import pytest
from github.GithubException import UnknownObjectException

from main import Config


def make_milestone(number: int, title: str, state: str = "open") -> Mock:
    milestone = Mock()
    milestone.number = number
    milestone.title = title
    milestone.state = state
    return milestone


class FakeRepo:
    """In-memory stand-in for a PyGithub Repository.

    Issues are Mocks whose ``edit`` records the milestone so that re-reading the
    issue shows what was written.
    """

    def __init__(self, milestones: List[Mock], full_name: str = "octo/widgets"):
        self.full_name = full_name
        self.milestones = milestones
        self.issues: Dict[int, Mock] = {}
        self.edits: List[tuple] = []
        self.config_yaml: Optional[bytes] = None

    def add_issue(self, number: int, state: str = "closed", body: Optional[str] = None, milestone=None) -> Mock:
        issue = Mock()
        issue.number = number
        issue.state = state
        issue.body = body
        issue.milestone = milestone

        def edit(milestone=None):
            self.edits.append((number, milestone.number))
            issue.milestone = milestone

        issue.edit.side_effect = edit
        self.issues[number] = issue
        return issue

    def get_milestones(self, state="open"):
        return iter(self.milestones)

    def get_milestone(self, number: int) -> Mock:
        for milestone in self.milestones:
            if milestone.number == number:
                return milestone
        raise UnknownObjectException(404, {"message": "Not Found"}, None)

    def get_issue(self, number: int) -> Mock:
        if number not in self.issues:
            raise UnknownObjectException(404, {"message": "Not Found"}, None)
        return self.issues[number]

    def get_contents(self, path: str):
        if self.config_yaml is None:
            raise UnknownObjectException(404, {"message": "Not Found"}, None)
        contents = Mock()
        contents.decoded_content = self.config_yaml
        return contents


@pytest.fixture
def cfg() -> Config:
    return Config(token="test_token", owner="octo", repo="widgets", pr_number=10)


@pytest.fixture
def github_for():
    """Patch main.Github so that run() talks to the given FakeRepo."""
    patchers = []

    def _install(repo: FakeRepo) -> Mock:
        patcher = patch("main.Github")
        mock_github_class = patcher.start()
        patchers.append(patcher)
        mock_github_class.return_value.get_repo.return_value = repo
        return mock_github_class

    yield _install
    for patcher in patchers:
        patcher.stop()
