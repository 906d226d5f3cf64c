"""
Tests for the GitHub client and keep-preview protection lookup.
"""

from unittest.mock import Mock

import pytest
import requests

from previewctl.errors import GitHubError
from previewctl.github import MINIMIZE_COMMENT_MUTATION, GitHubClient, ProtectionLookup


def _response(status=200, payload=None, links=None):
    response = Mock()
    response.ok = status < 400
    response.status_code = status
    response.json.return_value = payload
    response.text = str(payload)
    response.links = links or {}
    return response


@pytest.fixture
def session():
    session = Mock()
    session.headers = {}
    return session


@pytest.fixture
def client(session):
    return GitHubClient("token", "acme/shop", session=session)


class TestGitHubClient:
    """Test REST and GraphQL calls."""

    def test_requires_owner_and_repo(self):
        with pytest.raises(ValueError):
            GitHubClient("token", "shop", session=Mock(headers={}))

    def test_sets_auth_header(self, client, session):
        assert session.headers["Authorization"] == "Bearer token"
        assert client.repository == "acme/shop"

    def test_get_pull_request(self, client, session):
        session.request.return_value = _response(payload={"number": 42})

        assert client.get_pull_request(42) == {"number": 42}
        session.request.assert_called_once_with(
            "GET", "https://api.github.com/repos/acme/shop/pulls/42", timeout=10
        )

    def test_comments_follow_pagination(self, client, session):
        """All pages are fetched through the Link header."""
        next_url = "https://api.github.com/repositories/1/issues/42/comments?page=2"
        session.request.side_effect = [
            _response(payload=[{"id": 1}], links={"next": {"url": next_url}}),
            _response(payload=[{"id": 2}]),
        ]

        comments = client.list_issue_comments(42)

        assert [c["id"] for c in comments] == [1, 2]
        second = session.request.call_args_list[1]
        assert second.args == ("GET", next_url)
        assert second.kwargs["params"] is None

    def test_http_error_raises(self, client, session):
        session.request.return_value = _response(status=404, payload={"message": "Not Found"})

        with pytest.raises(GitHubError) as exc_info:
            client.get_pull_request(1)
        assert exc_info.value.status_code == 404

    def test_transport_error_raises(self, client, session):
        session.request.side_effect = requests.ConnectionError("refused")

        with pytest.raises(GitHubError, match="refused"):
            client.create_comment(1, "hi")

    def test_graphql_errors_raise(self, client, session):
        session.request.return_value = _response(payload={"errors": [{"message": "Could not resolve"}]})

        with pytest.raises(GitHubError, match="Could not resolve"):
            client.minimize_comment("IC_1")

    def test_minimize_comment_sends_node_id(self, client, session):
        session.request.return_value = _response(payload={"data": {}})

        client.minimize_comment("IC_1")

        kwargs = session.request.call_args.kwargs
        assert kwargs["json"] == {"query": MINIMIZE_COMMENT_MUTATION, "variables": {"nodeId": "IC_1"}}

    def test_list_deployments(self, client, session):
        session.request.return_value = _response(payload=[{"id": 7}])

        assert client.list_deployments("preview") == [{"id": 7}]
        assert session.request.call_args.kwargs["params"] == {"environment": "preview", "per_page": 1}

    def test_non_json_body_raises(self, client, session):
        """A 2xx answer that is not JSON, such as a proxy error page, is a client error."""
        response = _response(payload=None)
        response.url = "https://api.github.com/repos/acme/shop/pulls/42"
        response.json.side_effect = ValueError("Expecting value")
        session.request.return_value = response

        with pytest.raises(GitHubError, match="Invalid JSON in response") as exc_info:
            client.get_pull_request(42)
        assert exc_info.value.status_code == 200


class TestProtectionLookup:
    """Test the keep-preview label check."""

    def test_labelled_pull_request_is_protected(self):
        client = Mock()
        client.get_pull_request.return_value = {"labels": [{"name": "bug"}, {"name": "keep-preview"}]}
        assert ProtectionLookup(client).is_protected(42)

    def test_unlabelled_pull_request(self):
        client = Mock()
        client.get_pull_request.return_value = {"labels": []}
        assert not ProtectionLookup(client).is_protected(42)

    def test_no_client(self):
        assert not ProtectionLookup(None).is_protected(42)

    def test_no_subject(self):
        client = Mock()
        assert not ProtectionLookup(client).is_protected(None)
        client.get_pull_request.assert_not_called()

    def test_missing_pull_request(self, caplog):
        """A deleted pull request never blocks cleanup."""
        client = Mock()
        client.get_pull_request.side_effect = GitHubError("Not Found", status_code=404)
        assert not ProtectionLookup(client).is_protected(42)
        assert "WARNING" not in caplog.text

    def test_lookup_failure_warns(self, caplog):
        client = Mock()
        client.get_pull_request.side_effect = GitHubError("Bad credentials", status_code=401)
        assert not ProtectionLookup(client).is_protected(42)
        assert "Failed to check labels for PR #42" in caplog.text

    def test_non_json_answer_is_not_protected(self, client, session, caplog):
        """An unreadable pull request payload is treated like any other lookup failure."""
        response = _response(payload=None)
        response.json.side_effect = ValueError("Expecting value")
        session.request.return_value = response

        assert not ProtectionLookup(client).is_protected(42)
        assert "Failed to check labels for PR #42" in caplog.text
