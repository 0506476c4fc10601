from unittest.mock import MagicMock, patch

import pytest

from autolead.notifier import GitHubNotifier, LogNotifier, NotifierError


def _response(status_code=200, data=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = data if data is not None else {}
    resp.text = str(data)
    return resp


# --- GitHubNotifier ---

@patch("autolead.notifier.httpx.request")
def test_post_comment(mock_request):
    mock_request.return_value = _response(201)
    GitHubNotifier("tok").post_comment("acme/web", 3, "hello")
    method, url = mock_request.call_args[0]
    assert method == "POST"
    assert url == "https://api.github.com/repos/acme/web/issues/3/comments"
    assert mock_request.call_args[1]["json"] == {"body": "hello"}
    assert mock_request.call_args[1]["headers"]["Authorization"] == "Bearer tok"


@patch("autolead.notifier.httpx.request")
def test_error_status_raises(mock_request):
    mock_request.return_value = _response(403, {"message": "Resource not accessible"})
    with pytest.raises(NotifierError, match=r"\(403\).*Resource not accessible"):
        GitHubNotifier("tok").add_label("acme/web", 3, "agent:start")


@patch("autolead.notifier.httpx.request")
def test_remove_missing_label_is_noop(mock_request):
    mock_request.return_value = _response(404, {"message": "Label does not exist"})
    GitHubNotifier("tok").remove_label("acme/web", 3, "agent:start")


@patch("autolead.notifier.httpx.request")
def test_remove_label_other_errors_raise(mock_request):
    mock_request.return_value = _response(500, {"message": "boom"})
    with pytest.raises(NotifierError):
        GitHubNotifier("tok").remove_label("acme/web", 3, "agent:start")


@patch("autolead.notifier.httpx.request")
def test_create_pull_request(mock_request):
    mock_request.return_value = _response(201, {"number": 12, "html_url": "https://github.com/acme/web/pull/12"})
    pr = GitHubNotifier("tok", api_url="https://ghe.local/api/v3/").create_pull_request(
        "acme/web", "Fix", "agent/issue-3", "main", "Closes #3",
    )
    assert pr == {"number": 12, "url": "https://github.com/acme/web/pull/12"}
    assert mock_request.call_args[0][1] == "https://ghe.local/api/v3/repos/acme/web/pulls"
    assert mock_request.call_args[1]["json"]["head"] == "agent/issue-3"


# --- LogNotifier ---

def test_log_notifier_records():
    notifier = LogNotifier()
    notifier.post_comment("acme/web", 1, "one")
    notifier.post_comment("acme/web", 2, "two")
    notifier.add_label("acme/web", 1, "agent:start")
    notifier.remove_label("acme/web", 1, "agent:start")
    notifier.remove_label("acme/web", 9, "never-set")
    assert notifier.fetch_comments("acme/web", 1) == [{"body": "one"}]
    assert notifier.labels[("acme/web", 1)] == set()


def test_log_notifier_numbers_pull_requests():
    notifier = LogNotifier()
    first = notifier.create_pull_request("acme/web", "A", "b1", "main", "")
    second = notifier.create_pull_request("acme/web", "B", "b2", "main", "")
    assert first["number"] == 1
    assert second == {"number": 2, "url": "https://example.invalid/acme/web/pull/2"}
