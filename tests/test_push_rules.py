"""
Tests for the deduplicating batch pusher.

These tests verify that:
1. N new hostnames go out in ceil(N / BATCH_SIZE) order-preserving batches
2. Hostnames already in the profile are filtered before submission
3. Accepted batches are added to the shared index straight away
4. A failed batch fails the folder but does not stop the remaining batches
"""

import math
from unittest.mock import MagicMock

import pytest

import main


@pytest.fixture
def mock_post_form(monkeypatch):
    post = MagicMock()
    monkeypatch.setattr(main, "_api_post_form", post)
    return post


def _sent_hostnames(call):
    data = call.kwargs["data"]
    return [data[f"hostnames[{i}]"] for i in range(len(data) - 3)]


def _push(hostnames, existing, folder="Ads"):
    return main.push_rules("p1", folder, "fid1", 0, 1, hostnames, existing, MagicMock())


@pytest.mark.parametrize("n", [1, 499, 500, 501, 1000, 1201])
def test_batch_count_and_sizes(mock_post_form, n):
    hostnames = [f"host{i}.com" for i in range(n)]

    result = _push(hostnames, set())

    assert mock_post_form.call_count == math.ceil(n / main.BATCH_SIZE)
    sizes = [len(_sent_hostnames(c)) for c in mock_post_form.call_args_list]
    assert sizes[-1] == (n % main.BATCH_SIZE or main.BATCH_SIZE)
    assert all(s == main.BATCH_SIZE for s in sizes[:-1])
    # Order is preserved across batches
    assert [h for c in mock_post_form.call_args_list for h in _sent_hostnames(c)] == hostnames
    assert result == main.PushResult(n, 0, True)


def test_batch_form_body(mock_post_form):
    main.push_rules("p1", "Ads", 77, 1, 0, ["a.com", "b.com"], set(), MagicMock())

    args, kwargs = mock_post_form.call_args
    assert args[1] == f"{main.API_BASE}/p1/rules"
    assert kwargs["data"] == {
        "do": "1",
        "status": "0",
        "group": "77",
        "hostnames[0]": "a.com",
        "hostnames[1]": "b.com",
    }


def test_existing_hostnames_are_skipped(mock_post_form):
    existing = {"a", "b", "c"}

    result = _push(["b", "c", "d"], existing)

    assert result == main.PushResult(1, 2, True)
    assert _sent_hostnames(mock_post_form.call_args) == ["d"]
    assert existing == {"a", "b", "c", "d"}


def test_all_duplicates_pushes_nothing(mock_post_form):
    result = _push(["a", "b"], {"a", "b"})

    assert result == main.PushResult(0, 2, True)
    mock_post_form.assert_not_called()


def test_empty_hostnames(mock_post_form):
    assert _push([], set()) == main.PushResult(0, 0, True)
    mock_post_form.assert_not_called()


def test_cross_folder_dedup_within_one_run(mock_post_form):
    existing = set()

    first = _push(["x.com", "y.com"], existing, folder="F1")
    second = _push(["x.com", "z.com"], existing, folder="F2")

    assert first == main.PushResult(2, 0, True)
    assert second == main.PushResult(1, 1, True)
    assert _sent_hostnames(mock_post_form.call_args) == ["z.com"]


def test_second_identical_run_pushes_nothing(mock_post_form):
    hostnames = [f"host{i}.com" for i in range(750)]
    index = set()
    _push(hostnames, index)
    mock_post_form.reset_mock()

    # Next run: the profile now holds everything we pushed
    result = _push(hostnames, set(index))

    assert result == main.PushResult(0, 750, True)
    mock_post_form.assert_not_called()


def test_partial_batch_failure(mock_post_form):
    hostnames = [f"host{i}.com" for i in range(1500)]
    mock_post_form.side_effect = [None, main.RequestError("HTTP 500"), None]
    existing = set()

    result = _push(hostnames, existing)

    assert mock_post_form.call_count == 3
    assert result == main.PushResult(1000, 0, False)
    assert existing == set(hostnames[:500]) | set(hostnames[1000:])


def test_all_batches_failing(mock_post_form):
    mock_post_form.side_effect = main.RequestError("HTTP 500")
    existing = set()

    result = _push(["a.com", "b.com"], existing)

    assert result == main.PushResult(0, 0, False)
    assert existing == set()


def test_partial_failure_is_logged_with_profile_and_folder(mock_post_form, monkeypatch):
    mock_post_form.side_effect = main.RequestError("HTTP 503: maintenance")
    mock_log = MagicMock()
    monkeypatch.setattr(main, "log", mock_log)

    _push(["a.com"], set(), folder="Spam")

    messages = [c.args[0] for c in mock_log.error.call_args_list]
    assert any("p1" in m and "Spam" in m and "maintenance" in m for m in messages)
