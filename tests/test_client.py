"""Reconnect policy, realtime client give-up state and alert submission errors."""

from __future__ import annotations

import pytest
import requests

from medalert.client import (
    AlertRejected,
    AlertSubmitter,
    ConnectionState,
    LocationUnavailable,
    RealtimeClient,
    ReconnectExhausted,
    ReconnectPolicy,
    ServerUnreachable,
)

from tests.conftest import run


def test_backoff_doubles_from_one_second_and_caps_at_ten():
    assert list(ReconnectPolicy().delays()) == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_client_gives_up_after_bounded_attempts():
    calls = []
    slept = []

    def refuse(url):
        calls.append(url)
        raise ConnectionRefusedError("server down")

    async def fake_sleep(delay):
        slept.append(delay)

    client = RealtimeClient("ws://localhost:9/ws", connect=refuse, sleep=fake_sleep)

    with pytest.raises(ReconnectExhausted):
        run(client.run())

    assert client.state == ConnectionState.GAVE_UP
    assert len(calls) == 6
    assert slept == [1.0, 2.0, 4.0, 8.0, 10.0]


def test_client_stops_after_normal_close():
    class Socket:
        close_code = 1000

        async def __aenter__(self):
            return self

        async def __aexit__(self, *exc):
            return False

        def __aiter__(self):
            return self

        async def __anext__(self):
            if self.frames:
                return self.frames.pop(0)
            raise StopAsyncIteration

        frames = ['{"type": "location_update", "data": {"id": 1}}', "not json"]

    received = []

    async def collect(message):
        received.append(message)

    client = RealtimeClient("ws://example/ws", connect=lambda url: Socket())
    run(client.run(on_message=collect))

    assert client.state == ConnectionState.CLOSED
    assert received == [{"type": "location_update", "data": {"id": 1}}]


class FakeResponse:
    def __init__(self, status_code, body=None, reason=""):
        self.status_code = status_code
        self._body = body
        self.reason = reason

    def json(self):
        if self._body is None:
            raise ValueError("no body")
        return self._body


class FakeSession:
    def __init__(self, result):
        self.result = result
        self.posted = []

    def post(self, url, **kwargs):
        self.posted.append((url, kwargs))
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def test_missing_location_is_caught_before_sending():
    session = FakeSession(FakeResponse(201, {}))
    submitter = AlertSubmitter("http://api", "token", session=session)

    with pytest.raises(LocationUnavailable) as error:
        submitter.submit(None, -122.4, "Medical")

    assert session.posted == []
    assert "location" in error.value.user_message


def test_rejection_carries_the_server_reason():
    session = FakeSession(FakeResponse(400, {"message": "latitude: Input should be a valid number"}))
    submitter = AlertSubmitter("http://api/", "token", session=session)

    with pytest.raises(AlertRejected) as error:
        submitter.submit(37.7, -122.4, "Medical")

    assert error.value.reason == "latitude: Input should be a valid number"
    assert "rejected" in error.value.user_message


@pytest.mark.parametrize(
    "result",
    [requests.ConnectionError("refused"), requests.Timeout("slow"), FakeResponse(503, reason="Service Unavailable")],
)
def test_unreachable_server_is_its_own_failure(result):
    submitter = AlertSubmitter("http://api", "token", session=FakeSession(result))

    with pytest.raises(ServerUnreachable) as error:
        submitter.submit(37.7, -122.4, "Medical")

    assert "could not reach" in error.value.user_message


def test_failure_messages_are_distinct():
    messages = {
        LocationUnavailable.user_message,
        AlertRejected("bad").user_message,
        ServerUnreachable.user_message,
    }

    assert len(messages) == 3


def test_successful_submission_posts_with_bearer_token():
    session = FakeSession(FakeResponse(201, {"id": 1, "status": "active"}))
    submitter = AlertSubmitter("http://api", "secret", session=session)

    alert = submitter.submit(37.7, -122.4, "Medical", "fell down")

    assert alert == {"id": 1, "status": "active"}
    url, kwargs = session.posted[0]
    assert url == "http://api/api/emergencies"
    assert kwargs["headers"] == {"Authorization": "Bearer secret"}
    assert kwargs["json"]["emergencyType"] == "Medical"
