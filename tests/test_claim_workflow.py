import asyncio
import json

import httpx
import pytest

from palpable_bootstrap.core.state import ClaimSession
from palpable_bootstrap.services.claim_workflow import (
    FAILURE_MESSAGES,
    ClaimFailure,
    ClaimWorkflow,
)

from .conftest import DEVICE_ID


class FakeRegistry:
    """Records requests and replies with a canned response."""

    def __init__(self, status_code=200, body=None, content=None, error=None):
        self.status_code = status_code
        self.body = {"success": True} if body is None else body
        self.content = content
        self.error = error
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error(str(self.error.__name__), request=request)
        if self.content is not None:
            return httpx.Response(self.status_code, content=self.content)
        return httpx.Response(self.status_code, json=self.body)


def _workflow(settings, store, registry):
    return ClaimWorkflow(
        settings,
        store,
        ClaimSession(device_id=DEVICE_ID),
        transport=httpx.MockTransport(registry),
    )


@pytest.mark.parametrize(
    "code",
    ["", "12345", "1234567", "12a456", " 12 34", "١٢٣٤٥٦", " 123456", "123456 ", "123456\n"],
)
def test_malformed_code_never_reaches_network(settings, store, code):
    registry = FakeRegistry()
    workflow = _workflow(settings, store, registry)

    result = asyncio.run(workflow.claim(code, DEVICE_ID))

    assert not result.success
    assert result.reason == ClaimFailure.INVALID_FORMAT
    assert registry.requests == []


def test_successful_claim_is_recorded(settings, store):
    registry = FakeRegistry()
    workflow = _workflow(settings, store, registry)
    notified = []
    workflow.on_claimed(notified.append)

    result = asyncio.run(workflow.claim("123456", DEVICE_ID))

    assert result.success
    assert workflow.claimed
    assert workflow.session.claimed_at is not None
    assert len(notified) == 1

    request = registry.requests[0]
    assert request.method == "POST"
    assert str(request.url) == "https://cloud.test/devices/claim"
    assert json.loads(request.content) == {"code": "123456", "deviceId": DEVICE_ID}

    assert store.load_claim(DEVICE_ID).claimed


def test_repeat_claim_is_idempotent(settings, store):
    registry = FakeRegistry()
    workflow = _workflow(settings, store, registry)
    notified = []
    workflow.on_claimed(notified.append)

    first = asyncio.run(workflow.claim("123456", DEVICE_ID))
    second = asyncio.run(workflow.claim("654321", DEVICE_ID))

    assert first.success and second.success
    assert len(registry.requests) == 1
    assert len(notified) == 1


def test_already_claimed_on_server_counts_as_success(settings, store):
    registry = FakeRegistry(status_code=409, body={"error": "already claimed"})
    workflow = _workflow(settings, store, registry)

    result = asyncio.run(workflow.claim("123456", DEVICE_ID))

    assert result.success
    assert workflow.claimed


@pytest.mark.parametrize(
    "registry, reason",
    [
        (FakeRegistry(status_code=404, body={"error": "not found"}), ClaimFailure.INVALID_CODE),
        (FakeRegistry(status_code=410, body={}), ClaimFailure.INVALID_CODE),
        (FakeRegistry(body={"success": False}), ClaimFailure.INVALID_CODE),
        (FakeRegistry(status_code=500, body={}), ClaimFailure.SERVER_ERROR),
        (FakeRegistry(status_code=503, body={}), ClaimFailure.SERVER_ERROR),
        (FakeRegistry(content=b"<html>oops</html>"), ClaimFailure.SERVER_ERROR),
        (FakeRegistry(body={"ok": 1}), ClaimFailure.SERVER_ERROR),
        (FakeRegistry(error=httpx.ConnectError), ClaimFailure.NETWORK_UNREACHABLE),
        (FakeRegistry(error=httpx.ReadTimeout), ClaimFailure.NETWORK_UNREACHABLE),
    ],
)
def test_claim_failures_are_classified(settings, store, registry, reason):
    workflow = _workflow(settings, store, registry)

    result = asyncio.run(workflow.claim("123456", DEVICE_ID))

    assert not result.success
    assert result.reason == reason
    assert result.message == FAILURE_MESSAGES[reason]
    assert not workflow.claimed
    assert not settings.claim_file.exists()


def test_failure_messages_are_distinct():
    messages = [
        FAILURE_MESSAGES[reason]
        for reason in (
            ClaimFailure.INVALID_CODE,
            ClaimFailure.NETWORK_UNREACHABLE,
            ClaimFailure.SERVER_ERROR,
        )
    ]
    assert len(set(messages)) == 3


def test_request_code_requires_token(settings, store):
    registry = FakeRegistry()
    workflow = _workflow(settings, store, registry)

    result = asyncio.run(workflow.request_code(DEVICE_ID))

    assert result.reason == ClaimFailure.UNAVAILABLE
    assert registry.requests == []


def test_request_code_uses_bearer_token(settings, store):
    settings.api_token = "device-token"
    registry = FakeRegistry(body={"code": "482913"})
    workflow = _workflow(settings, store, registry)

    result = asyncio.run(workflow.request_code(DEVICE_ID))

    assert result.success
    assert result.code == "482913"
    assert workflow.session.code == "482913"
    request = registry.requests[0]
    assert request.headers["Authorization"] == "Bearer device-token"
    assert request.url.path == "/devices/claim-code"


@pytest.mark.parametrize("code", ["12", "123456\n", 123456])
def test_request_code_rejects_malformed_code(settings, store, code):
    settings.api_token = "device-token"
    registry = FakeRegistry(body={"code": code})
    workflow = _workflow(settings, store, registry)

    result = asyncio.run(workflow.request_code(DEVICE_ID))

    assert result.reason == ClaimFailure.SERVER_ERROR
