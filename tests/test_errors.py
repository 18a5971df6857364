import pytest
import requests

from harvester.core.errors import (
    BlockedError,
    ErrorKind,
    MalformedResponseError,
    classify,
    error_for_status,
)


@pytest.mark.parametrize("status,kind", [
    (429, ErrorKind.RATE_LIMITED),
    (401, ErrorKind.BLOCKED),
    (403, ErrorKind.BLOCKED),
    (500, ErrorKind.SERVER_OR_NETWORK),
    (503, ErrorKind.SERVER_OR_NETWORK),
    (404, ErrorKind.NON_RETRYABLE),
    (410, ErrorKind.NON_RETRYABLE),
])
def test_error_for_status(status, kind):
    error = error_for_status(status)
    assert error.kind == kind
    assert error.status_code == status


def test_success_status_is_not_an_error():
    assert error_for_status(200) is None
    assert error_for_status(302) is None


@pytest.mark.parametrize("exc,kind", [
    (requests.Timeout("read timed out"), ErrorKind.SERVER_OR_NETWORK),
    (requests.ConnectionError("reset"), ErrorKind.SERVER_OR_NETWORK),
    (TimeoutError(), ErrorKind.SERVER_OR_NETWORK),
    (ValueError("Expecting value"), ErrorKind.MALFORMED_RESPONSE),
    (KeyError("edges"), ErrorKind.MALFORMED_RESPONSE),
    (RuntimeError("Please wait a few minutes: rate limit"), ErrorKind.RATE_LIMITED),
    (RuntimeError("Too Many Requests"), ErrorKind.RATE_LIMITED),
    (RuntimeError("Forbidden"), ErrorKind.BLOCKED),
    (RuntimeError("connect ETIMEDOUT"), ErrorKind.SERVER_OR_NETWORK),
    (RuntimeError("something odd"), ErrorKind.NON_RETRYABLE),
])
def test_classify(exc, kind):
    error = classify(exc)
    assert error.kind == kind
    assert error.__cause__ is exc


def test_classify_http_error_uses_status():
    response = requests.Response()
    response.status_code = 429
    error = classify(requests.HTTPError("429 Client Error", response=response))
    assert error.kind == ErrorKind.RATE_LIMITED
    assert error.status_code == 429


def test_classified_errors_pass_through():
    error = BlockedError("nope", status_code=403)
    assert classify(error) is error


def test_retryable_flag():
    assert MalformedResponseError("x").retryable
    assert not error_for_status(404).retryable
