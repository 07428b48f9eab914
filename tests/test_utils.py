"""Tests for prompts, error mapping and small helpers."""

import httpx
import pytest

from inference_gateway.errors import (
    AuthenticationFailed,
    GatewayTimeout,
    InvalidResponse,
    NetworkUnavailable,
    RateLimitExceeded,
    RequestFailed,
    ServerUnavailable,
    UnknownError,
    map_status,
    map_transport_error,
)
from inference_gateway.prompts import (
    build_on_device_system_prompt,
    build_remote_system_prompt,
    build_vision_prompt,
    format_messages,
)
from inference_gateway.utils import estimate_tokens, format_duration, truncate


@pytest.mark.parametrize("exc, expected", [
    (httpx.ReadTimeout("slow"), GatewayTimeout),
    (httpx.ConnectError("refused"), ServerUnavailable),
    (httpx.ReadError("reset"), NetworkUnavailable),
    (httpx.DecodingError("gzip"), InvalidResponse),
    (ValueError("odd"), UnknownError),
])
def test_map_transport_error(exc, expected):
    assert isinstance(map_transport_error(exc), expected)


def test_map_transport_error_passes_gateway_errors_through():
    error = InvalidResponse()
    assert map_transport_error(error) is error


@pytest.mark.parametrize("status, expected", [
    (429, RateLimitExceeded),
    (401, AuthenticationFailed),
    (403, AuthenticationFailed),
    (500, RequestFailed),
])
def test_map_status(status, expected):
    assert isinstance(map_status(status), expected)


def test_errors_carry_recovery_suggestion():
    assert GatewayTimeout().recovery_suggestion == "Try again or check server status"
    assert str(RequestFailed(502)) == "Request failed with status code 502"


def test_remote_system_prompt_includes_context():
    assert "HR: 72bpm" in build_remote_system_prompt("HR: 72bpm")
    assert "Health Context" not in build_remote_system_prompt("")


def test_on_device_and_vision_prompts():
    assert "HR: 72bpm" in build_on_device_system_prompt("HR: 72bpm")
    vision = build_vision_prompt("Read this", "HR: 72bpm")
    assert "Read this" in vision and "HR: 72bpm" in vision


def test_format_messages():
    assert format_messages("", "hi") == [{"role": "user", "content": "hi"}]
    assert format_messages("sys", "hi")[0] == {"role": "system", "content": "sys"}


def test_estimate_tokens():
    assert estimate_tokens("") == 0
    assert estimate_tokens("abc") == 1
    assert estimate_tokens("x" * 35) == 10
    assert estimate_tokens("x" * 36) == 11


def test_format_duration_and_truncate():
    assert format_duration(0.25) == "250ms"
    assert format_duration(2.5) == "2.5s"
    assert format_duration(90) == "1.5m"
    assert truncate("abcdef", 3) == "abc..."
    assert truncate("abc", 3) == "abc"
