"""Tests for error classification and sanitisation."""

from __future__ import annotations

import asyncio

import httpx
import pytest
from openai import APIConnectionError, APIStatusError

from taskforge.ai.orchestration.cancellation import CancellationToken
from taskforge.ai.orchestration.errors import (
    RETRYABLE_ERROR_CODES,
    AuthenticationError,
    ErrorCode,
    ModelProviderError,
    NetworkError,
    PaymentRequiredError,
    RunCancelledError,
    classify_exception,
    classify_message,
    error_code_from_status,
    is_retryable,
    sanitize_error_message,
)

_REQUEST = httpx.Request("POST", "https://api.example.test/v1/chat/completions")


def _status_error(status: int, message: str = "upstream failure") -> APIStatusError:
    return APIStatusError(message, response=httpx.Response(status, request=_REQUEST), body=None)


class TestStatusCodes:
    @pytest.mark.parametrize(
        ("status", "code"),
        [
            (400, ErrorCode.BAD_REQUEST),
            (401, ErrorCode.AUTHENTICATION_FAILED),
            (402, ErrorCode.PAYMENT_REQUIRED),
            (403, ErrorCode.FORBIDDEN),
            (404, ErrorCode.NOT_FOUND),
            (408, ErrorCode.TIMEOUT),
            (429, ErrorCode.SERVICE_UNAVAILABLE),
            (500, ErrorCode.SERVER_ERROR),
            (503, ErrorCode.SERVICE_UNAVAILABLE),
            (302, None),
            (None, None),
        ],
    )
    def test_error_code_from_status(self, status: int | None, code: str | None) -> None:
        assert error_code_from_status(status) == code


class TestClassifyMessage:
    @pytest.mark.parametrize(
        ("message", "code"),
        [
            ("Failed after 3 attempts. Last error: Service Unavailable", ErrorCode.SERVICE_UNAVAILABLE),
            ("failed after 2 attempts: request timed out", ErrorCode.TIMEOUT),
            ("failed after 4 attempts: ECONNREFUSED", ErrorCode.CONNECTION_REFUSED),
            ("failed after 4 attempts: something odd", ErrorCode.SERVER_ERROR),
            ("getaddrinfo ENOTFOUND api.example.test", ErrorCode.DNS_FAILURE),
            ("Internal server error", ErrorCode.SERVER_ERROR),
            ("fetch failed", ErrorCode.NETWORK_ERROR),
            ("Invalid tool input", None),
            ("", None),
            (None, None),
        ],
    )
    def test_classify_message(self, message: str | None, code: str | None) -> None:
        assert classify_message(message) == code


class TestClassifyException:
    def test_typed_errors_keep_their_code(self) -> None:
        assert classify_exception(PaymentRequiredError()) == ErrorCode.PAYMENT_REQUIRED
        assert classify_exception(AuthenticationError.from_status(403)) == ErrorCode.FORBIDDEN
        assert classify_exception(NetworkError(error_code=ErrorCode.TIMEOUT)) == ErrorCode.TIMEOUT

    def test_unknown_code_falls_back_to_message(self) -> None:
        error = ModelProviderError(message="Failed after 3 attempts. Last error: 503")

        assert classify_exception(error) == ErrorCode.SERVICE_UNAVAILABLE

    def test_openai_status_error(self) -> None:
        assert classify_exception(_status_error(502)) == ErrorCode.SERVER_ERROR
        assert classify_exception(_status_error(402)) == ErrorCode.PAYMENT_REQUIRED

    def test_transport_errors(self) -> None:
        assert classify_exception(APIConnectionError(request=_REQUEST)) == ErrorCode.NETWORK_ERROR
        assert classify_exception(httpx.ConnectTimeout("slow")) == ErrorCode.TIMEOUT
        assert classify_exception(asyncio.TimeoutError()) == ErrorCode.TIMEOUT
        assert classify_exception(ConnectionRefusedError()) == ErrorCode.CONNECTION_REFUSED

    def test_plain_exception(self) -> None:
        assert classify_exception(ValueError("bad value")) == ErrorCode.UNKNOWN_ERROR

    def test_retryable_set(self) -> None:
        assert is_retryable(ErrorCode.SERVER_ERROR)
        assert not is_retryable(ErrorCode.PAYMENT_REQUIRED)
        assert not is_retryable(None)
        assert ErrorCode.AUTHENTICATION_FAILED not in RETRYABLE_ERROR_CODES
        assert is_retryable(ErrorCode.BAD_REQUEST, {ErrorCode.BAD_REQUEST})
        assert not is_retryable(ErrorCode.SERVER_ERROR, frozenset())


class TestSanitize:
    def test_network_errors_get_canned_messages(self) -> None:
        assert sanitize_error_message(_status_error(503)) == "Service unavailable. Please try again later."

    def test_payment_message_is_kept(self) -> None:
        assert sanitize_error_message(PaymentRequiredError()) == "Payment required. Please add credits to continue."

    def test_only_first_line_is_kept(self) -> None:
        assert sanitize_error_message(ValueError("first line\nTraceback (most recent call last):")) == "first line"

    def test_secrets_are_redacted(self) -> None:
        message = sanitize_error_message("Request with sk-abcdefghijklmnop failed; Bearer token123 rejected")

        assert "sk-abcdefghijklmnop" not in message
        assert "token123" not in message
        assert "[redacted]" in message

    def test_model_provider_error_keeps_detail(self) -> None:
        error = ModelProviderError(
            error_code=ErrorCode.SERVER_ERROR, message="Failed after 3 attempts. Last error: bad gateway"
        )

        assert sanitize_error_message(error) == "Failed after 3 attempts. Last error: bad gateway"

    def test_error_to_dict(self) -> None:
        error = NetworkError(error_code=ErrorCode.DNS_FAILURE, message="dns", details={"host": "x"})

        assert error.to_dict() == {"error_code": "DNS_FAILURE", "message": "dns", "details": {"host": "x"}}
        assert error.is_retryable
        assert str(error) == "dns"


class TestCancellationToken:
    def test_reason_defaults(self) -> None:
        token = CancellationToken()
        token.cancel()

        assert token.cancelled
        assert token.reason == "Run cancelled by user."

    def test_callbacks_fire_once(self) -> None:
        token = CancellationToken()
        reasons: list[str] = []
        token.add_callback(reasons.append)

        token.cancel("first")
        token.cancel("second")
        token.add_callback(reasons.append)

        assert reasons == ["first", "first"]

    def test_raise_if_cancelled(self) -> None:
        token = CancellationToken()
        token.raise_if_cancelled()
        token.cancel("stop")

        with pytest.raises(RunCancelledError, match="stop"):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_sleep_completes_without_cancellation(self) -> None:
        await CancellationToken().sleep(0.01)

    @pytest.mark.asyncio
    async def test_sleep_is_interrupted(self) -> None:
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)

        with pytest.raises(RunCancelledError):
            await asyncio.wait_for(token.sleep(30), timeout=1)
