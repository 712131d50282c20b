import pytest

from codex_app_session.errors import CodexMalformedEnvelopeError
from codex_app_session.protocol import (
    Notification,
    Response,
    decode_line,
    encode_message,
    extract_error,
    is_approval_request,
    make_error_response,
    make_notification,
    make_request,
    make_result_response,
)


def test_make_request_builds_expected_envelope() -> None:
    payload = make_request(7, "initialize", {"foo": "bar"})
    assert payload["jsonrpc"] == "2.0"
    assert payload["id"] == 7
    assert payload["method"] == "initialize"
    assert payload["params"] == {"foo": "bar"}


def test_make_notification_has_no_id() -> None:
    payload = make_notification("initialized")
    assert payload == {"jsonrpc": "2.0", "method": "initialized"}


def test_extract_error_reads_error_payload() -> None:
    response = make_error_response(9, -32000, "boom", {"x": 1})
    error = extract_error(response)
    assert error is not None
    assert error["code"] == -32000
    assert error["message"] == "boom"


def test_encode_message_is_one_line_even_with_embedded_newlines() -> None:
    line = encode_message(make_request(1, "turn/start", {"text": "a\nb\r\nc"}))
    assert "\n" not in line
    assert "\r" not in line


def test_round_trip_recovers_method_params_and_id() -> None:
    params = {
        "nested": {"list": [1, 2.5, None, True, {"deep": ["x"]}]},
        "quote": 'she said "hi"',
        "unicode": "héllo ✓ 日本",
        "empty": {},
    }
    decoded = decode_line(encode_message(make_request(42, "thread/start", params)))
    assert isinstance(decoded, Notification)
    assert decoded.method == "thread/start"
    assert decoded.params == params
    assert decoded.id == 42


def test_round_trip_accepts_array_params() -> None:
    decoded = decode_line(encode_message(make_request(3, "x", ["a", ["b"]])))  # type: ignore[arg-type]
    assert isinstance(decoded, Notification)
    assert decoded.params == ["a", ["b"]]


def test_decode_response_with_result_and_error() -> None:
    ok = decode_line(encode_message(make_result_response(5, {"turn": {"id": "t"}})))
    assert isinstance(ok, Response)
    assert ok.id == 5
    assert ok.result == {"turn": {"id": "t"}}
    assert ok.error is None

    failed = decode_line(encode_message(make_error_response(6, -32600, "bad")))
    assert isinstance(failed, Response)
    assert failed.error == {"code": -32600, "message": "bad"}


def test_decode_accepts_bytes_and_trailing_newline() -> None:
    decoded = decode_line(b'{"method":"turn/completed","params":{}}\n')
    assert isinstance(decoded, Notification)
    assert decoded.method == "turn/completed"
    assert decoded.id is None


def test_decode_preserves_unknown_fields() -> None:
    decoded = decode_line('{"method":"item/started","params":{},"futureField":1}')
    assert isinstance(decoded, Notification)
    assert decoded.raw["futureField"] == 1


@pytest.mark.parametrize(
    "line",
    [
        "not json",
        "[1, 2]",
        '{"params": {}}',
        '{"id": 3}',
        '{"method": 5}',
    ],
)
def test_decode_rejects_malformed_lines(line: str) -> None:
    with pytest.raises(CodexMalformedEnvelopeError) as exc_info:
        decode_line(line)
    assert exc_info.value.line is not None


def test_approval_request_is_a_notification_with_id() -> None:
    decoded = decode_line(
        '{"id":7,"method":"item/commandExecution/requestApproval","params":{"command":"ls"}}'
    )
    assert isinstance(decoded, Notification)
    assert decoded.is_request
    assert is_approval_request(decoded)

    plain = decode_line('{"method":"item/commandExecution/requestApproval","params":{}}')
    assert isinstance(plain, Notification)
    assert not is_approval_request(plain)
