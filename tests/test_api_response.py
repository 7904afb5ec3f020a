import pytest

from core.api_response import (
    ERROR_FALLBACK,
    ApiError,
    coerce_status_code,
    error_message_from_body,
    extract_message,
    handle_api_response,
    indicates_failure,
    is_error_envelope,
)


@pytest.mark.parametrize('value, expected', [
    (404, 404),
    (400.0, 400),
    (' 500 ', 500),
    ('abc', None),
    ('', None),
    (True, None),
    (float('inf'), None),
    (None, None),
])
def test_coerce_status_code(value, expected):
    assert coerce_status_code(value) == expected


@pytest.mark.parametrize('value, expected', [
    (False, True),
    (True, False),
    (0, True),
    (1, False),
    (' FALSE ', True),
    ('0', True),
    ('no', False),
    (None, False),
])
def test_indicates_failure(value, expected):
    assert indicates_failure(value) is expected


def test_is_error_envelope():
    assert is_error_envelope({'success': False})
    assert is_error_envelope({'status': '422'})
    assert not is_error_envelope({'success': True, 'status': 200})
    assert not is_error_envelope([{'success': False}])
    assert not is_error_envelope({'status': 'pending'})


def test_extract_message_prefers_details():
    envelope = {'status': 400, 'message': 'Validation failed', 'details': [{'message': 'IBAN is invalid'}]}
    assert extract_message(envelope) == 'IBAN is invalid'
    assert extract_message({'status': 400, 'details': ['  first  ', 'second']}) == 'first'
    assert extract_message({'status': 400, 'details': {'message': 'nested'}}) == 'nested'


def test_extract_message_fallbacks():
    assert extract_message({'success': False, 'message': ' Denied '}) == 'Denied'
    assert extract_message({'status': 403}) == 'Request failed with status 403'
    assert extract_message({'success': False}, 'Custom') == 'Custom'
    assert extract_message(None) == ERROR_FALLBACK


class TestHandleApiResponse:
    def test_success_json(self):
        assert handle_api_response(200, '{"items": [1, 2]}') == {'items': [1, 2]}

    def test_success_empty_body(self):
        assert handle_api_response(204, '') is None

    def test_success_plain_text(self):
        assert handle_api_response(200, 'pong') == 'pong'

    def test_error_envelope_in_ok_response(self):
        body = '{"status": 409, "message": "Duplicate request", "details": null}'
        with pytest.raises(ApiError) as exc_info:
            handle_api_response(200, body, 'Failed')
        assert exc_info.value.status == 409
        assert exc_info.value.message == 'Duplicate request'

    def test_error_status_with_success_false_envelope(self):
        with pytest.raises(ApiError) as exc_info:
            handle_api_response(400, '{"success": false, "details": ["Missing field"]}')
        assert exc_info.value.message == 'Missing field'
        assert exc_info.value.status is None
        assert exc_info.value.details == ['Missing field']

    def test_error_status_without_envelope_uses_fallback(self):
        with pytest.raises(ApiError) as exc_info:
            handle_api_response(502, '<html>Bad gateway</html>', 'Failed to fetch branches')
        assert exc_info.value.status == 502
        assert exc_info.value.message == 'Failed to fetch branches'


def test_error_message_from_body():
    assert error_message_from_body('{"message": "Nope"}', 'fallback') == 'Nope'
    assert error_message_from_body('{"error": "Denied"}', 'fallback') == 'Denied'
    assert error_message_from_body('["a", "b"]', 'fallback') == 'a\nb'
    assert error_message_from_body('plain failure', 'fallback') == 'plain failure'
    assert error_message_from_body('{"code": 1}', 'fallback') == 'fallback'
