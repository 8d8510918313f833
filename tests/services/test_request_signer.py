import base64
import hashlib
import hmac

import pytest

from services.errors import ConfigError
from services.request_signer import RequestSigner


def _signer():
    return RequestSigner('key-123', 'secret-abc', 'pass-xyz', 'project-9')


def test_sign_builds_full_header_set():
    headers = _signer().sign('1700000000000', 'GET', '/api/v5/dex/aggregator/quote?chainId=56')

    expected = base64.b64encode(
        hmac.new(
            b'secret-abc',
            b'1700000000000GET/api/v5/dex/aggregator/quote?chainId=56',
            hashlib.sha256,
        ).digest()
    ).decode()

    assert headers['X-ACCESS-SIGN'] == expected
    assert headers['X-ACCESS-KEY'] == 'key-123'
    assert headers['X-ACCESS-TIMESTAMP'] == '1700000000000'
    assert headers['X-ACCESS-PASSPHRASE'] == 'pass-xyz'
    assert headers['X-ACCESS-PROJECT'] == 'project-9'


def test_method_is_upper_cased_and_body_is_signed():
    signer = _signer()
    lower = signer.signature('1', 'post', '/path', '{"a":1}')
    upper = signer.signature('1', 'POST', '/path', '{"a":1}')
    without_body = signer.signature('1', 'POST', '/path')

    assert lower == upper
    assert upper != without_body


def test_timestamp_is_milliseconds(monkeypatch):
    monkeypatch.setattr('services.request_signer.time.time', lambda: 1700000000.1234)
    assert RequestSigner.timestamp() == '1700000000123'


@pytest.mark.parametrize('missing', ['api_key', 'secret_key', 'passphrase', 'project_id'])
def test_missing_credential_fails_at_construction(missing):
    credentials = {
        'api_key': 'k',
        'secret_key': 's',
        'passphrase': 'p',
        'project_id': 'id',
    }
    credentials[missing] = ''

    with pytest.raises(ConfigError) as excinfo:
        RequestSigner(**credentials)

    assert missing in str(excinfo.value)
