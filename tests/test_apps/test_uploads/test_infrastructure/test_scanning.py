"""Tests for malware scanners."""

import hashlib

import httpx
import pytest

from server.apps.uploads.exceptions import ScannerUnavailableError
from server.apps.uploads.infrastructure.scanning import (
    EICAR_SIGNATURE,
    HttpScanner,
    SignatureScanner,
    get_scanner,
)

_SCAN_URL = 'http://scanner.test/scan'


def _http_scanner(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpScanner(_SCAN_URL, client=client)


def test_signature_scanner_clean():
    """Test ordinary bytes pass."""
    assert SignatureScanner().scan(b'just some bytes').clean


def test_signature_scanner_finds_eicar():
    """Test the EICAR test string is detected anywhere in the file."""
    result = SignatureScanner().scan(b'prefix' + EICAR_SIGNATURE + b'suffix')

    assert not result.clean
    assert result.threat == 'Eicar-Test-Signature'


def test_signature_scanner_blocklist():
    """Test blocklisted digests are matched case-insensitively."""
    data = b'known bad file'
    digest = hashlib.sha256(data).hexdigest().upper()

    result = SignatureScanner(blocked_sha256=[digest]).scan(data)

    assert not result.clean
    assert result.threat.startswith('Blocklisted:')


def test_http_scanner_posts_file():
    """Test the file is posted as multipart and a clean verdict parsed."""
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={'infected': False, 'viruses': []})

    result = _http_scanner(handler).scan(b'payload')

    assert result.clean
    assert seen[0].method == 'POST'
    assert str(seen[0].url) == _SCAN_URL
    assert b'payload' in seen[0].content


def test_http_scanner_infected():
    """Test infected verdicts carry the virus names."""
    result = _http_scanner(lambda request: httpx.Response(
        200,
        json={'infected': True, 'viruses': ['Win.Test.EICAR_HDB-1']},
    )).scan(b'payload')

    assert not result.clean
    assert result.threat == 'Win.Test.EICAR_HDB-1'


@pytest.mark.parametrize('response', [
    httpx.Response(500),
    httpx.Response(200, content=b'not json'),
    httpx.Response(200, json={'status': 'ok'}),
])
def test_http_scanner_unavailable(response):
    """Test errors and unexpected answers never count as clean."""
    scanner = _http_scanner(lambda request: response)

    with pytest.raises(ScannerUnavailableError):
        scanner.scan(b'payload')


def test_http_scanner_connection_error():
    """Test transport errors surface as ScannerUnavailableError."""

    def handler(request):
        raise httpx.ConnectError('connection refused', request=request)

    with pytest.raises(ScannerUnavailableError):
        _http_scanner(handler).scan(b'payload')


def test_get_scanner(settings):
    """Test scanner selection by setting."""
    settings.UPLOADS_SCANNER = 'http'
    settings.UPLOADS_SCANNER_URL = _SCAN_URL
    assert isinstance(get_scanner(), HttpScanner)

    settings.UPLOADS_SCANNER = 'signature'
    assert isinstance(get_scanner(), SignatureScanner)

    settings.UPLOADS_SCANNER = 'clamd'
    with pytest.raises(ValueError, match='clamd'):
        get_scanner()
