"""Malware scanning backends.

Two scanners are available, selected by ``UPLOADS_SCANNER``:

- ``signature``: in-process check for known byte signatures (ships with
  the EICAR test string) and a SHA-256 blocklist
- ``http``: posts the bytes to a ClamAV REST service at
  ``UPLOADS_SCANNER_URL`` which answers ``{"infected": bool,
  "viruses": [...]}``

A scanner that cannot give an answer raises
:class:`ScannerUnavailableError`; it never reports a file as clean.
"""

import abc
import dataclasses
import hashlib
import logging
from collections.abc import Iterable
from typing import Final, final, override

import httpx
from django.conf import settings

from server.apps.uploads.exceptions import ScannerUnavailableError

# Standard anti-virus test file, see https://www.eicar.org/download-anti-malware-testfile/
EICAR_SIGNATURE: Final = (
    rb'X5O!P%@AP[4\PZX54(P^)7CC)7}$EICAR-STANDARD-ANTIVIRUS-TEST-FILE!$H+H*'
)

logger = logging.getLogger(__name__)


@final
@dataclasses.dataclass(frozen=True, slots=True)
class ScanResult:
    """Outcome of a malware scan."""

    clean: bool
    threat: str = ''


class MalwareScanner(abc.ABC):
    """Scans raw file bytes."""

    @abc.abstractmethod
    def scan(self, data: bytes) -> ScanResult:
        """Scan bytes.

        Raises:
            ScannerUnavailableError: If no verdict could be obtained.
        """


@final
class SignatureScanner(MalwareScanner):
    """Byte-signature and checksum blocklist scanner."""

    def __init__(
        self,
        signatures: dict[str, bytes] | None = None,
        blocked_sha256: Iterable[str] = (),
    ) -> None:
        """Initialize scanner.

        Args:
            signatures: Threat name to byte pattern map.
            blocked_sha256: Hex digests of files known to be malicious.
        """
        if signatures is None:
            signatures = {'Eicar-Test-Signature': EICAR_SIGNATURE}
        self._signatures = signatures
        self._blocked = frozenset(digest.lower() for digest in blocked_sha256)

    @override
    def scan(self, data: bytes) -> ScanResult:
        for threat, pattern in self._signatures.items():
            if pattern in data:
                return ScanResult(clean=False, threat=threat)

        if self._blocked:
            digest = hashlib.sha256(data).hexdigest()
            if digest in self._blocked:
                return ScanResult(clean=False, threat=f'Blocklisted:{digest}')

        return ScanResult(clean=True)


@final
class HttpScanner(MalwareScanner):
    """Client for a ClamAV REST scan service."""

    def __init__(
        self,
        url: str,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        """Initialize scanner.

        Args:
            url: Scan endpoint accepting a multipart ``file`` field.
            timeout: Request timeout in seconds.
            client: Optional preconfigured HTTP client.
        """
        self._url = url
        self._client = client or httpx.Client(timeout=timeout)

    @override
    def scan(self, data: bytes) -> ScanResult:
        try:
            response = self._client.post(
                self._url,
                files={'file': ('upload', data, 'application/octet-stream')},
            )
            response.raise_for_status()
            verdict = response.json()
        except (httpx.HTTPError, ValueError) as error:
            logger.exception('Malware scan service failed: %s', self._url)
            raise ScannerUnavailableError(
                f'Scan service unavailable: {error}',
            ) from error

        if not isinstance(verdict, dict) or 'infected' not in verdict:
            raise ScannerUnavailableError(
                f'Unexpected scan service response: {verdict!r}',
            )

        if verdict['infected']:
            viruses = verdict.get('viruses') or ['unknown']
            return ScanResult(clean=False, threat=', '.join(viruses))
        return ScanResult(clean=True)


def get_scanner() -> MalwareScanner:
    """Get the scanner selected by ``UPLOADS_SCANNER``.

    Returns:
        Configured scanner.

    Raises:
        ValueError: If the setting names an unknown scanner.
    """
    scanner_name = getattr(settings, 'UPLOADS_SCANNER', 'signature')
    if scanner_name == 'signature':
        return SignatureScanner(
            blocked_sha256=getattr(settings, 'UPLOADS_SCANNER_BLOCKED_SHA256', ()),
        )
    if scanner_name == 'http':
        return HttpScanner(
            url=settings.UPLOADS_SCANNER_URL,
            timeout=getattr(settings, 'UPLOADS_SCANNER_TIMEOUT', 30.0),
        )
    raise ValueError(f'Unknown malware scanner: {scanner_name}')
