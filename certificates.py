"""Certificate handles, blob loading, detail extraction and the in-memory registry."""
import datetime
import logging
import re
import threading
from dataclasses import dataclass, field
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12

logger = logging.getLogger(__name__)

DATE_FORMAT = '%Y-%m-%d %H:%M:%S UTC'
DEFAULT_WARNING_DAYS = 30
UNKNOWN_NAME = 'Unknown'

STATUS_VALID = 'Valid'
STATUS_WARNING = 'Warning'
STATUS_EXPIRED = 'Expired'
STATUS_ERROR = 'Error'

MEMORY_STORE_NAME = 'Memory'
MEMORY_STORE_LOCATION = 'Application'

PEM_MARKER = b'-----BEGIN'
PRIVATE_KEY_BLOCK = re.compile(
    rb'-----BEGIN ((?:[A-Z]+ )*)PRIVATE KEY-----.+?-----END \1PRIVATE KEY-----', re.DOTALL)
# A comma not escaped as "\," per RFC 4514
RDN_SEPARATOR = re.compile(r'(?<!\\),')


class CertificateLoadError(ValueError):
    """Raised when a blob cannot be turned into a certificate."""


def normalize_thumbprint(thumbprint):
    """Upper-case hex with separators removed so lookups ignore formatting."""
    if not thumbprint:
        return ''
    return re.sub(r'[\s:\-]', '', thumbprint).upper()


def compute_thumbprint(certificate):
    return certificate.fingerprint(hashes.SHA1()).hex().upper()


def format_serial_number(serial_number):
    serial = format(serial_number, 'X')
    if len(serial) % 2:
        serial = '0' + serial
    return serial


@dataclass
class LoadedCertificate:
    """A parsed certificate plus whatever came with it (key, friendly name)."""
    certificate: x509.Certificate
    private_key: Optional[object] = None
    friendly_name: Optional[str] = None
    thumbprint: str = field(init=False)

    def __post_init__(self):
        self.thumbprint = compute_thumbprint(self.certificate)

    @property
    def has_private_key(self):
        return self.private_key is not None

    def release(self):
        """Drop the private key reference once the entry leaves the registry."""
        self.private_key = None


def _public_key_der(key):
    return key.public_bytes(
        serialization.Encoding.DER,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    )


def _password_bytes(password):
    if password is None or isinstance(password, bytes):
        return password
    if not isinstance(password, str):
        raise CertificateLoadError("Password must be a string")
    return password.encode('utf-8')


def load_pem_certificates(data, password=None):
    """Load every certificate in a PEM blob.

    A private key block, if present, is attached to the certificate whose
    public key it matches.
    """
    try:
        certificates = x509.load_pem_x509_certificates(data)
    except ValueError as e:
        raise CertificateLoadError(f"Invalid PEM certificate data: {e}") from e

    handles = [LoadedCertificate(cert) for cert in certificates]

    key_match = PRIVATE_KEY_BLOCK.search(data)
    if key_match:
        try:
            private_key = serialization.load_pem_private_key(key_match.group(0), password=_password_bytes(password))
        except (ValueError, TypeError) as e:
            raise CertificateLoadError(f"Failed to load private key: {e}") from e

        key_der = _public_key_der(private_key.public_key())
        for handle in handles:
            if _public_key_der(handle.certificate.public_key()) == key_der:
                handle.private_key = private_key
                break
        else:
            raise CertificateLoadError("Private key does not match any certificate in the PEM data")

    return handles


def _load_pkcs12(data, password):
    candidates = [_password_bytes(password)] if password else [None, b'']
    last_error = None
    for candidate in candidates:
        try:
            bundle = pkcs12.load_pkcs12(data, candidate)
        except (ValueError, TypeError) as e:
            last_error = e
            continue

        if bundle.cert is None:
            raise CertificateLoadError("PKCS#12 data contains no certificate")

        friendly_name = bundle.cert.friendly_name
        return LoadedCertificate(
            bundle.cert.certificate,
            private_key=bundle.key,
            friendly_name=friendly_name.decode('utf-8', 'replace') if friendly_name else None,
        )

    raise CertificateLoadError(f"Unsupported certificate format or invalid password: {last_error}")


def load_certificate_blob(data, password=None):
    """Parse PEM, DER or PKCS#12 bytes into a single LoadedCertificate."""
    if not data:
        raise CertificateLoadError("Certificate data is empty")

    if data.lstrip().startswith(PEM_MARKER):
        handles = load_pem_certificates(data, password)
        if not handles:
            raise CertificateLoadError("No certificate found in PEM data")
        for handle in handles:
            if handle.has_private_key:
                return handle
        return handles[0]

    try:
        return LoadedCertificate(x509.load_der_x509_certificate(data))
    except ValueError:
        pass

    return _load_pkcs12(data, password)


@dataclass(frozen=True)
class CertificateRecord:
    """Descriptive, JSON ready view of one certificate."""
    name: str
    store_name: Optional[str] = None
    store_location: Optional[str] = None
    subject: Optional[str] = None
    issuer: Optional[str] = None
    serial_number: Optional[str] = None
    valid_from: Optional[str] = None
    valid_until: Optional[str] = None
    status: str = ''
    days_left: Optional[int] = None
    thumbprint: Optional[str] = None
    has_private_key: Optional[bool] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, message, name='Error', store_name=None, store_location=None):
        return cls(
            name=name,
            store_name=store_name,
            store_location=store_location,
            status=STATUS_ERROR,
            error=message,
        )

    def to_dict(self):
        return {
            'name': self.name,
            'storeName': self.store_name,
            'storeLocation': self.store_location,
            'subject': self.subject,
            'issuer': self.issuer,
            'serialNumber': self.serial_number,
            'validFrom': self.valid_from,
            'validUntil': self.valid_until,
            'status': self.status,
            'daysLeft': self.days_left,
            'thumbprint': self.thumbprint,
            'hasPrivateKey': self.has_private_key,
            'error': self.error,
        }


def utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def days_until(moment, now):
    """Whole days from now until moment, rounded down (negative once expired)."""
    return (moment - now).days


def classify_expiration(not_after, now, warning_days=DEFAULT_WARNING_DAYS):
    if now > not_after:
        return STATUS_EXPIRED
    if days_until(not_after, now) < warning_days:
        return STATUS_WARNING
    return STATUS_VALID


def display_name(friendly_name, subject):
    if friendly_name:
        return friendly_name
    first = RDN_SEPARATOR.split(subject or '', 1)[0].strip()
    if first.upper().startswith('CN='):
        first = first[3:]
    return first or UNKNOWN_NAME


def _fallback_name(handle):
    try:
        return display_name(handle.friendly_name, handle.certificate.subject.rfc4514_string())
    except Exception:
        return 'Unknown Certificate'


def extract_certificate_details(handle, store_name, store_location, now=None,
                                warning_days=DEFAULT_WARNING_DAYS):
    """Describe a certificate handle. Never raises; failures become Error records."""
    try:
        cert = handle.certificate
        now = now or utcnow()
        not_before = cert.not_valid_before_utc
        not_after = cert.not_valid_after_utc
        subject = cert.subject.rfc4514_string()

        return CertificateRecord(
            name=display_name(handle.friendly_name, subject),
            store_name=store_name,
            store_location=store_location,
            subject=subject,
            issuer=cert.issuer.rfc4514_string(),
            serial_number=format_serial_number(cert.serial_number),
            valid_from=not_before.strftime(DATE_FORMAT),
            valid_until=not_after.strftime(DATE_FORMAT),
            status=classify_expiration(not_after, now, warning_days),
            days_left=days_until(not_after, now),
            thumbprint=handle.thumbprint,
            has_private_key=handle.has_private_key,
        )
    except Exception as e:
        logger.warning(f"Failed to extract certificate details from {store_location}/{store_name}: {e}")
        return CertificateRecord.failure(
            f"Error processing certificate: {e}",
            name=_fallback_name(handle),
            store_name=store_name,
            store_location=store_location,
        )


class CertificateRegistry:
    """Thread-safe thumbprint -> LoadedCertificate map living for the process lifetime."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries = {}

    def add(self, handle):
        with self._lock:
            self._entries[handle.thumbprint] = handle
        return handle.thumbprint

    def get(self, thumbprint):
        key = normalize_thumbprint(thumbprint)
        with self._lock:
            return self._entries.get(key)

    def list_all(self):
        with self._lock:
            return list(self._entries.values())

    def remove(self, thumbprint):
        key = normalize_thumbprint(thumbprint)
        with self._lock:
            handle = self._entries.pop(key, None)
        if handle is None:
            return False
        handle.release()
        return True

    def __contains__(self, thumbprint):
        return self.get(thumbprint) is not None

    def __len__(self):
        with self._lock:
            return len(self._entries)
