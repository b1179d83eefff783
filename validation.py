"""Certificate validation by thumbprint: validity window, chain build, revocation, URL test."""
import http.client
import logging
import os
import ssl
import tempfile
import urllib.error
import urllib.request
from dataclasses import dataclass
from typing import Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.x509 import ocsp
from cryptography.x509.oid import AuthorityInformationAccessOID

from certificates import DATE_FORMAT, DEFAULT_WARNING_DAYS, days_until, utcnow

logger = logging.getLogger(__name__)

TEMP_FILE_PREFIX = 'cert_inventory_'
MAX_CHAIN_LENGTH = 10

NOT_FOUND_MESSAGE = 'Certificate not found'
VALID_MESSAGE = 'Certificate is valid'

# Chain status wording follows the platform chain engine's status strings
NOT_TIME_VALID = ('A required certificate is not within its validity period when verifying '
                  'against the current system clock.')
PARTIAL_CHAIN = 'A certificate chain could not be built to a trusted root authority.'
UNTRUSTED_ROOT = ('A certificate chain processed, but terminated in a root certificate which '
                  'is not trusted by the trust provider.')
NOT_SIGNATURE_VALID = 'The signature of the certificate cannot be verified.'
INVALID_BASIC_CONSTRAINTS = 'The basic constraints extension has not been met.'


@dataclass
class ValidationResult:
    is_valid: bool = False
    message: str = ''
    chain_valid: Optional[bool] = False
    revocation_valid: Optional[bool] = None
    url_test_result: Optional[str] = None
    expiration_status: str = ''

    def to_dict(self):
        return {
            'isValid': self.is_valid,
            'message': self.message,
            'chainValid': self.chain_valid,
            'revocationValid': self.revocation_valid,
            'urlTestResult': self.url_test_result,
            'expirationStatus': self.expiration_status,
        }


def _is_http_url(url):
    return isinstance(url, str) and url.lower().startswith(('https://', 'http://'))


def _is_time_valid(cert, now):
    return cert.not_valid_before_utc <= now <= cert.not_valid_after_utc


def _signed_by(cert, issuer):
    try:
        cert.verify_directly_issued_by(issuer)
    except (ValueError, TypeError, InvalidSignature):
        return False
    return True


def _is_ca(cert):
    try:
        return cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
    except x509.ExtensionNotFound:
        # v1 roots carry no extensions
        return True


def build_chain(certificate, candidates, trust_anchors, now):
    """Link ``certificate`` to a trusted self-signed root.

    ``candidates`` are certificates that may act as issuers, ``trust_anchors``
    is the set of thumbprints considered trusted roots. Returns the chain
    (leaf first) and the list of status reasons; an empty list means the chain
    is valid.
    """
    by_subject = {}
    for candidate in candidates:
        by_subject.setdefault(candidate.subject.public_bytes(), []).append(candidate)

    chain = [certificate]
    reasons = []
    seen = {certificate.fingerprint(hashes.SHA1())}
    current = certificate

    while True:
        if not _is_time_valid(current, now) and NOT_TIME_VALID not in reasons:
            reasons.append(NOT_TIME_VALID)

        if current.subject == current.issuer and _signed_by(current, current):
            if current.fingerprint(hashes.SHA1()).hex().upper() not in trust_anchors:
                reasons.append(UNTRUSTED_ROOT)
            break

        if len(chain) >= MAX_CHAIN_LENGTH:
            reasons.append(PARTIAL_CHAIN)
            break

        same_name = [
            candidate for candidate in by_subject.get(current.issuer.public_bytes(), [])
            if candidate.fingerprint(hashes.SHA1()) not in seen
        ]
        issuer = next((candidate for candidate in same_name if _signed_by(current, candidate)), None)

        if issuer is None:
            reasons.append(NOT_SIGNATURE_VALID if same_name else PARTIAL_CHAIN)
            break

        if not _is_ca(issuer) and INVALID_BASIC_CONSTRAINTS not in reasons:
            reasons.append(INVALID_BASIC_CONSTRAINTS)

        chain.append(issuer)
        seen.add(issuer.fingerprint(hashes.SHA1()))
        current = issuer

    return chain, reasons


def check_revocation_status(cert, issuer, timeout=10):
    """Ask the certificate's OCSP responder about it.

    Returns ``(True|False|None, detail)``; None means the status could not be
    determined.
    """
    try:
        aia = cert.extensions.get_extension_for_class(x509.AuthorityInformationAccess)
    except x509.ExtensionNotFound:
        return None, "No OCSP responder listed in certificate"

    urls = [
        description.access_location.value
        for description in aia.value
        if description.access_method == AuthorityInformationAccessOID.OCSP
    ]
    if not urls:
        return None, "No OCSP responder listed in certificate"
    if not _is_http_url(urls[0]):
        return None, f"Unsupported OCSP responder URL: {urls[0]}"

    request = ocsp.OCSPRequestBuilder().add_certificate(cert, issuer, hashes.SHA1()).build()
    http_request = urllib.request.Request(
        urls[0],
        data=request.public_bytes(serialization.Encoding.DER),
        headers={'Content-Type': 'application/ocsp-request', 'Accept': 'application/ocsp-response'},
    )

    try:
        with urllib.request.urlopen(http_request, timeout=timeout) as response:
            body = response.read()
        ocsp_response = ocsp.load_der_ocsp_response(body)
    except (OSError, ValueError) as e:
        logger.warning(f"OCSP request to {urls[0]} failed: {e}")
        return None, f"Revocation check failed: {e}"

    if ocsp_response.response_status != ocsp.OCSPResponseStatus.SUCCESSFUL:
        return None, f"OCSP responder returned {ocsp_response.response_status.name}"

    status = ocsp_response.certificate_status
    if status == ocsp.OCSPCertStatus.GOOD:
        return True, "Certificate is not revoked"
    if status == ocsp.OCSPCertStatus.REVOKED:
        return False, "Certificate has been revoked"
    return None, "OCSP responder does not know the certificate"


class ClientCredentialFiles:
    """Temporary PEM files for presenting a certificate through ``ssl``."""

    def __init__(self):
        self.temp_files = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()

    def cleanup(self):
        for temp_file in self.temp_files:
            try:
                if os.path.exists(temp_file):
                    os.unlink(temp_file)
            except OSError as e:
                logger.error(f"Failed to cleanup temp file {temp_file}: {e}")

    def create_temp_file(self, data, suffix=''):
        temp_file = tempfile.NamedTemporaryFile(prefix=TEMP_FILE_PREFIX, suffix=suffix, delete=False)
        temp_file.write(data)
        temp_file.close()
        self.temp_files.append(temp_file.name)
        return temp_file.name

    def write(self, handle):
        cert_path = self.create_temp_file(handle.certificate.public_bytes(serialization.Encoding.PEM), '.pem')
        key_path = self.create_temp_file(handle.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        ), '.key')
        return cert_path, key_path


def run_url_test(handle, url, timeout=10):
    """HTTPS GET ``url`` presenting the certificate as client certificate when its key is held."""
    if not _is_http_url(url):
        return "Failed: URL must start with http:// or https://"

    with ClientCredentialFiles() as files:
        try:
            context = ssl.create_default_context()
            if handle.has_private_key:
                cert_path, key_path = files.write(handle)
                context.load_cert_chain(certfile=cert_path, keyfile=key_path)
            with urllib.request.urlopen(url, timeout=timeout, context=context) as response:
                result = f"Success: HTTP {response.status}"
        except urllib.error.HTTPError as e:
            result = f"Failed: HTTP {e.code} {e.reason}"
        except (urllib.error.URLError, http.client.HTTPException, OSError, ValueError) as e:
            result = f"Failed: {getattr(e, 'reason', e)}"

    if not handle.has_private_key:
        result += " (no private key, client certificate not presented)"
    return result


class CertificateValidator:
    def __init__(self, registry, catalog, search_stores=None, trust_anchor_stores=None,
                 check_revocation=False, timeout=10, warning_days=DEFAULT_WARNING_DAYS):
        self.registry = registry
        self.catalog = catalog
        self.search_stores = list(search_stores or [])
        self.trust_anchor_stores = list(trust_anchor_stores or [])
        self.check_revocation = check_revocation
        self.timeout = timeout
        self.warning_days = warning_days

    @classmethod
    def from_config(cls, config, catalog, registry):
        return cls(
            registry,
            catalog,
            search_stores=config['VALIDATION_SEARCH_STORES'],
            trust_anchor_stores=config['TRUST_ANCHOR_STORES'],
            check_revocation=config['CHECK_REVOCATION'],
            timeout=config['OUTBOUND_TIMEOUT'],
            warning_days=config['WARNING_DAYS'],
        )

    def find_certificate(self, thumbprint):
        """Registry first, then the configured system stores."""
        handle = self.registry.get(thumbprint)
        if handle is None:
            handle = self.catalog.find(thumbprint, self.search_stores)
        return handle

    def _chain_candidates(self):
        anchors = self.catalog.open_many(self.trust_anchor_stores)
        others = self.catalog.open_many(
            [identifier for identifier in self.search_stores if identifier not in self.trust_anchor_stores])
        loaded = self.registry.list_all()
        candidates = [handle.certificate for handle in anchors + others + loaded]
        return candidates, {handle.thumbprint for handle in anchors}

    def _expiration(self, cert, now):
        if now < cert.not_valid_before_utc:
            return 'Not yet valid', False, f"Certificate is not yet valid (starts {cert.not_valid_before_utc.strftime(DATE_FORMAT)})"
        if now > cert.not_valid_after_utc:
            return 'Expired', False, f"Certificate has expired ({cert.not_valid_after_utc.strftime(DATE_FORMAT)})"
        days_left = days_until(cert.not_valid_after_utc, now)
        if days_left < self.warning_days:
            return f"Expires in {days_left} days", True, None
        return 'Valid', True, None

    def validate(self, thumbprint, validate_chain=True, check_revocation=None, test_url=None, now=None):
        try:
            return self._validate(thumbprint, validate_chain, check_revocation, test_url, now or utcnow())
        except Exception as e:
            logger.error(f"Error validating certificate {thumbprint}: {e}", exc_info=True)
            return ValidationResult(
                is_valid=False,
                message=f"Validation error: {e}",
                chain_valid=False,
                expiration_status='Error',
            )

    def _validate(self, thumbprint, validate_chain, check_revocation, url, now):
        logger.info(f"Validating certificate: {thumbprint}")
        handle = self.find_certificate(thumbprint)
        if handle is None:
            return ValidationResult(
                is_valid=False,
                message=NOT_FOUND_MESSAGE,
                chain_valid=False,
                expiration_status='Unknown',
            )

        cert = handle.certificate
        result = ValidationResult()
        failures = []

        result.expiration_status, result.is_valid, time_failure = self._expiration(cert, now)
        if time_failure:
            failures.append(time_failure)

        chain = [cert]
        if validate_chain:
            candidates, anchors = self._chain_candidates()
            chain, reasons = build_chain(cert, candidates, anchors, now)
            result.chain_valid = not reasons
            if reasons:
                failures.append('; '.join(reasons))
        else:
            result.chain_valid = None

        if check_revocation is None:
            check_revocation = self.check_revocation
        if check_revocation:
            issuer = chain[1] if len(chain) > 1 else (cert if cert.subject == cert.issuer else None)
            if issuer is None:
                result.revocation_valid = None
                logger.info(f"Revocation not checked for {handle.thumbprint}: issuer certificate not available")
            else:
                result.revocation_valid, detail = check_revocation_status(cert, issuer, self.timeout)
                if result.revocation_valid is False:
                    result.is_valid = False
                    failures.append(detail)

        if url:
            result.url_test_result = run_url_test(handle, url, self.timeout)

        if result.is_valid and result.chain_valid is not False and not failures:
            result.message = VALID_MESSAGE
            if result.expiration_status != 'Valid':
                result.message += f" ({result.expiration_status.lower()})"
        else:
            result.message = '; '.join(failures)

        return result
