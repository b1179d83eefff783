import base64
import datetime
from dataclasses import dataclass

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import AuthorityInformationAccessOID, NameOID

from app import create_app
from certificates import CertificateRegistry


@dataclass
class Issued:
    certificate: x509.Certificate
    key: object

    @property
    def thumbprint(self):
        return self.certificate.fingerprint(hashes.SHA1()).hex().upper()

    def pem(self):
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    def der(self):
        return self.certificate.public_bytes(serialization.Encoding.DER)

    def key_pem(self):
        return self.key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )

    def pfx(self, password=None, friendly_name=b'pfx friendly'):
        encryption = (serialization.BestAvailableEncryption(password) if password
                      else serialization.NoEncryption())
        return pkcs12.serialize_key_and_certificates(friendly_name, self.key, self.certificate, None, encryption)

    def b64(self, data=None):
        return base64.b64encode(self.der() if data is None else data).decode('ascii')


def issue(common_name, issuer=None, not_before=None, not_after=None, ca=False, ocsp_url=None):
    """Create a certificate signed by ``issuer`` (self-signed when None)."""
    now = datetime.datetime.now(datetime.timezone.utc)
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([
        x509.NameAttribute(NameOID.COUNTRY_NAME, 'US'),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, 'Contoso'),
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
    ])

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.certificate.subject if issuer else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(not_before or now - datetime.timedelta(days=1))
        .not_valid_after(not_after or now + datetime.timedelta(days=365))
        .add_extension(x509.BasicConstraints(ca=ca, path_length=None), critical=True)
    )
    if ocsp_url:
        builder = builder.add_extension(x509.AuthorityInformationAccess([
            x509.AccessDescription(AuthorityInformationAccessOID.OCSP, x509.UniformResourceIdentifier(ocsp_url)),
        ]), critical=False)
    certificate = builder.sign(issuer.key if issuer else key, hashes.SHA256())
    return Issued(certificate, key)


@pytest.fixture(scope='session')
def root_ca():
    return issue('Contoso Root CA', ca=True)


@pytest.fixture(scope='session')
def intermediate_ca(root_ca):
    return issue('Contoso Issuing CA', issuer=root_ca, ca=True)


@pytest.fixture(scope='session')
def leaf(intermediate_ca):
    return issue('app.contoso.com', issuer=intermediate_ca)


@pytest.fixture(scope='session')
def expired():
    now = datetime.datetime.now(datetime.timezone.utc)
    return issue('expired.contoso.com', not_before=now - datetime.timedelta(days=400),
                 not_after=now - datetime.timedelta(days=1))


@pytest.fixture(scope='session')
def expiring_soon():
    now = datetime.datetime.now(datetime.timezone.utc)
    return issue('soon.contoso.com', not_after=now + datetime.timedelta(days=10))


@pytest.fixture
def store_paths(tmp_path):
    paths = {
        'CurrentUser/My': tmp_path / 'my',
        'LocalMachine/Root': tmp_path / 'root',
        'LocalMachine/CertificateAuthority': tmp_path / 'ca',
    }
    for path in paths.values():
        path.mkdir()
    return paths


@pytest.fixture
def settings_overrides(store_paths):
    identifiers = list(store_paths)
    return {
        'TESTING': True,
        'CERT_STORE_PATHS': {identifier: str(path) for identifier, path in store_paths.items()},
        'PRIVATE_STORES': ['CurrentUser/My'],
        'PUBLIC_STORES': ['LocalMachine/Root', 'LocalMachine/CertificateAuthority'],
        'PUBLIC_CERTIFICATES_MODE': 'empty',
        'APPSERVICE_STORES': ['CurrentUser/My'],
        'VALIDATION_SEARCH_STORES': identifiers,
        'TRUST_ANCHOR_STORES': ['LocalMachine/Root'],
        'CHECK_REVOCATION': False,
        'CERTIFICATES_URL_PREFIX': '/certificates',
        'SYSTEM_URL_PREFIX': '/system',
    }


@pytest.fixture
def registry():
    return CertificateRegistry()


@pytest.fixture
def app(settings_overrides, registry):
    return create_app(settings_overrides, registry=registry)


@pytest.fixture
def client(app):
    return app.test_client()
