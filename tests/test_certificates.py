import datetime

import pytest

from certificates import (
    CertificateLoadError,
    CertificateRecord,
    CertificateRegistry,
    LoadedCertificate,
    classify_expiration,
    display_name,
    extract_certificate_details,
    load_certificate_blob,
    load_pem_certificates,
    normalize_thumbprint,
)
from conftest import issue


def _details(handle, now):
    return extract_certificate_details(handle, 'My', 'CurrentUser', now=now)


class TestExpirationStatus:
    def test_expired_after_valid_until(self, leaf):
        not_after = leaf.certificate.not_valid_after_utc
        record = _details(LoadedCertificate(leaf.certificate), not_after + datetime.timedelta(hours=12))

        assert record.status == 'Expired'
        # partial days round down
        assert record.days_left == -1

    def test_long_expired_has_negative_days_left(self, leaf):
        not_after = leaf.certificate.not_valid_after_utc
        record = _details(LoadedCertificate(leaf.certificate), not_after + datetime.timedelta(days=3, hours=1))

        assert record.status == 'Expired'
        assert record.days_left == -4

    def test_just_expired_is_negative(self, leaf):
        not_after = leaf.certificate.not_valid_after_utc
        record = _details(LoadedCertificate(leaf.certificate), not_after + datetime.timedelta(seconds=1))

        assert record.status == 'Expired'
        assert record.days_left == -1

    def test_warning_inside_thirty_days(self, leaf):
        not_after = leaf.certificate.not_valid_after_utc
        record = _details(LoadedCertificate(leaf.certificate), not_after - datetime.timedelta(days=29, hours=12))

        assert record.status == 'Warning'
        assert record.days_left == 29

    def test_warning_on_last_day(self, leaf):
        not_after = leaf.certificate.not_valid_after_utc
        record = _details(LoadedCertificate(leaf.certificate), not_after - datetime.timedelta(hours=2))

        assert record.status == 'Warning'
        assert record.days_left == 0

    def test_valid_from_thirty_days(self, leaf):
        not_after = leaf.certificate.not_valid_after_utc
        record = _details(LoadedCertificate(leaf.certificate), not_after - datetime.timedelta(days=30, hours=1))

        assert record.status == 'Valid'
        assert record.days_left == 30

    def test_classify_uses_warning_window(self):
        now = datetime.datetime(2025, 1, 1, tzinfo=datetime.timezone.utc)

        assert classify_expiration(now + datetime.timedelta(days=5), now, warning_days=3) == 'Valid'
        assert classify_expiration(now + datetime.timedelta(days=2), now, warning_days=3) == 'Warning'
        assert classify_expiration(now - datetime.timedelta(seconds=1), now) == 'Expired'


class TestDetailExtraction:
    def test_fields(self, leaf, intermediate_ca):
        handle = LoadedCertificate(leaf.certificate, private_key=leaf.key)
        record = extract_certificate_details(handle, 'My', 'CurrentUser')

        assert record.name == 'app.contoso.com'
        assert record.store_name == 'My'
        assert record.store_location == 'CurrentUser'
        assert record.subject == 'CN=app.contoso.com,O=Contoso,C=US'
        assert record.issuer == intermediate_ca.certificate.subject.rfc4514_string()
        assert record.thumbprint == leaf.thumbprint
        assert record.has_private_key is True
        assert record.error is None
        assert record.valid_until == leaf.certificate.not_valid_after_utc.strftime('%Y-%m-%d %H:%M:%S UTC')
        assert record.valid_from.endswith(' UTC')
        assert len(record.serial_number) % 2 == 0
        assert int(record.serial_number, 16) == leaf.certificate.serial_number

    def test_friendly_name_wins(self, leaf):
        record = extract_certificate_details(
            LoadedCertificate(leaf.certificate, friendly_name='Front door'), 'My', 'CurrentUser')

        assert record.name == 'Front door'

    def test_extraction_failure_becomes_error_record(self, leaf):
        class BrokenCertificate:
            subject = leaf.certificate.subject

            @property
            def not_valid_before_utc(self):
                raise ValueError("bad validity encoding")

        handle = LoadedCertificate(leaf.certificate)
        handle.certificate = BrokenCertificate()

        record = extract_certificate_details(handle, 'My', 'CurrentUser')

        assert record.status == 'Error'
        assert record.name == 'app.contoso.com'
        assert 'bad validity encoding' in record.error
        assert record.error.startswith('Error processing certificate:')

    def test_to_dict_uses_camel_case(self, leaf):
        data = extract_certificate_details(LoadedCertificate(leaf.certificate), 'My', 'CurrentUser').to_dict()

        assert set(data) == {
            'name', 'storeName', 'storeLocation', 'subject', 'issuer', 'serialNumber', 'validFrom',
            'validUntil', 'status', 'daysLeft', 'thumbprint', 'hasPrivateKey', 'error',
        }
        assert data['hasPrivateKey'] is False


@pytest.mark.parametrize('subject, expected', [
    ('CN=web.contoso.com,O=Contoso', 'web.contoso.com'),
    ('O=Contoso,C=US', 'O=Contoso'),
    (r'CN=Contoso\, Inc.,C=US', r'Contoso\, Inc.'),
    ('', 'Unknown'),
    ('CN=', 'Unknown'),
])
def test_display_name_from_subject(subject, expected):
    assert display_name(None, subject) == expected


class TestLoading:
    def test_der(self, leaf):
        handle = load_certificate_blob(leaf.der())

        assert handle.thumbprint == leaf.thumbprint
        assert not handle.has_private_key

    def test_pem_with_key(self, leaf):
        handle = load_certificate_blob(leaf.key_pem() + leaf.pem())

        assert handle.thumbprint == leaf.thumbprint
        assert handle.has_private_key

    def test_pem_key_mismatch(self, leaf, expired):
        with pytest.raises(CertificateLoadError):
            load_certificate_blob(leaf.pem() + expired.key_pem())

    def test_pem_bundle(self, leaf, intermediate_ca, root_ca):
        handles = load_pem_certificates(leaf.pem() + intermediate_ca.pem() + root_ca.pem())

        assert [h.thumbprint for h in handles] == [leaf.thumbprint, intermediate_ca.thumbprint, root_ca.thumbprint]

    def test_pkcs12_with_password(self, leaf):
        handle = load_certificate_blob(leaf.pfx(b'secret'), 'secret')

        assert handle.thumbprint == leaf.thumbprint
        assert handle.has_private_key
        assert handle.friendly_name == 'pfx friendly'

    def test_pkcs12_without_password(self, leaf):
        handle = load_certificate_blob(leaf.pfx())

        assert handle.thumbprint == leaf.thumbprint

    def test_pkcs12_wrong_password(self, leaf):
        with pytest.raises(CertificateLoadError):
            load_certificate_blob(leaf.pfx(b'secret'), 'not-the-password')

    def test_pkcs12_non_string_password(self, leaf):
        with pytest.raises(CertificateLoadError, match='Password must be a string'):
            load_certificate_blob(leaf.pfx(b'secret'), 123)

    @pytest.mark.parametrize('data', [b'not a certificate', b'-----BEGIN CERTIFICATE-----\nAAAA\n', b''])
    def test_garbage(self, data):
        with pytest.raises(CertificateLoadError):
            load_certificate_blob(data)


class TestRegistry:
    def test_add_get_remove(self, leaf):
        registry = CertificateRegistry()
        handle = LoadedCertificate(leaf.certificate, private_key=leaf.key)

        assert registry.add(handle) == leaf.thumbprint
        assert registry.get(leaf.thumbprint.lower()) is handle
        assert leaf.thumbprint in registry
        assert len(registry) == 1

        assert registry.remove(leaf.thumbprint) is True
        assert handle.private_key is None
        assert registry.get(leaf.thumbprint) is None
        assert registry.remove(leaf.thumbprint) is False

    def test_duplicate_overwrites(self, leaf):
        registry = CertificateRegistry()
        first = LoadedCertificate(leaf.certificate)
        second = LoadedCertificate(leaf.certificate, friendly_name='second')

        registry.add(first)
        registry.add(second)

        assert registry.list_all() == [second]

    def test_lookup_ignores_separators(self, leaf):
        registry = CertificateRegistry()
        registry.add(LoadedCertificate(leaf.certificate))
        spaced = ' '.join(leaf.thumbprint[i:i + 2] for i in range(0, len(leaf.thumbprint), 2))

        assert registry.get(spaced) is not None
        assert normalize_thumbprint('ab:cd ef') == 'ABCDEF'


def test_failure_record():
    record = CertificateRecord.failure('Failed to access certificate store: nope')

    assert record.name == 'Error'
    assert record.status == 'Error'
    assert record.thumbprint is None


def test_issue_helper_makes_distinct_certificates():
    assert issue('a').thumbprint != issue('a').thumbprint
