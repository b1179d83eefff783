"""Certificate listing, import and removal on top of the stores and the registry."""
import base64
import binascii
import logging
import os

from certificates import (
    DEFAULT_WARNING_DAYS,
    MEMORY_STORE_LOCATION,
    MEMORY_STORE_NAME,
    CertificateLoadError,
    CertificateRecord,
    extract_certificate_details,
    load_certificate_blob,
)
from settings import LOAD_CERTIFICATES_VARIABLE
from stores import StoreAccessError

logger = logging.getLogger(__name__)

PUBLIC_MODE_EMPTY = 'empty'
PUBLIC_MODE_STORES = 'stores'

APPSERVICE_STORE_NAME = 'AppService'
APPSERVICE_STORE_LOCATION = 'CurrentUser'


class CertificateService:
    def __init__(self, catalog, registry, private_stores=None, public_stores=None,
                 public_mode=PUBLIC_MODE_EMPTY, appservice_stores=None,
                 warning_days=DEFAULT_WARNING_DAYS, max_certificate_size=None):
        self.catalog = catalog
        self.registry = registry
        self.private_stores = list(private_stores or [])
        self.public_stores = list(public_stores or [])
        self.public_mode = public_mode
        self.appservice_stores = list(appservice_stores or [])
        self.warning_days = warning_days
        self.max_certificate_size = max_certificate_size

    @classmethod
    def from_config(cls, config, catalog, registry):
        return cls(
            catalog,
            registry,
            private_stores=config['PRIVATE_STORES'],
            public_stores=config['PUBLIC_STORES'],
            public_mode=config['PUBLIC_CERTIFICATES_MODE'],
            appservice_stores=config['APPSERVICE_STORES'],
            warning_days=config['WARNING_DAYS'],
            max_certificate_size=config['MAX_CERTIFICATE_SIZE'],
        )

    def _describe(self, handle, store_name, store_location):
        return extract_certificate_details(handle, store_name, store_location, warning_days=self.warning_days)

    def list_store(self, identifier, store_name=None, store_location=None,
                   error_prefix="Failed to access certificate store"):
        """Records for every certificate in one store, or a single Error record."""
        try:
            store = self.catalog.get(identifier)
            handles = store.open()
        except StoreAccessError as e:
            logger.error(f"Error reading certificate store {identifier}: {e}")
            return [CertificateRecord.failure(f"{error_prefix}: {e}")]

        return [
            self._describe(handle, store_name or store.name, store_location or store.location)
            for handle in handles
        ]

    def list_private(self):
        records = []
        for identifier in self.private_stores:
            records.extend(self.list_store(identifier))
        return records

    def list_public(self):
        if self.public_mode != PUBLIC_MODE_STORES:
            return []
        records = []
        for identifier in self.public_stores:
            records.extend(self.list_store(identifier))
        return records

    def list_appservice(self, environ=None):
        """Certificates the hosting platform placed in the store because the load flag is set."""
        environ = os.environ if environ is None else environ
        load_certificates = environ.get(LOAD_CERTIFICATES_VARIABLE)
        if not load_certificates:
            logger.info(f"{LOAD_CERTIFICATES_VARIABLE} environment variable not set")
            return []

        logger.info(f"{LOAD_CERTIFICATES_VARIABLE} is set to: {load_certificates}")
        records = []
        for identifier in self.appservice_stores:
            records.extend(self.list_store(
                identifier,
                store_name=APPSERVICE_STORE_NAME,
                store_location=APPSERVICE_STORE_LOCATION,
                error_prefix="Failed to access App Service certificates",
            ))
        return records

    def list_loaded(self):
        return [
            self._describe(handle, MEMORY_STORE_NAME, MEMORY_STORE_LOCATION)
            for handle in self.registry.list_all()
        ]

    def decode_certificate_data(self, certificate_data):
        compact = ''.join(certificate_data.split())
        try:
            data = base64.b64decode(compact, validate=True)
        except (binascii.Error, ValueError) as e:
            raise CertificateLoadError(f"Invalid base64 certificate data: {e}") from e
        if self.max_certificate_size and len(data) > self.max_certificate_size:
            raise CertificateLoadError(
                f"Certificate data exceeds maximum allowed size ({self.max_certificate_size} bytes)")
        return data

    def import_certificate(self, certificate_data, password=None, friendly_name=None):
        """Decode, parse and register a certificate. Failures come back as an Error record."""
        try:
            data = self.decode_certificate_data(certificate_data or '')
            handle = load_certificate_blob(data, password or None)
        except CertificateLoadError as e:
            logger.error(f"Failed to load certificate: {e}")
            return CertificateRecord.failure(f"Failed to load certificate: {e}")

        if friendly_name:
            handle.friendly_name = friendly_name

        record = self._describe(handle, MEMORY_STORE_NAME, MEMORY_STORE_LOCATION)
        if record.error:
            logger.error(f"Certificate not loaded: {record.error}")
            return record

        thumbprint = self.registry.add(handle)
        logger.info(f"Certificate loaded successfully: {thumbprint}")
        return record

    def remove_loaded(self, thumbprint):
        removed = self.registry.remove(thumbprint)
        if removed:
            logger.info(f"Certificate removed from memory: {thumbprint}")
        return removed

    def inventory(self):
        """Everything the inventory page and reports show."""
        return self.list_private() + self.list_loaded()
