"""Host certificate stores.

A store is anything that can hand back a list of ``LoadedCertificate`` handles
when opened. On a Linux host the "stores" are directories of certificate files
(``/var/ssl/private`` for App Service private certificates) or a concatenated
PEM bundle such as the distribution CA file. Which concrete store backs which
``<Location>/<Name>`` identifier is configuration, see ``settings.py``.
"""
import logging
import os

from certificates import (
    PEM_MARKER,
    CertificateLoadError,
    load_certificate_blob,
    load_pem_certificates,
    normalize_thumbprint,
)

logger = logging.getLogger(__name__)

ALLOWED_EXTENSIONS = {'.pem', '.der', '.crt', '.cer', '.pfx', '.p12'}


class StoreAccessError(Exception):
    """Raised when a store cannot be opened for reading."""


def split_store_identifier(identifier):
    location, sep, name = (identifier or '').partition('/')
    if not sep or not location or not name:
        raise StoreAccessError(f"Invalid store identifier '{identifier}', expected <Location>/<Name>")
    return location, name


def load_store_file(data):
    """All certificates contained in one store file."""
    if data.lstrip().startswith(PEM_MARKER):
        return load_pem_certificates(data)
    return [load_certificate_blob(data)]


class CertificateStore:
    """Read-only certificate store capability."""

    def __init__(self, location, name):
        self.location = location
        self.name = name

    @property
    def identifier(self):
        return f"{self.location}/{self.name}"

    def open(self):
        raise NotImplementedError

    def find(self, thumbprint):
        key = normalize_thumbprint(thumbprint)
        for handle in self.open():
            if handle.thumbprint == key:
                return handle
        return None

    def __repr__(self):
        return f"<{type(self).__name__} {self.identifier}>"


class DirectoryStore(CertificateStore):
    """A directory holding one certificate (or PEM bundle) per file."""

    def __init__(self, location, name, path):
        super().__init__(location, name)
        self.path = path

    def open(self):
        if not os.path.isdir(self.path):
            raise StoreAccessError(f"Store directory {self.path} does not exist")

        try:
            entries = sorted(os.listdir(self.path))
        except OSError as e:
            raise StoreAccessError(f"Cannot read store directory {self.path}: {e}") from e

        certificates = []
        for entry in entries:
            if os.path.splitext(entry)[1].lower() not in ALLOWED_EXTENSIONS:
                continue
            file_path = os.path.join(self.path, entry)
            if not os.path.isfile(file_path):
                continue
            try:
                with open(file_path, 'rb') as f:
                    certificates.extend(load_store_file(f.read()))
            except (OSError, CertificateLoadError) as e:
                logger.warning(f"Skipping {file_path} in store {self.identifier}: {e}")

        return certificates


class BundleStore(CertificateStore):
    """A single file, typically a concatenated PEM CA bundle."""

    def __init__(self, location, name, path):
        super().__init__(location, name)
        self.path = path

    def open(self):
        try:
            with open(self.path, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise StoreAccessError(f"Cannot read store file {self.path}: {e}") from e

        try:
            return load_store_file(data)
        except CertificateLoadError as e:
            raise StoreAccessError(f"Store file {self.path} is not a certificate bundle: {e}") from e


def store_for_path(identifier, path):
    location, name = split_store_identifier(identifier)
    if os.path.isfile(path):
        return BundleStore(location, name, path)
    return DirectoryStore(location, name, path)


class StoreCatalog:
    """Identifier -> store lookup, so callers never deal with concrete paths."""

    def __init__(self, stores=None):
        self._stores = {}
        for store in stores or []:
            self.register(store)

    @classmethod
    def from_paths(cls, paths):
        catalog = cls()
        for identifier, path in paths.items():
            try:
                catalog.register(store_for_path(identifier, path))
            except StoreAccessError as e:
                logger.error(f"Ignoring store configuration: {e}")
        return catalog

    def register(self, store):
        self._stores[store.identifier] = store
        return store

    def get(self, identifier):
        try:
            return self._stores[identifier]
        except KeyError:
            raise StoreAccessError(f"Unknown certificate store '{identifier}'") from None

    def identifiers(self):
        return list(self._stores)

    def open_many(self, identifiers):
        """Handles from every readable store in ``identifiers``; unreadable ones are skipped."""
        handles = []
        for identifier in identifiers:
            try:
                handles.extend(self.get(identifier).open())
            except StoreAccessError as e:
                logger.debug(f"Skipping store {identifier}: {e}")
        return handles

    def find(self, thumbprint, identifiers):
        for identifier in identifiers:
            try:
                handle = self.get(identifier).find(thumbprint)
            except StoreAccessError as e:
                logger.debug(f"Skipping store {identifier}: {e}")
                continue
            if handle is not None:
                return handle
        return None

    def __contains__(self, identifier):
        return identifier in self._stores

    def __len__(self):
        return len(self._stores)
