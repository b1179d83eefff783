"""Environment driven configuration for the certificate inventory service."""
import os
import secrets
import socket

# Store identifiers are "<Location>/<Name>"
STORE_LOCATIONS = ('CurrentUser', 'LocalMachine')
STORE_NAMES = ('My', 'Root', 'CertificateAuthority')

# Linux App Service layout plus the distribution CA bundle
DEFAULT_STORE_PATHS = {
    'CurrentUser/My': '/var/ssl/private',
    'CurrentUser/Root': '/var/ssl/root',
    'CurrentUser/CertificateAuthority': '/var/ssl/certs',
    'LocalMachine/My': '/etc/ssl/private',
    'LocalMachine/Root': '/etc/ssl/certs/ca-certificates.crt',
    'LocalMachine/CertificateAuthority': '/usr/local/share/ca-certificates',
}

LOAD_CERTIFICATES_VARIABLE = 'WEBSITE_LOAD_CERTIFICATES'
HOSTNAME_VARIABLE = 'WEBSITE_HOSTNAME'
SKU_VARIABLE = 'WEBSITE_SKU'


def parse_store_list(value):
    """Split a comma separated list of store identifiers."""
    if not value:
        return []
    return [item.strip() for item in value.split(',') if item.strip()]


def parse_store_paths(value):
    """Parse ``Location/Name=path;Location/Name=path`` into a dict."""
    paths = {}
    if not value:
        return paths
    for entry in value.split(';'):
        if not entry.strip():
            continue
        if '=' not in entry:
            raise ValueError(f"Invalid store path entry: {entry!r}")
        identifier, path = entry.split('=', 1)
        paths[identifier.strip()] = path.strip()
    return paths


def _flag(value, default=False):
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def load_settings(environ=None):
    environ = os.environ if environ is None else environ

    store_paths = dict(DEFAULT_STORE_PATHS)
    store_paths.update(parse_store_paths(environ.get('CERT_STORE_PATHS', '')))

    search_default = ','.join(f"{location}/{name}" for location in STORE_LOCATIONS for name in STORE_NAMES)

    return {
        'SECRET_KEY': environ.get('SECRET_KEY', secrets.token_hex(32)),
        'PORT': int(environ.get('PORT', 5000)),
        'LOG_LEVEL': environ.get('LOG_LEVEL', 'INFO').upper(),
        'CERT_STORE_PATHS': store_paths,
        'PRIVATE_STORES': parse_store_list(environ.get('PRIVATE_STORES', 'CurrentUser/My')),
        'PUBLIC_CERTIFICATES_MODE': environ.get('PUBLIC_CERTIFICATES_MODE', 'empty').lower(),
        'PUBLIC_STORES': parse_store_list(
            environ.get('PUBLIC_STORES', 'LocalMachine/Root,LocalMachine/CertificateAuthority')),
        'APPSERVICE_STORES': parse_store_list(environ.get('APPSERVICE_STORES', 'CurrentUser/My')),
        'VALIDATION_SEARCH_STORES': parse_store_list(environ.get('VALIDATION_SEARCH_STORES', search_default)),
        'TRUST_ANCHOR_STORES': parse_store_list(
            environ.get('TRUST_ANCHOR_STORES', 'CurrentUser/Root,LocalMachine/Root')),
        'CHECK_REVOCATION': _flag(environ.get('CHECK_REVOCATION')),
        'OUTBOUND_TIMEOUT': float(environ.get('OUTBOUND_TIMEOUT', 10)),
        'CERTIFICATES_URL_PREFIX': environ.get('CERTIFICATES_URL_PREFIX', '/certificates'),
        'SYSTEM_URL_PREFIX': environ.get('SYSTEM_URL_PREFIX', '/system'),
        'WARNING_DAYS': int(environ.get('WARNING_DAYS', 30)),
        'MAX_CERTIFICATE_SIZE': int(environ.get('MAX_CERTIFICATE_SIZE', 5 * 1024 * 1024)),
    }


def system_info(environ=None):
    """Host details reported by the system endpoint and the inventory page."""
    environ = os.environ if environ is None else environ
    hostname = environ.get(HOSTNAME_VARIABLE)
    if not hostname:
        try:
            hostname = socket.gethostname()
        except OSError:
            hostname = 'Unknown'

    return {
        'hostname': hostname or 'Unknown',
        'certificateEnvironmentVariable': environ.get(LOAD_CERTIFICATES_VARIABLE) or 'Not set',
        'appServicePlan': environ.get(SKU_VARIABLE) or 'Unknown',
    }
