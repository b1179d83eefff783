import os
from flask import Blueprint, Flask, current_app, jsonify, redirect, render_template_string, request, send_file, url_for
from werkzeug.exceptions import HTTPException
import datetime
import logging
from io import BytesIO

from certificates import CertificateRegistry
from inventory import CertificateService
from reports import generate_json_report, generate_pdf_report
from settings import LOAD_CERTIFICATES_VARIABLE, load_settings, system_info
from stores import StoreCatalog
from validation import CertificateValidator

logger = logging.getLogger(__name__)

EXTENSION_KEY = 'certificate_inventory'

HTML_TEMPLATE = '''
<!DOCTYPE html>
<html lang='en'>
<head>
    <meta charset='UTF-8'>
    <meta name='viewport' content='width=device-width, initial-scale=1.0'>
    <title>Certificate Inventory</title>
    <style>
        * {
            margin: 0;
            padding: 0;
            box-sizing: border-box;
        }

        body {
            font-family: Arial, sans-serif;
            background: #0f172a;
            color: #e2e8f0;
            padding: 20px;
        }

        .container {
            max-width: 960px;
            margin: 0 auto;
            background: #1e293b;
            padding: 32px;
            border-radius: 12px;
        }

        h1 {
            color: #38bdf8;
            margin-bottom: 8px;
        }

        h2 {
            margin: 24px 0 12px;
            color: #cbd5e1;
        }

        .host {
            color: #94a3b8;
            line-height: 1.6;
        }

        .cert {
            border: 1px solid #334155;
            border-radius: 8px;
            margin: 10px 0;
            padding: 12px 16px;
            line-height: 1.5;
        }

        .status-Valid { color: #4ade80; }
        .status-Warning { color: #facc15; }
        .status-Expired, .status-Error { color: #f87171; }

        .thumbprint {
            font-family: monospace;
            color: #94a3b8;
        }

        a {
            color: #38bdf8;
        }
    </style>
</head>
<body>
    <div class='container'>
        <h1>Certificate Inventory</h1>
        <div class='host'>
            Hostname: {{ info.hostname }}<br>
            {{ load_variable }}: {{ info.certificateEnvironmentVariable }}<br>
            App Service plan: {{ info.appServicePlan }}
        </div>
        <h2>Certificates ({{ certificates|length }})</h2>
        {% for cert in certificates %}
        <div class='cert'>
            <strong>{{ cert.name }}</strong>
            <span class='status-{{ cert.status }}'>{{ cert.status }}</span><br>
            {% if cert.error %}
            Error: {{ cert.error }}
            {% else %}
            Subject: {{ cert.subject }}<br>
            Expires: {{ cert.valid_until }} ({{ cert.days_left }} days left)<br>
            <span class='thumbprint'>{{ cert.thumbprint }}</span>
            {% endif %}
        </div>
        {% else %}
        <p>No certificates found.</p>
        {% endfor %}
        <p><a href='{{ url_for("pages.download_report", file_type="pdf") }}'>Download PDF report</a>
        | <a href='{{ url_for("pages.download_report", file_type="json") }}'>Download JSON report</a></p>
    </div>
</body>
</html>
'''

certificates_bp = Blueprint('certificates', __name__)
system_bp = Blueprint('system', __name__)
pages_bp = Blueprint('pages', __name__)


def _service():
    return current_app.extensions[EXTENSION_KEY]['service']


def _validator():
    return current_app.extensions[EXTENSION_KEY]['validator']


def _json_body():
    payload = request.get_json(silent=True)
    return payload if isinstance(payload, dict) else {}


def _flag(payload, key, default):
    # Only a JSON true/false overrides the default
    value = payload.get(key)
    return value if isinstance(value, bool) else default


def _records(records):
    return jsonify([record.to_dict() for record in records])


@certificates_bp.route('/private', methods=['GET'])
def private_certificates():
    logger.info("Retrieving private certificates")
    return _records(_service().list_private())


@certificates_bp.route('/public', methods=['GET'])
def public_certificates():
    logger.info("Retrieving public certificates")
    return _records(_service().list_public())


@certificates_bp.route('/appservice', methods=['GET'])
def appservice_certificates():
    """Certificates placed in the store by the platform (WEBSITE_LOAD_CERTIFICATES)"""
    logger.info("Retrieving App Service certificates")
    return _records(_service().list_appservice())


@certificates_bp.route('/loaded', methods=['GET'])
def loaded_certificates():
    logger.info("Retrieving loaded certificates")
    return _records(_service().list_loaded())


@certificates_bp.route('/load', methods=['POST'])
def load_certificate():
    """Import a base64 certificate blob into application memory"""
    logger.info("Loading certificate into memory")
    payload = _json_body()

    certificate_data = payload.get('certificateData')
    if not certificate_data or not isinstance(certificate_data, str):
        return jsonify({'error': 'Certificate data is required'}), 400

    password = payload.get('password')
    friendly_name = payload.get('friendlyName')
    for key, value in (('password', password), ('friendlyName', friendly_name)):
        if value is not None and not isinstance(value, str):
            return jsonify({'error': 'Failed to load certificate', 'details': f"{key} must be a string"}), 400

    record = _service().import_certificate(certificate_data, password, friendly_name)
    if record.error:
        return jsonify({'error': 'Failed to load certificate', 'details': record.error}), 400

    return jsonify(record.to_dict()), 200


@certificates_bp.route('/validate', methods=['POST'])
def validate_certificate():
    payload = _json_body()

    thumbprint = payload.get('thumbprint')
    if not thumbprint or not isinstance(thumbprint, str):
        return jsonify({'error': 'Certificate thumbprint is required'}), 400

    result = _validator().validate(
        thumbprint,
        validate_chain=_flag(payload, 'validateChain', True),
        check_revocation=_flag(payload, 'checkRevocation', None),
        test_url=payload.get('testUrl') or None,
    )
    return jsonify(result.to_dict()), 200


@certificates_bp.route('/loaded/<thumbprint>', methods=['DELETE'])
def remove_loaded_certificate(thumbprint):
    logger.info(f"Removing certificate from memory: {thumbprint}")

    if not _service().remove_loaded(thumbprint):
        return jsonify({'error': 'Certificate not found or could not be removed'}), 404

    return jsonify({
        'success': True,
        'message': 'Certificate removed successfully',
        'thumbprint': thumbprint,
    }), 200


@system_bp.route('/info', methods=['GET'])
def get_system_info():
    logger.info("Retrieving system information")
    return jsonify(system_info()), 200


@pages_bp.route('/')
def index():
    return redirect(url_for('pages.inventory_page'))


@pages_bp.route('/certinventory')
def inventory_page():
    return render_template_string(
        HTML_TEMPLATE,
        certificates=_service().list_private(),
        info=system_info(),
        load_variable=LOAD_CERTIFICATES_VARIABLE,
    )


@pages_bp.route('/certinventory/report.<file_type>')
def download_report(file_type):
    generated_at = datetime.datetime.now(datetime.timezone.utc)
    records = _service().inventory()
    info = system_info()

    if file_type == 'pdf':
        pdf_bytes = generate_pdf_report(records, info, generated_at)
        return send_file(BytesIO(pdf_bytes), mimetype='application/pdf',
                         as_attachment=True, download_name='certificate_inventory.pdf')

    if file_type == 'json':
        response = jsonify(generate_json_report(records, info, generated_at))
        response.headers['Content-Disposition'] = 'attachment; filename=certificate_inventory.json'
        return response

    return jsonify({'error': f"Unsupported report type: {file_type}"}), 404


@pages_bp.route('/health')
def health_check():
    """Health check endpoint for the hosting platform"""
    return jsonify({'status': 'healthy'}), 200


def handle_unexpected_error(e):
    if isinstance(e, HTTPException):
        return e
    logger.error(f"Server error: {str(e)}", exc_info=True)
    return jsonify({'error': 'Internal server error', 'details': str(e)}), 500


def create_app(overrides=None, registry=None, catalog=None):
    """Build the Flask app; the registry lives as long as the app does."""
    config = load_settings()
    if overrides:
        config.update(overrides)

    logging.basicConfig(level=getattr(logging, str(config['LOG_LEVEL']), logging.INFO))

    app = Flask(__name__)
    app.config.from_mapping(config)

    registry = registry if registry is not None else CertificateRegistry()
    catalog = catalog if catalog is not None else StoreCatalog.from_paths(config['CERT_STORE_PATHS'])

    app.extensions[EXTENSION_KEY] = {
        'registry': registry,
        'catalog': catalog,
        'service': CertificateService.from_config(config, catalog, registry),
        'validator': CertificateValidator.from_config(config, catalog, registry),
    }

    app.register_blueprint(certificates_bp, url_prefix=config['CERTIFICATES_URL_PREFIX'])
    app.register_blueprint(system_bp, url_prefix=config['SYSTEM_URL_PREFIX'])
    app.register_blueprint(pages_bp)
    app.register_error_handler(Exception, handle_unexpected_error)

    return app


app = create_app()

if __name__ == '__main__':
    # Get port from environment variable (App Service sets this)
    port = int(os.environ.get('PORT', 5000))

    # threaded so concurrent requests share the one registry
    app.run(host='0.0.0.0', port=port, debug=False, threaded=True)
