# routes.py
# JSON/NDJSON API for running the tagging pipeline over a server-side directory

import os
import json
import logging
from flask import Blueprint, Response, current_app, jsonify, request
from flasgger import swag_from

import services
from forms import TagUploadForm
from services import build_server_info, count_total, iter_json_files

logger = logging.getLogger(__name__)

api_bp = Blueprint('api', __name__)


def check_api_key():
    api_key = request.headers.get('X-API-Key')
    if not api_key and request.is_json:
        api_key = (request.get_json(silent=True) or {}).get('api_key')
    if not api_key:
        logger.error("API key missing in request")
        return jsonify({"status": "error", "message": "API key missing"}), 401
    if api_key != current_app.config['API_KEY']:
        logger.error("Invalid API key provided.")
        return jsonify({"status": "error", "message": "Invalid API key"}), 401
    logger.debug("API key validated successfully")
    return None


@api_bp.route('/tag-bundles', methods=['POST'])
@swag_from({
    'tags': ['Tagging'],
    'summary': 'Tag, validate or upload a directory of FHIR JSON files.',
    'description': 'Walks a server-side directory, tags every resource and optionally overwrites the files, validates them against a FHIR server or uploads them as transactions. Returns an NDJSON stream of progress events ending with a "complete" event carrying the run counters.',
    'security': [{'ApiKeyAuth': []}],
    'consumes': ['application/json'],
    'produces': ['application/x-ndjson'],
    'parameters': [{
        'name': 'body', 'in': 'body', 'required': True,
        'schema': {
            'type': 'object',
            'required': ['input_dir'],
            'properties': {
                'input_dir': {'type': 'string'},
                'tag': {'type': 'string', 'description': 'Tag code. Supports {{timestamp}} and {{timestamp:<format>}}.'},
                'system': {'type': 'string'},
                'overwrite': {'type': 'boolean', 'default': False},
                'fhir_server_url': {'type': 'string', 'format': 'url'},
                'validate_resources': {'type': 'boolean', 'default': False},
                'severity': {'type': 'string', 'enum': list(services.SEVERITY_LEVELS), 'default': 'error'},
                'exit_on_invalid': {'type': 'boolean', 'default': False},
                'proxy': {'type': 'string'},
                'auth_type': {'type': 'string', 'enum': ['none', 'bearerToken', 'basic'], 'default': 'none'},
                'auth_token': {'type': 'string'},
                'username': {'type': 'string'},
                'password': {'type': 'string', 'format': 'password'},
                'skip_until': {'type': 'string'}
            }
        }
    }],
    'responses': {
        '200': {'description': 'NDJSON stream of pipeline events.'},
        '400': {'description': 'Invalid request parameters.'},
        '401': {'description': 'Authentication error.'}
    }
})
def api_tag_bundles():
    auth_error = check_api_key()
    if auth_error: return auth_error

    if not request.is_json:
        return jsonify({"status": "error", "message": "Request body must be JSON."}), 400

    form = TagUploadForm(meta={'csrf': False})
    if not form.validate():
        logger.warning(f"Tag request rejected: {form.errors}")
        return jsonify({"status": "error", "message": "Invalid request parameters.", "errors": form.errors}), 400

    options = form.to_options()
    options['system'] = options['system'] or current_app.config['TAG_SYSTEM']
    fhir_server_url = form.fhir_server_url.data or current_app.config.get('FHIR_SERVER_URL')
    if options['validate'] and not fhir_server_url:
        return jsonify({"status": "error", "message": "A FHIR server URL is required for validation."}), 400

    server_info = None
    if fhir_server_url:
        server_info = build_server_info(
            fhir_server_url,
            auth_type=form.auth_type.data,
            auth_token=form.auth_token.data,
            username=form.username.data,
            password=form.password.data,
            proxy=form.proxy.data or None,
            timeout=current_app.config['HTTP_TIMEOUT'],
        )
    logger.info(f"Tag request: dir={options['input_dir']}, server={fhir_server_url or 'none'}, validate={options['validate']}")

    app = current_app._get_current_object()

    def generate_stream_wrapper():
        with app.app_context():
            for event in services.run_pipeline(options, server_info):
                yield json.dumps(event) + "\n"

    return Response(generate_stream_wrapper(), mimetype='application/x-ndjson')


@api_bp.route('/count-resources', methods=['GET'])
@swag_from({
    'tags': ['Tagging'],
    'summary': 'Count the FHIR resources under a directory.',
    'security': [{'ApiKeyAuth': []}],
    'parameters': [
        {'name': 'input_dir', 'in': 'query', 'type': 'string', 'required': True},
        {'name': 'skip_until', 'in': 'query', 'type': 'string', 'required': False}
    ],
    'responses': {
        '200': {'description': 'Total resource count.'},
        '400': {'description': 'Missing or unknown directory.'},
        '401': {'description': 'Authentication error.'}
    }
})
def api_count_resources():
    auth_error = check_api_key()
    if auth_error: return auth_error

    input_dir = request.args.get('input_dir')
    if not input_dir or not os.path.isdir(input_dir):
        return jsonify({"status": "error", "message": "input_dir must be an existing directory."}), 400
    total = count_total(iter_json_files(input_dir, request.args.get('skip_until') or None))
    return jsonify({"status": "success", "input_dir": input_dir, "total": total})
