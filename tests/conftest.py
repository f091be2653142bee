# tests/conftest.py

import os
import sys
import json
import pytest
from unittest.mock import MagicMock

# Add the project root to sys.path
APP_DIR = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if APP_DIR not in sys.path:
    sys.path.insert(0, APP_DIR)

from app import create_app  # noqa: E402
from config import TestingConfig  # noqa: E402

TAG_SYSTEM = "https://example.org/tags"
SERVER_URL = "http://fhir.test/fhir"


@pytest.fixture(scope='function')
def app():
    """Function-scoped test Flask application configured for testing."""
    app = create_app(TestingConfig)
    with app.app_context():
        yield app


@pytest.fixture(scope='function')
def client(app):
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    return app.test_cli_runner()


@pytest.fixture
def corpus(tmp_path):
    """Writes JSON documents into tmp_path. Returns a helper taking {relative_path: document}."""
    def _write(files):
        for rel_path, content in files.items():
            path = tmp_path / rel_path
            path.parent.mkdir(parents=True, exist_ok=True)
            if isinstance(content, str):
                path.write_text(content, encoding='utf-8')
            else:
                path.write_text(json.dumps(content), encoding='utf-8')
        return tmp_path
    return _write


def make_response(status_code=200, body=None, text=None):
    """A requests.Response stand-in with json()/text."""
    response = MagicMock()
    response.status_code = status_code
    if body is not None:
        response.json.return_value = body
        response.text = json.dumps(body)
    else:
        response.json.side_effect = ValueError("No JSON")
        response.text = text or ''
    return response


def parse_ndjson(byte_stream):
    decoded_stream = byte_stream.decode('utf-8').strip()
    if not decoded_stream:
        return []
    return [json.loads(line) for line in decoded_stream.split('\n') if line.strip()]


def patient(res_id=None, **extra):
    resource = {"resourceType": "Patient"}
    if res_id is not None:
        resource["id"] = res_id
    resource.update(extra)
    return resource


def bundle(*resources, bundle_type=None, **extra):
    doc = {"resourceType": "Bundle"}
    if bundle_type:
        doc["type"] = bundle_type
    doc["entry"] = [{"resource": r} for r in resources]
    doc.update(extra)
    return doc
