# config.py
# Configuration settings for the Flask application and per-directory tag overrides

import os
import re
import logging
from datetime import datetime

import yaml
from cachetools import LRUCache

logger = logging.getLogger(__name__)

# Determine the base directory of the application (where config.py lives)
basedir = os.path.abspath(os.path.dirname(__file__))
instance_path = os.path.join(basedir, 'instance')

DEFAULT_TAG_SYSTEM = "urn:oid:tag-bundler"
DIRECTORY_CONFIG_NAMES = ("tag-uploader.yml", "tag-uploader.yaml")


class Config:
    """Base configuration class."""
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'you-will-never-guess'
    API_KEY = os.environ.get('API_KEY', 'your-fallback-api-key-here')

    # Remote FHIR server used by the API when a request does not name one
    FHIR_SERVER_URL = os.environ.get('FHIR_SERVER_URL', '')
    TAG_SYSTEM = os.environ.get('TAG_SYSTEM', DEFAULT_TAG_SYSTEM)
    HTTP_TIMEOUT = float(os.environ.get('HTTP_TIMEOUT', 120))

    LOG_DIR = os.environ.get('LOG_DIR', instance_path)
    CONSOLE_LOG_LEVEL = os.environ.get('CONSOLE_LOG_LEVEL', 'INFO')
    DIRECTORY_CONFIG_NAMES = DIRECTORY_CONFIG_NAMES

    SITE_NAME = "FHIR Tag Uploader"


class TestingConfig(Config):
    """Configuration specific to testing."""
    TESTING = True
    API_KEY = 'test-api-key'
    SECRET_KEY = 'testing-secret-key'
    WTF_CSRF_ENABLED = False
    FHIR_SERVER_URL = ''
    HTTP_TIMEOUT = 5.0
    LOG_DIR = None


class ConfigError(Exception):
    """Raised when a directory config file cannot be read or parsed."""

    def __init__(self, message, path=None):
        super().__init__(message)
        self.path = path


# --- Tag Templates ---
TIMESTAMP_TOKEN_RE = re.compile(r"\{\{\s*timestamp(?::([^}]+))?\s*\}\}")
DEFAULT_TIMESTAMP_FORMAT = "%Y%m%dT%H%M%S"


def expand_tag_template(tag, now=None):
    """
    Expand the whitelisted ``{{timestamp}}`` token in a tag string.

    ``{{timestamp}}`` renders ``now`` as ``YYYYMMDDTHHMMSS``;
    ``{{timestamp:<format>}}`` renders it with the given strftime format.
    Any other text is returned verbatim.

    Args:
        tag (str): The tag string, possibly templated.
        now (datetime): The moment to render. Defaults to the current time.

    Returns:
        str: The expanded tag ('' for a missing tag).
    """
    if not tag:
        return ''
    now = now or datetime.now()

    def _render(match):
        fmt = match.group(1)
        return now.strftime(fmt.strip() if fmt else DEFAULT_TIMESTAMP_FORMAT)

    return TIMESTAMP_TOKEN_RE.sub(_render, str(tag))


# --- Directory Config Lookup ---
class DirectoryConfigLoader:
    """
    Finds the nearest ``tag-uploader.yml`` for a directory, searching upwards
    until the run root. Results are memoized per directory for the lifetime
    of the loader (one pipeline run).
    """

    def __init__(self, root, file_names=DIRECTORY_CONFIG_NAMES, maxsize=1024):
        self.root = os.path.abspath(root)
        self.file_names = tuple(file_names)
        self._cache = LRUCache(maxsize=maxsize)

    def lookup(self, directory):
        directory = os.path.abspath(directory)
        if directory in self._cache:
            return self._cache[directory]

        config_path = self._find_config_file(directory)
        data = self._load(config_path) if config_path else {}
        self._cache[directory] = data
        return data

    def _find_config_file(self, directory):
        current = directory
        while True:
            for name in self.file_names:
                candidate = os.path.join(current, name)
                if os.path.isfile(candidate):
                    logger.debug(f"Using directory config {candidate} for {directory}")
                    return candidate
            if current == self.root or os.path.commonpath([current, self.root]) != self.root:
                return None
            parent = os.path.dirname(current)
            if parent == current:
                return None
            current = parent

    def _load(self, path):
        try:
            with open(path, 'r', encoding='utf-8') as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}", path=path) from e
        except OSError as e:
            raise ConfigError(f"Could not read {path}: {e}", path=path) from e
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping", path=path)
        result = {}
        if data.get('tag') is not None:
            result['tag'] = str(data['tag'])
        return result
