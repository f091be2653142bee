import requests
import os
import json
import base64
import logging
import stat
import time
from datetime import datetime

from bs4 import BeautifulSoup

from config import (
    DEFAULT_TAG_SYSTEM,
    DIRECTORY_CONFIG_NAMES,
    ConfigError,
    DirectoryConfigLoader,
    expand_tag_template,
)

# Configure logging
if __name__ == '__main__':
    logging.basicConfig(level=logging.DEBUG, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)

# --- Constants ---
MAX_BUNDLE_DEPTH = 32
URN_UUID_PREFIX = "urn:uuid:"
EXCLUDED_DIRS = ("Temp", "_Temp")
DEFAULT_HTTP_TIMEOUT = 120
FHIR_JSON_HEADERS = {'Content-Type': 'application/fhir+json', 'Accept': 'application/fhir+json'}

# Ordered from least to most severe
SEVERITY_LEVELS = ("none", "info", "warning", "error")
# Checked worst first
SEVERITY_MARKERS = (("ERROR", "error"), ("WARNING", "warning"), ("INFORMATION", "info"))
NO_ISSUES_MARKER = "No issues detected"


# --- Exceptions ---
class TagUploaderError(Exception):
    """Base class for per-file pipeline failures."""


class ParseError(TagUploaderError):
    def __init__(self, message, path=None):
        super().__init__(message)
        self.path = path


class FilesystemError(TagUploaderError):
    def __init__(self, message, path=None):
        super().__init__(message)
        self.path = path


class BundleNestingError(TagUploaderError):
    pass


class UploadError(TagUploaderError):
    """Transaction could not be submitted. Carries the server response and the sent bundle."""

    def __init__(self, message, details=None, payload=None, status_code=None):
        super().__init__(message)
        self.details = details
        self.payload = payload
        self.status_code = status_code


class TransportError(UploadError):
    pass


class RemoteStatusError(UploadError):
    pass


class ValidationRequestError(TagUploaderError):
    pass


class ValidationSeverityError(TagUploaderError):
    """Raised on the first finding above the threshold when exit-on-invalid is enabled."""

    def __init__(self, message, finding=None):
        super().__init__(message)
        self.finding = finding


# --- Run Counters ---
class RunCounters:
    """Counters for one pipeline run, reported verbatim in the final summary."""

    def __init__(self):
        self.files_processed = 0
        self.resources_tagged = 0
        self.resources_uploaded = 0
        self.resources_failed = 0

    def as_dict(self):
        return {
            'files_processed': self.files_processed,
            'resources_tagged': self.resources_tagged,
            'resources_uploaded': self.resources_uploaded,
            'resources_failed': self.resources_failed,
        }

    def __repr__(self):
        return f"<RunCounters {self.as_dict()}>"


def format_summary(counters):
    return (f"{counters.files_processed} files processed, "
            f"{counters.resources_tagged} resources tagged, "
            f"{counters.resources_uploaded} resources uploaded, "
            f"{counters.resources_failed} resources failed to upload")


# --- Document Helpers ---
def is_resource(document):
    return isinstance(document, dict) and bool(document.get('resourceType'))


def is_bundle(document):
    return is_resource(document) and document['resourceType'] == 'Bundle'


def _is_urn_uuid(value):
    return isinstance(value, str) and value.startswith(URN_UUID_PREFIX)


def _iter_typed_entries(bundle):
    """Yields bundle entries whose resource carries a resourceType."""
    entries = bundle.get('entry')
    if not isinstance(entries, list):
        return
    for entry in entries:
        if isinstance(entry, dict) and is_resource(entry.get('resource')):
            yield entry


def iter_resources(document, depth=0):
    """
    Yields every non-bundle resource in a document, in entry order.
    Bundles are descended into; a top-level list is treated as a resource set.
    """
    if isinstance(document, list):
        for item in document:
            yield from iter_resources(item, depth)
        return
    if not is_resource(document):
        return
    if not is_bundle(document):
        yield document
        return
    if depth >= MAX_BUNDLE_DEPTH:
        raise BundleNestingError(f"Bundles nested deeper than {MAX_BUNDLE_DEPTH} levels")
    for entry in _iter_typed_entries(document):
        yield from iter_resources(entry['resource'], depth + 1)


# --- Tagging ---
def apply_tag(document, tag_code, system=DEFAULT_TAG_SYSTEM, counters=None, on_tagged=None, depth=0):
    """
    Adds or updates the classification tag on a resource, recursing into Bundles.

    Every non-bundle resource visited increments ``counters.resources_tagged``,
    including when ``tag_code`` is empty and the resource is left untouched.
    An existing tag with the same system has its code replaced, so re-tagging
    never creates duplicates.

    Args:
        document: The parsed JSON document. Mutated in place.
        tag_code (str): The tag code to write. Empty means "count only".
        system (str): The tag system identifying this tool's tags.
        counters (RunCounters): Optional counters for the current run.
        on_tagged (callable): Called with each non-bundle resource once it is tagged.
        depth (int): Current bundle nesting level.

    Returns:
        The same document.
    """
    if not is_resource(document):
        logger.debug("Not a valid FHIR resource, leaving document untouched")
        return document

    if document['resourceType'] == 'Bundle':
        if depth >= MAX_BUNDLE_DEPTH:
            raise BundleNestingError(f"Bundles nested deeper than {MAX_BUNDLE_DEPTH} levels")
        for entry in _iter_typed_entries(document):
            entry['resource'] = apply_tag(entry['resource'], tag_code, system, counters, on_tagged, depth + 1)
        return document

    if counters is not None:
        counters.resources_tagged += 1

    if tag_code:
        _upsert_tag(document, tag_code, system)
    if on_tagged is not None:
        on_tagged(document)
    return document


def _upsert_tag(document, tag_code, system):
    new_tag = {"system": system, "code": tag_code}
    meta = document.get('meta')
    if not isinstance(meta, dict):
        document['meta'] = {"tag": [new_tag]}
        return

    tags = meta.get('tag')
    if not isinstance(tags, list) or not tags:
        meta['tag'] = [new_tag]
        return

    for existing in tags:
        if isinstance(existing, dict) and existing.get('system') == system:
            existing['code'] = tag_code
            return

    tags.append(new_tag)


# --- Transaction Building ---
def build_entry_request(resource):
    """
    PUT {type}/{id} for resources with an id, POST {type} otherwise.
    A urn:uuid id also means POST, for transaction bundles as well as
    normalized collections.
    """
    res_type = resource.get('resourceType')
    res_id = resource.get('id')
    if res_id and not _is_urn_uuid(res_id):
        return {"method": "PUT", "url": f"{res_type}/{res_id}"}
    return {"method": "POST", "url": f"{res_type}"}


def add_entry_full_urls(bundle, base_url=None):
    """Synthesizes entry.fullUrl from the resource type and id where missing."""
    prefix = base_url.rstrip('/') if base_url else ''
    for entry in _iter_typed_entries(bundle):
        if entry.get('fullUrl'):
            continue
        resource = entry['resource']
        res_id = resource.get('id')
        if not res_id:
            continue
        if _is_urn_uuid(res_id):
            entry['fullUrl'] = res_id
        else:
            entry['fullUrl'] = f"{prefix}/{resource['resourceType']}/{res_id}"
    return bundle


def set_transaction_requests(bundle, overwrite=True):
    for entry in _iter_typed_entries(bundle):
        current = entry.get('request')
        if not overwrite and isinstance(current, dict) and current.get('method') and current.get('url'):
            continue
        entry['request'] = build_entry_request(entry['resource'])
    return bundle


def normalize_collection_bundle(bundle):
    """Turns a collection Bundle into a transaction. Returns True if it did."""
    if not is_bundle(bundle) or bundle.get('type') != 'collection':
        return False
    logger.debug(f"Converting collection bundle {bundle.get('id', '')} to a transaction")
    bundle['type'] = 'transaction'
    set_transaction_requests(bundle, overwrite=True)
    return True


def prepare_for_submission(bundle, base_url=None):
    """
    Shapes a Bundle for transactional submission: adds missing fullUrls
    (absolute when a server base is configured, root-relative otherwise),
    normalizes collection bundles and rewrites the requests of transaction
    bundles. Anything that is not a Bundle with entries is returned as is.
    """
    if not is_bundle(bundle) or not isinstance(bundle.get('entry'), list):
        return bundle
    add_entry_full_urls(bundle, base_url)
    if not normalize_collection_bundle(bundle) and bundle.get('type') == 'transaction':
        set_transaction_requests(bundle, overwrite=True)
    return bundle


def as_transaction_bundle(document):
    """Returns the bundle to POST for a document, wrapping single resources."""
    if is_bundle(document):
        normalize_collection_bundle(document)
        set_transaction_requests(document, overwrite=False)
        return document
    if is_resource(document):
        return {
            "resourceType": "Bundle",
            "type": "transaction",
            "entry": [{"resource": document, "request": build_entry_request(document)}]
        }
    raise ValueError("Only FHIR resources can be submitted as a transaction")


# --- Transport ---
def build_server_info(url, auth_type='none', auth_token=None, username=None, password=None, proxy=None, timeout=DEFAULT_HTTP_TIMEOUT):
    server_info = {'url': (url or '').rstrip('/'), 'auth_type': auth_type, 'proxy': proxy, 'timeout': timeout}
    if auth_type == 'bearerToken' and auth_token:
        server_info['auth_token'] = f"Bearer {auth_token}"
    elif auth_type == 'basic' and username:
        credentials = f"{username}:{password or ''}"
        encoded_credentials = base64.b64encode(credentials.encode('utf-8')).decode('utf-8')
        server_info['auth_token'] = f"Basic {encoded_credentials}"
    return server_info


def build_session(server_info):
    session = requests.Session()
    session.headers.update(FHIR_JSON_HEADERS)
    if server_info.get('auth_token'):
        session.headers['Authorization'] = server_info['auth_token']
    proxy = server_info.get('proxy')
    if proxy:
        session.proxies.update({'http': proxy, 'https': proxy})
    return session


def send_json(session, method, url, body, timeout=DEFAULT_HTTP_TIMEOUT):
    try:
        return session.request(method, url, json=body, timeout=timeout)
    except requests.exceptions.RequestException as e:
        raise TransportError(f"Network error during {method} {url}: {e}", payload=body) from e


def _response_body(response):
    try:
        return response.json()
    except ValueError:
        return response.text


def summarize_outcome(body):
    if isinstance(body, dict) and body.get('resourceType') == 'OperationOutcome':
        issue_texts = []
        for issue in body.get('issue', []):
            severity = issue.get('severity', 'info')
            diag = issue.get('diagnostics') or (issue.get('details') or {}).get('text', 'No details')
            issue_texts.append(f"{severity}: {diag}")
        if issue_texts:
            return "; ".join(issue_texts)
    if isinstance(body, (dict, list)):
        return json.dumps(body)[:300]
    return str(body or "No response body.")[:300]


# --- Upload ---
def upload(document, server_info, session, counters):
    """
    Submits a document to the server as one transaction.

    Returns:
        The response body (parsed JSON, or text).

    Raises:
        TransportError: Network failure. Counted as a failed upload.
        RemoteStatusError: HTTP status >= 400. Counted as a failed upload.
    """
    payload = as_transaction_bundle(document)
    base_url = server_info['url'].rstrip('/')
    entries = payload.get('entry') or []
    first_request = entries[0].get('request', {}) if entries and isinstance(entries[0], dict) else {}
    logger.info(f"Executing transaction {first_request.get('url', '')} ({len(entries)} entries)...")

    start = time.monotonic()
    try:
        response = send_json(session, 'POST', base_url, payload, server_info.get('timeout', DEFAULT_HTTP_TIMEOUT))
    except TransportError as e:
        counters.resources_failed += 1
        logger.error(f"Transaction failed: {e}")
        raise

    body = _response_body(response)
    if response.status_code >= 400:
        counters.resources_failed += 1
        message = f"Transaction failed (Status: {response.status_code}): {summarize_outcome(body)}"
        logger.error(message)
        raise RemoteStatusError(message, details=body, payload=payload, status_code=response.status_code)

    counters.resources_uploaded += 1
    logger.info(f"Transaction OK ({time.monotonic() - start:.2f}s)")
    return body


# --- Validation ---
def severity_rank(level):
    try:
        return SEVERITY_LEVELS.index(level)
    except ValueError:
        raise ValueError(f"Unknown severity '{level}'. Expected one of: {', '.join(SEVERITY_LEVELS)}") from None


def severity_fires(threshold, observed):
    """True when an observed issue is at least as severe as the threshold."""
    return observed != 'none' and severity_rank(threshold) <= severity_rank(observed)


def _outcome_markup(outcome):
    if not isinstance(outcome, dict):
        return ''
    text = outcome.get('text')
    if isinstance(text, dict) and text.get('div'):
        return text['div']
    markers = []
    for issue in outcome.get('issue', []) or []:
        severity = str(issue.get('severity', '')).upper()
        markers.append('ERROR' if severity == 'FATAL' else severity)
    return ' '.join(markers)


def classify_outcome(outcome):
    """
    Returns the worst severity class found in an OperationOutcome, judged by
    the ERROR/WARNING/INFORMATION markers in its rendered narrative.
    """
    markup = _outcome_markup(outcome)
    if not markup or NO_ISSUES_MARKER in markup:
        return 'none'
    for marker, level in SEVERITY_MARKERS:
        if marker in markup:
            return level
    return 'none'


def html_table_to_rows(markup):
    """Extracts the cell texts of every table row in an HTML fragment."""
    if not markup:
        return []
    soup = BeautifulSoup(markup, 'html.parser')
    rows = []
    for tr in soup.find_all('tr'):
        cells = [cell.get_text(' ', strip=True) for cell in tr.find_all(['th', 'td'])]
        if any(cells):
            rows.append(cells)
    return rows


def outcome_rows(outcome):
    text = outcome.get('text') if isinstance(outcome, dict) else None
    if isinstance(text, dict) and text.get('div'):
        rows = html_table_to_rows(text['div'])
        if rows:
            return rows
    rows = []
    for issue in (outcome or {}).get('issue', []) or []:
        location = ', '.join(issue.get('location') or issue.get('expression') or [])
        diag = issue.get('diagnostics') or (issue.get('details') or {}).get('text', '')
        rows.append([str(issue.get('severity', '')).upper(), location, diag])
    return rows


def format_issue_table(rows):
    if not rows:
        return ''
    column_count = max(len(row) for row in rows)
    padded = [list(row) + [''] * (column_count - len(row)) for row in rows]
    widths = [max(len(row[i]) for row in padded) for i in range(column_count)]
    return '\n'.join(' | '.join(cell.ljust(widths[i]) for i, cell in enumerate(row)).rstrip() for row in padded)


def validate_resource(resource, severity, server_info, session):
    """
    Runs $validate for one resource.

    Returns:
        dict | None: A finding with the resource reference, the observed
        severity, whether it reaches the threshold and the issue rows, or
        None for resources without an id.
    """
    res_type = resource.get('resourceType')
    res_id = resource.get('id')
    if not res_id:
        logger.debug(f"Skipping validation of {res_type} without an id")
        return None

    full_id = f"{res_type}/{res_id}"
    url = f"{server_info['url'].rstrip('/')}/{full_id}/$validate"
    logger.debug(f"Validating {full_id}...")
    try:
        response = send_json(session, 'POST', url, resource, server_info.get('timeout', DEFAULT_HTTP_TIMEOUT))
    except TransportError as e:
        raise ValidationRequestError(f"Could not validate {full_id}: {e}") from e

    body = _response_body(response)
    if not isinstance(body, dict) or body.get('resourceType') != 'OperationOutcome':
        raise ValidationRequestError(
            f"Validation of {full_id} returned status {response.status_code} without an OperationOutcome: {summarize_outcome(body)}")

    observed = classify_outcome(body)
    return {
        "resource": full_id,
        "severity": observed,
        "fired": severity_fires(severity, observed),
        "rows": outcome_rows(body) if observed != 'none' else [],
    }


def validate_document(document, severity, server_info, session, exit_on_invalid=False):
    """
    Validates every resource of a document one after the other, in entry order.
    Findings reaching the threshold are logged as a table. With
    ``exit_on_invalid`` the first one raises ValidationSeverityError.

    Returns:
        list: The findings that reached the threshold.
    """
    severity_rank(severity)
    fired = []
    for resource in iter_resources(document):
        finding = validate_resource(resource, severity, server_info, session)
        if finding is None:
            continue
        if not finding['fired']:
            logger.debug(f"{finding['resource']}: {finding['severity']}")
            continue
        logger.error(f"Validation issues for {finding['resource']} ({finding['severity']}):\n"
                     f"{format_issue_table(finding['rows'])}")
        if exit_on_invalid:
            raise ValidationSeverityError(
                f"Validation failed for {finding['resource']} with severity '{finding['severity']}'", finding=finding)
        fired.append(finding)
    return fired


# --- Progress Accounting ---
def count_resources(document):
    if not is_resource(document):
        return 0
    if document['resourceType'] == 'Bundle':
        entries = document.get('entry')
        return len(entries) if isinstance(entries, list) else 0
    return 1


def count_total(paths):
    """First pass: sums the resources in every file without modifying anything."""
    total = 0
    for path in paths:
        try:
            total += count_resources(read_json_file(path))
        except (ParseError, FilesystemError) as e:
            logger.warning(f"Not counting {path}: {e}")
    return total


def compute_percent(seen, total):
    if total <= 0:
        return 0
    return seen * 100 // total


class ProgressTracker:
    def __init__(self, total):
        self.total = total
        self.percent = 0

    def update(self, seen):
        self.percent = compute_percent(seen, self.total)
        return self.percent


# --- File Discovery ---
def iter_candidate_files(root, exclude_dirs=EXCLUDED_DIRS):
    """
    Walks ``root`` lazily, yielding ``(path, size, is_file)`` for every entry.
    Directories named in ``exclude_dirs`` are not descended into. Symlinks are
    not followed.
    """
    def _on_error(err):
        logger.error(f"Error walking {getattr(err, 'filename', root)}: {err}")

    for dirpath, dirnames, filenames in os.walk(root, onerror=_on_error, followlinks=False):
        dirnames[:] = sorted(d for d in dirnames if d not in exclude_dirs)
        for name in sorted(filenames):
            path = os.path.join(dirpath, name)
            try:
                file_stat = os.lstat(path)
            except OSError as e:
                logger.error(f"Error reading {path}: {e}")
                continue
            yield path, file_stat.st_size, stat.S_ISREG(file_stat.st_mode)


def iter_json_files(root, skip_until=None, exclude_dirs=EXCLUDED_DIRS):
    """Non-empty .json files under root. With skip_until, starts at the file of that name."""
    skipping = bool(skip_until)
    for path, size, is_file in iter_candidate_files(root, exclude_dirs):
        if not is_file or not size:
            continue
        name = os.path.basename(path)
        if not name.lower().endswith('.json'):
            continue
        if skipping:
            if name != skip_until:
                continue
            skipping = False
        yield path


def read_json_file(path):
    try:
        with open(path, 'r', encoding='utf-8-sig') as f:
            content = f.read()
    except UnicodeDecodeError as e:
        raise ParseError(f"Could not decode {path}: {e}", path=path) from e
    except OSError as e:
        raise FilesystemError(f"Could not read {path}: {e}", path=path) from e
    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise ParseError(f"Invalid JSON in {path}: {e}", path=path) from e


def write_json_file(path, document):
    try:
        with open(path, 'w', encoding='utf-8') as f:
            f.write(json.dumps(document, indent=4, ensure_ascii=False))
    except OSError as e:
        raise FilesystemError(f"Could not write {path}: {e}", path=path) from e


# --- Pipeline ---
def _process_file(path, options, server_info, session, counters, tracker, config_loader):
    filename = os.path.basename(path)
    yield {"type": "progress", "message": f"Processing file {filename}...", "file": path}

    document = read_json_file(path)
    directory_config = config_loader.lookup(os.path.dirname(path))
    tag_code = expand_tag_template(directory_config.get('tag', options.get('tag') or ''), options['started_at'])

    percents = []
    apply_tag(document, tag_code, options['system'], counters,
              on_tagged=lambda resource: percents.append(tracker.update(counters.resources_tagged)))
    for percent in percents:
        yield {"type": "progress", "message": f"{percent}% complete", "file": path, "percent": percent}

    prepare_for_submission(document, server_info['url'] if server_info else None)
    if options.get('overwrite'):
        write_json_file(path, document)
        logger.debug(f"Overwrote {path}")
    counters.files_processed += 1

    if not is_resource(document):
        yield {"type": "warning", "message": f"{filename}: not a valid FHIR resource, skipped.", "file": path}
    elif session is not None and options.get('validate'):
        findings = validate_document(document, options['severity'], server_info, session,
                                     exit_on_invalid=options.get('exit_on_invalid', False))
        for finding in findings:
            yield {
                "type": "validation_error",
                "message": f"{finding['resource']}: {finding['severity']}",
                "file": path,
                "resource": finding['resource'],
                "severity": finding['severity'],
                "rows": finding['rows'],
            }
    elif session is not None:
        upload(document, server_info, session, counters)
        yield {"type": "success", "message": f"{filename}: transaction OK.", "file": path}


def run_pipeline(options, server_info=None, counters=None):
    """
    Tags, shapes and optionally persists, validates or uploads every JSON file
    under ``options['input_dir']``, one file at a time.

    A failing file is reported and skipped; only a ValidationSeverityError
    (exit-on-invalid) ends the run early. The final event always carries the
    run counters.

    Args:
        options (dict): input_dir, tag, system, overwrite, validate, severity,
            exit_on_invalid, skip_until, config_names, started_at.
        server_info (dict): Remote server settings from build_server_info, or None.
        counters (RunCounters): Counters to accumulate into. A new set is used if None.

    Yields:
        dict: Progress events with at least 'type' and 'message'.
    """
    counters = counters if counters is not None else RunCounters()
    options = dict(options)
    input_dir = options['input_dir']
    options['system'] = options.get('system') or DEFAULT_TAG_SYSTEM
    options['severity'] = options.get('severity') or 'error'
    options['started_at'] = options.get('started_at') or datetime.now()
    skip_until = options.get('skip_until')
    if not (server_info and server_info.get('url')):
        server_info = None
    if options.get('validate'):
        severity_rank(options['severity'])

    yield {"type": "progress", "message": f"Counting resources in {input_dir}..."}
    total = count_total(iter_json_files(input_dir, skip_until))
    tracker = ProgressTracker(total)
    yield {"type": "start", "message": f"Found {total} resources to process.", "total": total}

    config_loader = DirectoryConfigLoader(input_dir, options.get('config_names') or DIRECTORY_CONFIG_NAMES)
    session = build_session(server_info) if server_info else None
    try:
        for path in iter_json_files(input_dir, skip_until):
            try:
                yield from _process_file(path, options, server_info, session, counters, tracker, config_loader)
            except ValidationSeverityError as e:
                logger.error(f"Stopping run: {e}")
                yield {"type": "error", "message": f"{e}. Stopping.", "file": path}
                break
            except (TagUploaderError, ConfigError) as e:
                logger.error(f"Error processing file {path}: {e}")
                yield {"type": "error", "message": f"Error processing file {os.path.basename(path)}: {e}", "file": path}
            except Exception as e:
                logger.error(f"Unexpected error processing file {path}", exc_info=True)
                yield {"type": "error", "message": f"Unexpected error processing file {os.path.basename(path)}: {e}", "file": path}
    finally:
        if session is not None:
            session.close()

    summary = format_summary(counters)
    logger.info(f"Done: {summary}")
    yield {"type": "complete", "message": summary, "data": counters.as_dict()}
