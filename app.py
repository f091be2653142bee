import os
import logging
from logging.handlers import RotatingFileHandler

import click
from flask import Flask, current_app
from flask.cli import FlaskGroup, with_appcontext
from flasgger import Swagger

from config import Config
from services import (
    SEVERITY_LEVELS,
    RunCounters,
    build_server_info,
    format_issue_table,
    run_pipeline,
)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
PROGRESS_BAR_WIDTH = 60
PROGRESS_BAR_CELL = "▉"

logger = logging.getLogger(__name__)


#-----------------------------------------------------------------------------------------------------------------------
# --- Logging Setup ---
def configure_logging(app):
    """
    Root logger at DEBUG with a console handler (level from CONSOLE_LOG_LEVEL)
    and, when LOG_DIR is set, a rotating debug log file. Safe to call once per app.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in list(root_logger.handlers):
        if handler.get_name() in ('tag_uploader_console', 'tag_uploader_file'):
            root_logger.removeHandler(handler)
            handler.close()

    console_handler = logging.StreamHandler()
    console_handler.set_name('tag_uploader_console')
    console_handler.setLevel(app.config.get('CONSOLE_LOG_LEVEL', 'INFO'))
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root_logger.addHandler(console_handler)

    log_dir = app.config.get('LOG_DIR')
    if not log_dir:
        return
    log_file_path = os.path.join(log_dir, 'tag_uploader_debug.log')
    try:
        os.makedirs(log_dir, exist_ok=True)
        # Rotate logs: 5 files, 5MB each
        file_handler = RotatingFileHandler(log_file_path, maxBytes=5*1024*1024, backupCount=5, encoding='utf-8')
        file_handler.set_name('tag_uploader_file')
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        file_handler.setLevel(logging.DEBUG)
        root_logger.addHandler(file_handler)
        logger.debug(f"--- File logging initialized to {log_file_path} (Level: DEBUG) ---")
    except Exception as e:
        # File logging is optional, keep running with the console handler
        logger.error(f"Failed to set up file logging to {log_file_path}: {e}", exc_info=True)


def set_console_log_level(level):
    for handler in logging.getLogger().handlers:
        if handler.get_name() == 'tag_uploader_console':
            handler.setLevel(level)
#-----------------------------------------------------------------------------------------------------------------------


def create_app(config_class=Config):
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(config_class)
    app.config['SWAGGER'] = {
        'title': 'FHIR Tag Uploader API',
        'uiversion': 3,
        'version': '1.0.0',
        'description': 'Tags FHIR resources in a directory of JSON files and validates or uploads them to a FHIR server.',
        'securityDefinitions': {
            'ApiKeyAuth': {
                'type': 'apiKey',
                'name': 'X-API-Key',
                'in': 'header',
                'description': 'API Key for accessing protected endpoints.'
            }
        },
        'specs_route': '/apidocs/'
    }

    configure_logging(app)
    Swagger(app)

    from routes import api_bp
    app.register_blueprint(api_bp, url_prefix='/api')
    app.cli.add_command(tag_upload_command)
    logger.debug(f"Application created with {config_class.__name__}")
    return app


# --- CLI Rendering ---
def generate_progress(percent=0):
    """Renders a one-line progress bar that overwrites the current terminal line."""
    filled = min(max(percent, 0), 100) * PROGRESS_BAR_WIDTH // 100
    bar = "\r\033[2K" + click.style(f"{percent}% ", bold=True)
    if filled:
        bar += click.style(PROGRESS_BAR_CELL * filled, bold=True)
    if filled < PROGRESS_BAR_WIDTH:
        bar += click.style(PROGRESS_BAR_CELL * (PROGRESS_BAR_WIDTH - filled), fg='bright_black')
    return bar + " "


EVENT_COLORS = {
    'error': 'red',
    'validation_error': 'red',
    'warning': 'yellow',
    'success': 'green',
    'start': 'cyan',
}


def render_event(event, verbose=False):
    """Returns the text to print for a pipeline event, or None to print nothing."""
    event_type = event.get('type')
    if verbose:
        text = click.style(event.get('message', ''), fg=EVENT_COLORS.get(event_type))
    elif event_type in ('error', 'validation_error'):
        text = "\n" + click.style(event.get('message', ''), fg='red')
    elif 'percent' in event:
        return generate_progress(event['percent'])
    else:
        return None
    if event.get('rows'):
        text += "\n" + format_issue_table(event['rows'])
    return text + "\n"


def parse_basic_auth(ctx, param, value):
    if value is None:
        return None
    username, sep, password = value.partition(':')
    if not sep or not username:
        raise click.BadParameter("expected USER:PASSWORD")
    return username, password


@click.command('tag-upload')
@click.option('-d', '--input-dir', required=True, type=click.Path(exists=True, file_okay=False),
              help='The directory to walk and search for JSON bundles.')
@click.option('-t', '--tag', default='', help='The tag to add to every resource. Supports {{timestamp}}.')
@click.option('-s', '--system', default=None, help='The tag system. Defaults to the TAG_SYSTEM setting.')
@click.option('-w', '--overwrite', is_flag=True, default=False, help='Overwrite the source files.')
@click.option('-S', '--server', default=None, help='The remote server to send the bundles to.')
@click.option('-v', '--verbose', is_flag=True, default=False, help='Show detailed output.')
@click.option('-q', '--silent', is_flag=True, default=False, help='Only print the final summary.')
@click.option('--validate', 'validate_resources', is_flag=True, default=False,
              help='Validate the resources against the server instead of uploading them.')
@click.option('--severity', type=click.Choice(SEVERITY_LEVELS), default='error', show_default=True,
              help='Minimum issue severity to report.')
@click.option('--exit-on-invalid', is_flag=True, default=False,
              help='Stop the run at the first resource reaching the severity.')
@click.option('-p', '--proxy', default=None, help='HTTP proxy url.')
@click.option('--basic-auth', default=None, callback=parse_basic_auth, metavar='USER:PASSWORD',
              help='Basic authentication credentials.')
@click.option('--bearer-token', default=None, help='Bearer token for the server.')
@click.option('--skip-until', default=None, metavar='FILENAME',
              help='Skip files until one with this name is reached.')
@with_appcontext
def tag_upload_command(input_dir, tag, system, overwrite, server, verbose, silent, validate_resources,
                       severity, exit_on_invalid, proxy, basic_auth, bearer_token, skip_until):
    """Tag every FHIR resource under INPUT_DIR, then validate or upload it."""
    if validate_resources and not server:
        raise click.UsageError("--validate requires --server")

    # Events are rendered here, the full log still goes to the file handler
    set_console_log_level(logging.DEBUG if verbose else logging.CRITICAL)

    server_info = None
    if server:
        if bearer_token:
            server_info = build_server_info(server, auth_type='bearerToken', auth_token=bearer_token, proxy=proxy,
                                            timeout=current_app.config['HTTP_TIMEOUT'])
        elif basic_auth:
            server_info = build_server_info(server, auth_type='basic', username=basic_auth[0], password=basic_auth[1],
                                            proxy=proxy, timeout=current_app.config['HTTP_TIMEOUT'])
        else:
            server_info = build_server_info(server, proxy=proxy, timeout=current_app.config['HTTP_TIMEOUT'])

    options = {
        'input_dir': input_dir,
        'tag': tag,
        'system': system or current_app.config['TAG_SYSTEM'],
        'overwrite': overwrite,
        'validate': validate_resources,
        'severity': severity,
        'exit_on_invalid': exit_on_invalid,
        'skip_until': skip_until,
        'config_names': current_app.config['DIRECTORY_CONFIG_NAMES'],
    }

    counters = RunCounters()
    summary = None
    for event in run_pipeline(options, server_info, counters):
        if event['type'] == 'complete':
            summary = event['message']
            continue
        if silent:
            continue
        text = render_event(event, verbose=verbose)
        if text:
            click.echo(text, nl=False, err=event['type'] in ('error', 'validation_error'))

    if not silent and not verbose:
        click.echo()
    click.echo(click.style(" Done ", bold=True, bg='green') + " " + summary)


cli = FlaskGroup(create_app=create_app)
