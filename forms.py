# forms.py
from flask_wtf import FlaskForm
from wtforms import StringField, SelectField, BooleanField, PasswordField
from wtforms.validators import DataRequired, URL, Optional
import os
import logging

from services import SEVERITY_LEVELS

logger = logging.getLogger(__name__)


class TagUploadForm(FlaskForm):
    """Options for one tag/validate/upload run over a directory of FHIR JSON files."""
    input_dir = StringField('Input Directory', validators=[DataRequired()],
                            render_kw={'placeholder': 'e.g., /data/bundles'})
    tag = StringField('Tag Code', validators=[Optional()],
                      description="May contain {{timestamp}} or {{timestamp:%Y-%m-%d}}.")
    system = StringField('Tag System', validators=[Optional()])
    overwrite = BooleanField('Overwrite Source Files', default=False)
    fhir_server_url = StringField('FHIR Server URL', validators=[Optional(), URL(require_tld=False)],
                                  render_kw={'placeholder': 'e.g., http://localhost:8080/fhir'})
    validate_resources = BooleanField('Validate Instead of Upload', default=False)
    severity = SelectField('Validation Severity', choices=[(level, level.title()) for level in SEVERITY_LEVELS],
                           default='error')
    exit_on_invalid = BooleanField('Stop on First Invalid Resource', default=False)
    proxy = StringField('HTTP Proxy', validators=[Optional(), URL(require_tld=False)])
    auth_type = SelectField('Authentication Type', choices=[
        ('none', 'None'),
        ('bearerToken', 'Bearer Token'),
        ('basic', 'Basic Authentication')
    ], default='none')
    auth_token = StringField('Bearer Token', validators=[Optional()])
    username = StringField('Username', validators=[Optional()])
    password = PasswordField('Password', validators=[Optional()])
    skip_until = StringField('Skip Until File', validators=[Optional()])

    def validate(self, extra_validators=None):
        if not super().validate(extra_validators):
            return False
        if not os.path.isdir(self.input_dir.data):
            self.input_dir.errors.append('Input directory does not exist.')
            return False
        if self.auth_type.data == 'bearerToken' and not self.auth_token.data:
            self.auth_token.errors.append('Bearer Token is required when Bearer Token authentication is selected.')
            return False
        if self.auth_type.data == 'basic':
            if not self.username.data:
                self.username.errors.append('Username is required for Basic Authentication.')
                return False
            if not self.password.data:
                self.password.errors.append('Password is required for Basic Authentication.')
                return False
        return True

    def to_options(self):
        return {
            'input_dir': self.input_dir.data,
            'tag': self.tag.data or '',
            'system': self.system.data or None,
            'overwrite': bool(self.overwrite.data),
            'validate': bool(self.validate_resources.data),
            'severity': self.severity.data,
            'exit_on_invalid': bool(self.exit_on_invalid.data),
            'skip_until': self.skip_until.data or None,
        }
