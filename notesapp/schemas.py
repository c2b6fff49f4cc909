"""Request schemas checked at the HTTP boundary before any controller logic."""
import re
from datetime import date

from marshmallow import Schema, fields, validate, validates, pre_load, post_load, EXCLUDE, ValidationError

from notesapp.errors import ValidationFailed
from notesapp.utils import normalize_email

NAME_RE = re.compile(r'^[a-zA-Z\s]+$')
COLOR_RE = r'^#([A-Fa-f0-9]{6}|[A-Fa-f0-9]{3})$'
MAX_TAGS = 10
MAX_TAG_LENGTH = 20
MAX_BULK_IDS = 50


class BaseSchema(Schema):
    class Meta:
        unknown = EXCLUDE


class EmailSchema(BaseSchema):
    email = fields.Email(required=True, validate=validate.Length(max=100),
                         error_messages={'invalid': 'Please enter a valid email address'})

    @pre_load
    def strip_email(self, data, **kwargs):
        if isinstance(data, dict) and isinstance(data.get('email'), str):
            data = dict(data, email=normalize_email(data['email']))
        return data


class RegisterSchema(EmailSchema):
    name = fields.String(required=True, validate=validate.Length(min=2, max=50,
                         error='Name must be between 2 and 50 characters'))
    date_of_birth = fields.Date(data_key='dateOfBirth', load_default=None, allow_none=True)

    @pre_load
    def strip_name(self, data, **kwargs):
        if isinstance(data, dict) and isinstance(data.get('name'), str):
            data = dict(data, name=data['name'].strip())
        return data

    @validates('name')
    def validate_name(self, value, **kwargs):
        if not NAME_RE.match(value):
            raise ValidationError('Name can only contain letters and spaces')

    @validates('date_of_birth')
    def validate_date_of_birth(self, value, **kwargs):
        if value is not None and value > date.today():
            raise ValidationError('Date of birth cannot be in the future')


class OTPSchema(EmailSchema):
    otp = fields.String(required=True, validate=validate.Regexp(r'^\d{6}$', error='OTP must be 6 digits'))


class GoogleAuthSchema(BaseSchema):
    id_token = fields.String(required=True, data_key='idToken', validate=validate.Length(min=1),
                             error_messages={'required': 'Google ID token is required'})


def _validate_tag_list(tags):
    if len(tags) > MAX_TAGS:
        raise ValidationError(f'Cannot have more than {MAX_TAGS} tags')
    for tag in tags:
        if not tag.strip() or len(tag) > MAX_TAG_LENGTH:
            raise ValidationError(f'Each tag must be a non-empty string with maximum {MAX_TAG_LENGTH} characters')


class NoteSchema(BaseSchema):
    title = fields.String(required=True, validate=validate.Length(min=1, max=100,
                          error='Title is required and cannot exceed 100 characters'))
    content = fields.String(required=True, validate=validate.Length(min=1, max=5000,
                            error='Content is required and cannot exceed 5000 characters'))
    tags = fields.List(fields.String(), validate=_validate_tag_list)
    is_pinned = fields.Boolean(data_key='isPinned')
    color = fields.String(validate=validate.Regexp(COLOR_RE, error='Color must be a valid hex color code'))

    @pre_load
    def strip_text(self, data, **kwargs):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for key in ('title', 'content'):
            if isinstance(data.get(key), str):
                data[key] = data[key].strip()
        return data


class NoteUpdateSchema(NoteSchema):
    title = fields.String(validate=validate.Length(min=1, max=100,
                          error='Title cannot be empty and cannot exceed 100 characters'))
    content = fields.String(validate=validate.Length(min=1, max=5000,
                            error='Content cannot be empty and cannot exceed 5000 characters'))


class NotesQuerySchema(BaseSchema):
    page = fields.Integer(load_default=1, validate=validate.Range(min=1, error='Page must be a positive integer'))
    limit = fields.Integer(load_default=10)
    search = fields.String(validate=validate.Length(min=1, max=100,
                           error='Search query cannot be empty and cannot exceed 100 characters'))
    pinned = fields.String(validate=validate.OneOf(['true', 'false'], error='Pinned must be true or false'))
    tags = fields.String()

    @validates('tags')
    def validate_tags(self, value, **kwargs):
        tags = [tag.strip() for tag in value.split(',')]
        if len(tags) > MAX_TAGS:
            raise ValidationError(f'Cannot filter by more than {MAX_TAGS} tags')
        for tag in tags:
            if not tag or len(tag) > MAX_TAG_LENGTH:
                raise ValidationError(f'Each tag must be non-empty and cannot exceed {MAX_TAG_LENGTH} characters')

    @post_load
    def normalize(self, data, **kwargs):
        data['limit'] = max(1, min(100, data['limit']))
        if 'pinned' in data:
            data['pinned'] = data['pinned'] == 'true'
        if 'tags' in data:
            data['tags'] = [tag.strip() for tag in data['tags'].split(',')]
        return data


class BulkDeleteSchema(BaseSchema):
    note_ids = fields.List(
        fields.Integer(validate=validate.Range(min=1)),
        required=True,
        data_key='noteIds',
        validate=validate.Length(min=1, max=MAX_BULK_IDS, error='noteIds must be an array with 1-50 items'),
    )


def load(schema_cls, data, **kwargs):
    """Validate ``data`` against ``schema_cls`` or raise ValidationFailed."""
    try:
        return schema_cls(**kwargs).load(data if data is not None else {})
    except ValidationError as err:
        raise ValidationFailed.from_marshmallow(err)
