from flask import Blueprint

auth_bp = Blueprint('auth', __name__)
notes_bp = Blueprint('notes', __name__)

from .auth import *
from .notes import *
