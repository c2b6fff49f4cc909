from .user import User
from .note import Note, NoteTag
