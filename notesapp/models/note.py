from notesapp import db
from notesapp.utils import utcnow, isoformat

DEFAULT_COLOR = '#ffffff'


class Note(db.Model):
    __tablename__ = 'notes'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, index=True)
    title = db.Column(db.String(100), nullable=False)
    content = db.Column(db.Text, nullable=False)
    is_pinned = db.Column(db.Boolean, nullable=False, default=False)
    color = db.Column(db.String(7), nullable=False, default=DEFAULT_COLOR)
    created_at = db.Column(db.DateTime, nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    tag_rows = db.relationship(
        'NoteTag',
        order_by='NoteTag.position',
        cascade='all, delete-orphan',
        lazy='selectin',
    )

    __table_args__ = (
        db.Index('ix_notes_user_pinned_updated', 'user_id', 'is_pinned', 'updated_at'),
    )

    @property
    def tags(self):
        return [row.name for row in self.tag_rows]

    def set_tags(self, tags):
        names = []
        for tag in tags:
            name = tag.strip()
            if name and name not in names:
                names.append(name)
        # reuse rows by name so a re-save never trips uq_note_tag_name
        existing = {row.name: row for row in self.tag_rows}
        rows = []
        for position, name in enumerate(names):
            row = existing.get(name) or NoteTag(name=name)
            row.position = position
            rows.append(row)
        self.tag_rows = rows

    def to_dict(self):
        return {
            'id': self.id,
            'userId': self.user_id,
            'title': self.title,
            'content': self.content,
            'tags': self.tags,
            'isPinned': self.is_pinned,
            'color': self.color,
            'createdAt': isoformat(self.created_at),
            'updatedAt': isoformat(self.updated_at),
        }


class NoteTag(db.Model):
    __tablename__ = 'note_tags'

    id = db.Column(db.Integer, primary_key=True)
    note_id = db.Column(db.Integer, db.ForeignKey('notes.id', ondelete='CASCADE'), nullable=False, index=True)
    name = db.Column(db.String(20), nullable=False, index=True)
    position = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.UniqueConstraint('note_id', 'name', name='uq_note_tag_name'),
    )
