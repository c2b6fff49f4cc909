from datetime import timedelta

from flask import g, jsonify, request
from sqlalchemy import func, or_

from notesapp import db
from notesapp.errors import NotFound
from notesapp.models import Note, NoteTag
from notesapp.models.note import DEFAULT_COLOR
from notesapp.ratelimit import check_limit, rate_limit
from notesapp.schemas import BulkDeleteSchema, NoteSchema, NoteUpdateSchema, NotesQuerySchema, load
from notesapp.services.tokens import auth_required
from notesapp.utils import utcnow

from . import notes_bp

RECENT_WINDOW = timedelta(days=7)
create_limit = rate_limit('notes-create', 10, 60, 'Too many note creation attempts, please try again after a minute.')


@notes_bp.before_request
def limit_notes_requests():
    check_limit('notes', 100, 15 * 60, 'Too many notes requests, please try again later.')


def _owned_notes():
    return Note.query.filter(Note.user_id == g.current_user.id)


def _get_owned_note(note_id):
    note = _owned_notes().filter(Note.id == note_id).first()
    if note is None:
        raise NotFound('Note not found')
    return note


def _apply_fields(note, data):
    for field in ('title', 'content', 'is_pinned', 'color'):
        if field in data:
            setattr(note, field, data[field])
    if 'tags' in data:
        note.set_tags(data['tags'])


@notes_bp.route('', methods=['GET'])
@auth_required
def list_notes():
    params = load(NotesQuerySchema, request.args.to_dict())

    query = _owned_notes()
    if 'search' in params:
        term = params['search']
        query = query.filter(or_(
            Note.title.icontains(term, autoescape=True),
            Note.content.icontains(term, autoescape=True),
            Note.tag_rows.any(NoteTag.name.icontains(term, autoescape=True)),
        ))
    if 'pinned' in params:
        query = query.filter(Note.is_pinned == params['pinned'])
    if 'tags' in params:
        query = query.filter(Note.tag_rows.any(NoteTag.name.in_(params['tags'])))

    page = query.order_by(Note.is_pinned.desc(), Note.updated_at.desc(), Note.id.desc()).paginate(
        page=params['page'], per_page=params['limit'], max_per_page=100, error_out=False,
    )

    return jsonify({
        'success': True,
        'data': {
            'notes': [note.to_dict() for note in page.items],
            'pagination': {
                'currentPage': page.page,
                'totalPages': page.pages,
                'totalNotes': page.total,
                'hasNextPage': page.has_next,
                'hasPrevPage': page.has_prev,
            },
        },
    }), 200


@notes_bp.route('/stats', methods=['GET'])
@auth_required
def note_stats():
    user_id = g.current_user.id
    total = _owned_notes().count()
    pinned = _owned_notes().filter(Note.is_pinned.is_(True)).count()
    recent = _owned_notes().filter(Note.created_at >= utcnow() - RECENT_WINDOW).count()

    tag_count = func.count(NoteTag.id).label('count')
    top_tags = (
        db.session.query(NoteTag.name, tag_count)
        .join(Note, Note.id == NoteTag.note_id)
        .filter(Note.user_id == user_id)
        .group_by(NoteTag.name)
        .order_by(tag_count.desc(), NoteTag.name)
        .limit(10)
        .all()
    )

    return jsonify({
        'success': True,
        'data': {
            'totalNotes': total,
            'pinnedNotes': pinned,
            'recentNotes': recent,
            'topTags': [{'name': name, 'count': count} for name, count in top_tags],
        },
    }), 200


@notes_bp.route('/<int:note_id>', methods=['GET'])
@auth_required
def get_note(note_id):
    note = _get_owned_note(note_id)
    return jsonify({'success': True, 'data': {'note': note.to_dict()}}), 200


@notes_bp.route('', methods=['POST'])
@create_limit
@auth_required
def create_note():
    data = load(NoteSchema, request.get_json(silent=True))

    note = Note(
        user_id=g.current_user.id,
        title=data['title'],
        content=data['content'],
        is_pinned=data.get('is_pinned', False),
        color=data.get('color', DEFAULT_COLOR),
    )
    note.set_tags(data.get('tags', []))
    db.session.add(note)
    db.session.commit()

    return jsonify({
        'success': True,
        'message': 'Note created successfully',
        'data': {'note': note.to_dict()},
    }), 201


@notes_bp.route('/<int:note_id>', methods=['PUT'])
@auth_required
def update_note(note_id):
    data = load(NoteUpdateSchema, request.get_json(silent=True))

    note = _get_owned_note(note_id)
    _apply_fields(note, data)
    note.updated_at = utcnow()
    db.session.commit()

    return jsonify({
        'success': True,
        'message': 'Note updated successfully',
        'data': {'note': note.to_dict()},
    }), 200


@notes_bp.route('/<int:note_id>/pin', methods=['PATCH'])
@auth_required
def toggle_pin(note_id):
    note = _get_owned_note(note_id)
    note.is_pinned = not note.is_pinned
    db.session.commit()

    return jsonify({
        'success': True,
        'message': f"Note {'pinned' if note.is_pinned else 'unpinned'} successfully",
        'data': {'note': note.to_dict()},
    }), 200


@notes_bp.route('/bulk', methods=['DELETE'])
@auth_required
def delete_notes():
    data = load(BulkDeleteSchema, request.get_json(silent=True))

    notes = _owned_notes().filter(Note.id.in_(set(data['note_ids']))).all()
    for note in notes:
        db.session.delete(note)
    db.session.commit()

    deleted = len(notes)
    return jsonify({
        'success': True,
        'message': f'{deleted} notes deleted successfully',
        'data': {'deletedCount': deleted},
    }), 200


@notes_bp.route('/<int:note_id>', methods=['DELETE'])
@auth_required
def delete_note(note_id):
    note = _get_owned_note(note_id)
    db.session.delete(note)
    db.session.commit()

    return jsonify({'success': True, 'message': 'Note deleted successfully'}), 200
