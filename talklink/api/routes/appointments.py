import uuid
from datetime import datetime
from flask import Blueprint, request, jsonify
from talklink.extensions import db, get_binding_registry
from talklink.models import Appointment
from talklink.models.appointment import MEETING_STATUSES
from talklink.services.talk_link_service import RoomAlreadyLinkedError, TalkLinkService
from talklink.utils.decorators import handle_talk_errors, request_warnings

appointments_bp = Blueprint('appointments', __name__)

def _load_appointment(appointment_id):
    """Loads the appointment and attaches its room binding, if it has a room."""
    appointment = db.session.get(Appointment, appointment_id)
    if appointment is not None:
        get_binding_registry().ensure_binding(appointment)
    return appointment

def _apply_fields(appointment, data):
    if 'subject' in data:
        appointment.subject = data['subject']
    if 'body' in data:
        appointment.body = data['body']
    if 'location' in data:
        appointment.location = data['location']
    if 'start_time' in data:
        appointment.start_time = datetime.fromisoformat(data['start_time'])
    if 'end_time' in data:
        appointment.end_time = datetime.fromisoformat(data['end_time'])
    if 'meeting_status' in data:
        if data['meeting_status'] not in MEETING_STATUSES:
            raise ValueError(f"Unknown meeting status: {data['meeting_status']}")
        appointment.meeting_status = data['meeting_status']
    if appointment.end_time < appointment.start_time:
        raise ValueError("End time is before start time.")

def _response(appointment, status=200, **extra):
    payload = {'appointment': appointment.to_dict(), 'warnings': request_warnings()}
    payload.update(extra)
    return jsonify(payload), status

@appointments_bp.route('/', methods=['POST'])
def create_draft():
    """Opens a new, unsaved appointment."""
    data = request.get_json() or {}
    try:
        start = datetime.fromisoformat(data['start_time'])
        end = datetime.fromisoformat(data['end_time'])
        appointment = Appointment(start_time=start, end_time=end, saved=False)
        _apply_fields(appointment, data)
    except KeyError as e:
        return jsonify({'error': f"Missing field: {e.args[0]}"}), 400
    except (ValueError, TypeError) as e:
        return jsonify({'error': str(e)}), 400

    db.session.add(appointment)
    db.session.commit()
    return _response(appointment, 201)

@appointments_bp.route('/<int:appointment_id>', methods=['GET'])
def get_appointment(appointment_id):
    appointment = _load_appointment(appointment_id)
    if not appointment:
        return jsonify({'error': 'Appointment not found'}), 404
    return _response(appointment)

@appointments_bp.route('/<int:appointment_id>', methods=['PUT'])
@handle_talk_errors
def save_appointment(appointment_id):
    """Applies the edits and saves; the first save assigns the entry id."""
    appointment = _load_appointment(appointment_id)
    if not appointment:
        return jsonify({'error': 'Appointment not found'}), 404

    data = request.get_json() or {}
    try:
        _apply_fields(appointment, data)
    except (ValueError, TypeError) as e:
        db.session.rollback()
        return jsonify({'error': str(e)}), 400

    if not appointment.entry_id:
        appointment.entry_id = uuid.uuid4().hex
    appointment.saved = True

    appointment.events.fire_write()
    db.session.commit()
    return _response(appointment)

@appointments_bp.route('/<int:appointment_id>', methods=['DELETE'])
@handle_talk_errors
def delete_appointment(appointment_id):
    appointment = _load_appointment(appointment_id)
    if not appointment:
        return jsonify({'error': 'Appointment not found'}), 404

    appointment.events.fire_before_delete()
    db.session.delete(appointment)
    db.session.commit()
    return jsonify({'message': 'Appointment deleted', 'warnings': request_warnings()}), 200

@appointments_bp.route('/<int:appointment_id>/close', methods=['POST'])
@handle_talk_errors
def close_appointment(appointment_id):
    """Closes the editor. Drafts that were never saved are discarded."""
    appointment = _load_appointment(appointment_id)
    if not appointment:
        return jsonify({'error': 'Appointment not found'}), 404

    appointment.events.fire_close()
    if not appointment.saved:
        db.session.delete(appointment)
        db.session.commit()
        return jsonify({'message': 'Draft discarded', 'warnings': request_warnings()}), 200

    db.session.commit()
    return _response(appointment)

@appointments_bp.route('/<int:appointment_id>/talk', methods=['POST'])
@handle_talk_errors
def create_talk_link(appointment_id):
    appointment = _load_appointment(appointment_id)
    if not appointment:
        return jsonify({'error': 'Appointment not found'}), 404

    data = request.get_json() or {}
    room_request = TalkLinkService.build_room_request(appointment, data)
    try:
        result = TalkLinkService.create_talk_link(
            appointment, room_request, get_binding_registry(), replace=bool(data.get('replace')))
    except RoomAlreadyLinkedError as e:
        return jsonify({'error': str(e)}), 409

    db.session.commit()
    return _response(appointment, 201, room={
        'token': result.room_token,
        'url': result.room_url,
        'room_type': result.room_type.value,
        'lobby_enabled': result.lobby_enabled,
        'search_visible': result.search_visible,
    })
