import calendar
import pytest
from datetime import datetime
from unittest.mock import patch

from talklink import create_app, db
from talklink.config import TestingConfig
from talklink.extensions import BINDINGS_KEY
from talklink.models import Appointment, RoomCreationResult
from talklink.services.talk_errors import AuthenticationError, ServerRejectedError
from talklink.services.talk_service import TalkService

URL = 'https://cloud.example.com/call/tok1'

@pytest.fixture
def app():
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()

@pytest.fixture
def client(app):
    return app.test_client()

@pytest.fixture
def standalone_app():
    """App without an outer app context, so each request loads fresh rows."""
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()

@pytest.fixture
def registry(app):
    return app.extensions[BINDINGS_KEY]

@pytest.fixture
def talk():
    """Patches every remote call of the Talk client."""
    result = RoomCreationResult(room_token='tok1', room_url=URL, created_as_event_conversation=True,
                                lobby_enabled=True, search_visible=False)
    with patch.object(TalkService, 'create_room', return_value=result) as create_room, \
            patch.object(TalkService, 'update_lobby') as update_lobby, \
            patch.object(TalkService, 'update_description') as update_description, \
            patch.object(TalkService, 'delete_room') as delete_room:
        yield {
            'create_room': create_room,
            'update_lobby': update_lobby,
            'update_description': update_description,
            'delete_room': delete_room,
        }

def new_draft(client, **fields):
    payload = {'subject': 'Standup', 'body': 'Agenda',
               'start_time': '2025-06-02T09:00:00', 'end_time': '2025-06-02T09:30:00'}
    payload.update(fields)
    response = client.post('/api/appointments/', json=payload)
    assert response.status_code == 201
    return response.get_json()['appointment']

def link_room(client, appointment_id, **options):
    options.setdefault('room_type', 'EventConversation')
    options.setdefault('lobby_enabled', True)
    return client.post(f'/api/appointments/{appointment_id}/talk', json=options)


def test_health(client):
    assert client.get('/health').get_json()['status'] == 'ok'

def test_create_draft_validates_times(client):
    response = client.post('/api/appointments/', json={
        'start_time': '2025-06-02T10:00:00', 'end_time': '2025-06-02T09:00:00'})
    assert response.status_code == 400

    response = client.post('/api/appointments/', json={'start_time': '2025-06-02T10:00:00'})
    assert response.status_code == 400
    assert 'end_time' in response.get_json()['error']

    response = client.post('/api/appointments/', json={'start_time': 1748854800, 'end_time': 1748856600})
    assert response.status_code == 400

def test_link_room_to_draft(client, registry, talk):
    draft = new_draft(client)

    response = link_room(client, draft['id'])

    assert response.status_code == 201
    data = response.get_json()
    assert data['room']['token'] == 'tok1'
    assert data['room']['room_type'] == 'EventConversation'
    assert data['appointment']['location'] == URL
    assert data['appointment']['talk']['talk_room_token'] == 'tok1'
    assert data['warnings'] == []
    assert registry.by_token('tok1') is not None
    talk['create_room'].assert_called_once()
    talk['update_description'].assert_called_once()

def test_second_link_requires_replace(client, talk):
    draft = new_draft(client)
    link_room(client, draft['id'])

    response = link_room(client, draft['id'])

    assert response.status_code == 409
    assert talk['create_room'].call_count == 1

def test_save_moves_lobby_and_assigns_identity(client, registry, talk):
    draft = new_draft(client)
    link_room(client, draft['id'])

    response = client.put(f"/api/appointments/{draft['id']}", json={
        'start_time': '2025-06-02T11:00:00', 'end_time': '2025-06-02T11:30:00'})

    assert response.status_code == 200
    saved = response.get_json()['appointment']
    assert saved['saved'] is True
    assert saved['entry_id']
    talk['update_lobby'].assert_called_once_with(
        'tok1', datetime(2025, 6, 2, 11, 0), datetime(2025, 6, 2, 11, 30), True)
    assert saved['talk']['talk_start_epoch'] == str(calendar.timegm(datetime(2025, 6, 2, 11, 0).timetuple()))
    assert registry.by_identity(saved['entry_id']) is registry.by_token('tok1')

def test_close_unsaved_draft_deletes_room(client, registry, talk):
    draft = new_draft(client)
    link_room(client, draft['id'])

    response = client.post(f"/api/appointments/{draft['id']}/close")

    assert response.status_code == 200
    assert response.get_json()['message'] == 'Draft discarded'
    talk['delete_room'].assert_called_once_with('tok1', True)
    assert len(registry) == 0
    assert db.session.get(Appointment, draft['id']) is None

def test_close_saved_appointment_keeps_room(client, registry, talk):
    draft = new_draft(client)
    link_room(client, draft['id'])
    client.put(f"/api/appointments/{draft['id']}", json={})

    response = client.post(f"/api/appointments/{draft['id']}/close")

    assert response.status_code == 200
    talk['delete_room'].assert_not_called()
    assert len(registry) == 1

def test_delete_appointment_deletes_room(client, registry, talk):
    draft = new_draft(client)
    link_room(client, draft['id'])
    client.put(f"/api/appointments/{draft['id']}", json={})

    response = client.delete(f"/api/appointments/{draft['id']}")

    assert response.status_code == 200
    talk['delete_room'].assert_called_once_with('tok1', True)
    assert len(registry) == 0

def test_failed_room_delete_is_reported_as_warning(client, talk):
    talk['delete_room'].side_effect = ServerRejectedError('Talk room could not be deleted (status 500).', 500)
    draft = new_draft(client)
    link_room(client, draft['id'])
    client.put(f"/api/appointments/{draft['id']}", json={})

    response = client.delete(f"/api/appointments/{draft['id']}")

    assert response.status_code == 200
    assert response.get_json()['warnings'] == [
        'Talk room could not be deleted: Talk room could not be deleted (status 500).']

def test_attendee_changes_never_touch_the_room(client, registry, talk):
    draft = new_draft(client, meeting_status='received')
    link_room(client, draft['id'])
    talk['update_description'].reset_mock()

    client.put(f"/api/appointments/{draft['id']}", json={'start_time': '2025-06-02T12:00:00',
                                                          'end_time': '2025-06-02T13:00:00'})
    client.delete(f"/api/appointments/{draft['id']}")

    talk['update_lobby'].assert_not_called()
    talk['update_description'].assert_not_called()
    talk['delete_room'].assert_not_called()
    assert len(registry) == 0

def test_description_failure_is_returned_as_warning(client, talk):
    talk['update_description'].side_effect = ServerRejectedError('Room description could not be updated (status 500).', 500)
    draft = new_draft(client)

    response = link_room(client, draft['id'])

    assert response.status_code == 201
    assert len(response.get_json()['warnings']) == 1

def test_authentication_failure_asks_for_settings(client, talk):
    talk['create_room'].side_effect = AuthenticationError('Authentication failed (status 401).', 401)
    draft = new_draft(client)

    response = link_room(client, draft['id'])

    assert response.status_code == 401
    assert response.get_json()['open_settings'] is True

def test_server_failure_maps_to_bad_gateway(client, talk):
    talk['create_room'].side_effect = ServerRejectedError('Room could not be created.', 500)
    draft = new_draft(client)

    response = link_room(client, draft['id'])

    assert response.status_code == 502
    assert response.get_json()['status_code'] == 500

def test_verify_connection(client):
    with patch.object(TalkService, 'verify_connection', return_value=(True, 'Nextcloud 28.0.1')):
        response = client.post('/api/talk/verify')
    assert response.get_json() == {'ok': True, 'message': 'Nextcloud 28.0.1'}

def test_verify_connection_auth_failure(client):
    with patch.object(TalkService, 'verify_connection',
                      side_effect=AuthenticationError('Authentication failed (status 401).', 401)):
        response = client.post('/api/talk/verify')
    assert response.status_code == 401

def test_failed_lobby_update_is_retried_on_next_save(standalone_app, talk):
    client = standalone_app.test_client()
    registry = standalone_app.extensions[BINDINGS_KEY]
    draft = new_draft(client)
    link_room(client, draft['id'])
    binding = registry.by_token('tok1')

    talk['update_lobby'].side_effect = ServerRejectedError('Lobby time could not be set (status 500).', 500)
    response = client.put(f"/api/appointments/{draft['id']}", json={
        'start_time': '2025-06-02T11:00:00', 'end_time': '2025-06-02T11:30:00'})
    assert response.status_code == 200
    assert len(response.get_json()['warnings']) == 1

    talk['update_lobby'].side_effect = None
    response = client.put(f"/api/appointments/{draft['id']}", json={})

    assert response.status_code == 200
    assert talk['update_lobby'].call_count == 2
    assert response.get_json()['appointment']['talk']['talk_start_epoch'] == str(
        calendar.timegm(datetime(2025, 6, 2, 11, 0).timetuple()))
    assert registry.by_token('tok1') is binding
    assert len(registry) == 1

def test_binding_survives_across_requests(standalone_app, talk):
    client = standalone_app.test_client()
    registry = standalone_app.extensions[BINDINGS_KEY]
    draft = new_draft(client)
    link_room(client, draft['id'])
    binding = registry.by_token('tok1')

    saved = client.put(f"/api/appointments/{draft['id']}", json={}).get_json()['appointment']
    client.get(f"/api/appointments/{draft['id']}")

    assert registry.by_identity(saved['entry_id']) is binding
    assert not binding.disposed

def test_attendee_delete_releases_binding(standalone_app, talk):
    client = standalone_app.test_client()
    registry = standalone_app.extensions[BINDINGS_KEY]
    draft = new_draft(client, meeting_status='received')
    link_room(client, draft['id'])
    client.put(f"/api/appointments/{draft['id']}", json={})

    response = client.delete(f"/api/appointments/{draft['id']}")

    assert response.status_code == 200
    talk['delete_room'].assert_not_called()
    assert len(registry) == 0
