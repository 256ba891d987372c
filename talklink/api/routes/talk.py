from flask import Blueprint, jsonify
from talklink.extensions import get_binding_registry
from talklink.services.talk_link_service import TalkLinkService
from talklink.utils.decorators import handle_talk_errors

talk_bp = Blueprint('talk', __name__)

@talk_bp.route('/verify', methods=['POST'])
@handle_talk_errors
def verify_connection():
    ok, message = TalkLinkService.verify_connection(get_binding_registry().create_service())
    return jsonify({'ok': ok, 'message': message}), 200

@talk_bp.route('/bindings', methods=['GET'])
def list_bindings():
    bindings = get_binding_registry().bindings()
    return jsonify([{
        'token': b.room_token,
        'identity': b.identity,
        'lobby_enabled': b.lobby_enabled,
        'event_conversation': b.is_event_conversation,
    } for b in bindings])
