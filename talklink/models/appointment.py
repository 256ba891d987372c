from talklink.extensions import db
from talklink.services.appointment_events import events_for
from datetime import datetime

# Meeting statuses under which the local user owns the appointment
ORGANIZER_STATUSES = ('non_meeting', 'meeting', 'canceled')
MEETING_STATUSES = ORGANIZER_STATUSES + ('received', 'received_canceled')

class Appointment(db.Model):
    __tablename__ = 'appointments'

    id = db.Column(db.Integer, primary_key=True)
    # Assigned on first save; drafts have none
    entry_id = db.Column(db.String(64), unique=True, nullable=True, index=True)
    subject = db.Column(db.String(255), nullable=True)
    body = db.Column(db.Text, nullable=True)
    location = db.Column(db.String(255), nullable=True)
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)
    meeting_status = db.Column(db.String(20), default='non_meeting', nullable=False)
    saved = db.Column(db.Boolean, default=False, nullable=False)
    user_properties = db.Column(db.JSON, default=dict)

    created_at = db.Column(db.DateTime, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def is_organizer(self):
        return self.meeting_status in ORGANIZER_STATUSES

    @property
    def events(self):
        return events_for(self)

    def get_user_property(self, name):
        return (self.user_properties or {}).get(name)

    def set_user_property(self, name, value):
        # Reassign so the JSON column is flagged dirty
        properties = dict(self.user_properties or {})
        properties[name] = value
        self.user_properties = properties

    def remove_user_property(self, name):
        properties = dict(self.user_properties or {})
        if name in properties:
            del properties[name]
            self.user_properties = properties

    def to_dict(self):
        return {
            'id': self.id,
            'entry_id': self.entry_id,
            'subject': self.subject,
            'body': self.body,
            'location': self.location,
            'start_time': self.start_time.isoformat(),
            'end_time': self.end_time.isoformat(),
            'meeting_status': self.meeting_status,
            'saved': self.saved,
            'talk': dict(self.user_properties or {}),
        }
