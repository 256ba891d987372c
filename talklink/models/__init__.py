from talklink.models.appointment import Appointment
from talklink.models.talk import RoomCreationResult, RoomRequest, RoomType
