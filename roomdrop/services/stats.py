from sqlalchemy import func
from sqlmodel import Session, select

from roomdrop.models import File as FileModel
from roomdrop.models import Room, utcnow


def fetch_room_totals(session: Session) -> dict[str, int]:
    total_rooms = session.exec(select(func.count(Room.id))).one()
    active_rooms = session.exec(select(func.count(Room.id)).where(Room.expires_at > utcnow())).one()
    total_files = session.exec(select(func.count(FileModel.id))).one()

    return {
        "total_rooms": int(total_rooms or 0),
        "active_rooms": int(active_rooms or 0),
        "total_files": int(total_files or 0),
    }
