import base64
from datetime import datetime, UTC
from typing import Optional
from fastapi import HTTPException


def try_parse_date(date_str: str) -> Optional[datetime]:
    """Parse a date string into a timezone-aware datetime (UTC when no offset is given), or None."""
    if not isinstance(date_str, str):
        return None
    try:
        parsed = datetime.fromisoformat(date_str)
    except ValueError:
        try:
            parsed = datetime.strptime(date_str, "%Y-%m-%d %H:%M")
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def parse_date(date_str: str) -> datetime:
    """Parse a date string from user input."""
    parsed = try_parse_date(date_str)
    if parsed is None:
        raise HTTPException(status_code=400, detail="Invalid date format")
    return parsed


def file_to_data_url(content: bytes, content_type: str) -> str:
    """Encode uploaded file content as a data URL so it can be inlined in a record."""
    if not content:
        return ""
    encoded = base64.b64encode(content).decode("ascii")
    return f"data:{content_type or 'application/octet-stream'};base64,{encoded}"


def check_festival_permission(festival, session):
    """Check that the signed-in user organizes the festival."""
    if festival.organizer_id != session.user_id:
        raise HTTPException(status_code=403, detail="Access denied: you are not the festival organizer")


def check_club_permission(club, session):
    """Check that the signed-in user leads the club."""
    if club.leader_id != session.user_id:
        raise HTTPException(status_code=403, detail="Access denied: you are not the club leader")
