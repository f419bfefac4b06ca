import logging
from datetime import datetime, UTC
from typing import Optional

from database import Database, NotFoundError, StoreError
from models import Participation, Session, SubEvent
from utils import try_parse_date

logger = logging.getLogger(__name__)


class CapacityError(StoreError):
    """The sub-event has no remaining spots."""


class FestivalManager:
    def __init__(self, db: Database):
        """Initialize FestivalManager with the data store."""
        self.db = db

    # -------------------------------
    # Registration
    # -------------------------------
    def remaining_capacity(self, sub_event: SubEvent) -> int:
        """Spots left on a sub-event, counted against the live participation list."""
        taken = len(self.db.get_participations_by_sub_event_id(sub_event.id))
        return max(sub_event.max_participants - taken, 0)

    def register_for_sub_event(self, session: Session, sub_event_id: str) -> Participation:
        """Register the signed-in user for a sub-event if it still has room."""
        sub_event = self.db.get_sub_event_by_id(sub_event_id)
        if sub_event is None:
            raise NotFoundError(f"SubEvent {sub_event_id} not found")
        if self.remaining_capacity(sub_event) <= 0:
            raise CapacityError("This sub-event is already full")
        participation = self.db.create_participation(
            user_name=session.name,
            user_id=session.user_id,
            festival_id=sub_event.festival_id,
            sub_event_id=sub_event.id,
            status="registered",
            registration_date=datetime.now(UTC).isoformat()
        )
        logger.info(f"User {session.user_id} registered for sub-event {sub_event.id}")
        return participation

    def register_for_festival(self, session: Session, festival_id: str) -> Participation:
        """Register the signed-in user for a festival as a whole."""
        if self.db.get_festival_by_id(festival_id) is None:
            raise NotFoundError(f"Festival {festival_id} not found")
        participation = self.db.create_participation(
            user_name=session.name,
            user_id=session.user_id,
            festival_id=festival_id,
            status="registered",
            registration_date=datetime.now(UTC).isoformat()
        )
        logger.info(f"User {session.user_id} registered for festival {festival_id}")
        return participation

    # -------------------------------
    # Derived views
    # -------------------------------
    def total_expenses(self, festival_id: str) -> float:
        return sum(e.amount for e in self.db.get_expenses_by_festival_id(festival_id))

    def upcoming_festivals(self, now: Optional[datetime] = None) -> list:
        """Festivals that have not ended yet, soonest first.

        Festivals whose end date cannot be parsed are skipped; an unparseable
        start date sorts last.
        """
        now = now or datetime.now(UTC)
        upcoming = []
        for festival in self.db.get_festivals():
            end = try_parse_date(festival.end_date)
            if end is None:
                logger.warning(f"Skipping festival {festival.id} with invalid end date {festival.end_date!r}")
                continue
            if end >= now:
                upcoming.append(festival)
        return sorted(upcoming, key=lambda f: try_parse_date(f.start_date) or datetime.max.replace(tzinfo=UTC))

    def leader_dashboard(self, session: Session) -> dict:
        clubs = self.db.get_clubs_by_leader_id(session.user_id)
        festivals = []
        for festival in self.db.get_festivals_by_organizer_id(session.user_id):
            club = self.db.get_club_by_id(festival.club_id)
            festivals.append({"festival": festival, "club_name": club.name if club else None})
        return {"clubs": clubs, "festivals": festivals}

    def student_dashboard(self, session: Session, now: Optional[datetime] = None) -> dict:
        participations = self.db.get_participations_by_user_id(session.user_id)
        festivals, sub_events = [], []
        for p in participations:
            # referents may have been deleted
            festival = self.db.get_festival_by_id(p.festival_id)
            if festival and festival not in festivals:
                festivals.append(festival)
            if p.sub_event_id:
                sub_event = self.db.get_sub_event_by_id(p.sub_event_id)
                if sub_event:
                    sub_events.append(sub_event)
        return {
            "upcoming_festivals": self.upcoming_festivals(now),
            "participations": participations,
            "participated_festivals": festivals,
            "participated_sub_events": sub_events,
        }

    def festival_overview(self, festival_id: str, session: Optional[Session] = None) -> Optional[dict]:
        """Everything shown on a festival page, or None if the festival does not exist."""
        festival = self.db.get_festival_by_id(festival_id)
        if festival is None:
            return None
        is_registered = False
        if session:
            is_registered = any(
                p.festival_id == festival_id
                for p in self.db.get_participations_by_user_id(session.user_id)
            )
        return {
            "festival": festival,
            "club": self.db.get_club_by_id(festival.club_id),
            "sub_events": self.db.get_sub_events_by_festival_id(festival_id),
            "tasks": self.db.get_tasks_by_festival_id(festival_id),
            "expenses": self.db.get_expenses_by_festival_id(festival_id),
            "total_expenses": self.total_expenses(festival_id),
            "is_organizer": bool(session) and festival.organizer_id == session.user_id,
            "is_registered": is_registered,
        }

    def sub_event_overview(self, sub_event_id: str, session: Optional[Session] = None) -> Optional[dict]:
        """Everything shown on a sub-event page, or None if the sub-event does not exist."""
        sub_event = self.db.get_sub_event_by_id(sub_event_id)
        if sub_event is None:
            return None
        participants = self.db.get_participations_by_sub_event_id(sub_event_id)
        festival = self.db.get_festival_by_id(sub_event.festival_id)
        return {
            "sub_event": sub_event,
            "festival": festival,
            "participants": participants,
            "remaining_spots": max(sub_event.max_participants - len(participants), 0),
            "is_organizer": bool(session) and festival is not None and festival.organizer_id == session.user_id,
            "is_registered": bool(session) and any(p.user_id == session.user_id for p in participants),
        }
