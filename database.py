import json
import logging
import sqlite3
import threading
import uuid
from dataclasses import replace
from datetime import datetime, timedelta, UTC

from models import User, Session, Club, Festival, SubEvent, Task, Expense, Participation

logger = logging.getLogger(__name__)

# Logical storage keys, one per collection plus the session singleton
USERS = "users"
SESSION = "session"
CLUBS = "clubs"
FESTIVALS = "festivals"
SUBEVENTS = "subevents"
TASKS = "tasks"
EXPENSES = "expenses"
PARTICIPATIONS = "participations"

IMMUTABLE_FIELDS = {"id", "created_at"}


class StoreError(Exception):
    """Base class for data store errors."""


class DuplicateKeyError(StoreError):
    """A uniqueness constraint would be violated."""


class NotFoundError(StoreError):
    """The record to update does not exist."""


class StaleWriteError(StoreError):
    """Another writer changed the collection between read and write."""


class Database:
    def __init__(self, db_name="coordinet.db", prefix="coordinet_"):
        """
        Initialize the key-value store on top of SQLite.
        Every collection lives in a single row as a JSON array, with a version
        counter used for compare-and-set writes.
        """
        self.conn = sqlite3.connect(db_name, check_same_thread=False)
        # one connection is shared by every thread, so each read-modify-write
        # must finish (commit or rollback) before another starts
        self.lock = threading.RLock()
        self.prefix = prefix
        self._last_stamp = None
        self.create_tables()

    def create_tables(self):
        """Create the storage table."""
        cursor = self.conn.cursor()
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS storage (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                version INTEGER NOT NULL
            )
        ''')
        self.conn.commit()

    # -------------------------------
    # Key-value primitives
    # -------------------------------
    def read_item(self, key):
        """Return the decoded value stored under key and its version (0 when absent)."""
        with self.lock:
            cursor = self.conn.cursor()
            cursor.execute('SELECT value, version FROM storage WHERE key = ?', (self.prefix + key,))
            row = cursor.fetchone()
        if row is None:
            return None, 0
        return json.loads(row[0]), row[1]

    def write_item(self, key, value, expected_version):
        """Store value under key only if its version is still expected_version."""
        payload = json.dumps(value)
        with self.lock:
            cursor = self.conn.cursor()
            if expected_version == 0:
                try:
                    cursor.execute('''
                        INSERT INTO storage (key, value, version) VALUES (?, ?, 1)
                    ''', (self.prefix + key, payload))
                except sqlite3.IntegrityError:
                    self.conn.rollback()
                    raise StaleWriteError(f"'{key}' was created by another writer")
            else:
                cursor.execute('''
                    UPDATE storage SET value = ?, version = version + 1
                    WHERE key = ? AND version = ?
                ''', (payload, self.prefix + key, expected_version))
                if cursor.rowcount == 0:
                    self.conn.rollback()
                    raise StaleWriteError(f"'{key}' changed since version {expected_version}")
            self.conn.commit()
        return expected_version + 1

    def get_item(self, key, default=None):
        """Return the value stored under key, or default when absent."""
        value, version = self.read_item(key)
        return default if version == 0 else value

    def set_item(self, key, value):
        """Unconditionally store value under key."""
        with self.lock:
            cursor = self.conn.cursor()
            cursor.execute('''
                INSERT INTO storage (key, value, version) VALUES (?, ?, 1)
                ON CONFLICT(key) DO UPDATE SET value = excluded.value, version = storage.version + 1
            ''', (self.prefix + key, json.dumps(value)))
            self.conn.commit()

    def remove_item(self, key):
        """Remove key from storage. No-op when absent."""
        with self.lock:
            cursor = self.conn.cursor()
            cursor.execute('DELETE FROM storage WHERE key = ?', (self.prefix + key,))
            self.conn.commit()

    def clear(self):
        """Remove every key under this store's prefix."""
        with self.lock:
            cursor = self.conn.cursor()
            cursor.execute('DELETE FROM storage WHERE substr(key, 1, ?) = ?', (len(self.prefix), self.prefix))
            self.conn.commit()

    # -------------------------------
    # Collection helpers
    # -------------------------------
    def _new_id(self):
        return str(uuid.uuid4())

    def _timestamp(self):
        # strictly increasing within this instance
        now = datetime.now(UTC)
        if self._last_stamp is not None and now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        return now.isoformat(timespec="microseconds")

    def _load(self, key, model):
        records, version = self.read_item(key)
        return [model.from_record(r) for r in records or []], version

    def _save(self, key, items, version):
        try:
            self.write_item(key, [item.to_record() for item in items], version)
        except StaleWriteError:
            logger.warning(f"Concurrent write rejected for collection '{key}'")
            raise

    def _all(self, key, model):
        return self._load(key, model)[0]

    def _find(self, key, model, **criteria):
        for item in self._all(key, model):
            if all(getattr(item, k) == v for k, v in criteria.items()):
                return item
        return None

    def _filter(self, key, model, **criteria):
        return [item for item in self._all(key, model)
                if all(getattr(item, k) == v for k, v in criteria.items())]

    def _append(self, key, model, item):
        with self.lock:
            items, version = self._load(key, model)
            items.append(item)
            self._save(key, items, version)
        return item

    def _update(self, key, model, record_id, changes, stamp=True):
        """Shallow-merge changes over the record with record_id."""
        immutable = IMMUTABLE_FIELDS.intersection(changes)
        if immutable:
            raise ValueError(f"Cannot update {', '.join(sorted(immutable))}")
        with self.lock:
            items, version = self._load(key, model)
            for index, item in enumerate(items):
                if item.id == record_id:
                    if stamp:
                        changes = {**changes, "updated_at": self._timestamp()}
                    items[index] = replace(item, **changes)
                    self._save(key, items, version)
                    return items[index]
        raise NotFoundError(f"{model.__name__} {record_id} not found")

    def _delete(self, key, model, record_id):
        with self.lock:
            items, version = self._load(key, model)
            self._save(key, [item for item in items if item.id != record_id], version)

    # -------------------------------
    # Users
    # -------------------------------
    def get_users(self):
        return self._all(USERS, User)

    def get_user_by_id(self, user_id):
        return self._find(USERS, User, id=user_id)

    def get_user_by_email(self, email):
        """Retrieve a user by email."""
        return self._find(USERS, User, email=email)

    def create_user(self, email, password, name, role):
        """Add a user. Emails are unique across all users."""
        with self.lock:
            users, version = self._load(USERS, User)
            if any(u.email == email for u in users):
                raise DuplicateKeyError(f"User with email {email} already exists")
            user = User(
                id=self._new_id(), email=email, password=password,
                name=name, role=role, created_at=self._timestamp()
            )
            users.append(user)
            self._save(USERS, users, version)
        return user

    def update_user(self, user_id, **changes):
        """Users carry no updated_at, so the patch is applied as is."""
        return self._update(USERS, User, user_id, changes, stamp=False)

    def delete_user(self, user_id):
        self._delete(USERS, User, user_id)

    # -------------------------------
    # Session
    # -------------------------------
    def get_session(self):
        """Return the signed-in session, or None."""
        record = self.get_item(SESSION)
        return Session.from_record(record) if record else None

    def set_session(self, session):
        self.set_item(SESSION, session.to_record())

    def clear_session(self):
        self.remove_item(SESSION)

    # -------------------------------
    # Clubs
    # -------------------------------
    def get_clubs(self):
        return self._all(CLUBS, Club)

    def get_club_by_id(self, club_id):
        return self._find(CLUBS, Club, id=club_id)

    def get_clubs_by_leader_id(self, leader_id):
        return self._filter(CLUBS, Club, leader_id=leader_id)

    def create_club(self, name, description, leader_id):
        """Add a club with its leader as the first member."""
        stamp = self._timestamp()
        club = Club(
            id=self._new_id(), name=name, description=description, leader_id=leader_id,
            member_ids=[leader_id], created_at=stamp, updated_at=stamp
        )
        return self._append(CLUBS, Club, club)

    def update_club(self, club_id, **changes):
        return self._update(CLUBS, Club, club_id, changes)

    def delete_club(self, club_id):
        """Delete a club. Its festivals are left in place."""
        self._delete(CLUBS, Club, club_id)

    def add_club_member(self, club_id, user_id):
        """Add a member to a club. Adding an existing member is a no-op."""
        with self.lock:
            club = self.get_club_by_id(club_id)
            if club is None:
                raise NotFoundError(f"Club {club_id} not found")
            if user_id in club.member_ids:
                return club
            return self.update_club(club_id, member_ids=club.member_ids + [user_id])

    def remove_club_member(self, club_id, user_id):
        with self.lock:
            club = self.get_club_by_id(club_id)
            if club is None:
                raise NotFoundError(f"Club {club_id} not found")
            if user_id == club.leader_id:
                raise ValueError("The club leader cannot be removed")
            return self.update_club(club_id, member_ids=[m for m in club.member_ids if m != user_id])

    # -------------------------------
    # Festivals
    # -------------------------------
    def get_festivals(self):
        return self._all(FESTIVALS, Festival)

    def get_festival_by_id(self, festival_id):
        return self._find(FESTIVALS, Festival, id=festival_id)

    def get_festivals_by_club_id(self, club_id):
        return self._filter(FESTIVALS, Festival, club_id=club_id)

    def get_festivals_by_organizer_id(self, organizer_id):
        return self._filter(FESTIVALS, Festival, organizer_id=organizer_id)

    def create_festival(self, name, description, start_date, end_date, location,
                        organizer_id, club_id, poster="", brochure=""):
        """Add a festival. The organizer is expected to lead the club but this is not checked."""
        stamp = self._timestamp()
        festival = Festival(
            id=self._new_id(), name=name, description=description,
            start_date=start_date, end_date=end_date, location=location,
            organizer_id=organizer_id, club_id=club_id, poster=poster, brochure=brochure,
            created_at=stamp, updated_at=stamp
        )
        return self._append(FESTIVALS, Festival, festival)

    def update_festival(self, festival_id, **changes):
        return self._update(FESTIVALS, Festival, festival_id, changes)

    def delete_festival(self, festival_id):
        self._delete(FESTIVALS, Festival, festival_id)

    # -------------------------------
    # Sub-events
    # -------------------------------
    def get_sub_events(self):
        return self._all(SUBEVENTS, SubEvent)

    def get_sub_event_by_id(self, sub_event_id):
        return self._find(SUBEVENTS, SubEvent, id=sub_event_id)

    def get_sub_events_by_festival_id(self, festival_id):
        return self._filter(SUBEVENTS, SubEvent, festival_id=festival_id)

    def create_sub_event(self, festival_id, name, description, start_date, start_time,
                         end_date, end_time, location, max_participants):
        stamp = self._timestamp()
        sub_event = SubEvent(
            id=self._new_id(), festival_id=festival_id, name=name, description=description,
            start_date=start_date, start_time=start_time, end_date=end_date, end_time=end_time,
            location=location, max_participants=max_participants,
            created_at=stamp, updated_at=stamp
        )
        return self._append(SUBEVENTS, SubEvent, sub_event)

    def update_sub_event(self, sub_event_id, **changes):
        return self._update(SUBEVENTS, SubEvent, sub_event_id, changes)

    def delete_sub_event(self, sub_event_id):
        self._delete(SUBEVENTS, SubEvent, sub_event_id)

    # -------------------------------
    # Tasks
    # -------------------------------
    def get_tasks(self):
        return self._all(TASKS, Task)

    def get_task_by_id(self, task_id):
        return self._find(TASKS, Task, id=task_id)

    def get_tasks_by_festival_id(self, festival_id):
        return self._filter(TASKS, Task, festival_id=festival_id)

    def get_tasks_by_sub_event_id(self, sub_event_id):
        return self._filter(TASKS, Task, sub_event_id=sub_event_id)

    def get_tasks_by_assignee_id(self, assignee_id):
        return self._filter(TASKS, Task, assignee_id=assignee_id)

    def create_task(self, title, description, status, assignee_id, festival_id, due_date,
                    sub_event_id=None):
        stamp = self._timestamp()
        task = Task(
            id=self._new_id(), title=title, description=description, status=status,
            assignee_id=assignee_id, festival_id=festival_id, sub_event_id=sub_event_id,
            due_date=due_date, created_at=stamp, updated_at=stamp
        )
        return self._append(TASKS, Task, task)

    def update_task(self, task_id, **changes):
        return self._update(TASKS, Task, task_id, changes)

    def delete_task(self, task_id):
        self._delete(TASKS, Task, task_id)

    # -------------------------------
    # Expenses
    # -------------------------------
    def get_expenses(self):
        return self._all(EXPENSES, Expense)

    def get_expense_by_id(self, expense_id):
        return self._find(EXPENSES, Expense, id=expense_id)

    def get_expenses_by_festival_id(self, festival_id):
        return self._filter(EXPENSES, Expense, festival_id=festival_id)

    def get_expenses_by_sub_event_id(self, sub_event_id):
        return self._filter(EXPENSES, Expense, sub_event_id=sub_event_id)

    def create_expense(self, title, amount, category, description, date, festival_id,
                       created_by, sub_event_id=None):
        stamp = self._timestamp()
        expense = Expense(
            id=self._new_id(), title=title, amount=amount, category=category,
            description=description, date=date, festival_id=festival_id,
            sub_event_id=sub_event_id, created_by=created_by,
            created_at=stamp, updated_at=stamp
        )
        return self._append(EXPENSES, Expense, expense)

    def update_expense(self, expense_id, **changes):
        return self._update(EXPENSES, Expense, expense_id, changes)

    def delete_expense(self, expense_id):
        self._delete(EXPENSES, Expense, expense_id)

    # -------------------------------
    # Participations
    # -------------------------------
    def get_participations(self):
        return self._all(PARTICIPATIONS, Participation)

    def get_participation_by_id(self, participation_id):
        return self._find(PARTICIPATIONS, Participation, id=participation_id)

    def get_participations_by_user_id(self, user_id):
        return self._filter(PARTICIPATIONS, Participation, user_id=user_id)

    def get_participations_by_festival_id(self, festival_id):
        return self._filter(PARTICIPATIONS, Participation, festival_id=festival_id)

    def get_participations_by_sub_event_id(self, sub_event_id):
        return self._filter(PARTICIPATIONS, Participation, sub_event_id=sub_event_id)

    def create_participation(self, user_name, user_id, festival_id, status, registration_date,
                             sub_event_id=None):
        """Register a user for a festival or one of its sub-events, at most once."""
        with self.lock:
            participations, version = self._load(PARTICIPATIONS, Participation)
            for p in participations:
                if (p.user_id, p.festival_id, p.sub_event_id) == (user_id, festival_id, sub_event_id):
                    raise DuplicateKeyError("User is already participating in this event")
            participation = Participation(
                id=self._new_id(), user_name=user_name, user_id=user_id, festival_id=festival_id,
                sub_event_id=sub_event_id, status=status, registration_date=registration_date,
                created_at=self._timestamp()
            )
            participations.append(participation)
            self._save(PARTICIPATIONS, participations, version)
        return participation

    def update_participation(self, participation_id, **changes):
        """Participations carry no updated_at, so the patch is applied as is."""
        return self._update(PARTICIPATIONS, Participation, participation_id, changes, stamp=False)

    def delete_participation(self, participation_id):
        self._delete(PARTICIPATIONS, Participation, participation_id)

    def close(self):
        """Close the database connection."""
        self.conn.close()
