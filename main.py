from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi import status
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, Literal
from models import Record, to_camel
from manager import FestivalManager, CapacityError
from database import Database, DuplicateKeyError, NotFoundError, StaleWriteError
from auth import sign_up, sign_in, sign_out, require_roles
from utils import file_to_data_url, parse_date, check_festival_permission, check_club_permission
import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv
import os

load_dotenv()  # Load variables from .env file
DATABASE_PATH = os.getenv("DATABASE_PATH", "coordinet.db")
STORAGE_PREFIX = os.getenv("STORAGE_PREFIX", "coordinet_")
CORS_ORIGINS = os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")

# Logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Database
db = Database(DATABASE_PATH, STORAGE_PREFIX)

# FastAPI App
@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    logger.info("Closing database connection")
    db.close()

app = FastAPI(title="CoordiNet API", lifespan=lifespan)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Init
manager = FestivalManager(db)
signed_in = require_roles(db)
leader_only = require_roles(db, "club_leader")
student_only = require_roles(db, "student")


def dump(value):
    """Convert records (and containers of them) to camelCase JSON data."""
    if isinstance(value, Record):
        return value.to_record()
    if isinstance(value, list):
        return [dump(v) for v in value]
    if isinstance(value, dict):
        return {to_camel(k): dump(v) for k, v in value.items()}
    return value

# -------------------------------
# Error handling
# -------------------------------
@app.exception_handler(DuplicateKeyError)
def duplicate_key_handler(request: Request, exc: DuplicateKeyError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})

@app.exception_handler(NotFoundError)
def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})

@app.exception_handler(CapacityError)
def capacity_handler(request: Request, exc: CapacityError):
    return JSONResponse(status_code=400, content={"detail": f"Registration failed: {exc}"})

@app.exception_handler(StaleWriteError)
def stale_write_handler(request: Request, exc: StaleWriteError):
    logger.warning(f"Rejected concurrent write: {exc}")
    return JSONResponse(status_code=409, content={"detail": "The data changed while saving, please retry"})

# -------------------------------
# Schemas
# -------------------------------
class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

class SignUp(CamelModel):
    name: str = Field(..., min_length=1)
    email: str = Field(..., min_length=3)
    password: str = Field(..., min_length=6)
    role: Literal["club_leader", "student"]

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "name": "Asha Rao",
            "email": "asha@example.com",
            "password": "secret123",
            "role": "club_leader"
        }
    })

class SignIn(CamelModel):
    email: str
    password: str

class ClubCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: str = ""

class ClubUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None

class ClubMember(CamelModel):
    user_id: str

class FestivalCreate(CamelModel):
    club_id: str
    name: str = Field(..., min_length=1)
    description: str = ""
    start_date: str
    end_date: str
    location: str = ""
    poster: str = ""
    brochure: str = ""

class FestivalUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    location: Optional[str] = None
    poster: Optional[str] = None
    brochure: Optional[str] = None

class SubEventCreate(CamelModel):
    name: str = Field(..., min_length=1)
    description: str = ""
    start_date: str
    start_time: str
    end_date: str
    end_time: str
    location: str = ""
    max_participants: int = Field(..., gt=0)

class SubEventUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[str] = None
    start_time: Optional[str] = None
    end_date: Optional[str] = None
    end_time: Optional[str] = None
    location: Optional[str] = None
    max_participants: Optional[int] = Field(None, gt=0)

class TaskCreate(CamelModel):
    title: str = Field(..., min_length=1)
    description: str = ""
    status: Literal["pending", "in_progress", "completed"] = "pending"
    assignee_id: Optional[str] = None
    sub_event_id: Optional[str] = None
    due_date: str

class TaskUpdate(CamelModel):
    title: Optional[str] = None
    description: Optional[str] = None
    status: Optional[Literal["pending", "in_progress", "completed"]] = None
    assignee_id: Optional[str] = None
    sub_event_id: Optional[str] = None
    due_date: Optional[str] = None

class ExpenseCreate(CamelModel):
    title: str = Field(..., min_length=1)
    amount: float = Field(..., ge=0)
    category: str
    description: str = ""
    date: str
    sub_event_id: Optional[str] = None

class ExpenseUpdate(CamelModel):
    title: Optional[str] = None
    amount: Optional[float] = Field(None, ge=0)
    category: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    sub_event_id: Optional[str] = None

class ParticipationUpdate(CamelModel):
    status: Literal["registered", "attended", "cancelled"]


def owned_festival(festival_id: str, session):
    """Fetch a festival the signed-in user organizes."""
    festival = db.get_festival_by_id(festival_id)
    if not festival:
        raise HTTPException(status_code=404, detail="Festival not found")
    check_festival_permission(festival, session)
    return festival

def patch_fields(payload: BaseModel, clearable=frozenset()) -> dict:
    """Fields sent in an update body; null only clears fields listed as clearable."""
    return {k: v for k, v in payload.model_dump(exclude_unset=True).items()
            if v is not None or k in clearable}

def check_festival_dates(start_date: str, end_date: str):
    """Reject unparseable dates and ranges that end before they start."""
    if parse_date(end_date) < parse_date(start_date):
        raise HTTPException(status_code=400, detail="End date must not be before start date")

# -------------------------------
# Auth Routes
# -------------------------------
@app.get("/", response_model=dict, summary="API root endpoint")
def root():
    """Welcome message for the CoordiNet API."""
    return {"message": "Welcome to CoordiNet API", "data": {}}

@app.post("/auth/signup", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Register a new user")
def signup(payload: SignUp):
    """Register a new user and sign them in."""
    session = sign_up(db, payload.name, payload.email, payload.password, payload.role)
    return {"message": "User registered", "data": dump(session)}

@app.post("/auth/signin", response_model=dict, summary="Sign in")
def signin(payload: SignIn):
    session = sign_in(db, payload.email, payload.password)
    return {"message": "Signed in", "data": dump(session)}

@app.post("/auth/signout", response_model=dict, summary="Sign out")
def signout():
    sign_out(db)
    return {"message": "Signed out", "data": {}}

@app.get("/auth/session", response_model=dict, summary="Current session")
def current_session(session=Depends(signed_in)):
    return {"message": "Session retrieved", "data": dump(session)}

# -------------------------------
# Dashboards
# -------------------------------
@app.get("/dashboard/leader", response_model=dict, summary="Club leader dashboard")
def leader_dashboard(session=Depends(leader_only)):
    """Clubs led and festivals organized by the signed-in leader."""
    return {"message": "Dashboard retrieved", "data": dump(manager.leader_dashboard(session))}

@app.get("/dashboard/student", response_model=dict, summary="Student dashboard")
def student_dashboard(session=Depends(student_only)):
    """Upcoming festivals and the signed-in student's registrations."""
    return {"message": "Dashboard retrieved", "data": dump(manager.student_dashboard(session))}

# -------------------------------
# Club Routes
# -------------------------------
@app.post("/clubs", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Create a club")
def create_club(club: ClubCreate, session=Depends(leader_only)):
    new_club = db.create_club(name=club.name, description=club.description, leader_id=session.user_id)
    logger.info(f"Club {new_club.id} created by {session.user_id}")
    return {"message": "Club created", "data": dump(new_club)}

@app.get("/clubs/{club_id}", response_model=dict, summary="Get a club")
def get_club(club_id: str):
    club = db.get_club_by_id(club_id)
    if not club:
        raise HTTPException(status_code=404, detail="Club not found")
    festivals = db.get_festivals_by_club_id(club_id)
    return {"message": "Club retrieved", "data": dump({"club": club, "festivals": festivals})}

@app.put("/clubs/{club_id}", response_model=dict, summary="Update a club")
def update_club(club_id: str, club: ClubUpdate, session=Depends(leader_only)):
    existing = db.get_club_by_id(club_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Club not found")
    check_club_permission(existing, session)
    updated = db.update_club(club_id, **patch_fields(club))
    logger.info(f"Club {club_id} updated by {session.user_id}")
    return {"message": f"Club {club_id} updated", "data": dump(updated)}

@app.delete("/clubs/{club_id}", response_model=dict, summary="Delete a club")
def delete_club(club_id: str, session=Depends(leader_only)):
    """Delete a club. Its festivals are kept."""
    existing = db.get_club_by_id(club_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Club not found")
    check_club_permission(existing, session)
    db.delete_club(club_id)
    logger.info(f"Club {club_id} deleted by {session.user_id}")
    return {"message": f"Club {club_id} deleted", "data": {}}

@app.post("/clubs/{club_id}/members", response_model=dict, summary="Add a club member")
def add_club_member(club_id: str, member: ClubMember, session=Depends(leader_only)):
    existing = db.get_club_by_id(club_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Club not found")
    check_club_permission(existing, session)
    club = db.add_club_member(club_id, member.user_id)
    return {"message": "Member added", "data": dump(club)}

@app.delete("/clubs/{club_id}/members/{user_id}", response_model=dict, summary="Remove a club member")
def remove_club_member(club_id: str, user_id: str, session=Depends(leader_only)):
    existing = db.get_club_by_id(club_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Club not found")
    check_club_permission(existing, session)
    try:
        club = db.remove_club_member(club_id, user_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"message": "Member removed", "data": dump(club)}

# -------------------------------
# Festival Routes
# -------------------------------
@app.post("/festivals", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Create a festival")
def create_festival(festival: FestivalCreate, session=Depends(leader_only)):
    """Create a festival for a club the signed-in leader runs."""
    club = db.get_club_by_id(festival.club_id)
    if not club:
        raise HTTPException(status_code=404, detail="Club not found")
    check_club_permission(club, session)
    check_festival_dates(festival.start_date, festival.end_date)
    new_festival = db.create_festival(organizer_id=session.user_id, **festival.model_dump())
    logger.info(f"Festival {new_festival.id} created by {session.user_id}")
    return {"message": "Festival created", "data": dump(new_festival)}

@app.get("/festivals", response_model=dict, summary="List all festivals")
def list_festivals():
    return {"message": "Festivals retrieved", "data": dump(db.get_festivals())}

@app.get("/festivals/upcoming", response_model=dict, summary="List festivals that have not ended")
def list_upcoming_festivals():
    return {"message": "Festivals retrieved", "data": dump(manager.upcoming_festivals())}

@app.get("/festivals/{festival_id}", response_model=dict, summary="Get a festival with its sub-events, tasks and expenses")
def get_festival(festival_id: str):
    overview = manager.festival_overview(festival_id, db.get_session())
    if overview is None:
        raise HTTPException(status_code=404, detail="Festival not found")
    return {"message": "Festival retrieved", "data": dump(overview)}

@app.put("/festivals/{festival_id}", response_model=dict, summary="Update a festival")
def update_festival(festival_id: str, festival: FestivalUpdate, session=Depends(leader_only)):
    existing = owned_festival(festival_id, session)
    fields = patch_fields(festival)
    if "start_date" in fields or "end_date" in fields:
        check_festival_dates(fields.get("start_date", existing.start_date), fields.get("end_date", existing.end_date))
    updated = db.update_festival(festival_id, **fields)
    logger.info(f"Festival {festival_id} updated by {session.user_id}")
    return {"message": f"Festival {festival_id} updated", "data": dump(updated)}

@app.delete("/festivals/{festival_id}", response_model=dict, summary="Delete a festival")
def delete_festival(festival_id: str, session=Depends(leader_only)):
    """Delete a festival. Sub-events, tasks, expenses and registrations are kept."""
    owned_festival(festival_id, session)
    db.delete_festival(festival_id)
    logger.info(f"Festival {festival_id} deleted by {session.user_id}")
    return {"message": f"Festival {festival_id} deleted", "data": {}}

async def store_festival_document(festival_id: str, document: str, request: Request, session):
    """Store the raw request body inline on the festival as a data URL."""
    owned_festival(festival_id, session)
    content = await request.body()
    data_url = file_to_data_url(content, request.headers.get("content-type", ""))
    updated = db.update_festival(festival_id, **{document: data_url})
    logger.info(f"Festival {festival_id} {document} uploaded by {session.user_id} ({len(content)} bytes)")
    return {"message": f"Festival {document} uploaded", "data": dump(updated)}

@app.put("/festivals/{festival_id}/poster", response_model=dict, summary="Upload a festival poster")
async def upload_poster(festival_id: str, request: Request, session=Depends(leader_only)):
    return await store_festival_document(festival_id, "poster", request, session)

@app.put("/festivals/{festival_id}/brochure", response_model=dict, summary="Upload a festival brochure")
async def upload_brochure(festival_id: str, request: Request, session=Depends(leader_only)):
    return await store_festival_document(festival_id, "brochure", request, session)

@app.post("/festivals/{festival_id}/register", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Register for a festival")
def register_for_festival(festival_id: str, session=Depends(signed_in)):
    participation = manager.register_for_festival(session, festival_id)
    return {"message": "Registered for festival", "data": dump(participation)}

@app.post("/festivals/{festival_id}/subevents", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Create a sub-event")
def create_sub_event(festival_id: str, sub_event: SubEventCreate, session=Depends(leader_only)):
    owned_festival(festival_id, session)
    new_sub_event = db.create_sub_event(festival_id=festival_id, **sub_event.model_dump())
    logger.info(f"Sub-event {new_sub_event.id} created by {session.user_id}")
    return {"message": "Sub-event created", "data": dump(new_sub_event)}

@app.post("/festivals/{festival_id}/tasks", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Create a task")
def create_task(festival_id: str, task: TaskCreate, session=Depends(leader_only)):
    """Create a task, assigned to the organizer unless an assignee is given."""
    owned_festival(festival_id, session)
    fields = task.model_dump()
    fields["assignee_id"] = fields["assignee_id"] or session.user_id
    new_task = db.create_task(festival_id=festival_id, **fields)
    logger.info(f"Task {new_task.id} created by {session.user_id}")
    return {"message": "Task created", "data": dump(new_task)}

@app.post("/festivals/{festival_id}/expenses", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Record an expense")
def create_expense(festival_id: str, expense: ExpenseCreate, session=Depends(leader_only)):
    owned_festival(festival_id, session)
    new_expense = db.create_expense(festival_id=festival_id, created_by=session.user_id, **expense.model_dump())
    logger.info(f"Expense {new_expense.id} recorded by {session.user_id}")
    return {"message": "Expense recorded", "data": dump(new_expense)}

# -------------------------------
# Sub-event Routes
# -------------------------------
@app.get("/subevents/{sub_event_id}", response_model=dict, summary="Get a sub-event with its participants")
def get_sub_event(sub_event_id: str):
    overview = manager.sub_event_overview(sub_event_id, db.get_session())
    if overview is None:
        raise HTTPException(status_code=404, detail="Sub-event not found")
    return {"message": "Sub-event retrieved", "data": dump(overview)}

@app.put("/subevents/{sub_event_id}", response_model=dict, summary="Update a sub-event")
def update_sub_event(sub_event_id: str, sub_event: SubEventUpdate, session=Depends(leader_only)):
    existing = db.get_sub_event_by_id(sub_event_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Sub-event not found")
    owned_festival(existing.festival_id, session)
    updated = db.update_sub_event(sub_event_id, **patch_fields(sub_event))
    logger.info(f"Sub-event {sub_event_id} updated by {session.user_id}")
    return {"message": f"Sub-event {sub_event_id} updated", "data": dump(updated)}

@app.delete("/subevents/{sub_event_id}", response_model=dict, summary="Delete a sub-event")
def delete_sub_event(sub_event_id: str, session=Depends(leader_only)):
    existing = db.get_sub_event_by_id(sub_event_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Sub-event not found")
    owned_festival(existing.festival_id, session)
    db.delete_sub_event(sub_event_id)
    logger.info(f"Sub-event {sub_event_id} deleted by {session.user_id}")
    return {"message": f"Sub-event {sub_event_id} deleted", "data": {}}

@app.post("/subevents/{sub_event_id}/register", response_model=dict, status_code=status.HTTP_201_CREATED, summary="Register for a sub-event")
def register_for_sub_event(sub_event_id: str, session=Depends(signed_in)):
    participation = manager.register_for_sub_event(session, sub_event_id)
    return {"message": "Registered for sub-event", "data": dump(participation)}

# -------------------------------
# Task, Expense and Participation Routes
# -------------------------------
@app.put("/tasks/{task_id}", response_model=dict, summary="Update a task")
def update_task(task_id: str, task: TaskUpdate, session=Depends(leader_only)):
    existing = db.get_task_by_id(task_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Task not found")
    owned_festival(existing.festival_id, session)
    updated = db.update_task(task_id, **patch_fields(task, clearable={"sub_event_id"}))
    logger.info(f"Task {task_id} updated by {session.user_id}")
    return {"message": f"Task {task_id} updated", "data": dump(updated)}

@app.delete("/tasks/{task_id}", response_model=dict, summary="Delete a task")
def delete_task(task_id: str, session=Depends(leader_only)):
    existing = db.get_task_by_id(task_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Task not found")
    owned_festival(existing.festival_id, session)
    db.delete_task(task_id)
    return {"message": f"Task {task_id} deleted", "data": {}}

@app.put("/expenses/{expense_id}", response_model=dict, summary="Update an expense")
def update_expense(expense_id: str, expense: ExpenseUpdate, session=Depends(leader_only)):
    existing = db.get_expense_by_id(expense_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Expense not found")
    owned_festival(existing.festival_id, session)
    updated = db.update_expense(expense_id, **patch_fields(expense, clearable={"sub_event_id"}))
    logger.info(f"Expense {expense_id} updated by {session.user_id}")
    return {"message": f"Expense {expense_id} updated", "data": dump(updated)}

@app.delete("/expenses/{expense_id}", response_model=dict, summary="Delete an expense")
def delete_expense(expense_id: str, session=Depends(leader_only)):
    existing = db.get_expense_by_id(expense_id)
    if not existing:
        raise HTTPException(status_code=404, detail="Expense not found")
    owned_festival(existing.festival_id, session)
    db.delete_expense(expense_id)
    return {"message": f"Expense {expense_id} deleted", "data": {}}

def own_participation(participation_id: str, session):
    """A registration may be changed by its participant or the festival organizer."""
    participation = db.get_participation_by_id(participation_id)
    if not participation:
        raise HTTPException(status_code=404, detail="Participation not found")
    if participation.user_id != session.user_id:
        owned_festival(participation.festival_id, session)
    return participation

@app.put("/participations/{participation_id}", response_model=dict, summary="Change a registration status")
def update_participation(participation_id: str, payload: ParticipationUpdate, session=Depends(signed_in)):
    own_participation(participation_id, session)
    updated = db.update_participation(participation_id, status=payload.status)
    logger.info(f"Participation {participation_id} set to {payload.status} by {session.user_id}")
    return {"message": f"Participation {participation_id} updated", "data": dump(updated)}

@app.delete("/participations/{participation_id}", response_model=dict, summary="Delete a registration")
def delete_participation(participation_id: str, session=Depends(signed_in)):
    own_participation(participation_id, session)
    db.delete_participation(participation_id)
    return {"message": f"Participation {participation_id} deleted", "data": {}}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
