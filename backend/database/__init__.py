from .connection import engine, AsyncSessionLocal, init_db, Base

# Import entity models to ensure they are registered with Base
from .entity_models import (
    UserDB, StaffDB, CandidateDB, CandidateNoteDB, StaffNoteDB,
    LeadDB, BookingDB, ActivityDB
)

__all__ = [
    'engine', 'AsyncSessionLocal', 'init_db', 'Base',
    # Entity models
    'UserDB', 'StaffDB', 'CandidateDB', 'CandidateNoteDB', 'StaffNoteDB',
    'LeadDB', 'BookingDB', 'ActivityDB',
]
