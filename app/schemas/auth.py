from pydantic import BaseModel
from uuid import UUID

from app.db.models.enums import UserRole

class Caller(BaseModel):
    id: UUID
    role: UserRole
