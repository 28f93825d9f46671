"""Domain models for users and authentication."""
from datetime import datetime
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, EmailStr, Field


class Role(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"
    ADMIN = "admin"


class User(BaseModel):
    """A participant resolved from the ``users`` directory.

    Attributes:
        user_id: Directory key of the user
        email: User's email address (used as meeting attendee)
        name: Display name
        role: student, teacher or admin
        class_ids: Classes the user teaches or attends, when the directory lists them
    """
    user_id: str = Field(alias="id")
    email: EmailStr
    name: str = ""
    role: Role = Role.STUDENT
    class_ids: List[str] = Field(default_factory=list, alias="classIds")
    created_at: Optional[datetime] = Field(default=None, alias="createdAt")
    is_active: bool = Field(default=True, alias="isActive")

    class Config:
        populate_by_name = True
        use_enum_values = True
        json_schema_extra = {
            "example": {
                "id": "teacher-1",
                "email": "teacher@school.com",
                "name": "Ustadha Mariam",
                "role": "teacher",
            }
        }

    @property
    def is_teacher(self) -> bool:
        return self.role in (Role.TEACHER.value, Role.ADMIN.value)


class TokenData(BaseModel):
    """JWT token payload data.

    Attributes:
        sub: Subject (user ID)
        email: User email
        role: User role
        exp: Token expiration time
        iat: Token issued at time
    """
    sub: str
    email: str
    role: str
    exp: datetime
    iat: Optional[datetime] = None


class TokenResponse(BaseModel):
    """Issued token, as printed by the seed script."""
    access_token: str
    token_type: str = "bearer"
    expires_in: int
    user: User
