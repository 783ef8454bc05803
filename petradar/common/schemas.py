from pydantic import BaseModel, Field
from typing import Optional


class StatusUpdate(BaseModel):
    status: str


class MatchUpdate(BaseModel):
    score: Optional[float] = Field(None, description="Similarity score between 0.0 and 1.0")
    status: Optional[str] = Field(None, description="Pending, Confirmed or Rejected")


class UserRegistration(BaseModel):
    email: str
    full_name: Optional[str] = None


class UserUpdate(BaseModel):
    full_name: Optional[str] = None
    phone_number: Optional[str] = None
    push_token: Optional[str] = Field(None, description="Expo push token of the user's device")
