"""Pydantic schemas for account claiming"""
from pydantic import BaseModel


class ClaimAccountRequest(BaseModel):
    token: str
    password: str


class ClaimedUserResponse(BaseModel):
    id: int
    email: str
