"""Pydantic schemas for checkout creation and finalize"""
from pydantic import BaseModel, Field
from typing import Literal, Optional


class CreateSessionRequest(BaseModel):
    product_id: int
    success_url: Optional[str] = None
    cancel_url: Optional[str] = None


class FinalizeRequest(BaseModel):
    session_id: str = Field(..., min_length=1)
    action: Optional[Literal["purchase", "request", "membership"]] = None


class FinalizeResponse(BaseModel):
    type: Literal["purchase", "request", "membership"]
    creatorDisplayName: str
    orderId: Optional[int] = None
