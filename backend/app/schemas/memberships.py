"""Pydantic schemas for memberships"""
from pydantic import BaseModel


class SubscribeRequest(BaseModel):
    product_id: int
