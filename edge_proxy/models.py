from pydantic import BaseModel
from typing import List, Optional


class HealthStatus(BaseModel):
    status: str = "healthy"
    timestamp: str
    version: str


class ErrorBody(BaseModel):
    error: str
    message: str
    timestamp: str
    stack: Optional[List[str]] = None
