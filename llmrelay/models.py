"""Pydantic models for the proxy's informational endpoints and error bodies"""

from typing import Dict, List, Optional

from pydantic import BaseModel


class SessionSummary(BaseModel):
    """Short session identity embedded in the health response"""

    id: str
    start_time: str
    duration_ms: int


class HealthResponse(BaseModel):
    """Liveness response"""

    status: str
    timestamp: str
    uptime: float
    version: str
    session: SessionSummary


class ProfileSummary(BaseModel):
    """Versions known for one profile; credentials are never included"""

    versions: List[str]
    description: str
    version_descriptions: Dict[str, Optional[str]] = {}


class ConfigResponse(BaseModel):
    profiles: Dict[str, ProfileSummary]
    timestamp: str


class SessionInfo(BaseModel):
    session_id: str
    session_start_time: str
    session_duration_ms: int
    log_file_path: str


class SessionResponse(BaseModel):
    session: SessionInfo
    timestamp: str


class ErrorResponse(BaseModel):
    """Error body returned for every classified failure"""

    error: str
    request_id: str
    timestamp: str
    message: Optional[str] = None
    details: Optional[str] = None
    type: Optional[str] = None
