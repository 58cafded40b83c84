"""Typed structures for JSON blobs and server payloads"""
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _to_naive_utc(value: datetime) -> datetime:
    """The local store keeps naive UTC timestamps."""
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


class GPSFix(BaseModel):
    """A single location reading taken at capture time"""
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    accuracy: Optional[float] = None


class GPSTrackPoint(BaseModel):
    latitude: float
    longitude: float
    altitude: Optional[float] = None
    accuracy: Optional[float] = None
    timestamp: datetime


class GPSTrack(BaseModel):
    points: List[GPSTrackPoint] = []


class AnnotationShape(BaseModel):
    kind: str  # arrow | circle | rectangle | freehand | text | measurement
    points: List[List[float]] = []
    color: str = "#FF0000"
    text: Optional[str] = None


class PhotoAnnotations(BaseModel):
    shapes: List[AnnotationShape] = []
    annotated_filename: Optional[str] = None


class ComplianceResults(BaseModel):
    """checklist item id -> result (pass | fail | na | partial)"""
    items: Dict[str, str] = {}
    notes: Dict[str, str] = {}


class DeviceInfo(BaseModel):
    make: Optional[str] = None
    model: Optional[str] = None


class QueuePayload(BaseModel):
    """Body carried by a sync queue entry"""
    model_config = ConfigDict(extra="allow")

    report_id: Optional[str] = None
    original_hash: Optional[str] = None
    fields: Dict[str, Any] = {}


class ReportSummary(BaseModel):
    """Report as listed by the server bootstrap endpoint"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    report_number: Optional[str] = Field(default=None, alias="reportNumber")
    title: Optional[str] = None
    property_address: Optional[str] = Field(default=None, alias="propertyAddress")
    status: str = "DRAFT"
    updated_at: datetime = Field(alias="updatedAt")
    data: Dict[str, Any] = {}

    @field_validator("updated_at")
    @classmethod
    def _naive_utc(cls, value: datetime) -> datetime:
        return _to_naive_utc(value)


class ChecklistDefinition(BaseModel):
    """Checklist as served by the bootstrap endpoint; unknown keys are kept"""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    version: str = "1.0"
    category: Optional[str] = None
    standard: Optional[str] = None
    sections: List[Any] = []
    items: List[Any] = []


class TemplateDefinition(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(min_length=1)
    name: str = Field(min_length=1)
    description: Optional[str] = None
    inspection_type: Optional[str] = Field(default=None, alias="inspectionType")
    sections: List[Any] = []
    checklists: Optional[List[Any]] = None
    is_default: bool = Field(default=False, alias="isDefault")


class BootstrapResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    recent_reports: List[ReportSummary] = Field(default=[], alias="recentReports")
    # Validated one at a time on save so a malformed entry is skipped alone
    checklists: List[Dict[str, Any]] = []
    templates: List[Dict[str, Any]] = []
    last_sync_at: Optional[datetime] = Field(default=None, alias="lastSyncAt")

    @field_validator("last_sync_at")
    @classmethod
    def _naive_utc(cls, value: Optional[datetime]) -> Optional[datetime]:
        return _to_naive_utc(value) if value else value


class UploadReceipt(BaseModel):
    """Server acknowledgment of a stored evidence file"""
    model_config = ConfigDict(extra="ignore")

    id: str
    url: str
    hash: Optional[str] = None


class Actor(BaseModel):
    """Who performed an action recorded in the custody trail"""
    user_id: str = "unknown"
    user_name: str = "Unknown User"
