from dataclasses import asdict
from datetime import datetime
from typing import Optional, Dict, Any, Union

from pydantic import BaseModel, Field

from .config import JsonFieldMap


class UpstreamEvent(BaseModel):
    """One record returned by the JSON calendar API."""
    id: Optional[Union[int, str]] = None
    uid: Optional[str] = None
    title: str = ""
    start: str
    end: str
    all_day: bool = False
    location: Optional[str] = None
    description: Optional[str] = None

    @property
    def identifier(self) -> str:
        return str(self.uid or self.id or "")

    @classmethod
    def from_record(cls, record: Dict[str, Any], field_map: JsonFieldMap) -> "UpstreamEvent":
        """Build an event from a raw JSON object using the configured field names."""
        data = {
            name: record.get(upstream_name)
            for name, upstream_name in asdict(field_map).items()
        }
        return cls(**{k: v for k, v in data.items() if v is not None})


class FetchState(BaseModel):
    """Persisted fallback URLs and the last completed fetch cycle."""
    urls: Dict[str, str] = Field(default_factory=dict)
    last_fetch: Optional[datetime] = None


class RefreshResult(BaseModel):
    """Outcome of one fetch cycle."""
    results: Dict[str, bool] = Field(default_factory=dict)
    sources: Dict[str, Optional[str]] = Field(default_factory=dict)
    timestamp: datetime


class IdentityStatus(BaseModel):
    has_document: bool
    has_url: bool
    uses_json: bool


class StatusReport(BaseModel):
    last_fetch: Optional[datetime] = None
    busy: bool = False
    next_fetch: Optional[datetime] = None
    identities: Dict[str, IdentityStatus] = Field(default_factory=dict)
