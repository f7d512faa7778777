from pydantic import BaseModel, Field
from typing import List, Literal, Optional

from .domain import ClassificationVerdict, DetectedObjectRegion, DetectedTextRegion, Rect01

class DetectionsIn(BaseModel):
    text_regions: List[DetectedTextRegion] = Field(default_factory=list)
    object_regions: List[DetectedObjectRegion] = Field(default_factory=list)

class RegionOut(BaseModel):
    id: str
    type: Literal["text", "object"]
    label: Optional[str]
    confidence: float
    normalized_box: Rect01
    pixel_rect: list[int]  # [x, y, w, h] after margin and clamping

class SkippedOut(BaseModel):
    id: str
    reason: str

class IngestResponse(BaseModel):
    image_id: str
    status: Literal["processed"]
    image_key_id: str
    regions: List[RegionOut]
    skipped: List[SkippedOut]
    redacted_url: str
    manifest_url: str
    envelope_url: str

class DecryptRequest(BaseModel):
    recipient: str

class KeyPairCreate(BaseModel):
    tag: Optional[str] = None

class KeyImport(BaseModel):
    tag: str
    public_key_pem: str

class KeyPairOut(BaseModel):
    tag: str
    public_key_pem: str
    has_private_key: bool

class KeyStatsOut(BaseModel):
    image_key_count: int
    key_pair_count: int
    image_key_bytes: int

class ClassifyRequest(BaseModel):
    texts: List[str]

class ClassifyResponse(BaseModel):
    verdicts: List[ClassificationVerdict]
