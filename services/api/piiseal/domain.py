"""
Data models shared by the region pipeline.
Detector output, classifier verdicts, pixel blocks, sealed regions and the
serialized package / transmission envelope.
"""
import base64
import binascii
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    computed_field,
    field_serializer,
    field_validator,
    model_validator,
)

from .errors import PackageFormatError

ENCRYPTION_SCHEME = "AES-GCM-256"
TRANSPORT_SCHEME = "RSA-OAEP-2048+AES-GCM-256"
NONCE_SIZE = 12
TAG_SIZE = 16
BYTES_PER_PIXEL = 4


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _b64decode(value):
    if isinstance(value, str):
        try:
            return base64.b64decode(value, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ValueError(f"invalid base64: {exc}") from exc
    return value


# Enumerations

class TextCategory(str, Enum):
    """PII categories a text span can be classified into"""
    NON_SENSITIVE = "non_sensitive"
    NAME = "name"
    EMAIL = "email"
    PHONE = "phone"
    NATIONAL_ID = "national_id"
    CREDIT_CARD = "credit_card"
    BIRTHDAY = "birthday"
    ADDRESS = "address"
    LOGIN = "login"


class ClassificationMethod(str, Enum):
    REGEX = "regex"
    MODEL = "model"
    FALLBACK = "fallback"


class RegionType(str, Enum):
    TEXT = "text"
    OBJECT = "object"


class SenderStage(str, Enum):
    DETECTED = "detected"
    CLASSIFIED = "classified"
    REGIONS_EXTRACTED = "regions_extracted"
    REGIONS_SEALED = "regions_sealed"
    PACKAGED = "packaged"
    TRANSMITTED = "transmitted"


class ReceiverStage(str, Enum):
    RECEIVED = "received"
    KEY_UNWRAPPED = "key_unwrapped"
    REGIONS_DECRYPTED = "regions_decrypted"
    IMAGE_RECONSTRUCTED = "image_reconstructed"


# Geometry

class Rect01(BaseModel):
    """Unit-normalized rectangle, origin at the bottom-left (detector space)"""
    model_config = ConfigDict(frozen=True)

    x: float
    y: float
    width: float
    height: float


class PixelRect(BaseModel):
    """Integer pixel rectangle, origin at the top-left"""
    model_config = ConfigDict(frozen=True)

    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    def to_box(self) -> Tuple[int, int, int, int]:
        """(left, upper, right, lower) as Pillow expects it"""
        return (self.x, self.y, self.right, self.bottom)


# Detector output

class DetectedTextRegion(BaseModel):
    model_config = ConfigDict(frozen=True)

    text: str
    normalized_box: Rect01
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)


# Sensitive YOLO-style classes, including the custom screen ("0", "1") and
# document ("paper") classes.
SENSITIVE_OBJECT_CLASSES: Dict[str, str] = {
    "person": "Contains person",
    "face": "Contains face",
    "0": "Phone screen may contain sensitive info",
    "1": "Laptop screen may contain sensitive info",
    "laptop": "Laptop screen may be visible",
    "cell phone": "Phone screen may be visible",
    "tv": "TV screen may show sensitive content",
    "paper": "Document may contain sensitive text",
}


class DetectedObjectRegion(BaseModel):
    model_config = ConfigDict(frozen=True)

    class_name: str
    normalized_box: Rect01
    confidence: float = Field(default=1.0, ge=0.0, le=1.0)

    @computed_field
    @property
    def is_sensitive(self) -> bool:
        return self.class_name.strip().lower() in SENSITIVE_OBJECT_CLASSES

    @computed_field
    @property
    def sensitivity_reason(self) -> Optional[str]:
        return SENSITIVE_OBJECT_CLASSES.get(self.class_name.strip().lower())


# Classification

class ClassificationVerdict(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: TextCategory
    confidence: float = Field(ge=0.0, le=1.0)
    method: ClassificationMethod
    latency: float = 0.0  # seconds
    probabilities: Dict[str, float] = Field(default_factory=dict)

    @computed_field
    @property
    def is_sensitive(self) -> bool:
        return self.category != TextCategory.NON_SENSITIVE


class ClassifiedTextRegion(BaseModel):
    """A detection paired with its verdict. The detection itself is untouched."""
    model_config = ConfigDict(frozen=True)

    region: DetectedTextRegion
    verdict: ClassificationVerdict

    @property
    def is_sensitive(self) -> bool:
        return self.verdict.is_sensitive


# Pixel data

class PixelBlock(BaseModel):
    """Dense row-major RGBA8 pixels for one rectangle"""
    model_config = ConfigDict(frozen=True)

    rgba: bytes
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    bytes_per_row: int

    @model_validator(mode="after")
    def _check_layout(self):
        if self.bytes_per_row < self.width * BYTES_PER_PIXEL:
            raise ValueError("bytes_per_row is smaller than width * 4")
        if len(self.rgba) != self.bytes_per_row * self.height:
            raise ValueError("rgba length does not match bytes_per_row * height")
        return self


class RegionMetadata(BaseModel):
    """Sealed together with a region's pixels and recovered only by the key holder"""
    model_config = ConfigDict(frozen=True)

    text: Optional[str] = None  # recognised text, text regions only
    image_width: int = Field(gt=0)
    image_height: int = Field(gt=0)
    normalized_box: Rect01

    @property
    def image_size(self) -> Tuple[int, int]:
        return (self.image_width, self.image_height)


# Sealed output / wire format

class SealedRegion(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    id: str
    region_type: RegionType
    normalized_box: Rect01
    ciphertext: bytes
    nonce: bytes
    auth_tag: bytes = Field(alias="tag")
    sensitivity_label: Optional[str] = None

    @field_validator("ciphertext", "nonce", "auth_tag", mode="before")
    @classmethod
    def _decode_b64(cls, value):
        return _b64decode(value)

    @field_validator("nonce")
    @classmethod
    def _check_nonce(cls, value: bytes) -> bytes:
        if len(value) != NONCE_SIZE:
            raise ValueError(f"nonce must be {NONCE_SIZE} bytes")
        return value

    @field_validator("auth_tag")
    @classmethod
    def _check_tag(cls, value: bytes) -> bytes:
        if len(value) != TAG_SIZE:
            raise ValueError(f"tag must be {TAG_SIZE} bytes")
        return value

    @field_serializer("ciphertext", "nonce", "auth_tag", when_used="json")
    def _encode_b64(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")


class SecurePackage(BaseModel):
    """Sealed regions of one image, bound to an image key by its identifier"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    asset_id: str = Field(alias="asset_identifier")
    sealed_regions: List[SealedRegion] = Field(default_factory=list, alias="encrypted_regions")
    image_key_id: str = Field(alias="image_key_identifier")
    scheme_tag: str = Field(default=ENCRYPTION_SCHEME, alias="encryption_scheme")
    packaged_at: datetime = Field(default_factory=_utcnow)

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data) -> "SecurePackage":
        try:
            package = cls.model_validate_json(data)
        except ValidationError as exc:
            raise PackageFormatError(f"malformed secure package ({exc.error_count()} errors)") from exc
        if package.scheme_tag != ENCRYPTION_SCHEME:
            raise PackageFormatError(f"unsupported encryption scheme: {package.scheme_tag}")
        ids = [r.id for r in package.sealed_regions]
        if len(ids) != len(set(ids)):
            raise PackageFormatError("duplicate region identifiers")
        return package


class TransmissionPackage(BaseModel):
    """Wire/disk artifact pairing the blurred image, package and wrapped key"""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    blurred_image_bytes: bytes
    serialized_secure_package: str = Field(alias="encrypted_metadata")
    wrapped_image_key: bytes = Field(alias="encrypted_image_key")
    asset_id: str = Field(alias="asset_identifier")
    encryption_scheme: str = TRANSPORT_SCHEME
    transmitted_at: datetime = Field(default_factory=_utcnow)

    @field_validator("blurred_image_bytes", "wrapped_image_key", mode="before")
    @classmethod
    def _decode_b64(cls, value):
        return _b64decode(value)

    @field_serializer("blurred_image_bytes", "wrapped_image_key", when_used="json")
    def _encode_b64(self, value: bytes) -> str:
        return base64.b64encode(value).decode("ascii")

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def from_json(cls, data) -> "TransmissionPackage":
        try:
            return cls.model_validate_json(data)
        except ValidationError as exc:
            raise PackageFormatError(f"malformed transmission envelope ({exc.error_count()} errors)") from exc


def new_identifier() -> str:
    return str(uuid.uuid4())
