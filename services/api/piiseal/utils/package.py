"""
Secure package orchestration.

Sender: classified detections + original image + image key
        -> SecurePackage (sealed regions) + blurred image
        -> TransmissionPackage for one recipient.
Receiver: TransmissionPackage + recipient private key
        -> unwrapped image key -> decrypted regions -> reconstructed image.

Both legs compute every rectangle with geometry.region_pixel_rect from the
normalized box and the image size, so the blurred set and the sealed set are
the same rectangles.
"""
import io
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import List, Optional, Sequence, Tuple

from PIL import Image, UnidentifiedImageError

from ..domain import (
    ClassifiedTextRegion,
    DetectedObjectRegion,
    PixelBlock,
    PixelRect,
    ReceiverStage,
    Rect01,
    RegionMetadata,
    RegionType,
    SealedRegion,
    SecurePackage,
    SenderStage,
    TransmissionPackage,
    new_identifier,
)
from ..errors import (
    AuthenticationError,
    KeyMismatchError,
    PackageFormatError,
    RegionSkipped,
    RestoreError,
)
from . import crypto, region_codec
from .crypto import ImageKey
from .geometry import region_pixel_rect
from .redact import BlurMethod, redact_regions

logger = logging.getLogger(__name__)

DEFAULT_MARGIN = 2


@dataclass(frozen=True)
class RegionRequest:
    """One sensitive rectangle queued for sealing."""
    id: str
    region_type: RegionType
    normalized_box: Rect01
    sensitivity_label: Optional[str]
    text: Optional[str] = None


@dataclass(frozen=True)
class SkippedRegion:
    id: str
    reason: str


@dataclass(frozen=True)
class RegionFailure:
    id: str
    reason: str  # authentication_failed | image_size_mismatch | geometry_skipped | restore_failed


@dataclass(frozen=True)
class OpenedRegion:
    """What the key holder learns about one region, whether or not its pixels went back."""
    id: str
    region_type: RegionType
    sensitivity_label: Optional[str]
    text: Optional[str]
    pixel_rect: PixelRect
    image_size: Tuple[int, int]  # size of the image the region was sealed from
    restored: bool


@dataclass
class SealedImage:
    package: SecurePackage
    blurred_image: Image.Image
    rects: List[Tuple[str, PixelRect]] = field(default_factory=list)
    skipped: List[SkippedRegion] = field(default_factory=list)
    stage: SenderStage = SenderStage.PACKAGED


@dataclass
class OpenResult:
    image: Image.Image
    restored: int
    total: int
    failures: List[RegionFailure] = field(default_factory=list)
    regions: List[OpenedRegion] = field(default_factory=list)
    stage: ReceiverStage = ReceiverStage.REGIONS_DECRYPTED

    @property
    def complete(self) -> bool:
        return self.restored == self.total

    @property
    def summary(self) -> str:
        return f"{self.restored} of {self.total} regions restored"


def region_associated_data(
    asset_id: str,
    region_id: str,
    region_type: RegionType,
    box: Rect01,
    sensitivity_label: Optional[str] = None,
) -> bytes:
    """Header authenticated alongside each region's pixels."""
    return json.dumps(
        [asset_id, region_id, RegionType(region_type).value, [box.x, box.y, box.width, box.height], sensitivity_label],
        separators=(",", ":"),
    ).encode("utf-8")


def sensitive_region_requests(
    classified_text_regions: Sequence[ClassifiedTextRegion],
    detected_object_regions: Sequence[DetectedObjectRegion],
) -> List[RegionRequest]:
    requests = []
    for index, item in enumerate(classified_text_regions):
        if item.is_sensitive:
            requests.append(RegionRequest(
                id=f"text_{index}",
                region_type=RegionType.TEXT,
                normalized_box=item.region.normalized_box,
                sensitivity_label=item.verdict.category.value,
                text=item.region.text,
            ))
    for index, obj in enumerate(detected_object_regions):
        if obj.is_sensitive:
            requests.append(RegionRequest(
                id=f"object_{index}",
                region_type=RegionType.OBJECT,
                normalized_box=obj.normalized_box,
                sensitivity_label=obj.sensitivity_reason,
            ))
    return requests


def seal_image(
    original_image: Image.Image,
    classified_text_regions: Sequence[ClassifiedTextRegion],
    detected_object_regions: Sequence[DetectedObjectRegion],
    image_key: ImageKey,
    asset_id: Optional[str] = None,
    blur_method: BlurMethod = BlurMethod.PIXELATE,
    margin: int = DEFAULT_MARGIN,
    pixelate_cell: int = 8,
    max_workers: int = 4,
) -> SealedImage:
    """Seal every sensitive region and blur exactly the same rectangles."""
    asset_id = asset_id or new_identifier()
    original = original_image if original_image.mode == "RGBA" else original_image.convert("RGBA")
    size = original.size

    requests = sensitive_region_requests(classified_text_regions, detected_object_regions)
    logger.info("Asset %s: %s, %d sensitive regions", asset_id, SenderStage.CLASSIFIED.value, len(requests))

    placed: List[Tuple[RegionRequest, PixelRect]] = []
    skipped: List[SkippedRegion] = []
    for request in requests:
        try:
            placed.append((request, region_pixel_rect(request.normalized_box, size, margin)))
        except RegionSkipped as e:
            logger.warning("Asset %s: skipping region %s (%s)", asset_id, request.id, e.reason.value)
            skipped.append(SkippedRegion(request.id, e.reason.value))

    # pixels always come from the original, never from the blurred copy
    extracted = [(request, rect, region_codec.extract(original, rect)) for request, rect in placed]
    logger.info("Asset %s: %s (%d regions)", asset_id, SenderStage.REGIONS_EXTRACTED.value, len(extracted))

    def seal_one(item: Tuple[RegionRequest, PixelRect, PixelBlock]) -> SealedRegion:
        request, rect, block = item
        metadata = RegionMetadata(
            text=request.text,
            image_width=size[0],
            image_height=size[1],
            normalized_box=request.normalized_box,
        )
        plaintext = region_codec.encode_region(metadata, rect, block)
        aad = region_associated_data(
            asset_id, request.id, request.region_type, request.normalized_box, request.sensitivity_label
        )
        ciphertext, nonce, tag = crypto.seal(plaintext, image_key, aad)
        return SealedRegion(
            id=request.id,
            region_type=request.region_type,
            normalized_box=request.normalized_box,
            ciphertext=ciphertext,
            nonce=nonce,
            auth_tag=tag,
            sensitivity_label=request.sensitivity_label,
        )

    if len(extracted) > 1 and max_workers > 1:
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            sealed_regions = list(pool.map(seal_one, extracted))
    else:
        sealed_regions = [seal_one(item) for item in extracted]
    logger.info("Asset %s: %s (%d regions)", asset_id, SenderStage.REGIONS_SEALED.value, len(sealed_regions))

    blurred = redact_regions(original, [rect for _, rect in placed], method=blur_method, cell=pixelate_cell)

    package = SecurePackage(
        asset_id=asset_id,
        sealed_regions=sealed_regions,
        image_key_id=image_key.id,
    )
    logger.info("Asset %s: %s", asset_id, SenderStage.PACKAGED.value)
    return SealedImage(
        package=package,
        blurred_image=blurred,
        rects=[(request.id, rect) for request, rect in placed],
        skipped=skipped,
    )


def open_image(
    blurred_image: Image.Image,
    secure_package: SecurePackage,
    image_key: ImageKey,
    margin: int = DEFAULT_MARGIN,
) -> OpenResult:
    """
    Decrypt every region and draw it back onto a copy of the blurred image.

    A region that fails is reported and left blurred; the rest still restore.
    Regions that decrypt but cannot be placed (for example on a resized
    image) still report their recovered metadata in ``regions``.

    Raises:
        KeyMismatchError: image_key is not the key this package was sealed with
    """
    if image_key.id != secure_package.image_key_id:
        raise KeyMismatchError("image key does not match package")

    image = blurred_image.convert("RGBA") if blurred_image.mode != "RGBA" else blurred_image.copy()
    size = image.size
    asset_id = secure_package.asset_id
    failures: List[RegionFailure] = []
    opened: List[OpenedRegion] = []
    restored = 0

    for region in secure_package.sealed_regions:
        aad = region_associated_data(
            asset_id, region.id, region.region_type, region.normalized_box, region.sensitivity_label
        )
        try:
            plaintext = crypto.open_sealed(region.ciphertext, region.nonce, region.auth_tag, image_key, aad)
            metadata, sealed_rect, block = region_codec.decode_region(plaintext)
        except AuthenticationError:
            logger.warning("Asset %s: region %s failed authentication", asset_id, region.id)
            failures.append(RegionFailure(region.id, "authentication_failed"))
            continue
        except RestoreError as e:
            logger.warning("Asset %s: region %s payload unreadable: %s", asset_id, region.id, e)
            failures.append(RegionFailure(region.id, "restore_failed"))
            continue

        reason = None
        if metadata.image_size != size:
            logger.warning(
                "Asset %s: region %s sealed from a %dx%d image, carrier is %dx%d",
                asset_id, region.id, *metadata.image_size, *size,
            )
            reason = "image_size_mismatch"
        else:
            try:
                rect = region_pixel_rect(region.normalized_box, size, margin)
                if sealed_rect != rect:
                    raise RestoreError("sealed rectangle does not match image geometry")
                region_codec.restore(image, rect, block)
            except RegionSkipped:
                logger.warning("Asset %s: region %s outside image", asset_id, region.id)
                reason = "geometry_skipped"
            except RestoreError as e:
                logger.warning("Asset %s: region %s not restored: %s", asset_id, region.id, e)
                reason = "restore_failed"

        if reason is None:
            restored += 1
        else:
            failures.append(RegionFailure(region.id, reason))
        opened.append(OpenedRegion(
            id=region.id,
            region_type=region.region_type,
            sensitivity_label=region.sensitivity_label,
            text=metadata.text,
            pixel_rect=sealed_rect,
            image_size=metadata.image_size,
            restored=reason is None,
        ))

    total = len(secure_package.sealed_regions)
    stage = ReceiverStage.IMAGE_RECONSTRUCTED if restored == total else ReceiverStage.REGIONS_DECRYPTED
    logger.info("Asset %s: %s, %d of %d regions restored", asset_id, stage.value, restored, total)
    return OpenResult(image=image, restored=restored, total=total, failures=failures, regions=opened, stage=stage)


def image_to_png(image: Image.Image) -> bytes:
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def png_to_image(data: bytes) -> Image.Image:
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as e:
        raise PackageFormatError("blurred image is not a readable image") from e
    return image.convert("RGBA")


def package_for_recipient(sealed: SealedImage, image_key: ImageKey, recipient_public_key) -> TransmissionPackage:
    """Wrap the image key for one recipient and pair it with the blurred image and package."""
    if image_key.id != sealed.package.image_key_id:
        raise KeyMismatchError("image key does not match package")
    envelope = TransmissionPackage(
        blurred_image_bytes=image_to_png(sealed.blurred_image),
        serialized_secure_package=sealed.package.to_json(),
        wrapped_image_key=crypto.wrap_image_key(image_key, recipient_public_key),
        asset_id=sealed.package.asset_id,
    )
    sealed.stage = SenderStage.TRANSMITTED
    logger.info("Asset %s: %s", sealed.package.asset_id, SenderStage.TRANSMITTED.value)
    return envelope


def open_transmission(
    envelope: TransmissionPackage,
    recipient_private_key,
    key_store=None,
    margin: int = DEFAULT_MARGIN,
) -> OpenResult:
    """
    Receiver side. The package is parsed and checked before the key is
    unwrapped, and the key is unwrapped before any region is decrypted.
    The unwrapped key is kept in key_store when one is given, otherwise it
    is wiped once the image is open.

    Raises:
        PackageFormatError: malformed package, image, or asset mismatch
        UnwrapError: the private key does not open the wrapped key
        KeyMismatchError: the unwrapped key belongs to another package
    """
    package = SecurePackage.from_json(envelope.serialized_secure_package)
    if package.asset_id != envelope.asset_id:
        raise PackageFormatError("asset identifier mismatch")
    blurred = png_to_image(envelope.blurred_image_bytes)
    logger.info("Asset %s: %s", package.asset_id, ReceiverStage.RECEIVED.value)

    image_key = crypto.unwrap_image_key(envelope.wrapped_image_key, recipient_private_key)
    if key_store is not None:
        key_store.store_image_key(image_key)
    logger.info("Asset %s: %s", package.asset_id, ReceiverStage.KEY_UNWRAPPED.value)

    try:
        return open_image(blurred, package, image_key, margin=margin)
    finally:
        if key_store is None:
            image_key.wipe()
