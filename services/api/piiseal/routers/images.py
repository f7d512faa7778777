import io, os, json, uuid

from fastapi import APIRouter, Depends, UploadFile, File, Form, HTTPException, Header, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from PIL import Image, UnidentifiedImageError
from pydantic import ValidationError
from sqlalchemy.orm import Session
from sqlalchemy import select
import logging

from ..db import SessionLocal
from ..deps import get_classifier, get_key_store
from ..domain import ENCRYPTION_SCHEME, TransmissionPackage
from ..errors import (
    DetectionError,
    KeyMismatchError,
    KeyNotFoundError,
    PackageFormatError,
    UnwrapError,
)
from ..models import Image as ImageModel, Region as RegionModel, Audit as AuditModel
from ..schemas import DecryptRequest, DetectionsIn, IngestResponse
from ..settings import settings
from ..utils.classifier import TextClassifier
from ..utils.crypto import sha256_hex
from ..utils.keystore import KeyStore
from ..utils.package import image_to_png, open_transmission, package_for_recipient, seal_image
from ..utils.pii_detection import EasyOCRTextDetector, MediaPipeFaceDetector, detect_regions
from ..utils.redact import BlurMethod

router = APIRouter(prefix="", tags=["images"])
logger = logging.getLogger(__name__)

PIPELINE_VERSION = "piiseal-0.1.0"

def _storage_dirs() -> tuple[str, str]:
    img_dir = os.path.join(settings.STORAGE_DIR, "images")
    pkg_dir = os.path.join(settings.STORAGE_DIR, "packages")
    os.makedirs(img_dir, exist_ok=True)
    os.makedirs(pkg_dir, exist_ok=True)
    return img_dir, pkg_dir

def _builtin_detectors(request: Request):
    """EasyOCR + MediaPipe, built on first use and cached on the app."""
    detectors = getattr(request.app.state, "detectors", None)
    if detectors is None:
        try:
            detectors = (
                EasyOCRTextDetector([lang.strip() for lang in settings.OCR_LANGUAGES.split(",") if lang.strip()]),
                MediaPipeFaceDetector(),
            )
        except ImportError:
            logger.error("Built-in detectors requested but not installed", exc_info=True)
            raise HTTPException(status_code=503, detail="Built-in detectors unavailable, send detections")
        request.app.state.detectors = detectors
    return detectors

def save_audit(db: Session, *, actor: str, action: str, image_id: str, region_id: str | None,
               purpose: str | None = None, outcome: str | None = None):
    audit = AuditModel(
        id=str(uuid.uuid4()),
        actor=actor,
        action=action,
        image_id=image_id,
        region_id=region_id,
        purpose=purpose,
        outcome=outcome,
        model_versions=PIPELINE_VERSION,
    )
    db.add(audit)
    db.commit()

def _get_image_row(db: Session, image_id: str) -> ImageModel:
    im = db.get(ImageModel, image_id)
    if not im:
        raise HTTPException(status_code=404, detail="Image not found")
    return im

def _seal_and_store(img, classified, object_regions, recipient_pair, key_store: KeyStore) -> dict:
    """Seal, write the redacted image and envelope, record rows. Blocking, run in the threadpool."""
    image_id = str(uuid.uuid4())
    image_key = key_store.generate_image_key()
    try:
        sealed = seal_image(
            img,
            classified,
            object_regions,
            image_key,
            asset_id=image_id,
            blur_method=BlurMethod(settings.BLUR_METHOD),
            margin=settings.REGION_MARGIN_PX,
            pixelate_cell=settings.PIXELATE_CELL_PX,
            max_workers=settings.SEAL_WORKERS,
        )
        envelope = package_for_recipient(sealed, image_key, recipient_pair.public_key)
    finally:
        # the wrapped copy in the envelope is the only one kept
        key_store.remove_image_key(image_key.id)

    # Save redacted image and envelope
    img_dir, pkg_dir = _storage_dirs()
    red_path = os.path.join(img_dir, f"{image_id}_redacted.png")
    env_path = os.path.join(pkg_dir, f"{image_id}_envelope.json")
    with open(red_path, "wb") as f:
        f.write(envelope.blurred_image_bytes)
    with open(env_path, "w", encoding="utf-8") as f:
        f.write(envelope.to_json())

    confidences = {f"text_{i}": c.verdict.confidence for i, c in enumerate(classified)}
    confidences.update({f"object_{i}": o.confidence for i, o in enumerate(object_regions)})
    rects = dict(sealed.rects)

    db = SessionLocal()
    try:
        im_row = ImageModel(
            id=image_id,
            url_redacted=red_path,
            url_envelope=env_path,
            image_key_id=image_key.id,
            recipient_tag=recipient_pair.tag,
            width=img.width,
            height=img.height,
            skipped_count=len(sealed.skipped),
            pipeline_versions=PIPELINE_VERSION,
            created_by="system",
        )
        db.add(im_row)
        db.commit()

        for r in sealed.package.sealed_regions:
            db.add(RegionModel(
                id=str(uuid.uuid4()),
                image_id=image_id,
                region_key=r.id,
                type=r.region_type.value,
                label=r.sensitivity_label,
                confidence=float(confidences.get(r.id, 0.0)),
                box_json=r.normalized_box.model_dump_json(),
                ciphertext_sha256=sha256_hex(r.ciphertext),
                enc_algo=ENCRYPTION_SCHEME,
                nonce_hex=r.nonce.hex(),
            ))
        db.commit()
        save_audit(db, actor="system", action="INGEST", image_id=image_id, region_id=None,
                   outcome=f"{len(sealed.package.sealed_regions)} sealed, {len(sealed.skipped)} skipped")
    finally:
        db.close()

    return {
        "image_id": image_id,
        "status": "processed",
        "image_key_id": image_key.id,
        "regions": [
            {
                "id": r.id,
                "type": r.region_type.value,
                "label": r.sensitivity_label,
                "confidence": float(confidences.get(r.id, 0.0)),
                "normalized_box": r.normalized_box,
                "pixel_rect": [rects[r.id].x, rects[r.id].y, rects[r.id].width, rects[r.id].height],
            }
            for r in sealed.package.sealed_regions
        ],
        "skipped": [{"id": s.id, "reason": s.reason} for s in sealed.skipped],
        "redacted_url": f"/images/{image_id}/redacted",
        "manifest_url": f"/images/{image_id}/manifest",
        "envelope_url": f"/images/{image_id}/envelope",
    }

@router.post("/ingest", response_model=IngestResponse)
async def ingest_image(
    request: Request,
    file: UploadFile = File(...),
    recipient: str = Form(...),
    detections: str | None = Form(None),
    key_store: KeyStore = Depends(get_key_store),
    classifier: TextClassifier = Depends(get_classifier),
):
    contents = await file.read()
    try:
        img = Image.open(io.BytesIO(contents))
        img.load()
        img = img.convert("RGBA")
    except (UnidentifiedImageError, OSError):
        raise HTTPException(status_code=400, detail="Unsupported image format")

    try:
        recipient_pair = key_store.get_key_pair(recipient)
    except KeyNotFoundError:
        raise HTTPException(status_code=404, detail="Recipient key not found")

    # Detect regions: caller-supplied detections, or the built-in detectors
    if detections is not None:
        try:
            found = DetectionsIn.model_validate_json(detections)
        except ValidationError as e:
            raise HTTPException(status_code=422, detail=f"Invalid detections: {e.error_count()} errors")
        text_regions, object_regions = found.text_regions, found.object_regions
    else:
        text_detector, object_detector = _builtin_detectors(request)
        try:
            result = await detect_regions(img, text_detector, object_detector, settings.NMS_IOU_THRESHOLD)
        except DetectionError:
            raise HTTPException(status_code=502, detail="Detection failed")
        text_regions, object_regions = result.text_regions, result.object_regions

    classified = await run_in_threadpool(classifier.classify_regions, text_regions)
    return await run_in_threadpool(_seal_and_store, img, classified, object_regions, recipient_pair, key_store)

def _load_envelope(im: ImageModel) -> TransmissionPackage:
    if not os.path.exists(im.url_envelope):
        raise HTTPException(status_code=404, detail="Envelope missing")
    with open(im.url_envelope, "r", encoding="utf-8") as f:
        data = f.read()
    try:
        return TransmissionPackage.from_json(data)
    except PackageFormatError:
        logger.error("Stored envelope for %s is malformed", im.id)
        raise HTTPException(status_code=422, detail="Malformed package")

@router.get("/images/{image_id}/manifest")
def get_manifest(image_id: str):
    db = SessionLocal()
    try:
        im = _get_image_row(db, image_id)
        envelope = _load_envelope(im)
        return Response(content=envelope.serialized_secure_package, media_type="application/json")
    finally:
        db.close()

@router.get("/images/{image_id}/envelope")
def get_envelope(image_id: str):
    db = SessionLocal()
    try:
        im = _get_image_row(db, image_id)
        if not os.path.exists(im.url_envelope):
            raise HTTPException(status_code=404, detail="Envelope missing")
        with open(im.url_envelope, "r", encoding="utf-8") as f:
            return Response(content=f.read(), media_type="application/json")
    finally:
        db.close()

@router.get("/images/{image_id}/regions")
def get_regions(image_id: str):
    db = SessionLocal()
    try:
        _get_image_row(db, image_id)
        regions = db.execute(select(RegionModel).where(RegionModel.image_id == image_id)).scalars().all()
        return [
            {
                "id": r.region_key,
                "type": r.type,
                "label": r.label,
                "confidence": r.confidence,
                "normalized_box": json.loads(r.box_json),
                "ciphertext_sha256": r.ciphertext_sha256,
                "nonce": r.nonce_hex,
                "enc_algo": r.enc_algo,
            }
            for r in regions
        ]
    finally:
        db.close()

@router.get("/images/{image_id}/redacted")
def get_redacted(image_id: str):
    db = SessionLocal()
    try:
        im = _get_image_row(db, image_id)
        path = im.url_redacted
        if not os.path.exists(path):
            raise HTTPException(status_code=404, detail="Redacted image missing")

        def iterfile():
            with open(path, "rb") as f:
                yield from f
        return StreamingResponse(iterfile(), media_type="image/png")
    finally:
        db.close()

@router.post("/images/{image_id}/decrypt")
def decrypt_image(
    image_id: str,
    req: DecryptRequest,
    x_role: str | None = Header(None),
    key_store: KeyStore = Depends(get_key_store),
):
    logger.info("Decrypt requested for %s by recipient %s", image_id, req.recipient)
    if x_role != "Reviewer":
        raise HTTPException(status_code=403, detail="Reviewer role required")

    db = SessionLocal()
    try:
        im = _get_image_row(db, image_id)
        envelope = _load_envelope(im)

        try:
            pair = key_store.get_key_pair(req.recipient)
        except KeyNotFoundError:
            raise HTTPException(status_code=404, detail="Recipient key not found")
        if not pair.has_private_key:
            raise HTTPException(status_code=403, detail="Recipient private key not held here")

        try:
            result = open_transmission(envelope, pair.private_key, margin=settings.REGION_MARGIN_PX)
        except PackageFormatError:
            raise HTTPException(status_code=422, detail="Malformed package")
        except UnwrapError:
            save_audit(db, actor=req.recipient, action="DECRYPT", image_id=image_id, region_id=None,
                       purpose="reconstruct", outcome="unwrap_failed")
            raise HTTPException(status_code=403, detail="Recipient key cannot open this package")
        except KeyMismatchError:
            raise HTTPException(status_code=409, detail="Image key does not match package")

        for failure in result.failures:
            save_audit(db, actor=req.recipient, action="DECRYPT", image_id=image_id, region_id=failure.id,
                       purpose="reconstruct", outcome=failure.reason)
        save_audit(db, actor=req.recipient, action="DECRYPT", image_id=image_id, region_id=None,
                   purpose="reconstruct", outcome=result.summary)

        return Response(
            content=image_to_png(result.image),
            media_type="image/png",
            headers={
                "X-Regions-Restored": str(result.restored),
                "X-Regions-Total": str(result.total),
                "X-Restore-Status": "complete" if result.complete else "partial",
            },
        )
    except HTTPException:
        raise
    except Exception:
        logger.error("An error occurred in decrypt_image", exc_info=True)
        raise HTTPException(status_code=500, detail="An internal error occurred")
    finally:
        db.close()
