import logging
from fastapi import APIRouter, Depends, HTTPException, Response

from ..deps import get_key_store
from ..errors import KeyNotFoundError
from ..schemas import KeyImport, KeyPairCreate, KeyPairOut, KeyStatsOut
from ..utils.keystore import KeyStore

router = APIRouter(prefix="/keys", tags=["keys"])
logger = logging.getLogger(__name__)

def _out(pair) -> KeyPairOut:
    return KeyPairOut(tag=pair.tag, public_key_pem=pair.public_pem(), has_private_key=pair.has_private_key)

@router.post("", response_model=KeyPairOut, status_code=201)
def create_key_pair(req: KeyPairCreate | None = None, key_store: KeyStore = Depends(get_key_store)):
    tag = req.tag if req else None
    if tag:
        try:
            key_store.get_key_pair(tag)
        except KeyNotFoundError:
            pass
        else:
            raise HTTPException(status_code=409, detail="Key pair already exists")
    return _out(key_store.generate_key_pair(tag=tag))

@router.post("/import", response_model=KeyPairOut, status_code=201)
def import_public_key(req: KeyImport, key_store: KeyStore = Depends(get_key_store)):
    try:
        pair = key_store.import_public_key(req.tag, req.public_key_pem)
    except ValueError:
        raise HTTPException(status_code=400, detail="Unsupported public key")
    logger.info("Imported public key %s", pair.tag)
    return _out(pair)

@router.get("/stats", response_model=KeyStatsOut)
def key_stats(key_store: KeyStore = Depends(get_key_store)):
    return key_store.stats()

@router.get("/{tag}/public", response_model=KeyPairOut)
def get_public_key(tag: str, key_store: KeyStore = Depends(get_key_store)):
    try:
        return _out(key_store.get_key_pair(tag))
    except KeyNotFoundError:
        raise HTTPException(status_code=404, detail="Key pair not found")

@router.delete("", status_code=204)
def clear_keys(key_store: KeyStore = Depends(get_key_store)):
    key_store.clear_all_keys()
    return Response(status_code=204)
