"""
In-memory store for image keys and recipient key pairs.

One KeyStore is constructed per application (or per test) and passed to
whoever needs it; there is no module-level instance.
"""
import logging
import threading
from typing import Dict, Optional

from . import crypto
from .crypto import ImageKey, KeyPair
from ..errors import KeyNotFoundError

logger = logging.getLogger(__name__)


class KeyStore:
    def __init__(self, rsa_key_size: int = 2048):
        self.rsa_key_size = rsa_key_size
        self._lock = threading.Lock()
        self._image_keys: Dict[str, ImageKey] = {}
        self._key_pairs: Dict[str, KeyPair] = {}

    # Image keys

    def generate_image_key(self) -> ImageKey:
        key = crypto.generate_image_key()
        self.store_image_key(key)
        return key

    def store_image_key(self, key: ImageKey) -> None:
        with self._lock:
            self._image_keys[key.id] = key

    def get_image_key(self, key_id: str) -> ImageKey:
        with self._lock:
            key = self._image_keys.get(key_id)
        if key is None or key.is_wiped:
            raise KeyNotFoundError(f"image key not found: {key_id}")
        return key

    def remove_image_key(self, key_id: str) -> None:
        with self._lock:
            key = self._image_keys.pop(key_id, None)
        if key is not None:
            key.wipe()

    # Key pairs

    def generate_key_pair(self, tag: Optional[str] = None) -> KeyPair:
        pair = crypto.generate_key_pair(tag=tag, key_size=self.rsa_key_size)
        self.store_key_pair(pair)
        logger.info("Generated RSA-%d key pair %s", self.rsa_key_size, pair.tag)
        return pair

    def import_public_key(self, tag: str, pem) -> KeyPair:
        pair = KeyPair(tag, None, crypto.load_public_key(pem))
        self.store_key_pair(pair)
        return pair

    def store_key_pair(self, pair: KeyPair) -> None:
        with self._lock:
            self._key_pairs[pair.tag] = pair

    def get_key_pair(self, tag: str) -> KeyPair:
        with self._lock:
            pair = self._key_pairs.get(tag)
        if pair is None:
            raise KeyNotFoundError(f"key pair not found: {tag}")
        return pair

    # Lifecycle

    def clear_all_keys(self) -> None:
        """Zero every image key buffer and drop every key pair."""
        with self._lock:
            for key in self._image_keys.values():
                key.wipe()
            cleared = (len(self._image_keys), len(self._key_pairs))
            self._image_keys.clear()
            self._key_pairs.clear()
        logger.info("Cleared %d image keys and %d key pairs", *cleared)

    def stats(self) -> Dict[str, int]:
        with self._lock:
            return {
                "image_key_count": len(self._image_keys),
                "key_pair_count": len(self._key_pairs),
                "image_key_bytes": sum(crypto.KEY_SIZE for _ in self._image_keys),
            }
