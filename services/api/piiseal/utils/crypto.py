import os, hashlib, uuid
from datetime import datetime, timezone

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import padding, rsa
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from ..domain import NONCE_SIZE, TAG_SIZE
from ..errors import AuthenticationError, KeyDerivationError, UnwrapError

KEY_SIZE = 32
SALT_SIZE = 16
HKDF_INFO = b"piiseal/image-key/v1"
_OAEP = padding.OAEP(mgf=padding.MGF1(algorithm=hashes.SHA256()), algorithm=hashes.SHA256(), label=None)


class ImageKey:
    """Per-image AES-256 key. Material lives in a bytearray so it can be wiped."""

    __slots__ = ("_key", "_wiped", "id", "created_at")

    def __init__(self, key_bytes: bytes, id: str | None = None, created_at: datetime | None = None):
        if len(key_bytes) != KEY_SIZE:
            raise ValueError(f"image key must be {KEY_SIZE} bytes")
        self._key = bytearray(key_bytes)
        self._wiped = False
        self.id = str(uuid.UUID(id)) if id else str(uuid.uuid4())
        self.created_at = created_at or datetime.now(timezone.utc)

    @property
    def key_bytes(self) -> bytes:
        if self._wiped:
            raise KeyDerivationError("image key has been wiped")
        return bytes(self._key)

    @property
    def is_wiped(self) -> bool:
        return self._wiped

    def wipe(self) -> None:
        for i in range(len(self._key)):
            self._key[i] = 0
        self._wiped = True

    def raw_buffer_is_zero(self) -> bool:
        return not any(self._key)

    def __repr__(self) -> str:
        return f"ImageKey(id={self.id!r}, created_at={self.created_at.isoformat()})"


class KeyPair:
    """RSA key pair for one principal, reused across the image keys it wraps."""

    __slots__ = ("tag", "private_key", "public_key")

    def __init__(self, tag: str, private_key: rsa.RSAPrivateKey | None, public_key: rsa.RSAPublicKey):
        self.tag = tag
        self.private_key = private_key
        self.public_key = public_key

    @property
    def has_private_key(self) -> bool:
        return self.private_key is not None

    def public_pem(self) -> str:
        return public_key_to_pem(self.public_key)

    def __repr__(self) -> str:
        return f"KeyPair(tag={self.tag!r}, private={self.has_private_key})"


def generate_image_key() -> ImageKey:
    return ImageKey(AESGCM.generate_key(bit_length=256))


def derive_image_key(passphrase: bytes | str, salt: bytes | None = None) -> tuple[ImageKey, bytes]:
    """HKDF-SHA256 over a passphrase. A fresh random salt is used unless one is given."""
    if isinstance(passphrase, str):
        passphrase = passphrase.encode("utf-8")
    if not passphrase:
        raise KeyDerivationError("empty passphrase")
    salt = salt if salt is not None else os.urandom(SALT_SIZE)
    if len(salt) < SALT_SIZE:
        raise KeyDerivationError(f"salt must be at least {SALT_SIZE} bytes")
    hkdf = HKDF(algorithm=hashes.SHA256(), length=KEY_SIZE, salt=salt, info=HKDF_INFO)
    return ImageKey(hkdf.derive(passphrase)), salt


def seal(plaintext: bytes, key: ImageKey, associated_data: bytes | None = None) -> tuple[bytes, bytes, bytes]:
    # AES-GCM with 12B random nonce, fresh per call
    aesgcm = AESGCM(key.key_bytes)
    nonce = os.urandom(NONCE_SIZE)
    sealed = aesgcm.encrypt(nonce, plaintext, associated_data)
    return sealed[:-TAG_SIZE], nonce, sealed[-TAG_SIZE:]


def open_sealed(ciphertext: bytes, nonce: bytes, tag: bytes, key: ImageKey, associated_data: bytes | None = None) -> bytes:
    if len(nonce) != NONCE_SIZE or len(tag) != TAG_SIZE:
        raise AuthenticationError("authentication failed")
    aesgcm = AESGCM(key.key_bytes)
    try:
        return aesgcm.decrypt(nonce, ciphertext + tag, associated_data)
    except InvalidTag:
        raise AuthenticationError("authentication failed") from None


def generate_key_pair(tag: str | None = None, key_size: int = 2048) -> KeyPair:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=key_size)
    return KeyPair(tag or str(uuid.uuid4()), private_key, private_key.public_key())


def wrap_image_key(key: ImageKey, recipient_public_key: rsa.RSAPublicKey) -> bytes:
    """RSA-OAEP(SHA-256) over key id (16 bytes) + key material (32 bytes)."""
    payload = uuid.UUID(key.id).bytes + key.key_bytes
    return recipient_public_key.encrypt(payload, _OAEP)


def unwrap_image_key(wrapped: bytes, recipient_private_key: rsa.RSAPrivateKey) -> ImageKey:
    try:
        payload = recipient_private_key.decrypt(wrapped, _OAEP)
    except ValueError:
        raise UnwrapError("image key could not be unwrapped") from None
    if len(payload) != 16 + KEY_SIZE:
        raise UnwrapError("image key could not be unwrapped")
    return ImageKey(payload[16:], id=str(uuid.UUID(bytes=payload[:16])))


def public_key_to_pem(public_key: rsa.RSAPublicKey) -> str:
    return public_key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def load_public_key(pem: str | bytes) -> rsa.RSAPublicKey:
    if isinstance(pem, str):
        pem = pem.encode("ascii")
    key = serialization.load_pem_public_key(pem)
    if not isinstance(key, rsa.RSAPublicKey):
        raise ValueError("only RSA public keys are supported")
    return key


def private_key_to_pem(private_key: rsa.RSAPrivateKey, password: bytes | None = None) -> bytes:
    encryption = (
        serialization.BestAvailableEncryption(password) if password else serialization.NoEncryption()
    )
    return private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=encryption,
    )


def load_private_key(pem: bytes, password: bytes | None = None) -> rsa.RSAPrivateKey:
    key = serialization.load_pem_private_key(pem, password=password)
    if not isinstance(key, rsa.RSAPrivateKey):
        raise ValueError("only RSA private keys are supported")
    return key


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
