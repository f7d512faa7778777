"""
Shared fixtures. The service settings are read from the environment at import
time, so the storage and database locations are pointed at a scratch
directory before anything from piiseal is imported.
"""
import json
import os
import tempfile

_SCRATCH = tempfile.mkdtemp(prefix="piiseal-tests-")
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(_SCRATCH, 'test.db')}")
os.environ.setdefault("STORAGE_DIR", os.path.join(_SCRATCH, "data"))
os.environ.setdefault("CLASSIFIER_MODEL_PATH", "")

import numpy as np
import pytest
from PIL import Image

from piiseal.domain import Rect01
from piiseal.utils import crypto
from piiseal.utils.classifier import REGEX_CATEGORIES, TextClassifier
from piiseal.utils.keystore import KeyStore


@pytest.fixture
def rgba_image():
    """Noisy 64x48 RGBA image so every pixel is distinct enough to catch misalignment."""
    rng = np.random.default_rng(1234)
    pixels = rng.integers(0, 256, size=(48, 64, 4), dtype=np.uint8)
    pixels[..., 3] = 255
    return Image.fromarray(pixels, mode="RGBA")


@pytest.fixture
def key_store():
    store = KeyStore(rsa_key_size=2048)
    yield store
    store.clear_all_keys()


@pytest.fixture(scope="session")
def recipient_pair():
    return crypto.generate_key_pair(tag="bob", key_size=2048)


@pytest.fixture(scope="session")
def other_pair():
    return crypto.generate_key_pair(tag="mallory", key_size=2048)


@pytest.fixture
def classifier():
    return TextClassifier()


@pytest.fixture
def tiny_model_path(tmp_path):
    vocabulary = {"dear": 0, "sincerely": 1, "lives": 2, "near": 3, "park": 4, "hello": 5}
    n_features = len(vocabulary) + len(REGEX_CATEGORIES)
    weights = np.zeros((3, n_features))
    weights[0, vocabulary["hello"]] = 5.0
    weights[1, vocabulary["dear"]] = 5.0
    weights[1, vocabulary["sincerely"]] = 5.0
    weights[2, vocabulary["lives"]] = 5.0
    weights[2, vocabulary["near"]] = 3.0
    weights[2, vocabulary["park"]] = 3.0
    model = {
        "version": "test-1",
        "labels": ["non_sensitive", "name", "address"],
        "vocabulary": vocabulary,
        "idf": [1.0] * len(vocabulary),
        "ngram_range": [1, 2],
        "sublinear_tf": True,
        "weights": weights.tolist(),
        "bias": [0.0, 0.0, 0.0],
    }
    path = tmp_path / "model.json"
    path.write_text(json.dumps(model))
    return str(path)


def box(x, y, w, h):
    return Rect01(x=x, y=y, width=w, height=h)
