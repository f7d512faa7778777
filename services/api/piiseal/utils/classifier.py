"""
Hybrid PII text classifier.

Three tiers, evaluated in order, first hit wins:
    1. regex table (deterministic, fixed category order)
    2. TF-IDF + linear softmax model, when a weights file is loaded
    3. fallback to non_sensitive
"""
import json
import logging
import math
import re
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Pattern, Sequence, Tuple

import numpy as np

from ..domain import (
    ClassificationMethod,
    ClassificationVerdict,
    ClassifiedTextRegion,
    DetectedTextRegion,
    TextCategory,
)

logger = logging.getLogger(__name__)

DEFAULT_REGEX_CONFIDENCE = 0.95
DEFAULT_FALLBACK_CONFIDENCE = 0.8

_I = re.IGNORECASE

# Order matters: structured identifiers first so a card number is never
# reported as a phone number.
REGEX_TABLE: Tuple[Tuple[TextCategory, Tuple[Pattern, ...]], ...] = (
    (TextCategory.EMAIL, (
        re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"),
    )),
    (TextCategory.CREDIT_CARD, (
        re.compile(r"(?<![\d-])(?:\d[ -]?){12,18}\d(?![\d-])"),
    )),
    (TextCategory.NATIONAL_ID, (
        re.compile(r"\b[STFGM]\d{7}[A-Z]\b", _I),   # NRIC / FIN
        re.compile(r"\b\d{3}-\d{2}-\d{4}\b"),        # SSN
        re.compile(r"\b[A-Z]{1,2}\d{6,8}[A-Z]?\b"),  # passport-style
    )),
    (TextCategory.PHONE, (
        re.compile(r"\+\d{1,3}[-\s]?\(?\d{1,4}\)?(?:[-\s]?\d{2,4}){2,3}\b"),
        re.compile(r"(?<!\d)\(?\d{3}\)?[-\s]?\d{3}[-\s]?\d{4}\b"),
        re.compile(r"\b[689]\d{3}[-\s]?\d{4}\b"),
    )),
    (TextCategory.BIRTHDAY, (
        re.compile(r"\b(?:dob|d\.o\.b\.?|date of birth|birthday|born on)\s*[:=]", _I),  # label form only
        re.compile(r"\b\d{1,2}[/.-]\d{1,2}[/.-](?:\d{4}|\d{2})\b"),
        re.compile(r"\b(?:19|20)\d{2}-\d{2}-\d{2}\b"),
        re.compile(
            r"\b\d{1,2}\s+(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?\s+(?:19|20)\d{2}\b",
            _I,
        ),
    )),
    (TextCategory.ADDRESS, (
        re.compile(
            r"\b\d+[A-Z]?\s+(?:[A-Za-z]+\s+){1,3}"
            r"(?:street|st|road|rd|avenue|ave|boulevard|blvd|lane|ln|drive|dr|crescent|cres|close|way)\b\.?",
            _I,
        ),
        re.compile(r"\b(?:blk|block)\s+\d+[A-Z]?\b", _I),
        re.compile(r"#\d{1,3}-\d{1,5}\b"),            # unit number
        re.compile(r"\bsingapore\s+\d{6}\b", _I),     # postal code
    )),
    (TextCategory.LOGIN, (
        re.compile(r"\b(?:username|user\s?name|user\s?id|login|password|passwd|pwd|passcode|pin)\s*[:=]", _I),
    )),
    (TextCategory.NAME, (
        re.compile(r"(?i:\b(?:my name is|i am|i'm|name\s*:))\s*[A-Z][a-z]+(?:\s+[A-Z][a-z]+)+\b"),
        re.compile(r"\b(?:Mr|Mrs|Ms|Mdm|Dr)\.?\s+[A-Z][a-z]+(?:\s+[A-Z][a-z]+)*\b"),
    )),
)

REGEX_CATEGORIES: Tuple[TextCategory, ...] = tuple(category for category, _ in REGEX_TABLE)

_TOKEN_RE = re.compile(r"\w+")


def regex_match(text: str) -> Optional[TextCategory]:
    """First category (in table order) with a matching pattern, if any."""
    for category, patterns in REGEX_TABLE:
        for pattern in patterns:
            if pattern.search(text):
                return category
    return None


def regex_features(text: str) -> np.ndarray:
    """One binary predicate per regex category, in table order."""
    return np.array(
        [1.0 if any(p.search(text) for p in patterns) else 0.0 for _, patterns in REGEX_TABLE],
        dtype=np.float64,
    )


def tokenize(text: str, ngram_range: Tuple[int, int] = (1, 2)) -> List[str]:
    words = _TOKEN_RE.findall(text.lower())
    low, high = ngram_range
    terms = []
    for n in range(low, high + 1):
        terms.extend(" ".join(words[i:i + n]) for i in range(len(words) - n + 1))
    return terms


class TfidfLinearModel:
    """
    Bag-of-terms TF-IDF features plus regex predicates, scored by a linear
    multi-class layer with softmax. Weights come from a JSON file:

        {
          "version": "1.0",
          "labels": ["non_sensitive", "name", ...],
          "vocabulary": {"term": column, ...},
          "idf": [...],                     # one per vocabulary column
          "ngram_range": [1, 2],
          "sublinear_tf": true,
          "weights": [[...], ...],          # labels x (vocabulary + regex features)
          "bias": [...]
        }
    """

    def __init__(
        self,
        labels: Sequence[TextCategory],
        vocabulary: Dict[str, int],
        idf: np.ndarray,
        weights: np.ndarray,
        bias: np.ndarray,
        ngram_range: Tuple[int, int] = (1, 2),
        sublinear_tf: bool = True,
        version: str = "1.0",
    ):
        if not isinstance(vocabulary, Mapping):
            raise ValueError("vocabulary must be a mapping of term to column")
        if not labels:
            raise ValueError("model has no labels")
        if (
            len(ngram_range) != 2
            or not all(isinstance(n, int) and not isinstance(n, bool) for n in ngram_range)
            or not 1 <= ngram_range[0] <= ngram_range[1]
        ):
            raise ValueError(f"invalid ngram_range: {ngram_range!r}")
        n_features = len(vocabulary) + len(REGEX_CATEGORIES)
        if idf.shape != (len(vocabulary),):
            raise ValueError("idf length does not match vocabulary")
        if weights.shape != (len(labels), n_features):
            raise ValueError(f"weights must be {len(labels)}x{n_features}, got {weights.shape}")
        if bias.shape != (len(labels),):
            raise ValueError("bias length does not match labels")
        if any(not 0 <= col < len(vocabulary) for col in vocabulary.values()):
            raise ValueError("vocabulary column out of range")

        self.labels = list(labels)
        self.vocabulary = dict(vocabulary)
        self.idf = idf
        self.weights = weights
        self.bias = bias
        self.ngram_range = (ngram_range[0], ngram_range[1])
        self.sublinear_tf = sublinear_tf
        self.version = version

    @classmethod
    def load(cls, path) -> "TfidfLinearModel":
        """
        Raises:
            OSError: the file cannot be read
            ValueError: the file is not a well-formed weights file
        """
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ValueError("model file must hold a JSON object")
        vocabulary = raw.get("vocabulary")
        if not isinstance(vocabulary, dict):
            raise ValueError("vocabulary must be a JSON object")
        ngram_range = raw.get("ngram_range", [1, 2])
        if not isinstance(ngram_range, list):
            raise ValueError("ngram_range must be a list of two integers")
        try:
            return cls(
                labels=[TextCategory(label) for label in raw["labels"]],
                vocabulary={str(k): int(v) for k, v in vocabulary.items()},
                idf=np.asarray(raw["idf"], dtype=np.float64),
                weights=np.asarray(raw["weights"], dtype=np.float64),
                bias=np.asarray(raw["bias"], dtype=np.float64),
                ngram_range=tuple(ngram_range),
                sublinear_tf=bool(raw.get("sublinear_tf", True)),
                version=str(raw.get("version", "1.0")),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"malformed model file: {type(e).__name__}: {e}") from e

    def features(self, text: str) -> np.ndarray:
        tfidf = np.zeros(len(self.vocabulary), dtype=np.float64)
        for term, count in Counter(tokenize(text, self.ngram_range)).items():
            col = self.vocabulary.get(term)
            if col is None:
                continue
            tf = 1.0 + math.log(count) if self.sublinear_tf else float(count)
            tfidf[col] = tf * self.idf[col]
        norm = np.linalg.norm(tfidf)
        if norm > 0:
            tfidf /= norm
        return np.concatenate([tfidf, regex_features(text)])

    def predict_proba(self, text: str) -> np.ndarray:
        logits = self.weights @ self.features(text) + self.bias
        logits -= logits.max()
        exp = np.exp(logits)
        return exp / exp.sum()

    def predict(self, text: str) -> Tuple[TextCategory, float, Dict[str, float]]:
        proba = self.predict_proba(text)
        best = int(np.argmax(proba))
        return (
            self.labels[best],
            float(proba[best]),
            {label.value: float(p) for label, p in zip(self.labels, proba)},
        )


class TextClassifier:
    """
    Decide whether a text span is PII.

    Pattern and model tables are built once here and only read afterwards, so
    classify() may be called from any number of threads.
    """

    def __init__(
        self,
        model_path: Optional[str] = None,
        regex_confidence: float = DEFAULT_REGEX_CONFIDENCE,
        fallback_confidence: float = DEFAULT_FALLBACK_CONFIDENCE,
        max_workers: int = 4,
    ):
        self.regex_confidence = regex_confidence
        self.fallback_confidence = fallback_confidence
        self.max_workers = max_workers
        self.model_path = model_path
        self.model: Optional[TfidfLinearModel] = None
        self.model_error: Optional[str] = None
        if model_path:
            self._load_model(model_path)
        logger.info(
            "Text classifier ready (regex categories: %s, model loaded: %s)",
            [c.value for c in REGEX_CATEGORIES], self.is_model_loaded,
        )

    @classmethod
    def from_settings(cls, settings) -> "TextClassifier":
        return cls(
            model_path=settings.CLASSIFIER_MODEL_PATH,
            regex_confidence=settings.REGEX_CONFIDENCE,
            fallback_confidence=settings.FALLBACK_CONFIDENCE,
        )

    def _load_model(self, path: str) -> None:
        if not Path(path).is_file():
            self.model_error = "model file not found"
            logger.warning("Classifier model not found at %s, using regex + fallback only", path)
            return
        try:
            self.model = TfidfLinearModel.load(path)
        except (OSError, ValueError) as e:
            self.model_error = f"model file unreadable: {type(e).__name__}"
            logger.warning("Failed to load classifier model from %s: %s", path, e)
            return
        logger.info("Loaded classifier model v%s (%d terms)", self.model.version, len(self.model.vocabulary))

    @property
    def is_model_loaded(self) -> bool:
        return self.model is not None

    def status(self) -> Dict[str, object]:
        return {
            "is_model_loaded": self.is_model_loaded,
            "model_path": self.model_path,
            "model_error": self.model_error,
            "model_version": self.model.version if self.model else None,
            "regex_categories": [c.value for c in REGEX_CATEGORIES],
            "labels": [c.value for c in TextCategory],
            "fallback_available": True,
        }

    def classify(self, text) -> ClassificationVerdict:
        start = time.perf_counter()
        clean = text.strip() if isinstance(text, str) else ""

        if clean:
            category = regex_match(clean)
            if category is not None:
                return ClassificationVerdict(
                    category=category,
                    confidence=self.regex_confidence,
                    method=ClassificationMethod.REGEX,
                    latency=time.perf_counter() - start,
                    probabilities={
                        category.value: self.regex_confidence,
                        TextCategory.NON_SENSITIVE.value: 1.0 - self.regex_confidence,
                    },
                )

            if self.model is not None:
                category, confidence, probabilities = self.model.predict(clean)
                return ClassificationVerdict(
                    category=category,
                    confidence=min(1.0, max(0.0, confidence)),
                    method=ClassificationMethod.MODEL,
                    latency=time.perf_counter() - start,
                    probabilities=probabilities,
                )

        return ClassificationVerdict(
            category=TextCategory.NON_SENSITIVE,
            confidence=self.fallback_confidence,
            method=ClassificationMethod.FALLBACK,
            latency=time.perf_counter() - start,
            probabilities={TextCategory.NON_SENSITIVE.value: self.fallback_confidence},
        )

    def classify_batch(self, texts: Iterable[str]) -> List[ClassificationVerdict]:
        texts = list(texts)
        if len(texts) <= 1:
            return [self.classify(t) for t in texts]
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            return list(pool.map(self.classify, texts))

    def classify_regions(self, regions: Iterable[DetectedTextRegion]) -> List[ClassifiedTextRegion]:
        regions = list(regions)
        verdicts = self.classify_batch(r.text for r in regions)
        classified = [ClassifiedTextRegion(region=r, verdict=v) for r, v in zip(regions, verdicts)]
        logger.debug(
            "Classified %d text regions, %d sensitive",
            len(classified), sum(1 for c in classified if c.is_sensitive),
        )
        return classified
