import json

import pytest

from piiseal.domain import ClassificationMethod, DetectedTextRegion, TextCategory
from piiseal.utils.classifier import REGEX_CATEGORIES, TextClassifier, regex_match

from conftest import box


def test_national_id_scenario(classifier):
    verdict = classifier.classify("S1234567A")
    assert verdict.category is TextCategory.NATIONAL_ID
    assert verdict.method is ClassificationMethod.REGEX
    assert verdict.confidence >= 0.9


def test_email_scenario(classifier):
    verdict = classifier.classify("john.doe@example.com")
    assert verdict.category is TextCategory.EMAIL
    assert verdict.method is ClassificationMethod.REGEX


def test_plain_text_is_not_sensitive(classifier):
    verdict = classifier.classify("Hello world")
    assert verdict.category is TextCategory.NON_SENSITIVE
    assert verdict.method is ClassificationMethod.FALLBACK
    assert not verdict.is_sensitive


@pytest.mark.parametrize("text, expected", [
    ("My email is jane@company.org", TextCategory.EMAIL),
    ("4111 1111 1111 1111", TextCategory.CREDIT_CARD),
    ("5500-0000-0000-0004", TextCategory.CREDIT_CARD),
    ("SSN: 123-45-6789", TextCategory.NATIONAL_ID),
    ("Call me at 555-123-4567", TextCategory.PHONE),
    ("Phone: (555) 987-6543", TextCategory.PHONE),
    ("+65 9123 4567", TextCategory.PHONE),
    ("DOB 12/05/1990", TextCategory.BIRTHDAY),
    ("Born 1990-05-12", TextCategory.BIRTHDAY),
    ("3 March 1985", TextCategory.BIRTHDAY),
    ("I live at 123 Main Street", TextCategory.ADDRESS),
    ("Blk 456 Ang Mo Kio", TextCategory.ADDRESS),
    ("Username: admin", TextCategory.LOGIN),
    ("password=secret123", TextCategory.LOGIN),
    ("My name is John Smith", TextCategory.NAME),
    ("Mr. Tan Ah Kow", TextCategory.NAME),
])
def test_regex_tier_categories(classifier, text, expected):
    verdict = classifier.classify(text)
    assert verdict.category is expected
    assert verdict.method is ClassificationMethod.REGEX


def test_card_number_is_not_reported_as_phone():
    assert regex_match("4111111111111111") is TextCategory.CREDIT_CARD


def test_regex_order_is_fixed():
    # email wins over login because it comes first in the table
    assert REGEX_CATEGORIES.index(TextCategory.EMAIL) < REGEX_CATEGORIES.index(TextCategory.LOGIN)
    assert regex_match("login: bob@example.com") is TextCategory.EMAIL


@pytest.mark.parametrize("text", ["", "   ", "\n\t", None, 42])
def test_empty_or_malformed_text_is_not_sensitive(classifier, text):
    verdict = classifier.classify(text)
    assert verdict.category is TextCategory.NON_SENSITIVE
    assert verdict.method is ClassificationMethod.FALLBACK


def test_classify_is_deterministic(classifier):
    texts = ["S1234567A", "Hello world", "john.doe@example.com", "Call 555-123-4567"]
    first = [(v.category, v.method) for v in classifier.classify_batch(texts)]
    second = [(v.category, v.method) for v in classifier.classify_batch(texts)]
    assert first == second


def test_category_invariant(classifier):
    for text in ["S1234567A", "Hello world", "", "123 Main Street", "nothing here"]:
        verdict = classifier.classify(text)
        assert (verdict.category != TextCategory.NON_SENSITIVE) == verdict.is_sensitive


def test_batch_preserves_order(classifier):
    texts = ["Hello world", "S1234567A"] * 20
    verdicts = classifier.classify_batch(texts)
    assert [v.category for v in verdicts] == [
        TextCategory.NON_SENSITIVE, TextCategory.NATIONAL_ID
    ] * 20


def test_classify_regions_does_not_mutate_detections(classifier):
    region = DetectedTextRegion(text="S1234567A", normalized_box=box(0.1, 0.1, 0.2, 0.1), confidence=0.9)
    (classified,) = classifier.classify_regions([region])
    assert classified.region is region
    assert classified.is_sensitive
    assert region.model_dump() == {
        "text": "S1234567A",
        "normalized_box": {"x": 0.1, "y": 0.1, "width": 0.2, "height": 0.1},
        "confidence": 0.9,
    }


def test_without_model_status(classifier):
    assert classifier.is_model_loaded is False
    status = classifier.status()
    assert status["is_model_loaded"] is False
    assert status["fallback_available"] is True
    assert "email" in status["regex_categories"]


def test_model_tier(tiny_model_path):
    classifier = TextClassifier(model_path=tiny_model_path)
    assert classifier.is_model_loaded

    verdict = classifier.classify("Dear Alice")
    assert verdict.category is TextCategory.NAME
    assert verdict.method is ClassificationMethod.MODEL
    assert 0.9 < verdict.confidence <= 1.0
    assert sum(verdict.probabilities.values()) == pytest.approx(1.0)

    verdict = classifier.classify("lives near the park")
    assert verdict.category is TextCategory.ADDRESS
    assert verdict.is_sensitive

    verdict = classifier.classify("hello there")
    assert verdict.category is TextCategory.NON_SENSITIVE
    assert verdict.method is ClassificationMethod.MODEL


def test_regex_tier_runs_before_model(tiny_model_path):
    classifier = TextClassifier(model_path=tiny_model_path)
    verdict = classifier.classify("dear john.doe@example.com")
    assert verdict.category is TextCategory.EMAIL
    assert verdict.method is ClassificationMethod.REGEX


def test_model_is_deterministic(tiny_model_path):
    classifier = TextClassifier(model_path=tiny_model_path)
    a = classifier.classify("sincerely yours")
    b = classifier.classify("sincerely yours")
    assert (a.category, a.method, a.confidence) == (b.category, b.method, b.confidence)


def test_missing_model_degrades_to_regex(tmp_path):
    classifier = TextClassifier(model_path=str(tmp_path / "missing.json"))
    assert not classifier.is_model_loaded
    assert classifier.status()["model_error"] == "model file not found"
    assert classifier.classify("S1234567A").category is TextCategory.NATIONAL_ID
    assert classifier.classify("dear alice").method is ClassificationMethod.FALLBACK


@pytest.mark.parametrize("content", ["not json", '{"labels": ["name"]}', '{"labels": ["bogus"], "vocabulary": {}, "idf": [], "weights": [], "bias": []}'])
def test_corrupt_model_degrades_to_regex(tmp_path, content):
    path = tmp_path / "model.json"
    path.write_text(content)
    classifier = TextClassifier(model_path=str(path))
    assert not classifier.is_model_loaded
    assert classifier.status()["model_error"].startswith("model file unreadable")
    assert classifier.classify("Hello world").method is ClassificationMethod.FALLBACK


@pytest.mark.parametrize("change", [
    {"vocabulary": ["dear", "sincerely", "lives", "near", "park", "hello"]},
    {"ngram_range": [1]},
    {"ngram_range": [2, 1]},
    {"ngram_range": [0, 2]},
    {"ngram_range": "1,2"},
    {"labels": []},
])
def test_structurally_broken_model_degrades_to_regex(tiny_model_path, tmp_path, change):
    with open(tiny_model_path, encoding="utf-8") as f:
        model = json.load(f)
    model.update(change)
    path = tmp_path / "broken.json"
    path.write_text(json.dumps(model))

    classifier = TextClassifier(model_path=str(path))

    assert not classifier.is_model_loaded
    assert classifier.status()["model_error"].startswith("model file unreadable")
    verdict = classifier.classify("dear alice")
    assert verdict.category is TextCategory.NON_SENSITIVE
    assert verdict.method is ClassificationMethod.FALLBACK
    assert classifier.classify("S1234567A").category is TextCategory.NATIONAL_ID


@pytest.mark.parametrize("text", ["Happy birthday!", "birthday party tonight"])
def test_birthday_keyword_alone_is_not_sensitive(classifier, text):
    assert classifier.classify(text).category is TextCategory.NON_SENSITIVE


@pytest.mark.parametrize("text", ["Birthday: 4th of July", "DOB: unknown", "date of birth = see file"])
def test_birthday_label_is_sensitive(classifier, text):
    verdict = classifier.classify(text)
    assert verdict.category is TextCategory.BIRTHDAY
    assert verdict.method is ClassificationMethod.REGEX
