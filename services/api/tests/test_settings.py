import pytest
from pydantic import ValidationError

from piiseal.settings import Settings
from piiseal.utils.redact import BlurMethod


@pytest.mark.parametrize("method", [m.value for m in BlurMethod])
def test_blur_method_accepts_known_methods(method):
    assert Settings(BLUR_METHOD=method).BLUR_METHOD == method


def test_blur_method_rejects_unknown_method():
    with pytest.raises(ValidationError):
        Settings(BLUR_METHOD="swirl")


def test_blur_method_from_environment(monkeypatch):
    monkeypatch.setenv("BLUR_METHOD", "blackout")
    assert Settings().BLUR_METHOD == "blackout"
    monkeypatch.setenv("BLUR_METHOD", "swirl")
    with pytest.raises(ValidationError):
        Settings()
