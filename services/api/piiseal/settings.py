from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "sqlite:///./app.db"
    STORAGE_DIR: str = "./data"
    ALLOW_ORIGINS: str = "*"
    LOG_LEVEL: str = "INFO"

    # Text classifier
    CLASSIFIER_MODEL_PATH: str | None = None  # JSON weights, optional
    REGEX_CONFIDENCE: float = 0.95
    FALLBACK_CONFIDENCE: float = 0.8

    # Region pipeline
    REGION_MARGIN_PX: int = 2
    BLUR_METHOD: Literal["pixelate", "gaussian", "solid", "blackout"] = "pixelate"
    PIXELATE_CELL_PX: int = 8
    SEAL_WORKERS: int = 4
    RSA_KEY_SIZE: int = 2048

    # Built-in detectors
    NMS_IOU_THRESHOLD: float = 0.5
    OCR_LANGUAGES: str = "en"

settings = Settings()
