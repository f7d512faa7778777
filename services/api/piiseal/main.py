import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from .settings import settings
from .db import init_db
from .routers import classify, images, keys
from .utils.classifier import TextClassifier
from .utils.keystore import KeyStore

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)

app = FastAPI(title="Sensitive Region Sealing Service", version="0.1.0")

# CORS
origins = [o.strip() for o in settings.ALLOW_ORIGINS.split(",") if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.on_event("startup")
async def on_startup():
    init_db()
    app.state.key_store = KeyStore(rsa_key_size=settings.RSA_KEY_SIZE)
    app.state.classifier = TextClassifier.from_settings(settings)

@app.on_event("shutdown")
async def on_shutdown():
    app.state.key_store.clear_all_keys()

app.include_router(keys.router)
app.include_router(classify.router)
app.include_router(images.router)
