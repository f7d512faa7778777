from fastapi import Request

from .utils.classifier import TextClassifier
from .utils.keystore import KeyStore

def get_key_store(request: Request) -> KeyStore:
    return request.app.state.key_store

def get_classifier(request: Request) -> TextClassifier:
    return request.app.state.classifier
