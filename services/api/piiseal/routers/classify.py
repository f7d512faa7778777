from fastapi import APIRouter, Depends

from ..deps import get_classifier
from ..schemas import ClassifyRequest, ClassifyResponse
from ..utils.classifier import TextClassifier

router = APIRouter(prefix="/classify", tags=["classify"])

@router.post("", response_model=ClassifyResponse)
def classify_texts(req: ClassifyRequest, classifier: TextClassifier = Depends(get_classifier)):
    return {"verdicts": classifier.classify_batch(req.texts)}

@router.get("/status")
def classifier_status(classifier: TextClassifier = Depends(get_classifier)):
    return classifier.status()
