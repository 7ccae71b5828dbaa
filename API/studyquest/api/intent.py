from fastapi import APIRouter, Depends

from studyquest.runtime.service import TeachingService, get_teaching_service
from studyquest.schemas.intent import IntentRequest, TeachingIntent

router = APIRouter(prefix="/intent", tags=["intent"])


@router.post("/{child_id}", response_model=TeachingIntent)
async def decide_intent(
    child_id: str,
    payload: IntentRequest | None = None,
    service: TeachingService = Depends(get_teaching_service),
):
    signal = payload.caregiver_signal if payload else None
    return await service.decide_intent(child_id, signal)
