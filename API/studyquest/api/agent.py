from fastapi import APIRouter, Depends

from studyquest.runtime.service import TeachingService, get_teaching_service
from studyquest.schemas.agent import AgentRequest, AgentResponse

router = APIRouter(prefix="/agent", tags=["agent"])


@router.post("/run", response_model=AgentResponse)
async def run_agent(payload: AgentRequest, service: TeachingService = Depends(get_teaching_service)):
    return await service.run_orchestration(
        payload.child_id,
        payload.task,
        message=payload.message,
        attachments=payload.attachments,
        context=payload.context,
    )
