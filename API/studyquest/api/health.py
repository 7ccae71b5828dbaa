from fastapi import APIRouter

from studyquest.core.settings import settings

router = APIRouter(tags=["health"])


@router.get("/health")
async def health():
    return {
        "status": "ok",
        "service": "studyquest-api",
        "llm_provider": settings.llm_provider,
        "agent_max_turns": settings.agent_max_turns,
    }
