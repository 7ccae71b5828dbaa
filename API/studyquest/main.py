from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from studyquest.api.agent import router as agent_router
from studyquest.api.health import router as health_router
from studyquest.api.intent import router as intent_router
from studyquest.api.schedule import router as schedule_router
from studyquest.core.errors import (
    StudyQuestError,
    http_exception_handler,
    request_id_middleware,
    studyquest_exception_handler,
    unhandled_exception_handler,
    validation_exception_handler,
)
from studyquest.core.logging import configure_logging
from studyquest.core.settings import settings
from studyquest.memory.database import create_all
from studyquest.runtime.service import get_engine

configure_logging(settings.log_level)

app = FastAPI(title="StudyQuest Teaching API", version="0.1.0")
app.include_router(health_router)
app.include_router(intent_router)
app.include_router(agent_router)
app.include_router(schedule_router)
app.middleware("http")(request_id_middleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)
app.add_exception_handler(HTTPException, http_exception_handler)
app.add_exception_handler(RequestValidationError, validation_exception_handler)
app.add_exception_handler(StudyQuestError, studyquest_exception_handler)
app.add_exception_handler(Exception, unhandled_exception_handler)


@app.on_event("startup")
async def on_startup():
    if settings.database_auto_create:
        await create_all(get_engine())
