from datetime import date

from fastapi import APIRouter, Depends, Query

from studyquest.runtime.service import TeachingService, get_teaching_service
from studyquest.schemas.schedule import LearningPeriod, MaterialType, ScheduleResolution, WeeklyReviewSummary

router = APIRouter(prefix="/schedule", tags=["schedule"])


@router.get("", response_model=ScheduleResolution)
async def resolve_schedule(
    period: LearningPeriod,
    day: date | None = Query(None, alias="date"),
    material_type: MaterialType | None = None,
    service: TeachingService = Depends(get_teaching_service),
):
    return service.resolve_schedule(period, day, material_type)


@router.get("/weekly-review/{child_id}", response_model=WeeklyReviewSummary)
async def weekly_review(child_id: str, service: TeachingService = Depends(get_teaching_service)):
    return await service.weekly_review(child_id)
