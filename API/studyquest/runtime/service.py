import asyncio
from datetime import date, datetime
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine

from studyquest.agents.content import ContentGenerator
from studyquest.agents.context_aggregator import ContextAggregator
from studyquest.agents.history import DEFAULT_COMPARE_DAYS, LearningHistory
from studyquest.agents.intent_engine import decide_teaching_intent
from studyquest.agents.schedule import resolve_schedule as resolve_schedule_for
from studyquest.core.llm_provider import BaseModelClient, get_model_client
from studyquest.core.logging import DOMAIN_AGENT, get_domain_logger
from studyquest.memory.child_memory import ChildMemoryService
from studyquest.memory.database import build_engine, build_session_factory
from studyquest.memory.repository import LearnerRepository
from studyquest.memory.sql_repository import SqlLearnerRepository
from studyquest.runtime.orchestrator import AgentOrchestrator
from studyquest.schemas.agent import AgentRequest, AgentResponse, AgentTask, Attachment
from studyquest.schemas.context import HistoryMetric, MetricComparison
from studyquest.schemas.intent import CaregiverSignal, TeachingIntent
from studyquest.schemas.schedule import LearningPeriod, MaterialType, ScheduleResolution, WeeklyReviewSummary
from studyquest.tools.catalog import build_registry

logger = get_domain_logger(__name__, DOMAIN_AGENT)


class TeachingService:
    """Entry points exposed to callers: intent decisions, agent runs and schedule lookups."""

    def __init__(
        self,
        repository: LearnerRepository,
        client: BaseModelClient | None = None,
        generator: ContentGenerator | None = None,
        **orchestrator_options: Any,
    ):
        self.repository = repository
        self.memory = ChildMemoryService(repository)
        self.aggregator = ContextAggregator(repository)
        self.history = LearningHistory(repository)
        self.generator = generator or ContentGenerator()
        self.registry = build_registry(repository, self.generator, self.aggregator, self.memory, self.history)
        self.orchestrator = AgentOrchestrator(client or get_model_client(), self.registry, **orchestrator_options)

    async def decide_intent(
        self,
        child_id: str,
        caregiver_signal: CaregiverSignal | None = None,
        now: datetime | None = None,
    ) -> TeachingIntent:
        context = await self.aggregator.get_context(child_id, now)
        intent = decide_teaching_intent(context, caregiver_signal, now)
        await self.memory.note_intent(child_id, intent, now)
        return intent

    async def run_orchestration(
        self,
        child_id: str,
        task: AgentTask | str,
        message: str | None = None,
        attachments: list[Attachment] | None = None,
        context: dict[str, Any] | None = None,
        cancel_event: asyncio.Event | None = None,
        now: datetime | None = None,
    ) -> AgentResponse:
        request = AgentRequest(
            child_id=child_id,
            task=AgentTask(task),
            message=message,
            attachments=attachments or [],
            context=with_schedule(context or {}, now),
        )
        return await self.orchestrator.run(request, cancel_event=cancel_event, now=now)

    async def weekly_review(self, child_id: str, now: datetime | None = None) -> WeeklyReviewSummary:
        return await self.history.weekly_review(child_id, now)

    async def compare_with_history(
        self,
        child_id: str,
        metric: HistoryMetric | str,
        days: int = DEFAULT_COMPARE_DAYS,
        now: datetime | None = None,
    ) -> MetricComparison:
        return await self.history.compare(child_id, metric, days, now)

    def resolve_schedule(
        self,
        period: LearningPeriod | str,
        day: date | datetime | str | None = None,
        material_type: MaterialType | str | None = None,
    ) -> ScheduleResolution:
        return resolve_schedule_for(period, day, material_type)


def with_schedule(context: dict[str, Any], now: datetime | None = None) -> dict[str, Any]:
    """Fill effective_mode and learning_decision from learning_period when the caller left them out."""
    period = context.get("learning_period")
    if not period or (context.get("effective_mode") and context.get("learning_decision")):
        return context
    try:
        resolution = resolve_schedule_for(period, now, context.get("material_type"))
    except ValueError as exc:
        logger.warning("Ignoring unusable schedule context %s: %s", context, exc)
        return context
    enriched = dict(context)
    enriched.setdefault("effective_mode", resolution.effective_mode.value)
    if resolution.learning_decision is not None:
        enriched.setdefault("learning_decision", resolution.learning_decision.model_dump(mode="json"))
    return enriched


_engine: AsyncEngine | None = None
_service: TeachingService | None = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        _engine = build_engine()
    return _engine


def get_teaching_service() -> TeachingService:
    global _service
    if _service is None:
        _service = TeachingService(SqlLearnerRepository(build_session_factory(get_engine())))
    return _service
