from studyquest.agents.content import ContentGenerator
from studyquest.agents.context_aggregator import ContextAggregator
from studyquest.agents.history import LearningHistory
from studyquest.memory.child_memory import ChildMemoryService
from studyquest.memory.repository import LearnerRepository
from studyquest.tools.base import ToolRegistry
from studyquest.tools.decision import DecideTeachingIntentTool
from studyquest.tools.generation import GenerateReadingMaterialTool, ParseAttachmentTool, ProcessFullUploadTaskTool
from studyquest.tools.memory import WriteObservationTool
from studyquest.tools.metacognition import ThinkStepTool, VerifyDecisionTool
from studyquest.tools.readers import (
    CompareWithHistoryTool,
    GetApplicableSkillsTool,
    GetFullContextTool,
    GetLearningGoalTool,
    GetMemorySummaryTool,
    GetStudentContextTool,
    GetWeeklyReviewSummaryTool,
    ReadStudentMemoryTool,
    SearchKnowledgePointsTool,
)


def build_registry(
    repository: LearnerRepository,
    generator: ContentGenerator,
    aggregator: ContextAggregator | None = None,
    memory: ChildMemoryService | None = None,
    history: LearningHistory | None = None,
) -> ToolRegistry:
    aggregator = aggregator or ContextAggregator(repository)
    memory = memory or ChildMemoryService(repository)
    history = history or LearningHistory(repository)
    return ToolRegistry(
        [
            GetFullContextTool(aggregator, memory),
            GetStudentContextTool(aggregator),
            ReadStudentMemoryTool(memory),
            GetMemorySummaryTool(memory),
            SearchKnowledgePointsTool(repository),
            GetApplicableSkillsTool(aggregator),
            CompareWithHistoryTool(history),
            GetLearningGoalTool(history),
            GetWeeklyReviewSummaryTool(history),
            DecideTeachingIntentTool(aggregator, memory),
            WriteObservationTool(memory),
            ThinkStepTool(),
            VerifyDecisionTool(),
            ParseAttachmentTool(generator),
            GenerateReadingMaterialTool(generator),
            ProcessFullUploadTaskTool(generator),
        ]
    )
