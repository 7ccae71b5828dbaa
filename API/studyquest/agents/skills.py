"""Cross-curricular thinking skills that can be woven into practice sets."""
from __future__ import annotations

import random
from dataclasses import dataclass, field


@dataclass(frozen=True)
class SkillDefinition:
    id: str
    name: str
    category: str
    description: str
    min_age: int
    max_age: int
    subjects: tuple[str, ...]
    min_mastery: float | None = None
    emotion_signals: tuple[str, ...] | None = None
    intent_types: tuple[str, ...] | None = None
    example_questions: tuple[str, ...] = field(default_factory=tuple)

    def prompt_hint(self, grade_level: int) -> str:
        example = self.example_questions[0] if self.example_questions else ""
        return f"请额外生成1道{self.name}题，难度适合{grade_level}年级学生，并标记 skill_type: \"{self.id}\"。参考: {example}"


SKILL_LIBRARY: tuple[SkillDefinition, ...] = (
    SkillDefinition(
        id="logic_sequence",
        name="逻辑推理 - 找规律",
        category="logical_thinking",
        description="通过观察数列或图形，找出其中的规律",
        min_age=7,
        max_age=12,
        subjects=("math", "science"),
        min_mastery=0.6,
        intent_types=("challenge", "introduce"),
        example_questions=("2, 4, 8, 16, ？", "观察图形变化规律，下一个应该是什么？"),
    ),
    SkillDefinition(
        id="logic_deduction",
        name="逻辑推理 - 推断",
        category="logical_thinking",
        description="根据已知信息推断结论",
        min_age=8,
        max_age=12,
        subjects=("chinese", "science"),
        min_mastery=0.65,
        intent_types=("verify", "challenge"),
        example_questions=("根据文章信息，你认为主人公最后会做什么选择？",),
    ),
    SkillDefinition(
        id="probability_intro",
        name="概率思维 - 可能性",
        category="probability",
        description="理解可能、不可能、一定的概念",
        min_age=8,
        max_age=10,
        subjects=("math", "science"),
        min_mastery=0.6,
        intent_types=("introduce", "challenge"),
        example_questions=("从装有5个红球和3个蓝球的袋子里随机拿一个，拿到红球是一定还是可能？",),
    ),
    SkillDefinition(
        id="probability_compare",
        name="概率思维 - 比较可能性",
        category="probability",
        description="比较不同事件发生的可能性大小",
        min_age=9,
        max_age=12,
        subjects=("math",),
        min_mastery=0.7,
        intent_types=("challenge",),
        example_questions=("袋子A有2个红球8个白球，袋子B有5个红球5个白球，从哪个袋子更容易拿到红球？",),
    ),
    SkillDefinition(
        id="expression_describe",
        name="表达能力 - 描述",
        category="expression",
        description="用自己的话描述一个概念或现象",
        min_age=7,
        max_age=12,
        subjects=("chinese", "science"),
        min_mastery=0.5,
        emotion_signals=("neutral", "engaged"),
        intent_types=("verify", "lighten"),
        example_questions=("用你自己的话解释一下光合作用是什么？",),
    ),
    SkillDefinition(
        id="expression_argument",
        name="表达能力 - 论述",
        category="expression",
        description="表达观点并给出理由",
        min_age=9,
        max_age=12,
        subjects=("chinese", "english"),
        min_mastery=0.65,
        intent_types=("challenge",),
        example_questions=("Do you think homework is helpful? Why or why not?",),
    ),
    SkillDefinition(
        id="critical_question",
        name="批判性思维 - 质疑",
        category="critical_thinking",
        description="对信息提出质疑，不盲目接受",
        min_age=9,
        max_age=12,
        subjects=("chinese", "science"),
        min_mastery=0.7,
        emotion_signals=("engaged",),
        intent_types=("challenge",),
        example_questions=("所有的鸟都会飞，这句话正确吗？请说明理由。",),
    ),
    SkillDefinition(
        id="observation_detail",
        name="观察能力 - 细节",
        category="observation",
        description="观察并发现细节",
        min_age=7,
        max_age=10,
        subjects=("science", "chinese"),
        min_mastery=0.5,
        intent_types=("lighten", "reinforce"),
        example_questions=("文章中提到了几种动物？分别是什么？",),
    ),
    SkillDefinition(
        id="pattern_math",
        name="模式识别 - 数学规律",
        category="pattern_recognition",
        description="发现数学中的模式和规律",
        min_age=8,
        max_age=12,
        subjects=("math",),
        min_mastery=0.65,
        intent_types=("verify", "challenge"),
        example_questions=("观察：1×1=1，11×11=121，111×111=12321，那么1111×1111=？",),
    ),
    SkillDefinition(
        id="eq_empathy",
        name="情商 - 同理心",
        category="emotional_intelligence",
        description="理解他人的感受和立场",
        min_age=7,
        max_age=12,
        subjects=("chinese",),
        min_mastery=0.5,
        emotion_signals=("neutral", "engaged"),
        intent_types=("lighten", "verify"),
        example_questions=("如果你是故事里的主人公，面对这个选择你会怎么做？为什么？",),
    ),
)


def grade_to_age(grade_level: int) -> int:
    return 5 + grade_level


def select_applicable_skills(
    age: int,
    subject: str,
    mastery: float,
    emotion_signal: str,
    intent_type: str,
    library: tuple[SkillDefinition, ...] = SKILL_LIBRARY,
) -> list[SkillDefinition]:
    selected = []
    for skill in library:
        if age < skill.min_age or age > skill.max_age:
            continue
        if subject not in skill.subjects:
            continue
        if skill.min_mastery is not None and mastery < skill.min_mastery:
            continue
        if skill.emotion_signals is not None and emotion_signal not in skill.emotion_signals:
            continue
        if skill.intent_types is not None and intent_type not in skill.intent_types:
            continue
        selected.append(skill)
    return selected


def pick_skill(skills: list[SkillDefinition], rng: random.Random) -> SkillDefinition | None:
    if not skills:
        return None
    return rng.choice(skills)
