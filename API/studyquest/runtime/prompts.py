from studyquest.agents.schedule import period_name
from studyquest.schemas.agent import AgentRequest, AgentTask
from studyquest.schemas.schedule import LearningPeriod

SYSTEM_PROMPT = """你是 StudyQuest 的首席教学官，一位长期陪伴孩子的家庭教师。

职责：
1. 通过工具了解孩子的学习画像、记忆和行为
2. 决定今天的教学策略
3. 按策略生成合适的学习内容
4. 向家长说明今天为什么这样安排

核心原则（必须遵守）：
1. 身心健康优先于学习进度：宁可少学，不可伤害
2. 克制决策，不被单次情绪或家长焦虑左右
3. 所有决策可向家长解释
4. 不做诊断性判断，不做心理或医学结论

工作方式：
- 默认先调用 get_full_context，一次拿到画像、记忆摘要和建议的教学意图
- 再按教学意图调用 generate_reading_material 或 process_full_upload_task 生成内容
- 孩子状态不好时优先选择 lighten 或 pause
- 周末复习模式下先调用 get_weekly_review_summary，围绕薄弱点和遗留知识点安排复习
- 需要判断长期趋势时用 compare_with_history，只看当前孩子的数据
- 发现新的模式时用 write_observation 记入 ephemeral 或 hypothesis 层
- 重要决策可先 think_step，再 verify_decision
- 尽量在 5 次工具调用内完成
- 完成后只输出一个 JSON 对象作为最终结果"""

_EFFICIENT_FLOW = (
    "高效流程：\n"
    "1. 调用 get_full_context 获取完整上下文，其中 teaching_intent 已包含题量和难度\n"
    "2. 按 teaching_intent 调用 generate_reading_material 生成内容；即使是刷题也要附带知识点回顾（style=concept_review）\n"
    "不要再单独调用 get_student_context、get_memory_summary 或 decide_teaching_intent。"
)


def _context_lines(request: AgentRequest) -> list[str]:
    ctx = request.context or {}
    lines = []
    period = ctx.get("learning_period")
    if period:
        try:
            lines.append(f"当前学期状态：{period_name(LearningPeriod(period))}")
        except ValueError:
            lines.append(f"当前学期状态：{period}")
    if ctx.get("effective_mode"):
        lines.append(f"生效模式：{ctx['effective_mode']}")
    if ctx.get("preferred_subject"):
        lines.append(f"家长指定科目：{ctx['preferred_subject']}（优先生成该科目内容）")
    return lines


def _learning_decision_block(request: AgentRequest) -> str:
    decision = (request.context or {}).get("learning_decision")
    if not decision:
        return ""
    return (
        "学习负担调度决策：\n"
        f"- 当前模式：{request.context.get('effective_mode')}\n"
        f"- 资料类型：{request.context.get('material_type')}\n"
        f"- 输出模式：{decision.get('front_mode')}\n"
        f"- 允许题目数：{decision.get('question_count')}\n"
        f"- 重点提示：{decision.get('focus_message')}\n"
        "输出模式为 no_learning 时只记录知识点不出题；micro_reminder 只给一条提醒；"
        "feedback_only 只给评析；practice 题目数不得超过允许值。\n"
    )


def build_task_prompt(request: AgentRequest) -> str:
    header = "\n".join(_context_lines(request))
    if request.task == AgentTask.DECIDE_TODAY:
        return f"请为学生 {request.child_id} 决定今天的教学策略并生成任务。\n{header}\n\n{_EFFICIENT_FLOW}"
    if request.task == AgentTask.GENERATE_TASKS:
        instruction = f"\n家长指令：{request.message}" if request.message else ""
        return f"请为学生 {request.child_id} 生成今日学习任务。\n{header}{instruction}\n\n{_EFFICIENT_FLOW}"
    if request.task == AgentTask.PROCESS_UPLOAD:
        instruction = f"家长指令：{request.message}\n" if request.message else ""
        return (
            f"用户上传了 {len(request.attachments)} 个学习资料附件。\n{header}\n{instruction}"
            f"{_learning_decision_block(request)}"
            f"请为学生 {request.child_id} 分析资料并生成合适的学习任务：\n"
            "1. 调用 process_full_upload_task，把家长指令传入 instruction，把指定科目传入 preferred_subject\n"
            "2. 调用 write_observation 把识别出的知识点或错题写入 ephemeral 层\n"
            "3. 按输出模式返回结果"
        )
    return request.message or "请帮助这个学生"
