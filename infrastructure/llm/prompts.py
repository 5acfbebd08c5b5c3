"""
Prompt assembly for completion requests.

Prompt fragments come from config/qa.yml (the prompts section); this module
only decides which fragments apply to a request and in what order.
"""
from infrastructure.config.qa_config import PromptsConfig
from infrastructure.llm.config import QuestionContext
from schemas.qa import QARequest


def get_system_prompt(prompts: PromptsConfig) -> str:
    """Persona and general approach, shared by every question."""
    return prompts.system


def build_user_prompt(request: QARequest, prompts: PromptsConfig) -> str:
    """
    Question prompt with the reader's context.

    Empty context fields are left out; the answer checklist is always appended.
    """
    context = request.question_context or QuestionContext.GENERAL
    parts = [prompts.contexts.get(context) or prompts.contexts.get(QuestionContext.GENERAL, "")]

    if request.chapter_context:
        parts.append(f"章回背景：\n{request.chapter_context}")
    if request.selected_text:
        parts.append(f"讀者選取的文字：\n「{request.selected_text}」")
    if request.current_chapter:
        parts.append(f"目前閱讀章回：{request.current_chapter}")

    parts.append(f"問題：{request.user_question}")

    if prompts.answer_instructions:
        checklist = "\n".join(
            f"{i}. {line}" for i, line in enumerate(prompts.answer_instructions, start=1)
        )
        parts.append(f"回答要求：\n{checklist}")

    return "\n\n".join(part for part in parts if part)


def build_messages(request: QARequest, prompts: PromptsConfig) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": get_system_prompt(prompts)},
        {"role": "user", "content": build_user_prompt(request, prompts)},
    ]


def get_suggested_questions(
    prompts: PromptsConfig, context: QuestionContext | None = None
) -> dict[str, list[str]]:
    """Starter questions keyed by question context, optionally narrowed to one context."""
    contexts = [context] if context is not None else list(QuestionContext)
    return {c.value: list(prompts.suggested_questions.get(c, ())) for c in contexts}
