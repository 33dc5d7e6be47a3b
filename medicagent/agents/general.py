from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar

from ..core.logging import get_logger
from ..schemas.agents import AgentInput, AgentOutput, Followup, HandlerName, error_action
from ..services.llm import generate_tracked, usage_total
from .base import BaseHandler

logger = get_logger(name=__name__)

GP_SYSTEM_PROMPT = (
    "You are a General Practitioner (GP). Provide safe, evidence-based and empathetic primary care advice. "
    "You can educate, triage and suggest next steps, but you cannot diagnose or prescribe. "
    "Escalate to emergency services for red flags such as severe chest pain, stroke signs, "
    "suicidal ideation or severe bleeding."
)


@dataclass
class GeneralPractitionerHandler(BaseHandler):
    name: ClassVar[HandlerName] = HandlerName.GP
    capabilities: ClassVar[tuple[str, ...]] = ("general-practitioner-advice",)
    temperature: float = 0.7

    async def process(self, agent_input: AgentInput) -> AgentOutput:
        prompt = f"{GP_SYSTEM_PROMPT}\n\nPatient: {agent_input.message}\n\nGP:"
        try:
            result = await generate_tracked(self.llm, prompt, temperature=self.temperature)
        except Exception as exc:
            logger.exception(
                "gp_processing_failed",
                user_id=agent_input.user_id,
                session_id=agent_input.session_id,
                intent=agent_input.intent,
                error=str(exc),
            )
            return AgentOutput(
                reply="I'm sorry, I encountered an error while processing your request. Please try again.",
                actions=[error_action("GP_PROCESSING_ERROR", str(exc))],
                followups=[Followup(type="question", text="Is there anything else I can help you with?")],
            )
        return AgentOutput(reply=result.text.strip(), usage_total_tokens=usage_total(result))
