from __future__ import annotations

"""LangGraph chat workflow for the medication assistant.

One user message runs through three nodes:
- ``ingest`` trims the text and appends it to the conversation
- ``call_model`` asks the AI service for a reply
- ``extract_action`` splits the reply into display text and an optional
  medication draft

A failed model call routes straight to END; ``run_chat_turn`` then raises
``ChatTurnFailed`` with the user's text so the caller can put it back in the
input box.
"""

import logging
from typing import Any, List, Optional, Protocol, Sequence, TypedDict

import httpx
from langgraph.graph import END, START, StateGraph

from shared.contracts.enums import ChatRole
from shared.contracts.models import ChatTurn, Medication, PatientContext

from .action_extractor import extract
from .ai_client import AIServiceError

logger = logging.getLogger(__name__)

CHAT_ERROR_REPLY = "Sorry, I couldn't reach the assistant right now. Please try again."


class ChatModel(Protocol):
    async def chat(
        self,
        turns: Sequence[ChatTurn],
        medications: Sequence[Medication],
        patient: PatientContext,
        history: Optional[Sequence[ChatTurn]] = None,
    ) -> str: ...


class ChatTurnFailed(Exception):
    def __init__(self, user_text: str, reason: str) -> None:
        super().__init__(reason)
        self.user_text = user_text
        self.reason = reason


class ChatState(TypedDict, total=False):
    user_text: str
    conversation: List[ChatTurn]
    medications: List[Medication]
    patient: PatientContext
    raw_reply: str
    error: Optional[str]
    reply: ChatTurn


def build_chat_graph(model: ChatModel, checkpointer: Any | None = None) -> Any:
    graph = StateGraph(ChatState)

    async def ingest(state: ChatState) -> ChatState:
        text = state.get("user_text", "").strip()
        conversation = list(state.get("conversation", []))
        conversation.append(ChatTurn(role=ChatRole.USER, content=text))
        return {
            "user_text": text,
            "conversation": conversation,
            "medications": list(state.get("medications", [])),
            "patient": state.get("patient") or PatientContext(),
            "error": None,
        }

    async def call_model(state: ChatState) -> ChatState:
        conversation = state["conversation"]
        try:
            raw = await model.chat(conversation, state["medications"], state["patient"])
        except (AIServiceError, httpx.HTTPError, ValueError) as exc:
            logger.error("chat model call failed: %s", exc)
            return {"error": str(exc)}
        return {"raw_reply": raw}

    async def extract_action(state: ChatState) -> ChatState:
        extracted = extract(state.get("raw_reply"))
        if extracted.draft is not None:
            logger.info("chat reply carries a medication draft for %s", extracted.draft.name)
        reply = ChatTurn(role=ChatRole.ASSISTANT, content=extracted.display_text, draft=extracted.draft)
        return {"reply": reply, "conversation": [*state["conversation"], reply]}

    def route_after_model(state: ChatState) -> str:
        return END if state.get("error") else "extract_action"

    graph.add_node("ingest", ingest)
    graph.add_node("call_model", call_model)
    graph.add_node("extract_action", extract_action)

    graph.add_edge(START, "ingest")
    graph.add_edge("ingest", "call_model")
    graph.add_conditional_edges("call_model", route_after_model, ["extract_action", END])
    graph.add_edge("extract_action", END)

    return graph.compile(checkpointer=checkpointer)


async def run_chat_turn(
    model: ChatModel,
    text: str,
    *,
    conversation: Sequence[ChatTurn] = (),
    medications: Sequence[Medication] = (),
    patient: Optional[PatientContext] = None,
) -> ChatTurn:
    """Send one user message and return the assistant turn."""
    if not text or not text.strip():
        raise ValueError("message is empty")

    final = await build_chat_graph(model).ainvoke(
        {
            "user_text": text,
            "conversation": list(conversation),
            "medications": list(medications),
            "patient": patient or PatientContext(),
        }
    )
    if final.get("error"):
        raise ChatTurnFailed(text, final["error"])
    return final["reply"]
