"""Transcript → structured booking intent, via Claude structured output."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

from langchain_anthropic import ChatAnthropic
from langchain_core.messages import HumanMessage, SystemMessage
from pydantic import BaseModel, Field

from dental_booking.config import ANTHROPIC_API_KEY, MODEL_NAME
from dental_booking.models import PractitionerRef, ServiceDefinition
from dental_booking.prompts import get_extraction_prompt
from dental_booking.services.metrics import metrics

logger = logging.getLogger(__name__)


class TranscriptIntent(BaseModel):
    """Everything a finished call can tell us about the booking."""

    patient_title: str = "Mr"
    patient_first_name: str = ""
    patient_last_name: str = ""
    patient_date_of_birth: str = ""
    patient_email: str = ""
    patient_phone_number: str = ""
    patient_address_line_1: str = ""
    patient_postcode: str = ""

    service_ids: list[int] = Field(default_factory=list)
    requested_start: str | None = Field(
        default=None, description="Preferred start of the first service, ISO 8601 with offset",
    )
    practitioner_id: int | None = None
    practitioner_name: str = ""
    appointment_start_time: str | None = None
    appointment_finish_time: str | None = None

    @property
    def has_confirmed_slot(self) -> bool:
        return bool(
            self.appointment_start_time and self.appointment_finish_time and self.practitioner_id
        )


def format_transcript(transcript: Any) -> str:
    """Flatten an ElevenLabs transcript (list of turns or plain text) into text."""
    if isinstance(transcript, str):
        return transcript
    if isinstance(transcript, list):
        lines = []
        for turn in transcript:
            if not isinstance(turn, dict):
                continue
            message = turn.get("message") or turn.get("text")
            if message:
                role = "Patient" if turn.get("role") == "user" else "Receptionist"
                lines.append(f"{role}: {message}")
        return "\n".join(lines)
    return ""


def _build_llm() -> ChatAnthropic:
    return ChatAnthropic(
        model=MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=0.0,  # Extraction must be repeatable
        max_tokens=1024,
    )


class TranscriptExtractor:
    def __init__(self, llm: ChatAnthropic | None = None):
        self._llm = (llm or _build_llm()).with_structured_output(TranscriptIntent)

    def extract(
        self,
        transcript: Any,
        services: Iterable[ServiceDefinition],
        practitioners: Iterable[PractitionerRef] = (),
    ) -> TranscriptIntent | None:
        """Return the booking intent, or ``None`` for an empty transcript or an LLM failure."""
        text = format_transcript(transcript)
        if not text.strip():
            logger.info("Extractor: empty transcript, nothing to extract")
            return None

        system = SystemMessage(content=get_extraction_prompt(services, practitioners))
        try:
            with metrics.track("anthropic", "extract_intent"):
                intent = self._llm.invoke([system, HumanMessage(content=text)])
        except Exception as exc:
            logger.warning("Extractor: LLM call failed: %s", exc)
            return None

        logger.debug("Extractor: %r", intent)
        return intent
