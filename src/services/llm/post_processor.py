"""Answer post-processing: citations, markdown tidying and safety screening."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from enum import Enum

import structlog
from pydantic import BaseModel, ConfigDict, Field

from src.models.agent_config import ResponseSettings
from src.models.query import CitedSource

logger = structlog.get_logger(logger_name=__name__)

REDACTION_NOTICE = "[content removed by safety filter]"


class SafetyFlagType(str, Enum):  # noqa: UP042
    HARMFUL = "harmful"
    BIAS = "bias"


class SafetyFlag(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: SafetyFlagType
    severity: str
    matches: int
    description: str


class ProcessedResponse(BaseModel):
    """The final answer text plus what post-processing did to it."""

    model_config = ConfigDict(frozen=True)

    content: str
    citations: list[CitedSource] = Field(default_factory=list)
    safety_flags: list[SafetyFlag] = Field(default_factory=list)
    original_length: int = 0
    redacted: bool = False


# Harmful terms are redacted; bias indicators are only flagged.
_HARMFUL_RE = re.compile(r"\b(?:hate|violence|harmful|dangerous)\w*", re.IGNORECASE)
_BIAS_RE = re.compile(r"\b(?:bias|stereotyp|discriminat)\w*", re.IGNORECASE)

_HEADING_RE = re.compile(r"^(#{1,6})[ \t]*(\S.*)$", re.MULTILINE)
_BULLET_RE = re.compile(r"^([*+-])[ \t]*(\S.*)$", re.MULTILINE)
_BLANK_RUN_RE = re.compile(r"\n{3,}")
_TRAILING_WORD_RE = re.compile(r"\S*\Z")


class ResponsePostProcessor:
    """Applies the agent's response settings to a generated answer."""

    def process(
        self,
        content: str,
        sources: list[CitedSource] | None = None,
        settings: ResponseSettings | None = None,
    ) -> ProcessedResponse:
        opts = settings or ResponseSettings()
        text = content
        flags: list[SafetyFlag] = []
        redacted = False

        if opts.safety_filter:
            text, flags = self.apply_safety(text)
            redacted = any(f.type == SafetyFlagType.HARMFUL for f in flags)
        if opts.format_markdown:
            text = self.format_markdown(text)

        citations: list[CitedSource] = []
        if opts.include_sources and sources:
            citations = list(sources)
            text = self.add_citations(text, citations)
        if opts.add_timestamp:
            stamp = datetime.now(tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")  # noqa: UP017
            text = f"{text}\n\n*Response generated at {stamp}*"

        logger.debug(
            "response_post_processed",
            citations=len(citations),
            safety_flags=len(flags),
            length_change=len(text) - len(content),
        )
        return ProcessedResponse(
            content=text,
            citations=citations,
            safety_flags=flags,
            original_length=len(content),
            redacted=redacted,
        )

    @staticmethod
    def add_citations(content: str, sources: list[CitedSource]) -> str:
        """Append a numbered ``**Sources:**`` list naming each source once."""
        names = list(dict.fromkeys(s.name for s in sources if s.name))
        if not names:
            return content
        lines = "\n".join(f"{i}. {name}" for i, name in enumerate(names, start=1))
        return f"{content.rstrip()}\n\n**Sources:**\n{lines}"

    @staticmethod
    def format_markdown(content: str) -> str:
        """Normalize heading and bullet spacing and collapse blank-line runs."""
        text = _HEADING_RE.sub(r"\1 \2", content)
        text = _BULLET_RE.sub(r"\1 \2", text)
        return _BLANK_RUN_RE.sub("\n\n", text).strip()

    @staticmethod
    def apply_safety(content: str) -> tuple[str, list[SafetyFlag]]:
        """Redact harmful terms and flag bias indicators."""
        flags: list[SafetyFlag] = []
        harmful = len(_HARMFUL_RE.findall(content))
        if harmful:
            content = _HARMFUL_RE.sub(REDACTION_NOTICE, content)
            flags.append(
                SafetyFlag(
                    type=SafetyFlagType.HARMFUL,
                    severity="medium",
                    matches=harmful,
                    description=f"Redacted {harmful} potential harmful indicators",
                )
            )
        bias = len(_BIAS_RE.findall(content))
        if bias:
            flags.append(
                SafetyFlag(
                    type=SafetyFlagType.BIAS,
                    severity="low",
                    matches=bias,
                    description=f"Detected {bias} potential bias indicators",
                )
            )
        if flags:
            logger.warning("response_safety_flagged", flags=[f.type.value for f in flags])
        return content, flags


class StreamSafetyFilter:
    """Redacts harmful terms from streamed text as it arrives.

    The trailing partial word of each chunk is held back until more text
    (or :meth:`flush`) arrives, so a term split across deltas is still
    matched.
    """

    def __init__(self) -> None:
        self._pending = ""
        self.redactions = 0

    def feed(self, text: str) -> str:
        """Return the screened text that is safe to emit now."""
        buffered = self._pending + text
        cut = _TRAILING_WORD_RE.search(buffered).start()
        ready, self._pending = buffered[:cut], buffered[cut:]
        return self._screen(ready)

    def flush(self) -> str:
        """Return whatever is still held back, screened."""
        ready, self._pending = self._pending, ""
        return self._screen(ready)

    def _screen(self, text: str) -> str:
        if not text:
            return text
        screened, flags = ResponsePostProcessor.apply_safety(text)
        self.redactions += sum(f.matches for f in flags if f.type == SafetyFlagType.HARMFUL)
        return screened
