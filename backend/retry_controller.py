"""Bounded regeneration loop around the completion client.

Attempts run strictly one after another. Each attempt's decoding parameters come from
``params_for_attempt``, a pure function of the attempt number and the turn's profile, so
a given turn always walks the same parameter sequence.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Literal, Optional

from pydantic import BaseModel

from completion_service import CompletionClient, DecodingParams
from errors import UpstreamError, UpstreamUnavailable
from format_engine import (
    FREE_TIER_MAX_TOKENS,
    FREE_TIER_STOP_SEQUENCES,
    check_free_tier_format,
    coerce_free_tier_format,
    format_reprompt_directive,
)
from guard_rails import GuardSignals, is_early_phase
from prompt_composer import PromptBundle
from response_validator import ValidationContext, Verdict, validate_candidate
from telemetry import append_turn_telemetry
from turn_config import TurnSettings

logger = logging.getLogger(__name__)

Phase = Literal["early", "late", "sfw"]

# phase -> (temperature, top_p, presence_penalty, frequency_penalty)
PHASE_BASES = {
    "early": (0.85, 0.92, 0.4, 0.6),
    "late": (1.1, 0.98, 0.3, 0.5),
    "sfw": (0.8, 0.92, 0.2, 0.4),
}
NSFW_REPETITION_PENALTY = 1.03
SFW_REPETITION_PENALTY = 1.05

PAID_TEMPERATURE_CAP = 1.3
PAID_REPETITION_CAP = 1.25
FREE_TEMPERATURE_CAP = 1.0
FREE_REPETITION_CAP = 1.2
TOP_P_CAP = 0.98

EMERGENCY_PARAMS = DecodingParams(
    temperature=0.85,
    top_p=0.92,
    repetition_penalty=1.05,
    presence_penalty=0.2,
    frequency_penalty=0.4,
)

FORMAT_REPROMPT_PARAMS = (
    DecodingParams(
        temperature=0.85,
        top_p=0.93,
        repetition_penalty=1.02,
        presence_penalty=0.3,
        frequency_penalty=0.3,
        stop=FREE_TIER_STOP_SEQUENCES,
        max_tokens=FREE_TIER_MAX_TOKENS,
    ),
    DecodingParams(
        temperature=0.8,
        top_p=0.92,
        repetition_penalty=1.03,
        presence_penalty=0.25,
        frequency_penalty=0.35,
        stop=FREE_TIER_STOP_SEQUENCES,
        max_tokens=FREE_TIER_MAX_TOKENS,
    ),
)


class DecodingProfile(BaseModel):
    phase: Phase = "sfw"
    paid: bool = False
    model: Optional[str] = None


class Generation(BaseModel):
    text: str
    attempts: int = 0
    emergency: bool = False
    format_reprompts: int = 0
    coerced: bool = False
    degraded: bool = False
    rejections: list[str] = []
    upstream_errors: int = 0


def profile_for_turn(signals: GuardSignals, settings: Optional[TurnSettings] = None, model: Optional[str] = None) -> DecodingProfile:
    settings = settings or TurnSettings()
    if not signals.effective_nsfw:
        phase = "sfw"
    elif is_early_phase(signals, settings.pacing_threshold):
        phase = "early"
    else:
        phase = "late"
    return DecodingProfile(phase=phase, paid=signals.paid, model=model)


def params_for_attempt(n: int, profile: DecodingProfile) -> DecodingParams:
    n = max(0, int(n))
    base_temp, base_top_p, presence, frequency = PHASE_BASES[profile.phase]
    base_rep = SFW_REPETITION_PENALTY if profile.phase == "sfw" else NSFW_REPETITION_PENALTY

    if profile.paid:
        temperature = min(PAID_TEMPERATURE_CAP, base_temp + 0.05 * n)
        top_p = min(TOP_P_CAP, base_top_p + 0.01 * n)
        repetition = min(PAID_REPETITION_CAP, base_rep + 0.05 * n)
        return DecodingParams(
            temperature=round(temperature, 4),
            top_p=round(top_p, 4),
            repetition_penalty=round(repetition, 4),
            presence_penalty=presence,
            frequency_penalty=frequency,
            model=profile.model,
        )

    # Free tier runs cooler and stops at paragraph or list boundaries.
    temperature = max(0.7, (base_temp + 0.04 * n) - 0.15)
    top_p = min(0.93, min(TOP_P_CAP, base_top_p + 0.01 * n) - 0.03)
    if n == 0:
        repetition = max(base_rep, 1.04)
    else:
        repetition = max(base_rep + 0.04 * n, 1.06)
    return DecodingParams(
        temperature=round(min(FREE_TEMPERATURE_CAP, temperature), 4),
        top_p=round(top_p, 4),
        repetition_penalty=round(min(FREE_REPETITION_CAP, repetition), 4),
        presence_penalty=presence,
        frequency_penalty=frequency,
        stop=list(FREE_TIER_STOP_SEQUENCES),
        max_tokens=FREE_TIER_MAX_TOKENS,
        model=profile.model,
    )


class RetryController:
    def __init__(
        self,
        client: CompletionClient,
        settings: Optional[TurnSettings] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.client = client
        self.settings = settings or TurnSettings()
        self._sleep = sleep

    async def generate(
        self,
        bundle: PromptBundle,
        vctx: ValidationContext,
        profile: DecodingProfile,
        session_id: Optional[str] = None,
    ) -> Generation:
        rejections: list[str] = []
        upstream_errors = 0
        last_error: Optional[UpstreamError] = None

        for n in range(self.settings.max_attempts):
            params = params_for_attempt(n, profile)
            try:
                candidate = await self.client.complete(bundle.messages, params)
            except UpstreamError as exc:
                upstream_errors += 1
                last_error = exc
                logger.warning("completion attempt failed session=%s attempt=%d error=%s", session_id, n + 1, exc.message)
                if n < self.settings.max_attempts - 1:
                    await self._sleep(self.settings.retry_backoff_base_sec * (n + 1))
                continue

            verdict = validate_candidate(candidate, vctx)
            if not verdict.accepted:
                rejections.append(verdict.reason or "rejected")
                self._log_rejection(session_id, n + 1, verdict)
                continue

            generation = Generation(
                text=candidate.strip(),
                attempts=n + 1,
                rejections=rejections,
                upstream_errors=upstream_errors,
            )
            if not profile.paid:
                generation = await self._enforce_free_format(bundle, vctx, generation, session_id)
            return generation

        generation = await self._emergency(bundle, vctx, rejections, upstream_errors, last_error, session_id)
        if not profile.paid:
            generation = await self._enforce_free_format(bundle, vctx.basic(), generation, session_id, allow_reprompt=False)
        return generation

    def _log_rejection(self, session_id: Optional[str], attempt: int, verdict: Verdict) -> None:
        logger.info("candidate rejected session=%s attempt=%d reason=%s %s", session_id, attempt, verdict.reason, verdict.detail)
        append_turn_telemetry(
            "candidate_rejected",
            {"session_id": session_id, "attempt": attempt, "reason": verdict.reason, "detail": verdict.detail},
        )

    async def _emergency(
        self,
        bundle: PromptBundle,
        vctx: ValidationContext,
        rejections: list[str],
        upstream_errors: int,
        last_error: Optional[UpstreamError],
        session_id: Optional[str],
    ) -> Generation:
        append_turn_telemetry(
            "emergency_retry",
            {"session_id": session_id, "rejections": rejections, "upstream_errors": upstream_errors},
        )
        try:
            candidate = await self.client.complete(bundle.messages, EMERGENCY_PARAMS)
        except UpstreamError as exc:
            logger.error("emergency completion failed session=%s error=%s", session_id, exc.message)
            raise
        verdict = validate_candidate(candidate, vctx.basic())
        if not verdict.accepted:
            logger.error("emergency completion unusable session=%s reason=%s", session_id, verdict.reason)
            detail = last_error.message if last_error else f"no acceptable reply ({verdict.reason})"
            raise UpstreamUnavailable(f"AI service could not produce a reply: {detail}")
        return Generation(
            text=candidate.strip(),
            attempts=self.settings.max_attempts,
            emergency=True,
            rejections=rejections,
            upstream_errors=upstream_errors,
        )

    async def _enforce_free_format(
        self,
        bundle: PromptBundle,
        vctx: ValidationContext,
        generation: Generation,
        session_id: Optional[str],
        allow_reprompt: bool = True,
    ) -> Generation:
        """Re-prompt for the free-tier shape. The accepted reply stands unless a re-prompt
        passes the same validation and fits the format; coercion works from that reply."""
        text = generation.text
        report = check_free_tier_format(text, self.settings)
        reprompts = 0
        budget = self.settings.max_format_reprompts if allow_reprompt else 0

        while not report.ok and reprompts < budget:
            level = reprompts
            reprompts += 1
            append_turn_telemetry(
                "format_reprompt",
                {"session_id": session_id, "level": level + 1, "violations": report.violations},
            )
            messages = bundle.with_directive(format_reprompt_directive(level, self.settings))
            params = FORMAT_REPROMPT_PARAMS[min(level, len(FORMAT_REPROMPT_PARAMS) - 1)]
            try:
                candidate = await self.client.complete(messages, params)
            except UpstreamError as exc:
                logger.warning("format re-prompt failed session=%s level=%d error=%s", session_id, level + 1, exc.message)
                break
            verdict = validate_candidate(candidate, vctx)
            if not verdict.accepted:
                self._log_rejection(session_id, self.settings.max_attempts + reprompts, verdict)
                continue
            candidate_report = check_free_tier_format(candidate.strip(), self.settings)
            if candidate_report.ok:
                text = candidate.strip()
                report = candidate_report

        coerced = False
        degraded = False
        if not report.ok:
            fixed = coerce_free_tier_format(text, self.settings)
            if fixed and validate_candidate(fixed, vctx).accepted:
                text = fixed
                coerced = True
            else:
                degraded = True
                logger.warning("free-tier format not met session=%s violations=%s", session_id, report.violations)
                append_turn_telemetry(
                    "format_degrade",
                    {"session_id": session_id, "violations": report.violations},
                )

        return generation.model_copy(
            update={
                "text": text,
                "format_reprompts": reprompts,
                "coerced": coerced,
                "degraded": degraded,
            }
        )
