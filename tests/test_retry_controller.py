from __future__ import annotations

import asyncio
import json

import pytest

from conftest import FREE_REPLY, StubCompletionClient, no_sleep
from errors import UpstreamTimeout, UpstreamUnavailable
from format_engine import FREE_TIER_MAX_TOKENS
from prompt_composer import PromptBundle
from response_validator import ValidationContext, validate_candidate
from retry_controller import (
    EMERGENCY_PARAMS,
    FORMAT_REPROMPT_PARAMS,
    DecodingProfile,
    RetryController,
    params_for_attempt,
)

PAID = DecodingProfile(phase="late", paid=True)
FREE = DecodingProfile(phase="sfw", paid=False)

MORNING_LINES = "\n".join([
    "I really love quiet mornings with coffee and a good book nearby.",
    "The light through the window makes everything feel calm and warm again.",
    "Sometimes I hum a little tune while the kettle starts to whistle.",
    "Then I curl up on the sofa and read for an hour.",
    "Afterwards the day feels much easier to handle, whatever it brings me.",
    "What does your ideal morning look like when nobody needs anything from you?",
])


def _bundle() -> PromptBundle:
    return PromptBundle(
        messages=[
            {"role": "system", "content": "You are Luna."},
            {"role": "user", "content": "hi"},
        ]
    )


def _run(controller: RetryController, vctx: ValidationContext, profile: DecodingProfile):
    return asyncio.run(controller.generate(_bundle(), vctx, profile, session_id="sess-1"))


def _events(path) -> list[str]:
    if not path.exists():
        return []
    return [json.loads(line)["event"] for line in path.read_text(encoding="utf-8").splitlines() if line.strip()]


def test_params_are_deterministic_per_attempt() -> None:
    assert params_for_attempt(1, PAID) == params_for_attempt(1, PAID)
    assert params_for_attempt(0, PAID) != params_for_attempt(1, PAID)


def test_paid_params_escalate_and_cap() -> None:
    early = params_for_attempt(0, DecodingProfile(phase="early", paid=True))
    assert (early.temperature, early.top_p, early.repetition_penalty) == (0.85, 0.92, 1.03)
    assert (early.presence_penalty, early.frequency_penalty) == (0.4, 0.6)
    assert early.stop is None and early.max_tokens is None

    late = params_for_attempt(1, PAID)
    assert (late.temperature, late.top_p, late.repetition_penalty) == (1.15, 0.98, 1.08)

    capped = params_for_attempt(50, PAID)
    assert capped.temperature == 1.3
    assert capped.repetition_penalty == 1.25


def test_free_params_run_cooler_with_stops() -> None:
    first = params_for_attempt(0, FREE)
    assert (first.temperature, first.top_p, first.repetition_penalty) == (0.7, 0.89, 1.05)
    assert first.max_tokens == FREE_TIER_MAX_TOKENS
    assert "\n\n" in first.stop

    third = params_for_attempt(2, FREE)
    assert (third.temperature, third.top_p, third.repetition_penalty) == (0.73, 0.91, 1.13)

    capped = params_for_attempt(50, FREE)
    assert capped.temperature == 1.0
    assert capped.repetition_penalty == 1.2


def test_first_acceptable_candidate_wins(settings) -> None:
    client = StubCompletionClient(["My favorite movie is Amelie. It always makes me smile."])
    vctx = ValidationContext(topic_mode=True, keywords=["favorite", "movie"])
    generation = _run(RetryController(client, settings, sleep=no_sleep), vctx, PAID)
    assert generation.attempts == 1
    assert generation.rejections == []
    assert not generation.emergency
    assert len(client.calls) == 1


def test_rejected_candidates_are_retried_with_new_params(settings, telemetry_log) -> None:
    client = StubCompletionClient(["Hmm.", "Same old line.", "My favorite movie is Amelie. It is lovely."])
    vctx = ValidationContext(topic_mode=True, keywords=["favorite", "movie"], prior_assistant="Same old line.")
    generation = _run(RetryController(client, settings, sleep=no_sleep), vctx, PAID)

    assert generation.text == "My favorite movie is Amelie. It is lovely."
    assert generation.attempts == 3
    assert generation.rejections == ["off_topic", "repeat"]
    assert [c["params"] for c in client.calls] == [params_for_attempt(n, PAID) for n in range(3)]
    assert _events(telemetry_log).count("candidate_rejected") == 2


def test_upstream_errors_back_off_between_attempts(settings) -> None:
    slept = []

    async def record_sleep(seconds: float) -> None:
        slept.append(seconds)

    settings = settings.model_copy(update={"retry_backoff_base_sec": 0.5})
    client = StubCompletionClient([UpstreamTimeout("slow"), "Fine, thanks for asking."])
    generation = _run(RetryController(client, settings, sleep=record_sleep), ValidationContext(), PAID)
    assert generation.text == "Fine, thanks for asking."
    assert generation.upstream_errors == 1
    assert slept == [0.5]


def test_exhaustion_falls_back_to_emergency_call(settings, telemetry_log) -> None:
    client = StubCompletionClient(["", "", "", "Sorry, I drifted off there. I'm here now."])
    generation = _run(RetryController(client, settings, sleep=no_sleep), ValidationContext(depth_mode=True), PAID)

    assert generation.emergency
    assert generation.text == "Sorry, I drifted off there. I'm here now."
    assert generation.rejections == ["empty", "empty", "empty"]
    assert client.calls[-1]["params"] == EMERGENCY_PARAMS
    assert "emergency_retry" in _events(telemetry_log)


def test_unusable_emergency_reply_raises(settings) -> None:
    client = StubCompletionClient(["", "", "", ""])
    with pytest.raises(UpstreamUnavailable):
        _run(RetryController(client, settings, sleep=no_sleep), ValidationContext(), PAID)


def test_emergency_upstream_failure_propagates(settings) -> None:
    client = StubCompletionClient([UpstreamTimeout("slow")] * 4)
    with pytest.raises(UpstreamTimeout):
        _run(RetryController(client, settings, sleep=no_sleep), ValidationContext(), PAID)
    assert len(client.calls) == 4


def test_free_tier_reprompts_until_format_fits(settings, telemetry_log) -> None:
    client = StubCompletionClient(["Here are some ideas:\n- walk\n- read", FREE_REPLY])
    generation = _run(RetryController(client, settings, sleep=no_sleep), ValidationContext(), FREE)

    assert generation.text == FREE_REPLY
    assert generation.format_reprompts == 1
    assert not generation.coerced and not generation.degraded
    reprompt_messages = client.calls[1]["messages"]
    assert reprompt_messages[1]["content"].startswith("STRICT LENGTH")
    assert client.calls[1]["params"] == FORMAT_REPROMPT_PARAMS[0]
    assert "format_reprompt" in _events(telemetry_log)


def test_free_tier_coerces_after_reprompts_fail(settings) -> None:
    client = StubCompletionClient([MORNING_LINES, MORNING_LINES, MORNING_LINES])
    generation = _run(RetryController(client, settings, sleep=no_sleep), ValidationContext(), FREE)

    assert generation.format_reprompts == 2
    assert generation.coerced
    assert "\n" not in generation.text
    assert generation.text.endswith("read for an hour.")
    assert client.calls[2]["messages"][1]["content"].startswith("FINAL ATTEMPT")


def test_free_tier_degrades_when_nothing_fits(settings, telemetry_log) -> None:
    client = StubCompletionClient(["Sure.", "Okay.", "Fine."])
    generation = _run(RetryController(client, settings, sleep=no_sleep), ValidationContext(), FREE)

    assert generation.degraded
    assert generation.text == "Sure."
    assert "format_degrade" in _events(telemetry_log)


def test_free_tier_reprompt_cannot_replace_an_on_topic_reply(settings, telemetry_log) -> None:
    accepted = "My favorite movie is Amelie. It always makes me smile a lot."
    client = StubCompletionClient([accepted, "Anyway, let's talk about cars", "Anyway, let's talk about cars"])
    vctx = ValidationContext(topic_mode=True, keywords=["movie", "favorite"])
    generation = _run(RetryController(client, settings, sleep=no_sleep), vctx, FREE)

    assert generation.text == accepted
    assert generation.format_reprompts == 2
    assert generation.degraded
    assert validate_candidate(generation.text, vctx).accepted
    assert _events(telemetry_log).count("candidate_rejected") == 2


def test_free_tier_reprompt_that_still_misses_format_is_discarded(settings) -> None:
    client = StubCompletionClient(["Sure, I can do that.", "Okay then.", "Fine by me."])
    generation = _run(RetryController(client, settings, sleep=no_sleep), ValidationContext(), FREE)

    assert generation.text == "Sure, I can do that."
    assert generation.format_reprompts == 2
