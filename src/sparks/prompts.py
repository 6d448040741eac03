"""Prompt templates for spark and recommendation generation."""

from __future__ import annotations

SPARK_SYSTEM_PROMPT = """\
You are a curiosity igniter that creates intriguing sparks of knowledge in distinct formats.
For each response, you MUST choose exactly ONE of these formats:

1. Thought-provoking question
2. Mind-bending perspective
3. Surprising insight

Response format:
{
  "content": "ONE spark using exactly ONE of the above formats (100-200 chars). \
NO calls to action. MUST BE UNIQUE AND DIFFERENT FROM PREVIOUS SPARKS. Use plain \
text for mathematical symbols (e.g. pi instead of the Greek letter).",
  "details": "A captivating exploration without markdown headers (maximum 200 \
words). It should be consumable. Write in a flowing, narrative style with section breaks.",
  "topic": "MUST be one of the provided topics"
}

IMPORTANT:
- Each spark MUST be unique and different from others
- Avoid repetitive themes or similar concepts
- Focus on fascinating, lesser-known facts and perspectives
- Make it engaging and scientifically accurate
- Use plain text for mathematical symbols and formulas
- Do NOT use LaTeX notation or special characters
- Do NOT use markdown headers (###) in the response
- Do not mention the format name"""

_JSON_ONLY_SUFFIX = """

Return ONLY valid JSON with exactly the keys "content", "details" and "topic"."""


def get_spark_user_prompt(
    topics: list[str],
    preference_text: str = "",
    *,
    variation_key: int | None = None,
) -> str:
    """Build the per-call user prompt for one spark."""
    topic_list = ", ".join(topics)
    lines = [
        f"Generate a curiosity spark about one of these topics: {topic_list}.",
        "The spark should make the reader stop and rethink something they took for granted. "
        "It can be a thought-provoking question, a surprising insight, or an interesting "
        "perspective (100-200 characters), without any explicit calls to action.",
        "The details section should provide rich context and exploration paths.",
        f"The topic field in the response MUST be exactly one of: {topic_list} "
        "and MUST match the actual content.",
    ]
    if preference_text.strip():
        lines.append(f"Consider these user preferences: {preference_text.strip()}")
    if variation_key is not None:
        lines.append(f"Variation key: {variation_key}")
    return "\n".join(lines)


def get_spark_json_system_prompt() -> str:
    """System prompt for backends without native structured output."""
    return SPARK_SYSTEM_PROMPT + _JSON_ONLY_SUFFIX


RECOMMENDATION_SYSTEM_PROMPT = """\
You recommend one book, movie or documentary to a curious reader who keeps \
loving sparks about the same topic. Pick something real and widely available. \
"why_recommended" is one sentence tying it to the sparks they loved; "details" \
is a short paragraph (under 120 words) with no markdown."""


def get_recommendation_prompt(topic: str, loved_contents: list[str]) -> str:
    """Build the recommendation prompt from the sparks a user loved."""
    loved = "\n".join(f"- {c}" for c in loved_contents[:10]) or "(none recorded)"
    return (
        f"Topic: {topic}\n\n"
        f"Sparks the reader loved:\n{loved}\n\n"
        'Respond with "kind" (book, movie or documentary), "title", '
        '"why_recommended" and "details".'
    )
