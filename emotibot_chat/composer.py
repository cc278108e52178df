"""
Prompt composition for the EmotiBot Chat service.

Turns a user message and the active emotion sample into a deterministic
instruction payload for the text-generation service. Also builds the
stand-alone emotion interpretation request and parses its marked reply.
"""

import re

from .errors import MalformedResponse, ValidationError
from .models import EmotionInterpretation, EmotionSample, PromptPayload

SYSTEM_PERSONA = (
    "You are an empathetic therapist focused on providing supportive, "
    "understanding responses while maintaining a consistent therapeutic presence."
)

DIRECTIVES = (
    "Acknowledge their current emotion and intensity level.",
    "Ask a relevant follow-up question to encourage deeper conversation.",
    "Offer a practical coping strategy if appropriate.",
    "If the user seems in distress, encourage them to reach out to a professional.",
    "Keep your response concise (2-3 sentences) and focused.",
    "Stay in the role of a supportive therapist and never reveal how your replies are produced.",
)

INTERPRETER_PERSONA = (
    "You are an empathetic AI therapist who provides supportive, personalized "
    "responses to help people understand and manage their emotions."
)

INTERPRETATION_PATTERN = re.compile(
    r"MESSAGE:\s*(?P<message>.*?)\s*"
    r"EXPLANATION:\s*(?P<explanation>.*?)\s*"
    r"SUGGESTION:\s*(?P<suggestion>.*?)\s*\Z",
    re.DOTALL,
)


def intensity_percent(intensity: float) -> int:
    """Intensity as a whole percentage. Uses round(), so halves go to even."""
    return round(intensity * 100)


def compose(message: str, sample: EmotionSample | None) -> PromptPayload:
    """
    Build the payload for one completion request.

    Args:
        message: The user's message, used verbatim
        sample: The emotion sample active when the message was sent

    Returns:
        A PromptPayload

    Raises:
        ValidationError: If the message is blank, the sample has no label,
            or the intensity is outside [0, 1]
    """
    if not isinstance(message, str) or not message.strip():
        raise ValidationError("Message must not be empty")
    _check_sample(sample)

    return PromptPayload(
        user_message=message,
        emotion_label=sample.label,
        intensity_percent=intensity_percent(sample.intensity),
    )


def render(payload: PromptPayload) -> str:
    """Render the user prompt text for a payload."""
    steps = "\n".join(f"{i}. {d}" for i, d in enumerate(DIRECTIVES, start=1))
    return (
        f"The user is currently feeling {payload.emotion_label} with an intensity "
        f"of {payload.intensity_percent}%.\n"
        f'They have sent you the following message: "{payload.user_message}"\n\n'
        f"Your response should:\n{steps}\n\n"
        "Format your response in a natural, conversational way."
    )


def to_messages(payload: PromptPayload) -> list[dict[str, str]]:
    """Role-tagged message list for a chat completion request."""
    return [
        {"role": "system", "content": SYSTEM_PERSONA},
        {"role": "user", "content": render(payload)},
    ]


# MARK: - Emotion interpretation


def render_interpretation(sample: EmotionSample) -> str:
    """Render the request for a structured reading of one sample."""
    _check_sample(sample)
    return (
        f"As a supportive AI therapist, respond to someone feeling {sample.label} "
        f"with an intensity of {intensity_percent(sample.intensity)}%.\n"
        "Please provide:\n"
        "1. A brief, empathetic response (1-2 sentences)\n"
        "2. A short explanation of what this emotion might mean (2-3 sentences)\n"
        "3. A specific, actionable suggestion for managing this emotion (1-2 sentences)\n\n"
        "Format your response exactly like this:\n"
        "MESSAGE: [your empathetic response]\n"
        "EXPLANATION: [your explanation]\n"
        "SUGGESTION: [your suggestion]"
    )


def interpretation_messages(sample: EmotionSample) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": INTERPRETER_PERSONA},
        {"role": "user", "content": render_interpretation(sample)},
    ]


def parse_interpretation(text: str) -> EmotionInterpretation:
    """
    Split a generated reading into its three marked sections.

    Raises:
        MalformedResponse: If a marker is missing, out of order, or a
            section is empty
    """
    match = INTERPRETATION_PATTERN.search(text)
    if match is None or not all(match.groupdict().values()):
        raise MalformedResponse(
            "Failed to parse AI response", details={"response": text[:500]}
        )
    return EmotionInterpretation(**match.groupdict())


def _check_sample(sample: EmotionSample | None) -> None:
    if sample is None or not getattr(sample, "label", None):
        raise ValidationError("Emotion label is required")

    intensity = sample.intensity
    if isinstance(intensity, bool) or not isinstance(intensity, (int, float)):
        raise ValidationError("Intensity must be a number")
    if not 0.0 <= intensity <= 1.0:
        raise ValidationError(
            "Intensity must be between 0 and 1", details={"intensity": intensity}
        )
