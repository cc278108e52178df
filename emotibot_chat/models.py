"""
Shared data models for the EmotiBot Chat service.

This module defines the core domain models used across multiple layers
of the application (sampling, conversation, API, CLI).
"""

import time
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from .errors import ValidationError

Role = Literal["user", "assistant"]


class EmotionVocabulary(BaseModel):
    """A closed set of emotion labels used by one deployment.

    Label order is significant: it is the stable enumeration order used to
    break ties when ranking labels.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    labels: tuple[str, ...]
    neutral: str

    def normalize(self, label: str) -> str:
        """Return the canonical form of ``label`` or raise ValidationError."""
        value = label.strip().lower() if isinstance(label, str) else ""
        if not value:
            raise ValidationError("Emotion label is required")
        if value not in self.labels:
            raise ValidationError(
                f"Unknown emotion '{label}'",
                details={"allowed": list(self.labels)},
            )
        return value


BASIC = EmotionVocabulary(
    name="basic", labels=("happy", "sad", "neutral", "anxious"), neutral="neutral"
)
EEG = EmotionVocabulary(
    name="eeg", labels=("calm", "anxious", "stressed", "focused"), neutral="calm"
)

VOCABULARIES = {vocab.name: vocab for vocab in (BASIC, EEG)}


def get_vocabulary(name: str) -> EmotionVocabulary:
    try:
        return VOCABULARIES[name]
    except KeyError:
        raise ValueError(f"Unknown emotion vocabulary: {name}") from None


class EmotionSample(BaseModel):
    """One observation of affective state."""

    model_config = ConfigDict(frozen=True)

    label: str = Field(..., min_length=1, description="Emotion label")
    intensity: float = Field(..., ge=0.0, le=1.0, description="Intensity in [0, 1]")
    observed_at: float = Field(
        default_factory=time.time, description="Unix timestamp of the observation"
    )


class ConversationTurn(BaseModel):
    """One message exchanged in a conversation."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str
    timestamp: float = Field(default_factory=time.time)
    emotion_context: EmotionSample | None = None


class MoodEntry(BaseModel):
    """An emotion sample recorded against a user."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    label: str
    intensity: float = Field(..., ge=0.0, le=1.0)
    created_at: float = Field(default_factory=time.time)


class ReviewerNote(BaseModel):
    """Free-text annotation a reviewer (e.g. a therapist) keeps about a user."""

    model_config = ConfigDict(frozen=True)

    reviewer_id: str
    subject_id: str
    content: str
    created_at: float = Field(default_factory=time.time)


class PromptPayload(BaseModel):
    """Input for a single completion request."""

    model_config = ConfigDict(frozen=True)

    user_message: str
    emotion_label: str
    intensity_percent: int = Field(..., ge=0, le=100)


class EmotionInterpretation(BaseModel):
    """A structured reading of one emotion sample."""

    model_config = ConfigDict(frozen=True)

    message: str = Field(..., description="A brief empathetic response")
    explanation: str = Field(..., description="What the emotion might mean")
    suggestion: str = Field(..., description="One way to manage the emotion")
