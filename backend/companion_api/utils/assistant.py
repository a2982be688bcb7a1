"""Voice assistant configuration handed to the voice-call client.

The browser starts the call with this payload; `metadata.sessionId`
travels with the call so the server can later find the call id for a
session without relying on the client to report it.
"""

from typing import Optional

DEFAULT_VOICE_ID = "oWAxZDx7w5VEj9dCyTzz"
# ElevenLabs voice ids by voice and style
VOICES = {
    "male": {"casual": "pNInz6obpgDQGcFmaJgB", "formal": "VR6AewLTigWG4xSOukaG"},
    "female": {"casual": "oWAxZDx7w5VEj9dCyTzz", "formal": "21m00Tcm4TlvDq8ikWAM"},
}
PDF_EXCERPT_CHARS = 6000

SYSTEM_PROMPT = """You are a highly knowledgable tutor teaching a real-time voice session with a student. Your goal is to teach the student about the topic and subject.

Tutor Guidelines:
Stick to the given topic - {{topic}} and subject - {{subject}} and teach the student about it.
Keep the conversation flowing smoothly while maintaining control.
From time to time make sure that the student is following you and understands you.
Break down the topic into smaller parts and teach the student one part at a time.
Keep your style of conversation {{style}}.
Keep your responses short, like in a real voice conversation.
Do not include any special characters in your responses - this is a voice conversation."""

PDF_PROMPT = """

The student uploaded a document named "{name}". Base the lesson on it and quote it where useful.
Document content:
{content}"""


def voice_id_for(voice: str, style: str) -> str:
    return VOICES.get(voice, {}).get(style, DEFAULT_VOICE_ID)


def build_assistant_config(companion, session_id: Optional[int] = None) -> dict:
    """Assistant definition plus per-call overrides for `companion`."""
    prompt = SYSTEM_PROMPT
    if companion.has_pdf and companion.pdf_content:
        prompt += PDF_PROMPT.format(
            name=companion.pdf_name or "document",
            content=companion.pdf_content[:PDF_EXCERPT_CHARS],
        )
    assistant = {
        "name": "Companion",
        "firstMessage": "Hello, let's start the session. Today we'll be talking about {{topic}}.",
        "maxDurationSeconds": companion.duration * 60,
        "transcriber": {"provider": "deepgram", "model": "nova-3", "language": companion.language or "en"},
        "voice": {
            "provider": "11labs",
            "voiceId": voice_id_for(companion.voice, companion.style),
            "stability": 0.4,
            "similarityBoost": 0.8,
            "speed": 0.9,
            "style": 0.5,
            "useSpeakerBoost": True,
        },
        "model": {
            "provider": "openai",
            "model": "gpt-4",
            "messages": [{"role": "system", "content": prompt}],
        },
    }
    overrides = {
        "variableValues": {"subject": companion.subject, "topic": companion.topic, "style": companion.style},
        "clientMessages": ["transcript"],
        "serverMessages": [],
    }
    if session_id is not None:
        overrides["metadata"] = {"sessionId": str(session_id), "companionId": str(companion.id)}
    return {"assistant": assistant, "assistantOverrides": overrides}
