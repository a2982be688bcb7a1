"""Quiz prompt construction and validation of the language model's answer.

The model is asked for a bare JSON array of multiple-choice questions.
Responses often arrive wrapped in markdown code fences, so those are
stripped before parsing. Anything that does not match the expected
shape raises `QuizFormatError` carrying the raw response.
"""

import json
import re
from typing import Dict, List

from ..errors import QuizFormatError

OPTIONS_PER_QUESTION = 4

QUIZ_PROMPT_TEMPLATE = """
Analyze this educational transcript and create an engaging quiz. Follow these rules carefully:

GUIDELINES:
1. CONTEXT:
- Focus on the main educational content, not casual conversation
- Difficulty: Progressive (basic -> advanced concepts)
- Style: Conceptual understanding > rote memorization

2. QUESTIONS:
- Generate 10-15 questions
- For each question:
  * Focus on 1 key concept
  * Phrase as application-based scenarios when possible
  * Include 1 distractor (plausible wrong answer)
  * Options should be mutually exclusive
  * Correct answer index (0-3) must be accurate

3. FORMAT:
- Return ONLY this JSON structure:
[
  {{
    "question": "Application-based question?",
    "options": ["Option1", "Option2", "Option3", "Option4"],
    "correctAnswer": 1,
    "explanation": "Concise rationale (1-2 sentences)",
    "concept": "Underlying topic",
    "difficulty": "easy/medium/hard"
  }}
]

4. QUALITY CHECKS:
- No duplicate questions
- No trivial/obvious questions
- Explanations should reference transcript content

TRANSCRIPT:
{transcript}
"""

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


def build_quiz_prompt(transcript: str) -> str:
    return QUIZ_PROMPT_TEMPLATE.format(transcript=transcript)


def clean_model_output(text: str) -> str:
    """Remove markdown code fences and line breaks around the JSON."""
    text = _FENCE_RE.sub("", text or "")
    return re.sub(r"[\r\n]+", "", text).strip()


def parse_quiz_questions(raw: str) -> List[Dict]:
    """Parse and validate the model output into a list of question dicts."""
    cleaned = clean_model_output(raw)
    if not cleaned.startswith("[") or not cleaned.endswith("]"):
        raise QuizFormatError("Invalid JSON format - expected array", raw)
    try:
        questions = json.loads(cleaned)
    except json.JSONDecodeError as e:
        raise QuizFormatError(f"Invalid JSON: {e}", raw)
    if not isinstance(questions, list) or not questions:
        raise QuizFormatError("Expected a non-empty array of questions", raw)
    for i, q in enumerate(questions):
        _validate_question(q, i, raw)
    return questions


def _validate_question(q, index: int, raw: str) -> None:
    if not isinstance(q, dict):
        raise QuizFormatError(f"Invalid question structure at index {index}", raw)
    if not q.get("question") or "options" not in q or q.get("correctAnswer") is None:
        raise QuizFormatError(f"Invalid question structure at index {index}", raw)
    options = q["options"]
    if not isinstance(options, list) or len(options) != OPTIONS_PER_QUESTION:
        raise QuizFormatError(f"Question {index} must have exactly {OPTIONS_PER_QUESTION} options", raw)
    answer = q["correctAnswer"]
    # bool is an int subclass; reject it explicitly
    if isinstance(answer, bool) or not isinstance(answer, int) or not 0 <= answer < OPTIONS_PER_QUESTION:
        raise QuizFormatError(f"Question {index} has an invalid correctAnswer index: {answer!r}", raw)
