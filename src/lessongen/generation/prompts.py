"""
Prompt construction and content defaults.

Prompts are deterministic functions of their inputs so a retried work
unit always asks the same question.
"""

from lessongen.generation.models import GenerationResult, QuizItem, Subject, WorkUnit

BATCH_SYSTEM_PROMPT = (
    "You are an expert educational content creator. Generate well-structured, "
    "age-appropriate lesson content in valid JSON format."
)

CUSTOM_SYSTEM_PROMPT = (
    "You are a creative educator helping children learn about topics they're "
    "curious about. Always return valid JSON."
)

MODERATION_SYSTEM_PROMPT = "You are a content safety moderator for children. Return only valid JSON."

# Custom lessons use flat values regardless of grade
CUSTOM_ESTIMATED_MINUTES = 15
CUSTOM_POINT_VALUE = 50


def grade_suffix(grade: int) -> str:
    if grade == 0:
        return ""
    if grade == 1:
        return "st"
    if grade == 2:
        return "nd"
    if grade == 3:
        return "rd"
    return "th"


def grade_label(grade: int) -> str:
    """'Kindergarten', '1st grade', '2nd grade', ..."""
    if grade == 0:
        return "Kindergarten"
    return f"{grade}{grade_suffix(grade)} grade"


def age_range(grade: int) -> str:
    return f"{5 + grade}-{6 + grade}"


def estimated_minutes(grade: int) -> int:
    if grade <= 2:
        return 15
    if grade <= 5:
        return 20
    if grade <= 8:
        return 25
    return 30


def point_value(grade: int, subject: Subject) -> int:
    base = 50 + grade * 5
    if subject in (Subject.MATH, Subject.SCIENCE):
        return round(base * 1.2)
    return base


def build_lesson_prompt(unit: WorkUnit) -> str:
    """User prompt for one catalog work unit."""
    ages = age_range(unit.grade_level)
    return f"""Create an engaging educational lesson for {grade_label(unit.grade_level)} students (ages {ages}) about {unit.subject.value}.
This is lesson {unit.slot_index} in the {unit.subject.value} sequence for this grade; pick a topic that suits that position.

IMPORTANT: Return ONLY valid JSON with this exact structure:
{{
  "title": "Engaging lesson title (max 80 characters)",
  "description": "Brief description for students (max 160 characters)",
  "content_markdown": "# Lesson Title\\n\\nFull markdown lesson content with sections, examples, and activities",
  "quiz_questions": [
    {{
      "question": "Question text",
      "options": ["Option A", "Option B", "Option C", "Option D"],
      "correct_answer": 0,
      "explanation": "Why this is correct"
    }}
  ]
}}

Requirements:
- Age-appropriate vocabulary and concepts for {ages} year olds
- Include 3-5 quiz questions
- Markdown content should be 300-800 words
- Make it engaging and interactive
- Include real-world examples
- Use emoji sparingly for younger grades
- Must be valid, parseable JSON"""


def build_custom_prompt(topic: str, subject: str, grade: int) -> str:
    """User prompt for a child-requested lesson."""
    return f"""Create an engaging educational lesson about "{topic}" for {grade_label(grade)} in the subject {subject}.

Make it fun, interactive, and age-appropriate!

Return ONLY valid JSON with this structure:
{{
  "title": "Exciting lesson title (max 60 chars)",
  "description": "Clear 2-sentence description",
  "content_markdown": "Full markdown lesson with ## headings, bullet points, examples. Include: Learning Objectives, Fun Activities, and Reflection Questions. 400-600 words.",
  "quiz_questions": [
    {{
      "question": "Age-appropriate question",
      "options": ["Option A", "Option B", "Option C"],
      "correct": "Option A",
      "explanation": "Encouraging explanation"
    }}
  ]
}}

Requirements:
- 3 fun quiz questions with 3 options each
- Use encouraging language
- Include interactive elements: "Try this!", "Draw a picture of...", "Share with a friend..."
- Connect to real-world examples for {age_range(grade)} year olds

Return ONLY the JSON, no extra text."""


def build_moderation_prompt(topic: str, subject: str, grade: int) -> str:
    return f"""Analyze this lesson request for appropriateness for children:
Topic: "{topic}"
Subject: {subject}
Grade: {grade}

Check for: personal information requests, inappropriate content, unsafe activities, external links.
Return JSON: {{ "appropriate": true/false, "reason": "explanation if flagged" }}"""


def default_quiz(about: str) -> list[QuizItem]:
    """Generic reflection questions used when generated content is unusable."""
    return [
        QuizItem(
            question_text=f"What did you learn about {about} in this lesson?",
            options=["New concepts", "Problem-solving skills", "Creative thinking", "All of the above"],
            correct=3,
            explanation="Great lessons teach us multiple skills!",
        ),
        QuizItem(
            question_text=f"How can you use what you learned about {about}?",
            options=["In everyday life", "To help others", "To learn more"],
            correct=0,
            explanation="Wonderful thinking about real-world applications!",
        ),
    ]


def _fallback_body(title: str, raw_text: str) -> str:
    body = raw_text.strip()
    if body:
        return body
    return f"# {title}\n\nThis lesson is being prepared. Take a moment to think about what you already know!"


def fallback_lesson(unit: WorkUnit, raw_text: str) -> GenerationResult:
    """Minimal valid lesson for a catalog unit whose reply could not be parsed."""
    title = f"{unit.subject.value} - {grade_label(unit.grade_level)} Lesson {unit.slot_index}"
    return GenerationResult(
        title=title,
        description=raw_text.strip()[:200] or f"Learn about {unit.subject.value.lower()} concepts",
        body_markdown=_fallback_body(title, raw_text),
        assessment_items=default_quiz(unit.subject.value.lower()),
        estimated_minutes=estimated_minutes(unit.grade_level),
        point_value=point_value(unit.grade_level, unit.subject),
    )


def fallback_custom_lesson(topic: str, subject: str, raw_text: str) -> GenerationResult:
    """Minimal valid lesson for a custom request whose reply could not be parsed."""
    title = f"{topic} - A Learning Adventure"
    return GenerationResult(
        title=title[:255],
        description=f"Learn about {topic} in this exciting {subject} lesson!",
        body_markdown=_fallback_body(title, raw_text[:1000]),
        assessment_items=default_quiz(topic),
        estimated_minutes=CUSTOM_ESTIMATED_MINUTES,
        point_value=CUSTOM_POINT_VALUE,
    )
