import json
import logging
import os
import random
import re
import time
from typing import Callable, List, Optional

import httpx
from pydantic import ValidationError

from livequiz.generation.schemas import (
    Difficulty,
    GeneratedOption,
    GeneratedQuestion,
    QuizGenerationResult,
)

logger = logging.getLogger(__name__)

GENERATION_API_URL = os.getenv(
    "GENERATION_API_URL", "https://integrate.api.nvidia.com/v1/chat/completions"
)
GENERATION_API_KEY = os.getenv("GENERATION_API_KEY", "")
GENERATION_MODEL = os.getenv("GENERATION_MODEL", "meta/llama-3.1-8b-instruct")
GENERATION_COOLDOWN_SECONDS = float(os.getenv("GENERATION_COOLDOWN_SECONDS", "300"))
GENERATION_TIMEOUT = float(os.getenv("GENERATION_TIMEOUT", "55"))

MAX_TEXT_LENGTH = 15000
MIN_TEXT_LENGTH = 100

SYSTEM_PROMPT = """You are an expert quiz creator. Generate engaging, educational multiple-choice quiz questions.
Always respond with a valid JSON array of questions. Each question must have exactly 4 options with one correct answer.

Format your response as a JSON array:
[
  {
    "question": "Question text here?",
    "options": [
      {"text": "Option A", "is_correct": false},
      {"text": "Option B", "is_correct": true},
      {"text": "Option C", "is_correct": false},
      {"text": "Option D", "is_correct": false}
    ],
    "explanation": "Brief explanation of why the correct answer is correct."
  }
]"""

TOPIC_INSTRUCTIONS = {
    Difficulty.EASY: "Create beginner-friendly questions with clear, straightforward answers. Avoid trick questions.",
    Difficulty.MEDIUM: "Create moderately challenging questions that test understanding and application of concepts.",
    Difficulty.HARD: "Create advanced questions that require deep knowledge and critical thinking. Include some nuanced options.",
    Difficulty.MIXED: "Create a mix of easy, medium, and hard questions to test various levels of understanding.",
}

TEXT_INSTRUCTIONS = {
    Difficulty.EASY: "Create straightforward questions based directly on facts in the text.",
    Difficulty.MEDIUM: "Create questions that require understanding and connecting concepts from the text.",
    Difficulty.HARD: "Create challenging questions that require deep comprehension and inference.",
    Difficulty.MIXED: "Create a mix of easy, medium, and hard questions.",
}

PLACEHOLDER_TEMPLATES = [
    "What is the primary purpose of {topic}?",
    "Which of the following best describes {topic}?",
    "What is a key characteristic of {topic}?",
    "How does {topic} typically work?",
    "What is an important aspect of {topic}?",
    "Which statement about {topic} is correct?",
    "What role does {topic} play in its field?",
    "What is commonly associated with {topic}?",
    "How is {topic} typically used?",
    "What benefit does {topic} provide?",
]


class GenerationError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class GenerationRateLimitError(GenerationError):
    pass


class GenerationCooldownError(GenerationError):
    pass


class GenerationNotConfiguredError(GenerationError):
    pass


class GenerationClient:
    """
    Client for the chat-completions endpoint of the generation service.
    A 429 opens a cooldown window during which calls fail without a request.
    """

    def __init__(
        self,
        api_url: str = GENERATION_API_URL,
        api_key: str = GENERATION_API_KEY,
        model: str = GENERATION_MODEL,
        cooldown_seconds: float = GENERATION_COOLDOWN_SECONDS,
        timeout: float = GENERATION_TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self.cooldown_seconds = cooldown_seconds
        self.timeout = timeout
        self.transport = transport
        self.clock = clock
        self.cooldown_until = 0.0

    @property
    def is_configured(self) -> bool:
        return bool(self.api_url and self.api_key)

    @property
    def in_cooldown(self) -> bool:
        return self.clock() < self.cooldown_until

    def get_request_body(self, system_prompt: str, prompt: str) -> dict:
        return {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            ],
            "max_tokens": 4000,
            "temperature": 0.7,
            "top_p": 0.9,
            "stream": False,
        }

    async def complete(self, system_prompt: str, prompt: str) -> str:
        if not self.is_configured:
            raise GenerationNotConfiguredError("Generation API key is not configured.")

        if self.in_cooldown:
            raise GenerationCooldownError(
                "Generation service temporarily unavailable due to recent rate limit. Cooling down."
            )

        try:
            async with httpx.AsyncClient(
                transport=self.transport, timeout=self.timeout
            ) as client:
                response = await client.post(
                    self.api_url,
                    json=self.get_request_body(system_prompt, prompt),
                    headers={
                        "Authorization": f"Bearer {self.api_key}",
                        "Accept": "application/json",
                    },
                )
        except httpx.TimeoutException as e:
            logger.error(f"Generation request timed out: {e}")
            raise GenerationError("Request to the generation service timed out.")
        except httpx.HTTPError as e:
            logger.error(f"Generation request failed: {e}")
            raise GenerationError(f"Generation service unreachable: {e}")

        if response.status_code == 429:
            self.cooldown_until = self.clock() + self.cooldown_seconds
            logger.warning(
                f"Generation service rate limited, backing off for {self.cooldown_seconds}s"
            )
            raise GenerationRateLimitError(
                "Generation API rate limit exceeded (429). Please try again later.",
                status_code=429,
            )

        if not response.is_success:
            message = self._get_error_message(response)
            logger.error(f"Generation API error {response.status_code}: {message}")
            raise GenerationError(message, status_code=response.status_code)

        try:
            data = response.json()
            return data["choices"][0]["message"]["content"] or ""
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error(f"Unexpected generation response: {e}")
            raise GenerationError("Unexpected response from the generation service.")

    def _get_error_message(self, response: httpx.Response) -> str:
        try:
            return response.json()["error"]["message"]
        except (ValueError, KeyError, TypeError):
            return f"Generation API error: {response.status_code}"


def parse_questions_from_response(
    content: str, difficulty: Difficulty
) -> List[GeneratedQuestion]:
    """
    Extracts the first JSON array from a model reply. Options may be objects
    or plain strings with the correct one given by text or index.
    Questions without text, with fewer than 2 options or no correct option are dropped.
    """
    match = re.search(r"\[[\s\S]*\]", content or "")
    if not match:
        logger.error("No JSON array found in generation response")
        return []

    try:
        parsed = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        logger.error(f"Error parsing questions: {e}")
        return []

    if not isinstance(parsed, list):
        return []

    def is_index(value, idx: int) -> bool:
        return isinstance(value, int) and not isinstance(value, bool) and value == idx

    questions = []
    for item in parsed:
        if not isinstance(item, dict):
            continue
        options = []
        for idx, option in enumerate(item.get("options") or []):
            if isinstance(option, str):
                is_correct = (
                    item.get("correct_answer") == option
                    or is_index(item.get("correctAnswer"), idx)
                    or is_index(item.get("correct"), idx)
                )
                options.append(GeneratedOption(option_text=option, is_correct=is_correct))
            elif isinstance(option, dict):
                options.append(
                    GeneratedOption(
                        option_text=str(option.get("text") or option.get("option_text") or ""),
                        is_correct=bool(
                            option.get("is_correct") or option.get("isCorrect")
                        ),
                    )
                )

        try:
            question = GeneratedQuestion(
                question_text=str(item.get("question") or item.get("question_text") or ""),
                explanation=str(item.get("explanation") or ""),
                options=options,
                time_limit=item.get("time_limit") or difficulty.time_limit,
            )
        except ValidationError as e:
            logger.warning(f"Skipping malformed generated question: {e.error_count()} errors")
            continue
        if (
            question.question_text
            and len(question.options) >= 2
            and any(o.is_correct for o in question.options)
        ):
            questions.append(question)
    return questions


def get_text_title(text: str) -> str:
    title = " ".join(text.split()[:8])
    return title[:40] + "..." if len(title) > 40 else title


def generate_placeholder_quiz(
    topic: str, count: int, difficulty: Difficulty
) -> QuizGenerationResult:
    questions = []
    for template in PLACEHOLDER_TEMPLATES[:count]:
        options = [
            GeneratedOption(option_text=f"Correct answer related to {topic}", is_correct=True),
            GeneratedOption(option_text="Incorrect option A"),
            GeneratedOption(option_text="Incorrect option B"),
            GeneratedOption(option_text="Incorrect option C"),
        ]
        random.shuffle(options)
        questions.append(
            GeneratedQuestion(
                question_text=template.format(topic=topic),
                explanation=f"This question tests your understanding of {topic}.",
                options=options,
                time_limit=difficulty.time_limit,
            )
        )
    return QuizGenerationResult(questions=questions, title=f"Quiz: {topic}")


def generate_rule_based_quiz(
    text: str, count: int, difficulty: Difficulty
) -> QuizGenerationResult:
    """Builds questions out of the text's own sentences when no model is available."""
    sentences = [s.strip() for s in re.split(r"[.!?]+", text)]
    sentences = [
        s
        for s in sentences
        if 30 < len(s) < 300 and not s.startswith("http") and "@" not in s
    ]

    if len(sentences) < 3:
        return QuizGenerationResult(
            title="Quiz", error="Not enough content to generate questions."
        )

    def shorten(sentence: str) -> str:
        return sentence[:120] + "..." if len(sentence) > 120 else sentence

    shuffled = random.sample(sentences, len(sentences))
    questions = []
    for i in range(min(count, len(shuffled) - 3)):
        sentence = shuffled[i]
        key_terms = [w for w in sentence.split() if len(w) > 4]
        if len(key_terms) < 2:
            continue

        wrong = [s for idx, s in enumerate(shuffled) if idx != i][:3]
        options = [GeneratedOption(option_text=shorten(sentence), is_correct=True)] + [
            GeneratedOption(option_text=shorten(s)) for s in wrong
        ]
        random.shuffle(options)
        questions.append(
            GeneratedQuestion(
                question_text=f'Which statement about "{random.choice(key_terms)}" is correct?',
                explanation="This is based on the content provided.",
                options=options,
                time_limit=difficulty.time_limit,
            )
        )

    return QuizGenerationResult(questions=questions, title=f"Quiz: {get_text_title(text)}")


class QuizGenerator:
    """
    Builds quizzes through the generation service. Failures are reported in
    the result's `error` and never raised to the caller.
    """

    def __init__(self, client: Optional[GenerationClient] = None):
        self.client = client or GenerationClient()

    async def generate_from_topic(
        self,
        topic: str,
        question_count: int = 5,
        difficulty: Difficulty = Difficulty.MEDIUM,
    ) -> QuizGenerationResult:
        if not self.client.is_configured:
            logger.warning("No generation service configured, using placeholder questions")
            result = generate_placeholder_quiz(topic, question_count, difficulty)
            result.error = "Generation service not configured. Using placeholder questions."
            return result

        prompt = f"""Create {question_count} multiple-choice quiz questions about: "{topic}"

Difficulty level: {difficulty.upper()}
{TOPIC_INSTRUCTIONS[difficulty]}

Requirements:
- Each question must have exactly 4 options
- Exactly one option must be correct
- Options should be plausible and not obviously wrong
- Include a brief explanation for each correct answer
- Questions should cover different aspects of the topic
- Make questions educational and engaging

Return ONLY a valid JSON array, no other text."""

        try:
            content = await self.client.complete(SYSTEM_PROMPT, prompt)
        except (GenerationRateLimitError, GenerationCooldownError) as e:
            logger.warning(f"Generation service unavailable, using placeholder questions: {e}")
            result = generate_placeholder_quiz(topic, question_count, difficulty)
            result.error = f"Generation service unavailable: {e.message[:100]}. Using placeholder questions."
            return result
        except GenerationError as e:
            logger.error(f"Error generating quiz from topic: {e}")
            return QuizGenerationResult(title=topic, error=e.message)

        questions = parse_questions_from_response(content, difficulty)
        if not questions:
            return QuizGenerationResult(
                title=topic, error="Failed to generate questions. Please try again."
            )
        return QuizGenerationResult(questions=questions, title=f"Quiz: {topic}")

    async def generate_from_text(
        self,
        text: str,
        question_count: int = 5,
        difficulty: Difficulty = Difficulty.MEDIUM,
    ) -> QuizGenerationResult:
        text = (text or "").strip()
        if len(text) < MIN_TEXT_LENGTH:
            return QuizGenerationResult(
                title="Quiz",
                error="Could not extract enough text. Please try a different file.",
            )

        if not self.client.is_configured:
            logger.warning("No generation service configured, using rule-based extraction")
            result = generate_rule_based_quiz(text, question_count, difficulty)
            result.error = result.error or "Using basic extraction. Configure the generation service for AI-powered questions."
            return result

        truncated = text[:MAX_TEXT_LENGTH] + "..." if len(text) > MAX_TEXT_LENGTH else text
        prompt = f"""Based on the following content, create {question_count} multiple-choice quiz questions.

CONTENT:
{truncated}

Difficulty level: {difficulty.upper()}
{TEXT_INSTRUCTIONS[difficulty]}

Requirements:
- Questions must be based on the actual content provided
- Each question must have exactly 4 options
- Exactly one option must be correct
- Include a brief explanation for each answer
- Make questions educational and test real understanding

Return ONLY a valid JSON array, no other text."""

        try:
            content = await self.client.complete(SYSTEM_PROMPT, prompt)
        except GenerationError as e:
            logger.warning(f"Generation service issue, using rule-based extraction: {e}")
            result = generate_rule_based_quiz(text, question_count, difficulty)
            result.error = result.error or "Generation service unavailable. Using basic text extraction instead."
            return result

        questions = parse_questions_from_response(content, difficulty)
        if not questions:
            return generate_rule_based_quiz(text, question_count, difficulty)
        return QuizGenerationResult(
            questions=questions, title=f"Quiz: {get_text_title(text)}"
        )
