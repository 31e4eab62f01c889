"""
Tests for the generation service client and quiz generator.
"""
import json

import httpx
import pytest

from conftest import FakeClock
from livequiz.generation.models import (
    GenerationClient,
    GenerationCooldownError,
    GenerationError,
    GenerationNotConfiguredError,
    GenerationRateLimitError,
    QuizGenerator,
    generate_rule_based_quiz,
    parse_questions_from_response,
)
from livequiz.generation.schemas import Difficulty

GOOD_REPLY = """Here you go:
[
  {
    "question": "What is the capital of France?",
    "options": [
      {"text": "Berlin", "is_correct": false},
      {"text": "Paris", "is_correct": true},
      {"text": "Rome", "is_correct": false},
      {"text": "Madrid", "is_correct": false}
    ],
    "explanation": "Paris is the capital."
  }
]"""

SOURCE_TEXT = (
    "Photosynthesis converts light energy into chemical energy inside plant cells. "
    "Chlorophyll absorbs mostly blue and red wavelengths of visible light. "
    "The Calvin cycle fixes carbon dioxide into three carbon sugar molecules. "
    "Oxygen is released as a byproduct when water molecules are split apart. "
    "Stomata on the leaf surface regulate the exchange of gases with the air. "
    "Glucose produced by the plant is stored as starch for later metabolic use."
)


def completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


class Recorder:
    """MockTransport handler that answers with canned responses and records requests."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


def make_client(recorder: Recorder, clock=None, api_key="test-key") -> GenerationClient:
    return GenerationClient(
        api_url="https://generation.test/v1/chat/completions",
        api_key=api_key,
        model="test-model",
        cooldown_seconds=300,
        transport=httpx.MockTransport(recorder),
        clock=clock or FakeClock(),
    )


class TestGenerationClient:
    @pytest.mark.asyncio
    async def test_complete_posts_chat_body(self):
        recorder = Recorder(httpx.Response(200, json=completion("hello")))
        client = make_client(recorder)

        content = await client.complete("system text", "user text")

        assert content == "hello"
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.headers["Authorization"] == "Bearer test-key"
        body = json.loads(request.content)
        assert body["model"] == "test-model"
        assert body["messages"] == [
            {"role": "system", "content": "system text"},
            {"role": "user", "content": "user text"},
        ]
        for key in ("max_tokens", "temperature", "top_p"):
            assert key in body

    @pytest.mark.asyncio
    async def test_rate_limit_opens_cooldown(self):
        clock = FakeClock()
        recorder = Recorder(
            httpx.Response(429, json={"error": {"message": "slow down"}}),
            httpx.Response(200, json=completion("after cooldown")),
        )
        client = make_client(recorder, clock=clock)

        with pytest.raises(GenerationRateLimitError):
            await client.complete("s", "p")
        assert client.in_cooldown

        clock.advance(299)
        with pytest.raises(GenerationCooldownError):
            await client.complete("s", "p")
        assert len(recorder.requests) == 1

        clock.advance(2)
        assert await client.complete("s", "p") == "after cooldown"
        assert len(recorder.requests) == 2

    @pytest.mark.asyncio
    async def test_server_error_raises_without_cooldown(self):
        recorder = Recorder(httpx.Response(500, json={"error": {"message": "boom"}}))
        client = make_client(recorder)

        with pytest.raises(GenerationError) as error:
            await client.complete("s", "p")

        assert error.value.message == "boom"
        assert error.value.status_code == 500
        assert not client.in_cooldown

    @pytest.mark.asyncio
    async def test_unexpected_body_raises(self):
        recorder = Recorder(httpx.Response(200, json={"choices": []}))
        with pytest.raises(GenerationError):
            await make_client(recorder).complete("s", "p")

    @pytest.mark.asyncio
    async def test_transport_failure_raises(self):
        def unreachable(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(Recorder())
        client.transport = httpx.MockTransport(unreachable)
        with pytest.raises(GenerationError):
            await client.complete("s", "p")

    @pytest.mark.asyncio
    async def test_unconfigured_client_fails_fast(self):
        recorder = Recorder()
        with pytest.raises(GenerationNotConfiguredError):
            await make_client(recorder, api_key="").complete("s", "p")
        assert recorder.requests == []


class TestParseQuestions:
    def test_parses_option_objects(self):
        questions = parse_questions_from_response(GOOD_REPLY, Difficulty.HARD)
        assert len(questions) == 1
        question = questions[0]
        assert question.question_text == "What is the capital of France?"
        assert [o.is_correct for o in question.options] == [False, True, False, False]
        assert question.time_limit == 20

    def test_parses_string_options_with_index(self):
        reply = json.dumps(
            [{"question": "2 + 2?", "options": ["3", "4", "5"], "correct": 1}]
        )
        questions = parse_questions_from_response(reply, Difficulty.EASY)
        assert [o.is_correct for o in questions[0].options] == [False, True, False]
        assert questions[0].time_limit == 30

    def test_drops_incomplete_questions(self):
        reply = json.dumps(
            [
                {"question": "", "options": [{"text": "a", "is_correct": True}, {"text": "b"}]},
                {"question": "One option?", "options": [{"text": "a", "is_correct": True}]},
                {"question": "No answer?", "options": [{"text": "a"}, {"text": "b"}]},
                {"question": "Fine?", "options": [{"text": "a", "is_correct": True}, {"text": "b"}]},
            ]
        )
        questions = parse_questions_from_response(reply, Difficulty.MEDIUM)
        assert [q.question_text for q in questions] == ["Fine?"]

    @pytest.mark.parametrize("reply", ["", "no json here", "[not valid json]", None])
    def test_unparseable_reply(self, reply):
        assert parse_questions_from_response(reply, Difficulty.MEDIUM) == []


class TestQuizGenerator:
    @pytest.mark.asyncio
    async def test_topic_quiz(self):
        recorder = Recorder(httpx.Response(200, json=completion(GOOD_REPLY)))
        result = await QuizGenerator(make_client(recorder)).generate_from_topic(
            "Geography", 1, Difficulty.MEDIUM
        )
        assert result.error is None
        assert result.title == "Quiz: Geography"
        assert len(result.questions) == 1
        assert "Geography" in json.loads(recorder.requests[0].content)["messages"][1]["content"]

    @pytest.mark.asyncio
    async def test_topic_quiz_rate_limited_falls_back(self):
        recorder = Recorder(httpx.Response(429, json={}))
        generator = QuizGenerator(make_client(recorder))

        result = await generator.generate_from_topic("Volcanoes", 3)
        assert len(result.questions) == 3
        assert "unavailable" in result.error

        # cooling down: the fallback is served without another request
        result = await generator.generate_from_topic("Volcanoes", 2)
        assert len(result.questions) == 2
        assert len(recorder.requests) == 1

    @pytest.mark.asyncio
    async def test_topic_quiz_error_is_returned_not_raised(self):
        recorder = Recorder(httpx.Response(503, json={"error": {"message": "down"}}))
        result = await QuizGenerator(make_client(recorder)).generate_from_topic("Stars")
        assert result.questions == []
        assert result.error == "down"

    @pytest.mark.asyncio
    async def test_topic_quiz_unparseable_reply(self):
        recorder = Recorder(httpx.Response(200, json=completion("I can't help with that")))
        result = await QuizGenerator(make_client(recorder)).generate_from_topic("Stars")
        assert result.questions == []
        assert result.error

    @pytest.mark.asyncio
    async def test_topic_quiz_without_service(self):
        result = await QuizGenerator(make_client(Recorder(), api_key="")).generate_from_topic(
            "Rivers", 4, Difficulty.EASY
        )
        assert len(result.questions) == 4
        assert all(q.time_limit == 30 for q in result.questions)
        assert all(sum(o.is_correct for o in q.options) == 1 for q in result.questions)
        assert result.error

    @pytest.mark.asyncio
    async def test_text_quiz_truncates_content(self):
        recorder = Recorder(httpx.Response(200, json=completion(GOOD_REPLY)))
        long_text = SOURCE_TEXT * 200

        result = await QuizGenerator(make_client(recorder)).generate_from_text(long_text)

        assert len(result.questions) == 1
        prompt = json.loads(recorder.requests[0].content)["messages"][1]["content"]
        assert len(prompt) < len(long_text)

    @pytest.mark.asyncio
    async def test_text_quiz_too_short(self):
        recorder = Recorder()
        result = await QuizGenerator(make_client(recorder)).generate_from_text("Too short.")
        assert result.questions == []
        assert result.error
        assert recorder.requests == []

    @pytest.mark.asyncio
    async def test_text_quiz_falls_back_to_extraction(self):
        recorder = Recorder(httpx.Response(429, json={}))
        result = await QuizGenerator(make_client(recorder)).generate_from_text(
            SOURCE_TEXT, 2
        )
        assert 1 <= len(result.questions) <= 2
        assert result.error


class TestRuleBasedQuiz:
    def test_builds_questions_from_sentences(self):
        result = generate_rule_based_quiz(SOURCE_TEXT, 2, Difficulty.HARD)
        assert 1 <= len(result.questions) <= 2
        for question in result.questions:
            assert len(question.options) == 4
            assert sum(o.is_correct for o in question.options) == 1
            assert question.time_limit == 20

    def test_needs_enough_sentences(self):
        result = generate_rule_based_quiz("Short one. Another short.", 3, Difficulty.EASY)
        assert result.questions == []
        assert result.error
