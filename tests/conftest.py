"""Shared fixtures: scripted LLM provider, fake clock, isolated configuration."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from vitae.contexts.extraction.pipeline import ExtractionPipeline
from vitae.contexts.extraction.session_store import InMemorySessionStore
from vitae.utils.config import ENV_OVERRIDES, load_config
from vitae.utils.event_logging import configure_event_log
from vitae.utils.exceptions import AuthError, GenerationTimeoutError, UnknownGenerationError
from vitae.utils.llm import LLMProvider

# Phrases that identify each step's prompt template
STEP_MARKERS = {
    "basic_info": "identity and contact details",
    "professional": "work history, skills and education",
    "additional": "Extract optional sections only",
}

BASIC_INFO = {
    "name": "Ada Lovelace",
    "title": "Senior Software Engineer",
    "email": "ada@example.com",
    "phone": "+44 20 7946 0000",
    "location": "London, UK",
    "summary": "Engineer who turns analytical engines into products.",
    "linkedin": None,
    "github": "https://github.com/ada",
    "website": None,
}

PROFESSIONAL = {
    "experience": [
        {
            "company": "Analytical Engines Ltd",
            "position": "Senior Software Engineer",
            "start_date": "2018",
            "end_date": "2023",
            "description": "Led the difference engine rewrite.",
        },
        {
            "company": "Babbage & Co",
            "position": "Software Engineer",
            "start_date": "2016",
            "end_date": "2018",
            "description": "Wrote the first published algorithm.",
        },
    ],
    "skills": ["Python", "Mathematics", "Technical writing"],
    "education": [{"institution": "University of London", "degree": "BSc Mathematics", "year": "2015"}],
}

ADDITIONAL = {
    "projects": [{"name": "Note G", "description": "Bernoulli numbers program", "technologies": ["Engine"]}],
    "certifications": [{"name": "Certified Engine Operator", "issuer": "Royal Society", "year": "2019"}],
    "awards": [],
    "publications": [{"title": "Sketch of the Analytical Engine", "venue": "Scientific Memoirs", "year": "1843"}],
    "volunteer": [],
    "languages": [{"language": "English", "proficiency": "Native"}],
}

RESUME_TEXT = """Ada Lovelace
Senior Software Engineer
ada@example.com | +44 20 7946 0000 | London, UK

Experience
Analytical Engines Ltd, Senior Software Engineer, 2018 - 2023
Babbage & Co, Software Engineer, 2016 - 2018

Skills
Python, Mathematics, Technical writing
"""


class FakeProvider(LLMProvider):
    """
    LLM provider that returns scripted replies instead of calling a backend.

    Args:
        replies: Replies returned in order, one per attempt
        by_step: Step name -> reply (or list of replies consumed in order)
            chosen by recognizing the step's prompt template

    A reply that is an Exception instance is raised instead of returned.
    TimeoutError, PermissionError and anything else translate to timeout, auth
    and unknown generation errors.
    """

    _provider_prefix = "fake"
    default_model = "scripted"

    def __init__(self, replies=None, by_step=None, **options):
        options.setdefault("base_delay", 0.0)
        super().__init__(**options)
        self.replies = list(replies or [])
        self.by_step = {step: list(value) if isinstance(value, list) else value for step, value in (by_step or {}).items()}
        self.prompts = []
        self.update_model(self.default_model)

    def step_for(self, prompt: str):
        for step, marker in STEP_MARKERS.items():
            if marker in prompt:
                return step
        return None

    def calls_for(self, step: str) -> int:
        return sum(1 for prompt in self.prompts if self.step_for(prompt) == step)

    def _next_reply(self, prompt: str):
        step = self.step_for(prompt)
        if step is not None and step in self.by_step:
            scripted = self.by_step[step]
            if isinstance(scripted, list):
                return scripted.pop(0) if len(scripted) > 1 else scripted[0]
            return scripted
        if not self.replies:
            raise RuntimeError("no scripted reply left")
        return self.replies.pop(0)

    def _call_api(self, prompt: str, timeout: float) -> str:
        self.prompts.append(prompt)
        reply = self._next_reply(prompt)
        if isinstance(reply, Exception):
            raise reply
        return reply

    def _translate_error(self, error):
        if isinstance(error, TimeoutError):
            return GenerationTimeoutError
        if isinstance(error, PermissionError):
            return AuthError
        return UnknownGenerationError


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = None):
        self.current = start or datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current += timedelta(**kwargs)


def step_replies(basic=BASIC_INFO, professional=PROFESSIONAL, additional=ADDITIONAL) -> dict:
    """by_step mapping with JSON-encoded dict replies (non-dict values pass through)."""
    encode = lambda value: json.dumps(value) if isinstance(value, dict) else value  # noqa: E731
    return {
        "basic_info": encode(basic),
        "professional": encode(professional),
        "additional": encode(additional),
    }


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep developer environment variables and event logging out of tests."""
    for env_var in [*ENV_OVERRIDES, "OLLAMA_MODEL", "VITAE_CONFIG"]:
        monkeypatch.delenv(env_var, raising=False)
    configure_event_log(None)
    yield
    configure_event_log(None)


@pytest.fixture
def config():
    return load_config(overrides=["llm.base_delay_seconds=0", "queue.poll_interval_seconds=0.01"])


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def make_pipeline(config):
    """Factory: pipeline over an in-memory session store with a scripted provider."""

    def _make(by_step=None, session_store=None):
        provider = FakeProvider(by_step=by_step or step_replies())
        store = session_store or InMemorySessionStore()
        return ExtractionPipeline(provider, store, config=config)

    return _make
