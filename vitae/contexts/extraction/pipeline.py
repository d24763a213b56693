"""
Three-step extraction pipeline: résumé text -> structured profile.

States advance strictly forward, one LLM call per step:

    BASIC_INFO -> PROFESSIONAL -> ADDITIONAL -> DONE

- BASIC_INFO extracts identity and contact fields. A missing name fails the run.
- PROFESSIONAL extracts experience, skills and education, with the known facts
  from BASIC_INFO as context. Failures are fatal.
- ADDITIONAL extracts optional sections. Generation and parse failures are
  logged and replaced with an all-empty result.
- DONE assembles the final profile from the session.

Retries happen inside the LLM provider only; steps are never retried here.
"""

import time
from enum import Enum

from omegaconf import DictConfig

from vitae.contexts.extraction.exceptions import MissingIdentityError
from vitae.contexts.extraction.facts import (
    IDENTITY_ALIASES,
    IDENTITY_FIELDS,
    STEP_ADDITIONAL,
    STEP_BASIC_INFO,
    STEP_PROFESSIONAL,
    get_identity_field,
    score_confidence,
)
from vitae.contexts.extraction.logger import (
    _log_debug,
    _log_info,
    _log_warning,
    log_pipeline_result,
    log_step_result,
)
from vitae.contexts.extraction.prompts import PromptRegistry
from vitae.contexts.extraction.session_store import SessionStore
from vitae.utils.config import get_section
from vitae.utils.exceptions import GenerationError, ParseError
from vitae.utils.llm import LLMProvider
from vitae.utils.text_cleaner import prepare_for_llm


class PipelineState(str, Enum):
    BASIC_INFO = STEP_BASIC_INFO
    PROFESSIONAL = STEP_PROFESSIONAL
    ADDITIONAL = STEP_ADDITIONAL
    DONE = "done"


TRANSITIONS = {
    PipelineState.BASIC_INFO: PipelineState.PROFESSIONAL,
    PipelineState.PROFESSIONAL: PipelineState.ADDITIONAL,
    PipelineState.ADDITIONAL: PipelineState.DONE,
}

# Steps whose failure is replaced by an empty result instead of failing the run
OPTIONAL_STATES = {PipelineState.ADDITIONAL}

PROFESSIONAL_SECTIONS = ("experience", "skills", "education")
ADDITIONAL_SECTIONS = ("projects", "certifications", "awards", "publications", "volunteer", "languages")

# Values backends emit when they could not find a name
PLACEHOLDER_NAMES = {"unknown", "n/a", "na", "none", "null", "full name", "name", "candidate"}

_IDENTITY_KEYS = {key for field_name in IDENTITY_FIELDS for key in IDENTITY_ALIASES.get(field_name, (field_name,))}


def empty_additional_result() -> dict:
    return {section: [] for section in ADDITIONAL_SECTIONS}


class ExtractionPipeline:
    """
    Runs the extraction steps for one document at a time.

    Args:
        provider: LLM provider used for every step
        session_store: Where step results accumulate during a run
        prompts: Prompt registry (default: packaged templates)
        config: Loaded configuration (default: load_config())
    """

    def __init__(
        self,
        provider: LLMProvider,
        session_store: SessionStore,
        prompts: PromptRegistry = None,
        config: DictConfig = None,
    ):
        self.provider = provider
        self.session_store = session_store
        self.prompts = prompts or PromptRegistry()
        self.max_chars = int(get_section(config, "text").max_chars)

    def run(self, owner_id: str, raw_text: str) -> dict:
        """
        Extract a structured profile from raw résumé text.

        The session is deleted (best effort) whether the run succeeds or fails.

        Args:
            owner_id: Requesting user
            raw_text: Text extracted from the uploaded document

        Returns:
            Final profile dict (see session_store.build_final_result)

        Raises:
            ValueError: If the text is empty after cleaning
            MissingIdentityError: If no name could be extracted
            GenerationError, ParseError: If BASIC_INFO or PROFESSIONAL fails
            SessionNotFoundError: If the session expired mid-run
        """
        text = prepare_for_llm(raw_text, max_chars=self.max_chars)
        if not text:
            raise ValueError("No text to extract from")

        session_id = self.session_store.create_session(
            owner_id, text, meta={"processor": self.provider.name, "text_chars": len(text)}
        )
        _log_info(f"Session {session_id}: extracting {len(text)} characters with {self.provider.name}")
        start_time = time.perf_counter()

        try:
            state = PipelineState.BASIC_INFO
            while state is not PipelineState.DONE:
                self._run_step(session_id, state, text)
                state = TRANSITIONS[state]

            result = self.session_store.get_final_result(session_id)
            log_pipeline_result(session_id, result, time.perf_counter() - start_time)
            return result
        finally:
            self.session_store.delete_session(session_id)

    def _run_step(self, session_id: str, state: PipelineState, text: str) -> None:
        context = self.session_store.get_context(session_id)
        prompt = self.prompts.render(state.value, resume_text=text, known_facts=context.known_facts)
        meta = {"prompt_chars": len(prompt)}
        step_start = time.perf_counter()

        _log_debug(f"{state.value}: sending prompt ({len(prompt)} chars)")
        try:
            data = self.provider.extract_structured(prompt, description=f"{state.value} extraction")
        except (GenerationError, ParseError) as e:
            if state not in OPTIONAL_STATES:
                raise
            _log_warning(f"{state.value}: {type(e).__name__}: {e}")
            data = empty_additional_result()
            meta["fallback"] = True
            meta["error_kind"] = getattr(e, "kind", "parse")

        data = self._shape(state, data)
        confidence = score_confidence(data)
        self.session_store.store_step_result(session_id, state.value, data, confidence, meta)
        log_step_result(state.value, confidence, time.perf_counter() - step_start, fallback=meta.get("fallback", False))

    def _shape(self, state: PipelineState, data: dict) -> dict:
        """Validate and normalize one step's parsed output."""
        if state is PipelineState.BASIC_INFO:
            name = get_identity_field(data, "name")
            if not isinstance(name, str) or name.strip().lower() in PLACEHOLDER_NAMES:
                raise MissingIdentityError()
            return data

        # Later steps are non-authoritative for identity fields
        shaped = {key: value for key, value in data.items() if key not in _IDENTITY_KEYS}
        sections = PROFESSIONAL_SECTIONS if state is PipelineState.PROFESSIONAL else ADDITIONAL_SECTIONS
        for section in sections:
            if shaped.get(section) is None:
                shaped[section] = []
        return shaped
