"""
Registry for loading, caching and rendering pipeline prompt templates.

Templates live in vitae/contexts/extraction/prompts/{step_name}.jinja and are
rendered with two variables:
- resume_text: prepared résumé text
- known_facts: KnownFacts.to_dict() from earlier steps
"""

from pathlib import Path
from typing import Dict

from jinja2 import Environment, FileSystemLoader, StrictUndefined, Template, TemplateNotFound

from vitae.contexts.extraction.facts import KnownFacts

PROMPTS_PATH = Path(__file__).resolve().parent / "prompts"


class PromptRegistry:
    """
    Registry for loading and caching Jinja2 prompt templates, one per pipeline step.

    StrictUndefined makes a template referencing an unknown variable fail at
    render time instead of silently producing an incomplete prompt.
    """

    def __init__(self, prompts_path: Path = None):
        """
        Initialize the prompt registry.

        Args:
            prompts_path: Directory holding {step_name}.jinja files. Defaults to
                          the packaged vitae/contexts/extraction/prompts/
        """
        self.prompts_path = Path(prompts_path) if prompts_path else PROMPTS_PATH
        self._cache: Dict[str, Template] = {}

        self.env = Environment(
            loader=FileSystemLoader(str(self.prompts_path)),
            undefined=StrictUndefined,
            trim_blocks=True,
            keep_trailing_newline=False,
        )

    def get_template(self, step_name: str) -> Template:
        """
        Get a step's template, loading and caching it if necessary.

        Raises:
            TemplateNotFound: If {step_name}.jinja doesn't exist
        """
        if step_name in self._cache:
            return self._cache[step_name]

        try:
            template = self.env.get_template(f"{step_name}.jinja")
        except TemplateNotFound as e:
            raise TemplateNotFound(
                f"Prompt template not found for step '{step_name}' at {self.get_template_path(step_name)}"
            ) from e

        self._cache[step_name] = template
        return template

    def render(self, step_name: str, resume_text: str, known_facts: KnownFacts) -> str:
        """Render the prompt for one step."""
        return self.get_template(step_name).render(resume_text=resume_text, known_facts=known_facts.to_dict())

    def get_template_path(self, step_name: str) -> Path:
        return self.prompts_path / f"{step_name}.jinja"

    def clear_cache(self):
        """Clear the template cache."""
        self._cache.clear()

    def is_cached(self, step_name: str) -> bool:
        return step_name in self._cache
