"""Prompt template loading and formatting utilities."""

import re
from collections.abc import Sequence
from pathlib import Path

import yaml
from pydantic import BaseModel

PROMPTS_DIR = Path(__file__).with_name("prompts")
SUBJECTS_PROMPT_PATH = PROMPTS_DIR / "subjects.yaml"

DEFAULT_LANGUAGE = "en"


class PromptData(BaseModel):
    """Validated prompt template loaded from YAML.

    Fields:
        version: Prompt version for A/B testing (e.g., "v1").
        system_prompt: Role instructions placed before the user prompt.
        user_prompt_template: User prompt with {content} placeholder.
        existing_items_template: Section listing already-known items,
            with an {items} placeholder. Empty when unused.
        language_instructions: Language code -> instruction block.
    """

    version: str = "unknown"
    system_prompt: str = ""
    user_prompt_template: str
    existing_items_template: str = ""
    language_instructions: dict[str, str] = {}


def load_prompt(path: str | Path) -> PromptData:
    """Load prompt template from YAML file.

    Args:
        path: Path to the YAML prompt file.

    Returns:
        Validated PromptData.

    Raises:
        FileNotFoundError: If the prompt file does not exist.
        ValidationError: If required keys are missing or invalid.
    """
    prompt_path = Path(path)
    if not prompt_path.exists():
        raise FileNotFoundError(f"Prompt file not found: {prompt_path}")

    with prompt_path.open(encoding="utf-8") as f:
        data = yaml.safe_load(f)

    return PromptData.model_validate(data)


_PLACEHOLDER_RE = re.compile(r"\{(\w+)\}")


def format_prompt(template: str, **values: str) -> str:
    """Fill ``{name}`` placeholders in a single pass.

    Values already injected (e.g. document content that happens to
    contain ``{items}``) are never re-scanned for further placeholders.
    Unknown placeholders and JSON braces are left untouched.
    """

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        return values.get(key, match.group(0))

    return _PLACEHOLDER_RE.sub(_replace, template)


class SubjectPromptBuilder:
    """Default PromptBuilder for subject extraction.

    Callable as ``builder(content, known_items, language)``; suitable
    for ProviderAdapter.generate_subjects() and the chunk coordinator.
    """

    def __init__(self, prompt: PromptData | None = None) -> None:
        self._prompt = prompt or load_prompt(SUBJECTS_PROMPT_PATH)

    @property
    def version(self) -> str:
        return self._prompt.version

    def language_instructions(self, language: str) -> str:
        instructions = self._prompt.language_instructions
        return instructions.get(language) or instructions.get(DEFAULT_LANGUAGE, "")

    def existing_items_section(self, known_items: Sequence[str]) -> str:
        if not known_items or not self._prompt.existing_items_template:
            return ""
        listing = "\n".join(f"- {name}" for name in known_items)
        return format_prompt(self._prompt.existing_items_template, items=listing)

    def __call__(
        self,
        content: str,
        known_items: Sequence[str],
        language: str,
    ) -> str:
        user_prompt = format_prompt(
            self._prompt.user_prompt_template,
            content=content,
            existing_items=self.existing_items_section(known_items),
            language_instructions=self.language_instructions(language),
        )
        if not self._prompt.system_prompt:
            return user_prompt
        return f"{self._prompt.system_prompt.strip()}\n\n{user_prompt}"
