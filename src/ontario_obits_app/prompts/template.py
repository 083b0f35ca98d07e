#!filepath: src/ontario_obits_app/prompts/template.py
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from ontario_obits_app.utils.logger import get_logger

logger = get_logger(__name__)

_TOKEN_RE = re.compile(r"\{\{([A-Z0-9_]+)\}\}")


@dataclass(frozen=True, slots=True)
class PromptTemplate:
    """A rewrite or audit prompt with `{{TOKEN}}` slots.

    Tokens are uppercase. Every token in the text must receive a value, so
    a record field that went missing upstream fails loudly instead of
    sending a half-filled prompt to the model.
    """

    name: str
    text: str

    @classmethod
    def from_file(cls, path: Path) -> PromptTemplate:
        return cls(name=path.stem, text=path.read_text(encoding="utf-8"))

    @property
    def placeholders(self) -> set[str]:
        return set(_TOKEN_RE.findall(self.text or ""))

    def render(self, values: Mapping[str, str]) -> str:
        """Fill every slot in a single pass.

        Values are inserted verbatim. Braces inside scraped obituary text are
        never re-expanded.

        Raises:
            ValueError: When the template names a token absent from `values`.
        """
        missing = sorted(self.placeholders - set(values))
        if missing:
            raise ValueError(f"Prompt {self.name} missing values for {', '.join(missing)}")
        unused = sorted(set(values) - self.placeholders)
        if unused:
            logger.debug(f"Prompt values not used, prompt={self.name}, tokens={','.join(unused)}")
        return _TOKEN_RE.sub(lambda m: str(values[m.group(1)] or ""), self.text).strip()


def load_prompt(prompts_dir: Path | str, name: str) -> PromptTemplate:
    """Load `<prompts_dir>/<name>.md`.

    Raises:
        FileNotFoundError: If the template file does not exist.
    """
    path = Path(prompts_dir) / f"{name}.md"
    if not path.is_file():
        raise FileNotFoundError(f"Prompt template not found: {path}")
    return PromptTemplate.from_file(path)
