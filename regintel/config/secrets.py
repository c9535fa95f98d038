"""
Credentials for the extraction service and per-host request headers.

Values come from the process environment, seeded from the repository's ``.env``
(or one in the working directory) on import. Nothing here is ever logged.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

_env_path = Path(__file__).resolve().parent.parent.parent / ".env"
load_dotenv(_env_path if _env_path.exists() else None)

DEFAULT_OPENAI_MODEL = "gpt-4o-mini"


class MissingAPIKeyError(Exception):
    """Raised when a required API key is not configured."""
    pass


@dataclass(frozen=True)
class ExtractionCredentials:
    api_key: str
    model: str
    base_url: Optional[str] = None

    def __repr__(self) -> str:
        return f"ExtractionCredentials(model={self.model!r}, base_url={self.base_url!r})"


def _env(name: str) -> str:
    return os.environ.get(name, "").strip()


def get_openai_model() -> str:
    """Model used for structured extraction and merge calls."""
    return _env("OPENAI_MODEL") or DEFAULT_OPENAI_MODEL


def get_openai_key() -> str:
    """
    Raises:
        MissingAPIKeyError: If OPENAI_API_KEY is not set
    """
    key = _env("OPENAI_API_KEY")
    if not key:
        raise MissingAPIKeyError(
            "OPENAI_API_KEY not found. "
            "Copy .env.example to .env and add your key."
        )
    return key


def load_extraction_credentials(model: Optional[str] = None) -> ExtractionCredentials:
    """Key, model and optional OPENAI_BASE_URL for the OpenAI client."""
    return ExtractionCredentials(
        api_key=get_openai_key(),
        model=model or get_openai_model(),
        base_url=_env("OPENAI_BASE_URL") or None,
    )


def header_secret(env_name: str) -> Optional[str]:
    """Value of a header secret named in the crawler's ``env_headers``, or None when unset."""
    return _env(env_name) or None
