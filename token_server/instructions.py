"""
Behavior instructions per session kind.

Stored as YAML under token_server/instructions/<kind>.yaml (key `instructions`).
Resolution order:
1) <dir>/<kind>.yaml, <dir>/<kind>.yml
2) built-in text for the kind
"""

from pathlib import Path
from typing import Any, Dict, Optional

import yaml


FALLBACK_INSTRUCTIONS = {
    "chat": (
        "Vous êtes un assistant éducatif spécialisé en formation médicale. "
        "Répondez de manière claire et pédagogique."
    ),
    "ecos_simulation": (
        "Vous êtes un patient virtuel dans une simulation ECOS. "
        "Répondez de manière réaliste selon le scénario clinique. "
        "Utilisez un ton naturel et conversationnel."
    ),
}


def _default_dir() -> Path:
    return Path(__file__).parent / "instructions"


def _load_file(path: Path) -> Dict[str, Any]:
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Instructions file {path} must contain a mapping at top-level")
    return data


def get_instructions(session_kind: str, instructions_dir: Optional[str] = None) -> str:
    """Instruction text for a session kind; unknown kinds get the chat text."""
    directory = Path(instructions_dir) if instructions_dir else _default_dir()
    for candidate in (directory / f"{session_kind}.yaml", directory / f"{session_kind}.yml"):
        if candidate.exists():
            text = _load_file(candidate).get("instructions")
            if isinstance(text, str) and text.strip():
                return " ".join(text.split())
    return FALLBACK_INSTRUCTIONS.get(session_kind, FALLBACK_INSTRUCTIONS["chat"])
