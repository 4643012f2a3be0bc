# Copyright: Ankitects Pty Ltd and contributors
# License: GNU AGPL, version 3 or later; http://www.gnu.org/licenses/agpl.html

"""File naming helpers for episode documents."""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_EPISODE_FILE_NAME_TEMPLATE = "{{episode_title}}"
MAX_FILE_NAME_LENGTH = 150

_VAULT_ILLEGAL = "[]#^|:\\/"
_WINDOWS_ILLEGAL = '<>:"/\\|?*\0' + "".join(chr(i) for i in range(1, 32))
_ILLEGAL_CHARS = "".join(sorted(set(_VAULT_ILLEGAL + _WINDOWS_ILLEGAL)))
_ILLEGAL_RE = re.compile(f"[{re.escape(_ILLEGAL_CHARS)}]")
_TRAILING_RE = re.compile(r"[.\s]+$")

_SECTION_VAR_RE = re.compile(r"\{\{([a-zA-Z0-9_]+)\}\}\[\[.*?\]\]")
_VAR_RE = re.compile(r"\{\{([a-zA-Z0-9_]+)\}\}")


def sanitize_file_name(name: str, max_length: int = MAX_FILE_NAME_LENGTH) -> str:
    """Replace characters illegal on any platform with '_' and bound the length."""
    if not name:
        return "untitled"
    sanitized = _TRAILING_RE.sub("", _ILLEGAL_RE.sub("_", name).strip())
    if len(sanitized) > max_length:
        sanitized = _TRAILING_RE.sub("", sanitized[:max_length])
    return sanitized or "untitled"


def normalize_path(path: str) -> str:
    """Canonical vault-relative key: forward slashes, no empty segments, NFC."""
    path = path.replace("\\", "/")
    path = re.sub(r"/+", "/", path).strip("/")
    return unicodedata.normalize("NFC", path) or "/"


def generate_episode_file_name(
    episode_data: Optional[dict],
    episode_id: str,
    template: Optional[str] = None,
) -> str:
    if not episode_data:
        logger.debug("No episode data for %s, using the id as file name", episode_id)
        return sanitize_file_name(episode_id)

    variables = {
        "episode_title": episode_data.get("episode_name") or "",
        "episode_duration": episode_data.get("episode_duration") or "",
        "episode_publish_date": episode_data.get("episode_publish_date") or "",
        "episode_url": episode_data.get("episode_url") or "",
    }

    def substitute(match: re.Match) -> str:
        var = match.group(1)
        if var not in variables:
            logger.warning("Unknown variable {{%s}} in episode file name template", var)
        return variables.get(var, "")

    # {{var}}[[section]] renders just the value in file names
    result = template or DEFAULT_EPISODE_FILE_NAME_TEMPLATE
    result = _SECTION_VAR_RE.sub(lambda m: variables.get(m.group(1), ""), result)
    result = _VAR_RE.sub(substitute, result)
    if not result.strip():
        result = episode_data.get("episode_name") or episode_id
    return sanitize_file_name(result)
