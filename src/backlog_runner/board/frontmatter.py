"""YAML frontmatter split and join for board markdown files."""

from __future__ import annotations

from typing import Any

import yaml

_DELIMITER = "---"


class FrontmatterError(ValueError):
    """Frontmatter block exists but is not a YAML mapping."""


def split_frontmatter(content: str) -> tuple[dict[str, Any], str]:
    """Return ``(fields, body)``. Files without a leading block have empty fields."""

    text = content or ""
    if not text.startswith(_DELIMITER):
        return {}, text
    end = text.find(f"\n{_DELIMITER}", len(_DELIMITER))
    if end == -1:
        return {}, text
    block = text[len(_DELIMITER) : end]
    body = text[end + len(_DELIMITER) + 1 :]
    try:
        loaded = yaml.safe_load(block)
    except yaml.YAMLError as error:
        raise FrontmatterError(f"Invalid YAML frontmatter: {error}") from error
    if loaded is None:
        loaded = {}
    if not isinstance(loaded, dict):
        raise FrontmatterError("Frontmatter must be a mapping.")
    return loaded, body.lstrip("\n")


def join_frontmatter(fields: dict[str, Any], body: str) -> str:
    kept = {key: value for key, value in fields.items() if value not in (None, "", [])}
    block = yaml.safe_dump(kept, sort_keys=False, allow_unicode=True).strip()
    return f"{_DELIMITER}\n{block}\n{_DELIMITER}\n\n{body.lstrip(chr(10))}"


def title_from_slug(slug: str) -> str:
    words = slug.replace("-", " ").replace("_", " ").split()
    return " ".join(word[:1].upper() + word[1:] for word in words)


def parse_list_field(value: Any) -> list[str]:
    """Accept YAML lists or comma separated strings."""

    if not value:
        return []
    if isinstance(value, list):
        return [str(item).strip() for item in value if str(item).strip()]
    return [part.strip() for part in str(value).split(",") if part.strip()]
