from typing import Any

MAX_TAG_LENGTH = 20


def parse_tag_list(raw_tags: str | None) -> list[str]:
    if not raw_tags:
        return []
    return normalize_tags(raw_tags.split(","))


def normalize_tags(value: Any) -> list[str]:
    """Strip, de-duplicate and length-check tags, keeping first-seen order."""
    if not value:
        return []
    if isinstance(value, str):
        return parse_tag_list(value)
    if not isinstance(value, (list, tuple)):
        raise ValueError("tags must be a list of strings")

    tags: list[str] = []
    seen = set()
    for item in value:
        tag = str(item).strip()
        if not tag or tag in seen:
            continue
        if len(tag) > MAX_TAG_LENGTH:
            raise ValueError(f"tag '{tag}' exceeds {MAX_TAG_LENGTH} characters")
        tags.append(tag)
        seen.add(tag)
    return tags
