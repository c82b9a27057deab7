"""Deep links from Discord embeds back to the course pages they describe."""
from __future__ import annotations

import copy
from typing import Any, Optional

from models.schemas import ResourceType

VIEW_FIELD_NAME = "🔗 View in Pawtograder"


def build_deep_link(
    app_url: str,
    resource_type: str,
    class_id: int,
    resource_id: int,
    regrade_location: Optional[dict[str, int]] = None,
) -> Optional[str]:
    """
    Returns None when no link can be built (unknown resource type, or a
    regrade request whose assignment/submission is not known).
    """
    if resource_type == ResourceType.HELP_REQUEST.value:
        return f"https://{app_url}/course/{class_id}/office-hours/request/{resource_id}"
    if resource_type == ResourceType.REGRADE_REQUEST.value and regrade_location:
        return (
            f"https://{app_url}/course/{class_id}/assignments/{regrade_location['assignment_id']}"
            f"/submissions/{regrade_location['submission_id']}/files#regrade-request-{resource_id}"
        )
    return None


def _is_link_field(field: dict[str, Any]) -> bool:
    name = str(field.get("name", "")).lower()
    return "view" in name or "link" in name


def with_deep_link(
    embeds: Optional[list[dict[str, Any]]], url: str, replace_existing: bool = False,
) -> Optional[list[dict[str, Any]]]:
    """
    Return a copy of ``embeds`` whose first embed links to ``url``.

    An existing view/link field is kept as-is unless ``replace_existing``,
    in which case it is overwritten. The input list is never modified.
    """
    if not embeds:
        return embeds

    updated = copy.deepcopy(embeds)
    first = updated[0]
    first["url"] = url
    link_field = {"name": VIEW_FIELD_NAME, "value": f"[Click here]({url})", "inline": False}

    fields = list(first.get("fields") or [])
    index = next((i for i, f in enumerate(fields) if _is_link_field(f)), None)
    if index is None:
        fields.append(link_field)
    elif replace_existing:
        fields[index] = link_field
    first["fields"] = fields
    return updated
