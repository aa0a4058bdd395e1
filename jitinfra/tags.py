"""
Tagging utilities for consistent resource tagging across provisioning runs.
"""

import json
from pathlib import Path
from typing import Dict, List, Optional, Union

from .errors import ConfigError
from .state import ResourceKind

DEFAULT_PROJECT_NAME = "cdx-jit-db"

DEFAULT_TAGS = {
    "Purpose": "database-iam-jit",
    "created_by": "cloudanix",
}


def _kind_value(kind: Union[ResourceKind, str]) -> str:
    return kind.value if isinstance(kind, ResourceKind) else str(kind)


def default_resource_name(kind: Union[ResourceKind, str], project_name: str = DEFAULT_PROJECT_NAME) -> str:
    return f"{project_name}-{_kind_value(kind)}"


def resolve_tags(
    kind: Union[ResourceKind, str],
    resource_name: Optional[str] = None,
    override: Optional[Dict[str, str]] = None,
    project_name: str = DEFAULT_PROJECT_NAME,
) -> Dict[str, str]:
    """
    Produce the final tag set for a newly created or re-tagged resource.

    Without an override the default tags are used. With an override every
    override key passes through unchanged except ``Name``, which is always
    recomputed and applied last.

    Args:
        kind: Resource kind, used for the default ``Name``
        resource_name: Explicit ``Name`` value; defaults to "<project>-<kind>"
        override: User-supplied tags, already parsed
        project_name: Project prefix for the default ``Name``

    Returns:
        Dictionary of tags to apply to the resource
    """
    name = resource_name or default_resource_name(kind, project_name)

    if override is None:
        tags = {"Name": name}
        tags.update(DEFAULT_TAGS)
        return tags

    tags = {key: value for key, value in override.items() if key != "Name"}
    tags["Name"] = name
    return tags


def base_tags(override: Optional[Dict[str, str]] = None) -> Dict[str, str]:
    """
    Tags for resources that carry no ``Name`` tag (log groups, secrets, task
    definitions, services). User tags replace the defaults verbatim.
    """
    if override is None:
        return dict(DEFAULT_TAGS)
    return dict(override)


def parse_user_tags(tag_strings: List[str]) -> Dict[str, str]:
    """
    Parse user-provided tag strings in format "key=value".

    Args:
        tag_strings: List of tag strings in "key=value" format

    Returns:
        Dictionary of parsed tags

    Raises:
        ConfigError: If tag string format is invalid
    """
    tags = {}

    for tag_str in tag_strings:
        if "=" not in tag_str:
            raise ConfigError(f"Invalid tag format: {tag_str}. Expected 'key=value'")

        key, value = tag_str.split("=", 1)
        if not key.strip() or not value.strip():
            raise ConfigError(f"Invalid tag format: {tag_str}. Key and value must not be empty")

        tags[key.strip()] = value.strip()

    return tags


def load_tags_file(path: Union[str, Path]) -> Dict[str, str]:
    """
    Load a tags file.

    The file holds either the AWS list shape ``[{"Key": ..., "Value": ...}]``
    or a flat JSON object.

    Raises:
        ConfigError: If the file is missing or malformed
    """
    tags_file = Path(path)
    if not tags_file.exists():
        raise ConfigError(f"Tags file {tags_file} not found")

    try:
        with open(tags_file, "r") as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Tags file {tags_file} is not valid JSON: {e}") from e

    if isinstance(data, dict):
        return {str(k): str(v) for k, v in data.items()}

    if not isinstance(data, list):
        raise ConfigError(f"Tags file {tags_file} must contain a list or an object")

    tags = {}
    for item in data:
        if not isinstance(item, dict) or "Key" not in item or "Value" not in item:
            raise ConfigError(f"Invalid tag entry in {tags_file}: {item!r}")
        tags[str(item["Key"])] = str(item["Value"])
    return tags


# Converters for the shapes the AWS tagging APIs expect.

def to_key_value_list(tags: Dict[str, str]) -> List[Dict[str, str]]:
    return [{"Key": k, "Value": v} for k, v in tags.items()]


def to_lower_key_value_list(tags: Dict[str, str]) -> List[Dict[str, str]]:
    """ECS style ``[{"key": ..., "value": ...}]``."""
    return [{"key": k, "value": v} for k, v in tags.items()]


def to_tag_specifications(resource_type: str, tags: Dict[str, str]) -> List[Dict]:
    return [{"ResourceType": resource_type, "Tags": to_key_value_list(tags)}]


def to_s3_tagging(tags: Dict[str, str]) -> Dict[str, List[Dict[str, str]]]:
    return {"TagSet": to_key_value_list(tags)}


def to_gcloud_labels(tags: Dict[str, str]) -> str:
    """
    Render tags as a gcloud ``--labels`` value.

    GCP labels only allow lowercase letters, digits, '-' and '_'.
    """
    def clean(text: str) -> str:
        return "".join(c if c.isalnum() or c in "-_" else "-" for c in text.lower())

    return ",".join(f"{clean(k)}={clean(v)}" for k, v in tags.items())
