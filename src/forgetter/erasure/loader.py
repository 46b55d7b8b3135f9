"""Identifier loading, validation and deduplication."""

import json
from collections.abc import Iterable
from pathlib import Path
from typing import Any

from forgetter.core.exceptions import InputError
from forgetter.core.logging import get_logger
from forgetter.erasure.types import IdentifierSet

logger = get_logger(__name__)

MAX_IDENTIFIER_LENGTH = 255


def normalize_identifier(value: Any, position: int) -> str:
    """Normalize a single raw identifier to its comparison form.

    Strings are trimmed. Integers are accepted and rendered as strings,
    since upstream exports sometimes emit numeric ids.

    Raises:
        InputError: If the value cannot be an identifier
    """
    if isinstance(value, bool) or not isinstance(value, (str, int)):
        raise InputError(
            f"Identifier must be a string, got {type(value).__name__}",
            position=position,
        )

    normalized = str(value).strip()
    if not normalized:
        raise InputError("Identifier is empty", position=position)
    if len(normalized) > MAX_IDENTIFIER_LENGTH:
        raise InputError(
            f"Identifier longer than {MAX_IDENTIFIER_LENGTH} characters",
            position=position,
        )
    return normalized


def parse_identifiers(raw: Any) -> list[str]:
    """Validate a raw identifier sequence and normalize each element.

    Args:
        raw: Decoded input, expected to be a non-empty list

    Returns:
        Normalized identifiers, duplicates included

    Raises:
        InputError: If the input is not a non-empty list of identifiers
    """
    if not isinstance(raw, (list, tuple)):
        raise InputError("Input must be a JSON array of user IDs")
    if len(raw) == 0:
        raise InputError("Input array is empty")

    return [normalize_identifier(value, position) for position, value in enumerate(raw)]


def deduplicate(identifiers: Iterable[str]) -> IdentifierSet:
    """Drop repeated identifiers, keeping first-occurrence order."""
    identifiers = list(identifiers)
    unique = tuple(dict.fromkeys(identifiers))
    return IdentifierSet(identifiers=unique, total_requested=len(identifiers))


def load_identifiers(raw: Any) -> IdentifierSet:
    """Validate, normalize and deduplicate a raw identifier sequence.

    Raises:
        InputError: If the input is empty or malformed
    """
    identifier_set = deduplicate(parse_identifiers(raw))
    logger.info(
        "identifiers_loaded",
        total_requested=identifier_set.total_requested,
        unique_count=identifier_set.unique_count,
    )
    return identifier_set


def read_identifiers_file(path: Path | str) -> Any:
    """Read and decode the JSON input artifact.

    Returns:
        The decoded JSON value, not yet validated

    Raises:
        InputError: If the file cannot be read or is not valid JSON
    """
    path = Path(path)
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as e:
        raise InputError(f"Cannot read identifier file {path}: {e}") from e

    try:
        return json.loads(content)
    except json.JSONDecodeError as e:
        raise InputError(f"Identifier file {path} is not valid JSON: {e.msg}") from e
