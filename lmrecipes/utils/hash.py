"""Hashes and identifiers computed from text"""

import hashlib
import uuid


def sha256_hash(input_string: str) -> str:
    """Hex digest of the string, for keys that must be stable across
    interpreter runs and safe as file names."""
    return hashlib.sha256(input_string.encode('utf-8')).hexdigest()


def generate_uuid(
    text_input: str, namespace_uuid: uuid.UUID = uuid.NAMESPACE_URL
) -> str:
    """
    Generates a UUID Version 5 from a given text string using a
    specified namespace.

    The same text input with the same namespace always produces the
    same UUID, so that re-indexing a document does not duplicate it.

    Args:
        text_input: The string from which to generate the UUID.
        namespace_uuid: The namespace UUID. Defaults to
            uuid.NAMESPACE_URL.

    Returns:
        The generated UUID v5 as a hyphenated string.
    """
    if not isinstance(text_input, str):  # type: ignore[reportUnnecessaryInstance]
        raise TypeError("Input 'text_input' must be a string.")

    return str(uuid.uuid5(namespace_uuid, text_input))
