"""Stable fingerprints for extracted items.

A fingerprint identifies "the same item" across reprocessing runs. It is a
SHA-256 over the owning thread, the source message, the variant type and
the item's normalized primary text. Rewording that only changes case,
punctuation or spacing produces the same fingerprint. Anything past the
normalized prefix is ignored, so trailing elaboration does not split an
item in two.

Usage:
    from commintel.extraction.fingerprint import compute_fingerprint

    fp = compute_fingerprint(candidate, prefix_length=64)
"""

import hashlib

import regex

from commintel.core.logging import get_logger
from commintel.extraction.models import CandidateExtraction, Payload, Variant

logger = get_logger(__name__)

REGEX_TIMEOUT = 1.0
DEFAULT_PREFIX_LENGTH = 64

# Unit separator: cannot appear in ids or in normalized text
FIELD_SEPARATOR = "\x1f"

SEPARATOR_RUN = regex.compile(r"[\W_]+")


def normalize_text(text: str, prefix_length: int = DEFAULT_PREFIX_LENGTH) -> str:
    """Normalize free text for fingerprinting.

    Casefolds, collapses every run of whitespace or punctuation into one
    space, strips, and truncates to ``prefix_length`` characters.

    Example:
        >>> normalize_text("File the  Motion -- by Friday!")
        'file the motion by friday'
    """
    folded = text.casefold()
    try:
        collapsed = SEPARATOR_RUN.sub(" ", folded, timeout=REGEX_TIMEOUT)
    except TimeoutError:
        logger.warning("fingerprint_normalize_timeout", length=len(folded))
        collapsed = " ".join(folded.split())
    return collapsed.strip()[:prefix_length].rstrip()


def fingerprint_parts(
    thread_id: str,
    source_message_id: str,
    variant: Variant | str,
    text: str,
    prefix_length: int = DEFAULT_PREFIX_LENGTH,
) -> str:
    """Hash the identity fields of an item into a hex fingerprint."""
    key = FIELD_SEPARATOR.join(
        [thread_id, source_message_id, Variant(variant).value, normalize_text(text, prefix_length)]
    )
    return hashlib.sha256(key.encode("utf-8")).hexdigest()


def payload_fingerprint(
    thread_id: str,
    source_message_id: str,
    payload: Payload,
    prefix_length: int = DEFAULT_PREFIX_LENGTH,
) -> str:
    return fingerprint_parts(
        thread_id, source_message_id, payload.variant, payload.primary_text(), prefix_length
    )


def compute_fingerprint(
    candidate: CandidateExtraction, prefix_length: int = DEFAULT_PREFIX_LENGTH
) -> str:
    """Fingerprint a validated candidate."""
    return payload_fingerprint(
        candidate.thread_id, candidate.source_message_id, candidate.payload, prefix_length
    )
