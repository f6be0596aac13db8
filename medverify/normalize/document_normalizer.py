"""
Document number normalization for MedVerify.

Produces the canonical ``PREFIX-DIGITS`` form used as the cache key and as
the registry query value, and builds normalized verification requests.
"""

import logging
import re
from typing import Dict, Union

from ..errors import InvalidRequestError
from ..models import DocumentType, VerificationRequest
from .name_normalizer import fold_text

logger = logging.getLogger(__name__)

_SEPARATOR_PATTERN = re.compile(r"[\s.\-_/,]+")

# document type -> (allowed prefixes, default prefix, digits pattern, example)
FORMAT_RULES: Dict[DocumentType, Dict] = {
    DocumentType.NATIONAL_ID: {
        "prefixes": ("V", "E"),
        "default_prefix": "V",
        "digits": re.compile(r"^\d{7,8}$"),
        "example": "V-12345678",
    },
    DocumentType.PROFESSIONAL_ID: {
        "prefixes": ("MPPS",),
        "default_prefix": "MPPS",
        "digits": re.compile(r"^\d{4,6}$"),
        "example": "MPPS-12345",
    },
}


def parse_document_type(document_type: Union[str, DocumentType]) -> DocumentType:
    """
    Resolve a document type from its wire value.

    Args:
        document_type: ``DocumentType`` or its string value

    Returns:
        DocumentType member
    """
    if isinstance(document_type, DocumentType):
        return document_type
    try:
        return DocumentType(str(document_type).strip().lower())
    except ValueError:
        raise InvalidRequestError(f"Unsupported document type: {document_type!r}")


def normalize_document_number(document_type: Union[str, DocumentType], raw_number: str) -> str:
    """
    Normalize a document number to ``PREFIX-DIGITS``.

    Uppercases, strips separators and preserves (or supplies) the prefix.

    Args:
        document_type: Document type
        raw_number: Document number as typed by the user

    Returns:
        Canonical document number
    """
    doc_type = parse_document_type(document_type)
    rules = FORMAT_RULES[doc_type]

    compact = _SEPARATOR_PATTERN.sub("", fold_text(raw_number))
    if not compact:
        raise InvalidRequestError("Document number is required")

    prefix = rules["default_prefix"]
    digits = compact
    for candidate in sorted(rules["prefixes"], key=len, reverse=True):
        if compact.startswith(candidate):
            prefix = candidate
            digits = compact[len(candidate):]
            break

    if not rules["digits"].match(digits):
        raise InvalidRequestError(
            f"Invalid {doc_type.value} format, expected something like {rules['example']}"
        )

    return f"{prefix}-{digits}"


def normalize_request(document_type: Union[str, DocumentType], document_number: str,
                      first_name: str, last_name: str) -> VerificationRequest:
    """
    Build a normalized verification request.

    Args:
        document_type: Document type
        document_number: Raw document number
        first_name: Claimed first name(s)
        last_name: Claimed last name(s)

    Returns:
        VerificationRequest ready for lookup
    """
    doc_type = parse_document_type(document_type)
    number = normalize_document_number(doc_type, document_number)

    first = " ".join((first_name or "").split())
    last = " ".join((last_name or "").split())
    if not first or not last:
        raise InvalidRequestError("Both first and last name are required")

    return VerificationRequest(
        document_type=doc_type,
        document_number=number,
        first_name=first,
        last_name=last,
    )


def mask_document_number(document_number: str) -> str:
    """
    Mask a canonical document number for logs and audit records.

    Args:
        document_number: Canonical document number

    Returns:
        Prefix plus the last three digits, e.g. ``V-*****929``
    """
    if not document_number:
        return ""
    prefix, _, digits = document_number.rpartition("-")
    if not digits:
        return "***"
    visible = digits[-3:]
    masked = "*" * max(len(digits) - len(visible), 0) + visible
    return f"{prefix}-{masked}" if prefix else masked
