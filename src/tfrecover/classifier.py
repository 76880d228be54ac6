"""Apply error extraction and classification.

Classification is a pure function over an ordered table of
(pattern, classification) pairs. The first matching row wins, so the
specific "A resource with the ID ... already exists" row sits ahead of the
permission row that would otherwise claim role-assignment conflicts, and
every specific row sits ahead of the catch-all.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from typing import Any

from .models import ApplyError, ErrorClassification, InputError, ResourceAddress

logger = logging.getLogger(__name__)

# Captures the ARM ID Terraform suggests importing
IMPORTABLE_ID_PATTERN = re.compile(
    r'A resource with the ID "(?P<id>[^"]+)" already exists', re.IGNORECASE
)
_QUOTED_VALUE_PATTERN = re.compile(r'"([^"]+)"')
_WITH_ADDRESS_PATTERN = re.compile(r"\bwith ([^\s,]+),")

ErrorPattern = tuple[re.Pattern[str], ErrorClassification]


def _patterns(classification: ErrorClassification, *expressions: str) -> list[ErrorPattern]:
    return [(re.compile(expr, re.IGNORECASE), classification) for expr in expressions]


ERROR_PATTERNS: tuple[ErrorPattern, ...] = tuple(
    [
        *_patterns(ErrorClassification.ALREADY_EXISTS, IMPORTABLE_ID_PATTERN.pattern),
        *_patterns(
            ErrorClassification.PERMISSION,
            r"The role assignment already exists",
            r"RoleAssignmentExists",
            r"does not have authorization",
            r"AuthorizationFailed",
            r"insufficient privileges",
            r"LinkedAuthorizationFailed",
            r"StatusCode=403",
            r"403 Forbidden",
        ),
        *_patterns(
            ErrorClassification.STALE_REFERENCE,
            r"ResourceNotFound",
            r"ParentResourceNotFound",
            r"ResourceGroupNotFound",
            r"StatusCode=404",
            r"404 Not Found",
            r"\bwas not found\b",
            r"\bcould not be found\b",
        ),
        *_patterns(
            ErrorClassification.TRANSIENT,
            r"timeout",
            r"timed out",
            r"context deadline exceeded",
            r"connection reset",
            r"network error",
            r"throttl",
            r"TooManyRequests",
            r"StatusCode=429",
            r"RetryableError",
            r"AnotherOperationInProgress",
            r"StatusCode=50[234]",
        ),
        # Generic conflicts Terraform gives no import ID for; a human must look
        *_patterns(
            ErrorClassification.ALREADY_EXISTS,
            r"already exists",
            r"already assigned",
        ),
    ]
)


def classify(message: str, detail: str = "") -> ErrorClassification:
    """Classify one error by its summary and detail text."""
    text = f"{message}\n{detail}"
    for pattern, classification in ERROR_PATTERNS:
        if pattern.search(text):
            return classification
    return ErrorClassification.UNKNOWN


def extract_external_id(message: str, detail: str = "") -> str | None:
    """Provider-side ID named in an already-exists error, if any."""
    for text in (message, detail):
        match = IMPORTABLE_ID_PATTERN.search(text)
        if match:
            return match.group("id")
    # Fall back to the first quoted value that looks like an ARM ID
    for value in _QUOTED_VALUE_PATTERN.findall(message):
        if value.startswith("/subscriptions/"):
            return value
    return None


def _parse_address(value: str | None) -> ResourceAddress | None:
    if not value:
        return None
    try:
        return ResourceAddress.parse(value)
    except InputError:
        logger.debug("Ignoring unparsable diagnostic address", extra={"address": value})
        return None


def build_apply_error(
    message: str, detail: str = "", address: str | None = None
) -> ApplyError:
    """Create a classified ApplyError from raw diagnostic fields."""
    parsed_address = _parse_address(address)
    if parsed_address is None:
        for text in (detail, message):
            match = _WITH_ADDRESS_PATTERN.search(text)
            if match:
                parsed_address = _parse_address(match.group(1))
                if parsed_address is not None:
                    break

    classification = classify(message, detail)
    external_id = None
    if classification is ErrorClassification.ALREADY_EXISTS:
        external_id = extract_external_id(message, detail)

    return ApplyError(
        address=parsed_address,
        message=message.strip(),
        detail=detail.strip(),
        classification=classification,
        external_id=external_id,
    )


def parse_apply_events(events: Iterable[dict[str, Any]]) -> list[ApplyError]:
    """Extract classified errors from a `terraform apply -json` event stream.

    Only `@level == "error"` diagnostics are considered. Duplicate errors
    (same address and message) are reported once.
    """
    errors: list[ApplyError] = []
    seen: set[tuple[str, str]] = set()
    for event in events:
        if event.get("@level") != "error":
            continue
        diagnostic = event.get("diagnostic")
        if isinstance(diagnostic, dict):
            message = str(diagnostic.get("summary") or event.get("@message") or "")
            detail = str(diagnostic.get("detail") or "")
            address = diagnostic.get("address")
        else:
            message = str(event.get("@message") or "")
            detail = ""
            address = None
        if not message:
            continue

        error = build_apply_error(message, detail, address)
        if error.signature in seen:
            continue
        seen.add(error.signature)
        errors.append(error)

    for error in errors:
        logger.info(
            "Apply error classified",
            extra={
                "address": str(error.address) if error.address else None,
                "classification": error.classification.value,
                "external_id": error.external_id,
            },
        )
    return errors


def unknown_error_from_output(raw_diagnostics: str, max_chars: int = 2000) -> ApplyError:
    """Error used when a failed apply produced no parseable error diagnostic."""
    tail = raw_diagnostics.strip()[-max_chars:]
    return ApplyError(
        address=None,
        message="Apply failed without a parseable error diagnostic",
        detail=tail,
        classification=ErrorClassification.UNKNOWN,
    )
